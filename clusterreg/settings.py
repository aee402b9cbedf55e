"""Instance-wide settings read from the control plane's config map."""
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from clusterreg.config import Config
from clusterreg.logging import setup_logger

logger = setup_logger(__name__)

IN_CLUSTER_ENABLED_KEY = "cluster.inClusterEnabled"


class SettingsManager:
    def is_in_cluster_enabled(self) -> bool:
        raise NotImplementedError


class KubernetesSettings(SettingsManager):
    """Reads settings from a config map on every call; nothing is cached."""

    def __init__(self, namespace: str = None, configmap: str = None,
                 api: Optional[client.CoreV1Api] = None):
        self.namespace = namespace or Config.NAMESPACE
        self.configmap = configmap or Config.SETTINGS_CONFIGMAP
        self._core = api or client.CoreV1Api()

    def _data(self) -> dict:
        try:
            cm = self._core.read_namespaced_config_map(
                self.configmap, self.namespace, _request_timeout=Config.API_TIMEOUT)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"config map {self.namespace}/{self.configmap} not found, using defaults")
                return {}
            raise
        return cm.data or {}

    def is_in_cluster_enabled(self) -> bool:
        return self._data().get(IN_CLUSTER_ENABLED_KEY, "true") != "false"
