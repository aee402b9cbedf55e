"""Secret storage backing the cluster registry.

Backends raise :class:`kubernetes.client.rest.ApiException` for API errors;
the registry maps 404 and 409 onto its own error types and lets everything
else through unchanged.
"""
import threading
from typing import Iterator, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client import V1Secret
from kubernetes.client.rest import ApiException

from clusterreg.config import Config
from clusterreg.logging import setup_logger
from clusterreg.models import LABEL_KEY_SECRET_TYPE, LABEL_VALUE_SECRET_TYPE_CLUSTER

logger = setup_logger(__name__)

CLUSTER_SECRET_SELECTOR = f"{LABEL_KEY_SECRET_TYPE}={LABEL_VALUE_SECRET_TYPE_CLUSTER}"

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

WatchEvent = Tuple[str, V1Secret]


class SecretBackend:
    """Interface the registry needs from a secret store."""

    namespace: str

    def get(self, name: str, timeout: Optional[float] = None) -> V1Secret:
        raise NotImplementedError

    def create(self, secret: V1Secret, timeout: Optional[float] = None) -> V1Secret:
        raise NotImplementedError

    def update(self, secret: V1Secret, timeout: Optional[float] = None) -> V1Secret:
        """Replace a secret. Must reject stale ``metadata.resource_version`` with 409."""
        raise NotImplementedError

    def delete(self, name: str, timeout: Optional[float] = None) -> None:
        raise NotImplementedError

    def list(self, label_selector: str) -> Tuple[List[V1Secret], str]:
        """Return matching secrets and the list's resource version."""
        raise NotImplementedError

    def watch(self, label_selector: str, resource_version: str,
              stop: threading.Event) -> Iterator[WatchEvent]:
        """Yield events after ``resource_version`` until the stream ends or ``stop`` is set.

        An expired resource version is reported as ApiException(status=410).
        """
        raise NotImplementedError

    def stop_watches(self) -> None:
        """Interrupt running watches that are blocked waiting for events."""


class KubernetesSecretBackend(SecretBackend):
    """Secrets of one namespace, accessed through the Kubernetes API."""

    def __init__(self, namespace: str = None, api: Optional[client.CoreV1Api] = None):
        self.namespace = namespace or Config.NAMESPACE
        self._core = api or client.CoreV1Api()
        self._watches_lock = threading.Lock()
        self._watches = set()

    @staticmethod
    def _timeout(timeout: Optional[float]) -> float:
        return timeout if timeout is not None else Config.API_TIMEOUT

    def get(self, name, timeout=None):
        return self._core.read_namespaced_secret(
            name, self.namespace, _request_timeout=self._timeout(timeout))

    def create(self, secret, timeout=None):
        return self._core.create_namespaced_secret(
            self.namespace, secret, _request_timeout=self._timeout(timeout))

    def update(self, secret, timeout=None):
        return self._core.replace_namespaced_secret(
            secret.metadata.name, self.namespace, secret, _request_timeout=self._timeout(timeout))

    def delete(self, name, timeout=None):
        self._core.delete_namespaced_secret(
            name, self.namespace, _request_timeout=self._timeout(timeout))

    def list(self, label_selector):
        result = self._core.list_namespaced_secret(
            self.namespace, label_selector=label_selector,
            _request_timeout=Config.API_TIMEOUT)
        return result.items, result.metadata.resource_version

    def watch(self, label_selector, resource_version, stop):
        w = watch.Watch()
        with self._watches_lock:
            self._watches.add(w)
        try:
            # stop_watches() may have run before this watch was registered
            if stop.is_set():
                return
            for event in w.stream(
                self._core.list_namespaced_secret,
                self.namespace,
                label_selector=label_selector,
                resource_version=resource_version,
                timeout_seconds=Config.WATCH_TIMEOUT,
            ):
                if stop.is_set():
                    break
                if event["type"] == "ERROR":
                    raw = event.get("raw_object") or {}
                    raise ApiException(status=raw.get("code", 500), reason=raw.get("message", "watch error"))
                yield event["type"], event["object"]
        finally:
            with self._watches_lock:
                self._watches.discard(w)
            w.stop()

    def stop_watches(self):
        with self._watches_lock:
            watches = list(self._watches)
        for w in watches:
            # shuts the stream's socket down, so a blocked read returns at once
            w.stop()
