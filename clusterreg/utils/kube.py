import os
from pathlib import Path
from typing import Optional

from kubernetes import client, config

from clusterreg.backend import KubernetesSecretBackend
from clusterreg.config import Config
from clusterreg.registry import ClusterRegistry
from clusterreg.settings import KubernetesSettings

def load_kubeconfig(path: Optional[str] = None) -> str:
    """
    Load Kubernetes client configuration.

    Uses the given kubeconfig path, then $KUBECONFIG / ~/.kube/config, and
    finally the in-cluster service account. Returns a description of what was
    loaded.
    """
    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
        config.load_kube_config(config_file=str(resolved))
        return str(resolved)

    try:
        config.load_kube_config(config_file=Config.KUBECONFIG or None)
        return Config.KUBECONFIG or "~/.kube/config"
    except config.ConfigException:
        config.load_incluster_config()
        return "in-cluster"

def build_registry(namespace: Optional[str] = None, kubeconfig: Optional[str] = None) -> ClusterRegistry:
    """Registry backed by the secrets and settings of ``namespace``."""
    Config.validate()
    load_kubeconfig(kubeconfig)
    core = client.CoreV1Api()
    namespace = namespace or Config.NAMESPACE
    return ClusterRegistry(
        KubernetesSecretBackend(namespace, api=core),
        KubernetesSettings(namespace, api=core),
    )
