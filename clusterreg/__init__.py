"""Registry of GitOps deployment target clusters stored as Kubernetes secrets."""
from clusterreg.errors import (
    AlreadyExists,
    Conflict,
    InvalidArgument,
    NotFound,
    PreconditionFailed,
    RegistryError,
)
from clusterreg.models import Cluster, ClusterConfig, Stored, Synthesized
from clusterreg.naming import normalize_server, uri_to_secret_name
from clusterreg.registry import ClusterRegistry

__version__ = "0.1.0"

__all__ = [
    'AlreadyExists',
    'Cluster',
    'ClusterConfig',
    'ClusterRegistry',
    'Conflict',
    'InvalidArgument',
    'NotFound',
    'PreconditionFailed',
    'RegistryError',
    'Stored',
    'Synthesized',
    'normalize_server',
    'uri_to_secret_name',
]
