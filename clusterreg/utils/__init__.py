"""Helpers shared by the CLI and the HTTP API."""
from typing import Any

from ..config import Config
from ..models import Cluster

REDACTED = "[REDACTED]"

def redact_sensitive_data(data: Any) -> Any:
    """Recursively replace credential values in dicts and lists.

    A key is sensitive when it contains any of ``Config.REDACT_KEYS``,
    case-insensitively. Empty values are left alone so callers can still
    tell "not set" from "set".
    """
    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if value and any(part in key.lower() for part in Config.REDACT_KEYS):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_sensitive_data(value)
        return redacted
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data

def cluster_view(cluster: Cluster, exclude_defaults: bool = False) -> dict:
    """JSON-ready view of a cluster with credentials redacted."""
    dumped = cluster.model_dump(mode="json", by_alias=True, exclude_defaults=exclude_defaults)
    return redact_sensitive_data(dumped)
