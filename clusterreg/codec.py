"""Conversion between cluster secrets and :class:`Cluster` objects."""
import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Dict, Optional

from kubernetes.client import V1ObjectMeta, V1Secret
from pydantic import ValidationError

from clusterreg.errors import InvalidArgument
from clusterreg.logging import setup_logger
from clusterreg.models import (
    ANNOTATION_KEY_REFRESH,
    LABEL_KEY_SECRET_TYPE,
    LAST_APPLIED_CONFIG_ANNOTATION,
    Cluster,
    ClusterConfig,
)

logger = setup_logger(__name__)

RFC3339 = "%Y-%m-%dT%H:%M:%SZ"


def encode_value(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_value(value: str) -> str:
    return base64.b64decode(value, validate=True).decode("utf-8")


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(RFC3339)


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        raise ValueError(f"timestamp {value!r} has no timezone")
    return ts.astimezone(timezone.utc)


def secret_data(secret: V1Secret) -> Dict[str, str]:
    """Decoded view of a secret's data. Raises InvalidArgument on bad encoding."""
    name = secret.metadata.name if secret.metadata else ""
    decoded = {}
    for key, value in (secret.data or {}).items():
        try:
            decoded[key] = decode_value(value or "")
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise InvalidArgument(f'cluster secret "{name}" has undecodable key "{key}": {e}') from e
    return decoded


def secret_to_cluster(secret: V1Secret) -> Cluster:
    """Build a Cluster from a cluster secret.

    The last-applied-configuration annotation is dropped and the refresh
    annotation is surfaced as ``refresh_requested_at``.

    Raises:
        InvalidArgument: if a required key is missing or a value is malformed.
    """
    meta = secret.metadata or V1ObjectMeta()
    data = secret_data(secret)
    for key in ("server", "name"):
        if key not in data:
            raise InvalidArgument(f'cluster secret "{meta.name}" is missing required key "{key}"')

    config = ClusterConfig()
    if "config" in data:
        try:
            raw = json.loads(data["config"])
            if not isinstance(raw, dict):
                raise ValueError("config is not a JSON object")
            config = ClusterConfig.model_validate(raw)
        except (ValueError, ValidationError) as e:
            raise InvalidArgument(f'cluster secret "{meta.name}" has invalid config: {e}') from e

    shard = None
    if data.get("shard"):
        try:
            shard = int(data["shard"])
        except ValueError as e:
            raise InvalidArgument(f'cluster secret "{meta.name}" has invalid shard {data["shard"]!r}') from e

    namespaces = [ns.strip() for ns in data.get("namespaces", "").split(",") if ns.strip()]

    # the secret-type label marks storage; it is not part of the cluster
    labels = dict(meta.labels or {})
    labels.pop(LABEL_KEY_SECRET_TYPE, None)

    annotations = dict(meta.annotations or {})
    annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
    refresh_requested_at = None
    refresh = annotations.pop(ANNOTATION_KEY_REFRESH, None)
    if refresh is not None:
        try:
            refresh_requested_at = parse_timestamp(refresh)
        except ValueError as e:
            logger.warning(f"Error while parsing date in cluster secret '{meta.name}': {e}")

    return Cluster(
        server=data["server"],
        name=data["name"],
        config=config,
        namespaces=namespaces,
        project=data.get("project", ""),
        labels=labels,
        annotations=annotations,
        refresh_requested_at=refresh_requested_at,
        shard=shard,
        cluster_resources=data.get("clusterResources") == "true",
    )


def cluster_to_secret(cluster: Cluster, secret: V1Secret) -> None:
    """Write ``cluster`` into ``secret`` in place.

    Data, labels and annotations are replaced wholesale; merging with what the
    secret held before is up to the caller.

    Raises:
        InvalidArgument: if the cluster carries the last-applied-configuration
            annotation. The secret is left untouched.
    """
    if LAST_APPLIED_CONFIG_ANNOTATION in cluster.annotations:
        raise InvalidArgument(f"annotation {LAST_APPLIED_CONFIG_ANNOTATION} cannot be set")

    data = {
        "server": cluster.server,
        "name": cluster.name or cluster.server,
        "config": cluster.config.to_json(),
    }
    if cluster.project:
        data["project"] = cluster.project
    if cluster.namespaces:
        data["namespaces"] = ",".join(cluster.namespaces)
    if cluster.shard is not None:
        data["shard"] = str(cluster.shard)
    if cluster.cluster_resources:
        data["clusterResources"] = "true"

    annotations = dict(cluster.annotations)
    if cluster.refresh_requested_at is not None:
        annotations[ANNOTATION_KEY_REFRESH] = format_timestamp(cluster.refresh_requested_at)
    else:
        annotations.pop(ANNOTATION_KEY_REFRESH, None)

    if secret.metadata is None:
        secret.metadata = V1ObjectMeta()
    secret.data = {k: encode_value(v) for k, v in data.items()}
    secret.metadata.labels = dict(cluster.labels)
    secret.metadata.annotations = annotations
