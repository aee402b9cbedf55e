"""Typed cluster registration records."""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Server address of the cluster the control plane itself runs in
KUBERNETES_INTERNAL_API_SERVER_ADDR = "https://kubernetes.default.svc"
IN_CLUSTER_NAME = "in-cluster"

# Secret metadata used to mark and annotate cluster records
LABEL_KEY_SECRET_TYPE = "argocd.argoproj.io/secret-type"
LABEL_VALUE_SECRET_TYPE_CLUSTER = "cluster"
ANNOTATION_KEY_REFRESH = "argocd.argoproj.io/refresh"
LAST_APPLIED_CONFIG_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TLSClientConfig(_CamelModel):
    insecure: bool = False
    server_name: str = Field("", alias="serverName")
    cert_data: Optional[str] = Field(None, alias="certData")
    key_data: Optional[str] = Field(None, alias="keyData")
    ca_data: Optional[str] = Field(None, alias="caData")


class AWSAuthConfig(_CamelModel):
    cluster_name: str = Field("", alias="clusterName")
    role_arn: str = Field("", alias="roleARN")
    profile: str = ""


class ExecProviderConfig(_CamelModel):
    command: str = ""
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    api_version: str = Field("", alias="apiVersion")
    install_hint: str = Field("", alias="installHint")


class ClusterConfig(_CamelModel):
    """Credentials and transport settings used to reach a cluster.

    An empty config means "use the ambient in-process credentials".
    """

    username: str = ""
    password: str = ""
    bearer_token: str = Field("", alias="bearerToken")
    tls_client_config: TLSClientConfig = Field(default_factory=TLSClientConfig, alias="tlsClientConfig")
    aws_auth_config: Optional[AWSAuthConfig] = Field(None, alias="awsAuthConfig")
    exec_provider_config: Optional[ExecProviderConfig] = Field(None, alias="execProviderConfig")
    proxy_url: str = Field("", alias="proxyUrl")
    disable_compression: bool = Field(False, alias="disableCompression")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_defaults=True)


class Cluster(_CamelModel):
    """A registered deployment target."""

    server: str
    name: str = ""
    config: ClusterConfig = Field(default_factory=ClusterConfig)
    namespaces: List[str] = Field(default_factory=list)
    project: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    refresh_requested_at: Optional[datetime] = Field(None, alias="refreshRequestedAt")
    shard: Optional[int] = None
    cluster_resources: bool = Field(False, alias="clusterResources")

    @field_validator("refresh_requested_at")
    @classmethod
    def normalize_refresh_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        # stored as RFC3339 with second precision; naive values are UTC
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0)


def local_cluster() -> Cluster:
    """Default registration for the cluster the control plane runs in."""
    return Cluster(server=KUBERNETES_INTERNAL_API_SERVER_ADDR, name=IN_CLUSTER_NAME)


@dataclass(frozen=True)
class Stored:
    """Lookup result backed by a persisted record."""

    cluster: Cluster
    secret_name: str


@dataclass(frozen=True)
class Synthesized:
    """Lookup result made up at read time; nothing is persisted for it."""

    cluster: Cluster


LookupResult = Union[Stored, Synthesized]
