"""Cluster registry: CRUD, listing and watching of cluster registrations.

Registrations are stored as labelled secrets. Reads are answered from a cache
kept current by a background watch; writes go to the backend and are applied
to the cache before returning, so a caller always reads its own writes.

The cluster the control plane runs in (``https://kubernetes.default.svc``)
does not need a secret: when none exists it is synthesized on read, as long
as the in-cluster setting allows it.
"""
import threading
from typing import Callable, List, Optional

from kubernetes.client import V1ObjectMeta, V1Secret
from kubernetes.client.rest import ApiException

from clusterreg.backend import CLUSTER_SECRET_SELECTOR, SecretBackend
from clusterreg.cache import ClusterCache, ClusterHandler, ClusterInformer
from clusterreg.codec import cluster_to_secret, secret_data, secret_to_cluster
from clusterreg.config import Config
from clusterreg.errors import (
    AlreadyExists,
    Conflict,
    InvalidArgument,
    NotFound,
    PreconditionFailed,
    cluster_not_found,
)
from clusterreg.logging import setup_logger
from clusterreg.models import (
    ANNOTATION_KEY_REFRESH,
    KUBERNETES_INTERNAL_API_SERVER_ADDR,
    LABEL_KEY_SECRET_TYPE,
    LABEL_VALUE_SECRET_TYPE_CLUSTER,
    LAST_APPLIED_CONFIG_ANNOTATION,
    Cluster,
    LookupResult,
    Stored,
    Synthesized,
    local_cluster,
)
from clusterreg.naming import normalize_server, uri_to_secret_name
from clusterreg.settings import SettingsManager

logger = setup_logger(__name__)

_LOCAL_SERVER = normalize_server(KUBERNETES_INTERNAL_API_SERVER_ADDR)


def is_local_server(server: str) -> bool:
    return normalize_server(server) == _LOCAL_SERVER


class _WatchHandler(ClusterHandler):
    """Adapts informer events to the watch_clusters callbacks.

    Swaps the synthesized local cluster in and out as an explicit local
    registration comes and goes.
    """

    def __init__(self, settings: SettingsManager, on_add, on_update, on_delete):
        self._settings = settings
        self._on_add = on_add
        self._on_update = on_update
        self._on_delete = on_delete
        self._explicit_local = False
        self._synthesized_local: Optional[Cluster] = None

    def on_add(self, cluster):
        if is_local_server(cluster.server):
            self._explicit_local = True
            if self._synthesized_local is not None:
                old, self._synthesized_local = self._synthesized_local, None
                self._on_update(old, cluster)
                return
        self._on_add(cluster)

    def on_update(self, old, new):
        self._on_update(old, new)

    def on_delete(self, cluster):
        if is_local_server(cluster.server):
            self._explicit_local = False
            if self._settings.is_in_cluster_enabled():
                self._synthesized_local = local_cluster()
                self._on_update(cluster, self._synthesized_local)
                return
        self._on_delete(cluster.server)

    def on_synced(self):
        if not self._explicit_local and self._settings.is_in_cluster_enabled():
            self._synthesized_local = local_cluster()
            self._on_add(self._synthesized_local)


class ClusterRegistry:
    """Registry of deployment target clusters backed by a secret store."""

    def __init__(self, backend: SecretBackend, settings: SettingsManager,
                 prefix: str = None):
        self.backend = backend
        self.settings = settings
        self.prefix = prefix or Config.SECRET_PREFIX
        self._cache = ClusterCache()
        self._informer: Optional[ClusterInformer] = None
        self._start_lock = threading.Lock()
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        """Stop the background watch. Blocked watch_clusters calls return."""
        with self._start_lock:
            self._closed = True
            informer, self._informer = self._informer, None
        if informer is not None:
            informer.stop(timeout=Config.WATCH_TIMEOUT)

    def _ensure_started(self) -> ClusterInformer:
        with self._start_lock:
            if self._closed:
                raise RuntimeError("cluster registry is closed")
            if self._informer is None or not self._informer.alive:
                if self._informer is not None and self._informer.error is not None:
                    logger.warning(f"Restarting cluster watch after failure: {self._informer.error}")
                informer = ClusterInformer(self.backend, self._cache, CLUSTER_SECRET_SELECTOR)
                informer.start()
                self._informer = informer
            return self._informer

    # ------------------------------------------------------------------
    # Backend helpers
    # ------------------------------------------------------------------

    def _find_secret(self, server: str, timeout: Optional[float]) -> V1Secret:
        """Fetch the secret registered for ``server`` straight from the backend."""
        names = []
        entry = self._cache.get(server)
        if entry is not None:
            names.append(entry.secret_name)
        names.append(uri_to_secret_name(self.prefix, server))
        for name in names:
            try:
                return self.backend.get(name, timeout=timeout)
            except ApiException as e:
                if e.status != 404:
                    raise

        # Secrets created by hand may not decode, so they are absent from the cache
        wanted = normalize_server(server)
        secrets, _ = self.backend.list(CLUSTER_SECRET_SELECTOR)
        for secret in secrets:
            try:
                stored_server = secret_data(secret).get("server")
                if stored_server is not None and normalize_server(stored_server) == wanted:
                    return secret
            except InvalidArgument:
                continue
        raise cluster_not_found(server)

    def _store(self, secret: V1Secret) -> Cluster:
        cluster = secret_to_cluster(secret)
        self._cache.upsert(secret.metadata.name, secret.metadata.resource_version, cluster)
        return cluster

    @staticmethod
    def _check_annotations(cluster: Cluster) -> None:
        if LAST_APPLIED_CONFIG_ANNOTATION in cluster.annotations:
            raise InvalidArgument(f"annotation {LAST_APPLIED_CONFIG_ANNOTATION} cannot be set")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_cluster(self, cluster: Cluster, upsert: bool = False,
                       timeout: Optional[float] = None) -> Cluster:
        """Register a new cluster.

        Raises:
            InvalidArgument: bad server URI or reserved annotation.
            PreconditionFailed: registering the local cluster while in-cluster is disabled.
            AlreadyExists: the server is already registered and ``upsert`` is False.
        """
        self._check_annotations(cluster)
        secret_name = uri_to_secret_name(self.prefix, cluster.server)
        if is_local_server(cluster.server) and not self.settings.is_in_cluster_enabled():
            raise PreconditionFailed(
                f"cannot register cluster: in-cluster server address {KUBERNETES_INTERNAL_API_SERVER_ADDR} is disabled")
        self._ensure_started()

        if self._cache.get(cluster.server) is not None:
            if upsert:
                return self.update_cluster(cluster, timeout=timeout)
            raise AlreadyExists(f'cluster "{cluster.server}" already exists')

        secret = V1Secret(metadata=V1ObjectMeta(name=secret_name))
        cluster_to_secret(cluster, secret)
        secret.metadata.labels[LABEL_KEY_SECRET_TYPE] = LABEL_VALUE_SECRET_TYPE_CLUSTER
        try:
            created = self.backend.create(secret, timeout=timeout)
        except ApiException as e:
            if e.status != 409:
                raise
            if upsert:
                return self.update_cluster(cluster, timeout=timeout)
            raise AlreadyExists(f'cluster "{cluster.server}" already exists') from e
        logger.info(f"Registered cluster {cluster.server} as secret '{secret_name}'")
        return self._store(created)

    def lookup_cluster(self, server: str) -> LookupResult:
        """Find a cluster, telling stored registrations from synthesized ones."""
        self._ensure_started()
        entry = self._cache.get(server)
        if entry is not None:
            return Stored(entry.cluster, entry.secret_name)
        if is_local_server(server):
            return Synthesized(local_cluster())
        raise cluster_not_found(server)

    def get_cluster(self, server: str) -> Cluster:
        return self.lookup_cluster(server).cluster

    def list_clusters(self) -> List[Cluster]:
        """All registered clusters, plus the local cluster when it is implicit and enabled."""
        self._ensure_started()
        clusters = [entry.cluster for entry in self._cache.entries()]
        has_local = any(is_local_server(c.server) for c in clusters)
        if not has_local and self.settings.is_in_cluster_enabled():
            clusters.append(local_cluster())
        return sorted(clusters, key=lambda c: c.server)

    def get_cluster_servers_by_name(self, name: str) -> List[str]:
        return [c.server for c in self.list_clusters() if c.name == name]

    def get_project_clusters(self, project: str) -> List[Cluster]:
        self._ensure_started()
        clusters = [entry.cluster for entry in self._cache.entries() if entry.cluster.project == project]
        return sorted(clusters, key=lambda c: c.server)

    def update_cluster(self, cluster: Cluster, timeout: Optional[float] = None) -> Cluster:
        """Update a registered cluster and return the stored result.

        Labels and annotations are merged into the existing ones; everything
        else is replaced.

        Raises:
            NotFound: the server is not registered.
            Conflict: the secret changed concurrently; re-read and retry.
        """
        self._check_annotations(cluster)
        self._ensure_started()
        secret = self._find_secret(cluster.server, timeout)

        meta = secret.metadata
        annotations = dict(meta.annotations or {})
        annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
        annotations.pop(ANNOTATION_KEY_REFRESH, None)
        annotations.update(cluster.annotations)
        labels = dict(meta.labels or {})
        labels.update(cluster.labels)
        merged = cluster.model_copy(update={"labels": labels, "annotations": annotations})

        cluster_to_secret(merged, secret)
        secret.metadata.labels[LABEL_KEY_SECRET_TYPE] = LABEL_VALUE_SECRET_TYPE_CLUSTER
        try:
            updated = self.backend.update(secret, timeout=timeout)
        except ApiException as e:
            if e.status == 404:
                raise cluster_not_found(cluster.server) from e
            if e.status == 409:
                raise Conflict(f'cluster "{cluster.server}" was modified concurrently: {e.reason}') from e
            raise
        logger.info(f"Updated cluster {cluster.server}")
        return self._store(updated)

    def delete_cluster(self, server: str, timeout: Optional[float] = None) -> None:
        """Remove a registration. The synthesized local cluster cannot be deleted."""
        self._ensure_started()
        secret = self._find_secret(server, timeout)
        name = secret.metadata.name
        try:
            self.backend.delete(name, timeout=timeout)
        except ApiException as e:
            if e.status == 404:
                raise cluster_not_found(server) from e
            raise
        self._cache.remove(name, secret.metadata.resource_version, tombstone=True)
        logger.info(f"Deleted cluster {server} (secret '{name}')")

    def watch_clusters(self, stop: threading.Event,
                       on_add: Callable[[Cluster], None],
                       on_update: Callable[[Cluster, Cluster], None],
                       on_delete: Callable[[str], None]) -> None:
        """Deliver cluster changes to the callbacks until ``stop`` is set.

        Known clusters are first replayed through ``on_add``. Callbacks run
        synchronously on the watch thread in event order; a slow callback
        delays every other subscriber, so hand long work off to your own
        thread. Returns when ``stop`` is set or the watch ends, re-raising the
        error that ended it, if any.
        """
        informer = self._ensure_started()
        sub = informer.subscribe(_WatchHandler(self.settings, on_add, on_update, on_delete))
        try:
            while not stop.is_set():
                if sub.closed.wait(Config.WATCH_POLL):
                    break
        finally:
            informer.unsubscribe(sub)
        if sub.error is not None:
            raise sub.error
