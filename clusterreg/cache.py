"""In-memory view of the cluster secrets, kept current by a watch.

:class:`ClusterCache` is the only shared mutable state of the registry. Every
read and write goes through one lock and readers only ever get copies, so a
listing can never observe a half-applied change.

:class:`ClusterInformer` owns the background thread that lists the secrets,
watches them and feeds both the cache and the registered subscribers.
Subscriber callbacks run on that thread, one event at a time, in the order
the backend delivered them: a slow callback holds up the whole stream.
"""
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from kubernetes.client import V1Secret
from kubernetes.client.rest import ApiException

from clusterreg.backend import DELETED, SecretBackend
from clusterreg.codec import secret_to_cluster
from clusterreg.errors import InvalidArgument
from clusterreg.logging import setup_logger
from clusterreg.models import Cluster
from clusterreg.naming import normalize_server

logger = setup_logger(__name__)


def _is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """Whether ``candidate`` supersedes ``current``.

    Resource versions are opaque; when they don't look like integers the most
    recent writer wins.
    """
    try:
        return int(candidate) > int(current)
    except (TypeError, ValueError):
        return True


def _is_older(candidate: Optional[str], current: Optional[str]) -> bool:
    try:
        return int(candidate) < int(current)
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class CacheEntry:
    secret_name: str
    resource_version: Optional[str]
    cluster: Cluster

    def copy(self) -> "CacheEntry":
        return CacheEntry(self.secret_name, self.resource_version, self.cluster.model_copy(deep=True))


class ClusterCache:
    """Cluster entries keyed by normalized server."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}
        self._keys_by_secret: Dict[str, str] = {}
        # secret name -> last resource version seen before a local delete
        self._tombstones: Dict[str, Optional[str]] = {}

    def replace(self, entries: List[CacheEntry], resource_version: Optional[str] = None) -> None:
        """Swap in a complete listing taken at ``resource_version``.

        Local writes that happened after the listing survive: entries and
        tombstones newer than the listed state are kept.
        """
        with self._lock:
            previous = {entry.secret_name: entry for entry in self._entries.values()}
            tombstones = self._tombstones
            self._entries = {}
            self._keys_by_secret = {}
            self._tombstones = {}

            listed = set()
            for entry in entries:
                name = entry.secret_name
                listed.add(name)
                known = previous.get(name)
                if known is not None and _is_older(entry.resource_version, known.resource_version):
                    entry = known
                elif name in tombstones and (
                        entry.resource_version == tombstones[name]
                        or _is_older(entry.resource_version, tombstones[name])):
                    self._tombstones[name] = tombstones[name]
                    continue
                self._put(entry)

            for name, entry in previous.items():
                if name not in listed and _is_older(resource_version, entry.resource_version):
                    self._put(entry)
            for name, version in tombstones.items():
                if name not in listed and _is_older(resource_version, version):
                    self._tombstones[name] = version

    def _put(self, entry: CacheEntry) -> None:
        key = normalize_server(entry.cluster.server)
        previous_key = self._keys_by_secret.get(entry.secret_name)
        if previous_key is not None and previous_key != key:
            self._entries.pop(previous_key, None)
        existing = self._entries.get(key)
        if existing is not None and existing.secret_name != entry.secret_name:
            logger.warning(
                f"Secrets '{existing.secret_name}' and '{entry.secret_name}' both "
                f"register server {entry.cluster.server}; using '{entry.secret_name}'")
            self._keys_by_secret.pop(existing.secret_name, None)
        self._entries[key] = entry
        self._keys_by_secret[entry.secret_name] = key

    def upsert(self, secret_name: str, resource_version: Optional[str], cluster: Cluster) -> bool:
        """Store a cluster unless a newer version is already known.

        Returns whether the entry was applied.
        """
        with self._lock:
            if secret_name in self._tombstones:
                if not _is_newer(resource_version, self._tombstones[secret_name]):
                    return False
                del self._tombstones[secret_name]
            key = self._keys_by_secret.get(secret_name)
            current = self._entries.get(key) if key is not None else None
            if current is not None and not _is_newer(resource_version, current.resource_version):
                return False
            self._put(CacheEntry(secret_name, resource_version, cluster.model_copy(deep=True)))
            return True

    def remove(self, secret_name: str, resource_version: Optional[str] = None,
               tombstone: bool = False) -> Optional[CacheEntry]:
        """Drop the entry stored under ``secret_name``.

        With ``tombstone`` set, later updates for that secret that are not newer
        than the removed entry are ignored.
        """
        with self._lock:
            key = self._keys_by_secret.get(secret_name)
            entry = self._entries.get(key) if key is not None else None
            if entry is not None and not tombstone and _is_older(resource_version, entry.resource_version):
                # deletion of an earlier incarnation of a re-created secret
                return None
            self._keys_by_secret.pop(secret_name, None)
            if entry is not None:
                del self._entries[key]
            if tombstone:
                version = resource_version
                if entry is not None and (version is None or _is_newer(entry.resource_version, version)):
                    version = entry.resource_version
                self._tombstones[secret_name] = version
            else:
                self._tombstones.pop(secret_name, None)
            return entry

    def get(self, server: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(normalize_server(server))
            return entry.copy() if entry is not None else None

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return [entry.copy() for entry in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ClusterHandler:
    """Callbacks invoked by the informer. Override what you need."""

    def on_add(self, cluster: Cluster) -> None:
        pass

    def on_update(self, old: Cluster, new: Cluster) -> None:
        pass

    def on_delete(self, cluster: Cluster) -> None:
        pass

    def on_synced(self) -> None:
        """Called once the known clusters have been replayed to this handler."""


class Subscription:
    def __init__(self, handler: ClusterHandler):
        self.handler = handler
        self.closed = threading.Event()
        self.error: Optional[BaseException] = None

    def close(self, error: Optional[BaseException] = None) -> None:
        if error is not None and self.error is None:
            self.error = error
        self.closed.set()


class ClusterInformer:
    """Lists and watches cluster secrets on a background thread."""

    def __init__(self, backend: SecretBackend, cache: ClusterCache, label_selector: str):
        self._backend = backend
        self._cache = cache
        self._selector = label_selector
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._resource_version = ""
        self.error: Optional[BaseException] = None
        # Guards the delivered view and the subscriber list; held while callbacks run.
        self._fanout_lock = threading.RLock()
        self._delivered: Dict[str, Cluster] = {}
        self._subscriptions: List[Subscription] = []

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """List the secrets, fill the cache and start watching."""
        self._relist()
        self._thread = threading.Thread(target=self._run, name="cluster-informer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._backend.stop_watches()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._close_subscriptions()

    def _decode(self, secret: V1Secret) -> Optional[Cluster]:
        try:
            return secret_to_cluster(secret)
        except InvalidArgument as e:
            logger.warning(f"Skipping invalid cluster secret '{secret.metadata.name}': {e}")
            return None

    def _relist(self) -> None:
        secrets, resource_version = self._backend.list(self._selector)
        listed: Dict[str, Cluster] = {}
        entries = []
        for secret in secrets:
            cluster = self._decode(secret)
            if cluster is None:
                continue
            listed[secret.metadata.name] = cluster
            entries.append(CacheEntry(secret.metadata.name, secret.metadata.resource_version, cluster))
        self._cache.replace(entries, resource_version)
        self._resource_version = resource_version

        with self._fanout_lock:
            for name in list(self._delivered):
                if name not in listed:
                    self._deliver_delete(name)
            for name, cluster in listed.items():
                self._deliver_upsert(name, cluster)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    for event_type, secret in self._backend.watch(
                            self._selector, self._resource_version, self._stop):
                        self._handle(event_type, secret)
                except ApiException as e:
                    if e.status != 410:
                        raise
                    logger.info("Cluster watch expired, relisting secrets")
                    self._relist()
        except Exception as e:
            if self._stop.is_set():
                # interrupting an idle stream can surface as a read error
                logger.debug(f"Cluster watch stopped: {e}")
            else:
                logger.error(f"Cluster watch failed: {e}")
                self.error = e
        finally:
            self._close_subscriptions()

    def _handle(self, event_type: str, secret: V1Secret) -> None:
        name = secret.metadata.name
        resource_version = secret.metadata.resource_version
        if resource_version:
            self._resource_version = resource_version

        if event_type == DELETED:
            self._cache.remove(name, resource_version)
            with self._fanout_lock:
                self._deliver_delete(name)
            return

        cluster = self._decode(secret)
        if cluster is None:
            # a record that no longer decodes is treated as gone
            self._cache.remove(name, resource_version)
            with self._fanout_lock:
                self._deliver_delete(name)
            return
        self._cache.upsert(name, resource_version, cluster)
        with self._fanout_lock:
            self._deliver_upsert(name, cluster)

    def _deliver_upsert(self, name: str, cluster: Cluster) -> None:
        old = self._delivered.get(name)
        if old == cluster:
            return
        self._delivered[name] = cluster
        for sub in list(self._subscriptions):
            if old is None:
                self._call(sub, sub.handler.on_add, cluster.model_copy(deep=True))
            else:
                self._call(sub, sub.handler.on_update, old.model_copy(deep=True), cluster.model_copy(deep=True))

    def _deliver_delete(self, name: str) -> None:
        old = self._delivered.pop(name, None)
        if old is None:
            return
        for sub in list(self._subscriptions):
            self._call(sub, sub.handler.on_delete, old.model_copy(deep=True))

    def _call(self, sub: Subscription, callback, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            # A failing subscriber is cut off; the others keep receiving events.
            logger.error(f"Cluster watch callback failed: {e}")
            self._subscriptions.remove(sub)
            sub.close(e)

    def subscribe(self, handler: ClusterHandler) -> Subscription:
        """Register ``handler`` and replay the currently known clusters to it."""
        sub = Subscription(handler)
        with self._fanout_lock:
            if not self.alive:
                sub.close(self.error)
                return sub
            for cluster in list(self._delivered.values()):
                handler.on_add(cluster.model_copy(deep=True))
            handler.on_synced()
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._fanout_lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _close_subscriptions(self) -> None:
        with self._fanout_lock:
            subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            sub.close(self.error)
