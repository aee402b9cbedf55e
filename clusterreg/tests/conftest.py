import copy
import threading
import time

import pytest
from kubernetes.client import V1ObjectMeta, V1Secret
from kubernetes.client.rest import ApiException

from clusterreg.backend import ADDED, DELETED, MODIFIED, SecretBackend
from clusterreg.codec import encode_value
from clusterreg.config import Config
from clusterreg.models import LABEL_KEY_SECRET_TYPE, LABEL_VALUE_SECRET_TYPE_CLUSTER
from clusterreg.registry import ClusterRegistry
from clusterreg.settings import SettingsManager

FAKE_NAMESPACE = "fake-ns"
CLUSTER_LABELS = {LABEL_KEY_SECRET_TYPE: LABEL_VALUE_SECRET_TYPE_CLUSTER}


def _make_secret(name, data, labels=None, annotations=None, cluster_type=True):
    labels = dict(labels or {})
    if cluster_type:
        labels.update(CLUSTER_LABELS)
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=FAKE_NAMESPACE, labels=labels, annotations=annotations),
        data={k: encode_value(v) for k, v in data.items()},
    )


def _matches(selector, secret):
    labels = secret.metadata.labels or {}
    for term in filter(None, selector.split(",")):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeSecretBackend(SecretBackend):
    """Secret store with resource versions, compare-and-swap updates and a watch."""

    def __init__(self, *secrets, namespace=FAKE_NAMESPACE):
        self.namespace = namespace
        self._cond = threading.Condition()
        self._secrets = {}
        self._version = 0
        self._history = []
        self._watch_errors = []
        self.watches = 0
        for secret in secrets:
            self.create(secret)

    def _bump(self, secret):
        self._version += 1
        secret.metadata.resource_version = str(self._version)

    def _record(self, event_type, secret):
        self._history.append((self._version, event_type, copy.deepcopy(secret)))
        self._cond.notify_all()

    def get(self, name, timeout=None):
        with self._cond:
            if name not in self._secrets:
                raise ApiException(status=404, reason="Not Found")
            return copy.deepcopy(self._secrets[name])

    def create(self, secret, timeout=None):
        with self._cond:
            name = secret.metadata.name
            if name in self._secrets:
                raise ApiException(status=409, reason="AlreadyExists")
            stored = copy.deepcopy(secret)
            stored.metadata.namespace = self.namespace
            self._bump(stored)
            self._secrets[name] = stored
            self._record(ADDED, stored)
            return copy.deepcopy(stored)

    def update(self, secret, timeout=None):
        with self._cond:
            name = secret.metadata.name
            current = self._secrets.get(name)
            if current is None:
                raise ApiException(status=404, reason="Not Found")
            requested = secret.metadata.resource_version
            if requested and requested != current.metadata.resource_version:
                raise ApiException(status=409, reason="Conflict")
            stored = copy.deepcopy(secret)
            self._bump(stored)
            self._secrets[name] = stored
            self._record(MODIFIED, stored)
            return copy.deepcopy(stored)

    def delete(self, name, timeout=None):
        with self._cond:
            if name not in self._secrets:
                raise ApiException(status=404, reason="Not Found")
            removed = self._secrets.pop(name)
            self._bump(removed)
            self._record(DELETED, removed)

    def list(self, label_selector):
        with self._cond:
            items = [copy.deepcopy(s) for _, s in sorted(self._secrets.items()) if _matches(label_selector, s)]
            return items, str(self._version)

    def watch(self, label_selector, resource_version, stop):
        with self._cond:
            self.watches += 1
        start = int(resource_version or 0)
        seen = 0
        while not stop.is_set():
            with self._cond:
                if self._watch_errors:
                    raise self._watch_errors.pop(0)
                pending = self._history[seen:]
                seen = len(self._history)
                if not pending:
                    self._cond.wait(0.05)
                    continue
            for version, event_type, secret in pending:
                if version > start and _matches(label_selector, secret):
                    yield event_type, copy.deepcopy(secret)

    def fail_watch(self, error):
        """Make the running watch raise ``error``."""
        with self._cond:
            self._watch_errors.append(error)
            self._cond.notify_all()

    def stored(self, name):
        with self._cond:
            return copy.deepcopy(self._secrets.get(name))


class FakeSettings(SettingsManager):
    def __init__(self, in_cluster_enabled=True):
        self.in_cluster_enabled = in_cluster_enabled
        self.reads = 0

    def is_in_cluster_enabled(self):
        self.reads += 1
        return self.in_cluster_enabled


@pytest.fixture(autouse=True)
def fast_watch_poll(monkeypatch):
    monkeypatch.setattr(Config, "WATCH_POLL", 0.05)
    monkeypatch.setattr(Config, "WATCH_TIMEOUT", 5)


@pytest.fixture
def make_secret():
    return _make_secret


@pytest.fixture
def backend():
    return FakeSecretBackend()


@pytest.fixture
def settings():
    return FakeSettings()


@pytest.fixture
def registry(backend, settings):
    reg = ClusterRegistry(backend, settings)
    yield reg
    reg.close()


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
    return _wait
