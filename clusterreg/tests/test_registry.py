from datetime import datetime, timezone

import pytest
from kubernetes.client.rest import ApiException

from clusterreg.codec import decode_value
from clusterreg.errors import AlreadyExists, Conflict, InvalidArgument, NotFound, PreconditionFailed
from clusterreg.models import (
    ANNOTATION_KEY_REFRESH,
    IN_CLUSTER_NAME,
    KUBERNETES_INTERNAL_API_SERVER_ADDR,
    LABEL_KEY_SECRET_TYPE,
    LAST_APPLIED_CONFIG_ANNOTATION,
    Cluster,
    ClusterConfig,
    Stored,
    Synthesized,
)
from clusterreg.naming import uri_to_secret_name
from clusterreg.registry import ClusterRegistry

from conftest import FakeSecretBackend, FakeSettings


@pytest.fixture
def in_cluster_secret(make_secret):
    return make_secret("mycluster1", {"server": KUBERNETES_INTERNAL_API_SERVER_ADDR, "name": "in-cluster"})


@pytest.fixture
def external_secret(make_secret):
    return make_secret("mycluster2", {"server": "http://mycluster2", "name": "mycluster2"})


def new_registry(*secrets, in_cluster_enabled=True):
    return ClusterRegistry(FakeSecretBackend(*secrets), FakeSettings(in_cluster_enabled))


def test_create_and_get(registry, backend):
    created = registry.create_cluster(Cluster(server="https://prod.example.com", name="prod",
                                              config=ClusterConfig(bearer_token="abc")))
    assert created.name == "prod"

    secret = backend.stored(uri_to_secret_name("cluster", "https://prod.example.com"))
    assert secret.metadata.labels[LABEL_KEY_SECRET_TYPE] == "cluster"
    assert decode_value(secret.data["server"]) == "https://prod.example.com"

    # visible immediately, without waiting for the watch
    assert registry.get_cluster("https://prod.example.com") == created
    assert registry.get_cluster("https://PROD.example.com:443/") == created


def test_create_existing_fails(registry):
    registry.create_cluster(Cluster(server="https://prod.example.com"))
    with pytest.raises(AlreadyExists):
        registry.create_cluster(Cluster(server="https://prod.example.com", name="again"))
    with pytest.raises(AlreadyExists):
        registry.create_cluster(Cluster(server="https://Prod.example.com"))


def test_create_upsert_updates_existing(registry):
    registry.create_cluster(Cluster(server="https://prod.example.com", name="prod"))
    updated = registry.create_cluster(Cluster(server="https://prod.example.com", name="renamed"), upsert=True)
    assert updated.name == "renamed"
    assert registry.get_cluster("https://prod.example.com").name == "renamed"


def test_create_rejects_reserved_annotation(registry, backend):
    with pytest.raises(InvalidArgument):
        registry.create_cluster(Cluster(server="https://prod.example.com",
                                        annotations={LAST_APPLIED_CONFIG_ANNOTATION: "{}"}))
    assert backend.list("")[0] == []


def test_create_rejects_unparseable_server(registry):
    with pytest.raises(InvalidArgument):
        registry.create_cluster(Cluster(server="not a url"))


def test_reject_creation_for_in_cluster_when_disabled(registry, settings):
    settings.in_cluster_enabled = False
    with pytest.raises(PreconditionFailed):
        registry.create_cluster(Cluster(server=KUBERNETES_INTERNAL_API_SERVER_ADDR, name="incluster-name"))
    assert registry.list_clusters() == []


def test_create_in_cluster_when_enabled(registry):
    registry.create_cluster(Cluster(server=KUBERNETES_INTERNAL_API_SERVER_ADDR, name="explicit"))
    clusters = registry.list_clusters()
    assert [c.name for c in clusters] == ["explicit"]


def test_get_unknown_cluster(registry):
    with pytest.raises(NotFound, match='cluster "http://unknown" not found'):
        registry.get_cluster("http://unknown")


def test_get_implicit_local_cluster(registry):
    cluster = registry.get_cluster(KUBERNETES_INTERNAL_API_SERVER_ADDR)
    assert cluster.name == IN_CLUSTER_NAME
    assert cluster.config == ClusterConfig()
    assert isinstance(registry.lookup_cluster(KUBERNETES_INTERNAL_API_SERVER_ADDR), Synthesized)


def test_lookup_stored_cluster(registry):
    registry.create_cluster(Cluster(server="https://prod.example.com"))
    result = registry.lookup_cluster("https://prod.example.com")
    assert isinstance(result, Stored)
    assert result.secret_name == uri_to_secret_name("cluster", "https://prod.example.com")


def test_list_clusters_valid(in_cluster_secret, external_secret):
    with new_registry(in_cluster_secret, external_secret) as registry:
        assert len(registry.list_clusters()) == 2


def test_list_clusters_skips_invalid(in_cluster_secret, external_secret, make_secret):
    invalid = make_secret("mycluster3", {
        "name": "test",
        "server": "http://mycluster3",
        "config": "{'tlsClientConfig':{'insecure':false}}",
    })
    with new_registry(in_cluster_secret, external_secret, invalid) as registry:
        assert len(registry.list_clusters()) == 2


def test_list_clusters_implicit_in_cluster(external_secret):
    with new_registry(external_secret) as registry:
        clusters = registry.list_clusters()
        assert len(clusters) == 2
        assert sum(c.server == KUBERNETES_INTERNAL_API_SERVER_ADDR for c in clusters) == 1


def test_list_clusters_explicit_in_cluster_not_duplicated(in_cluster_secret):
    with new_registry(in_cluster_secret) as registry:
        clusters = registry.list_clusters()
        assert len(clusters) == 1
        assert isinstance(registry.lookup_cluster(KUBERNETES_INTERNAL_API_SERVER_ADDR), Stored)


def test_list_clusters_in_cluster_disabled(external_secret):
    with new_registry(external_secret, in_cluster_enabled=False) as registry:
        clusters = registry.list_clusters()
        assert [c.server for c in clusters] == ["http://mycluster2"]


def test_list_clusters_explicit_in_cluster_kept_when_disabled(in_cluster_secret):
    with new_registry(in_cluster_secret, in_cluster_enabled=False) as registry:
        clusters = registry.list_clusters()
        assert [c.name for c in clusters] == ["in-cluster"]


def test_list_reads_settings_every_time(registry, settings):
    registry.list_clusters()
    registry.list_clusters()
    assert settings.reads == 2
    settings.in_cluster_enabled = False
    assert registry.list_clusters() == []


def test_list_ignores_unlabelled_secrets(make_secret):
    other = make_secret("not-a-cluster", {"server": "http://x", "name": "x"}, cluster_type=False)
    with new_registry(other, in_cluster_enabled=False) as registry:
        assert registry.list_clusters() == []


def test_update_cluster(make_secret):
    secret = make_secret("mycluster", {"server": "http://mycluster", "config": "{}"})
    backend = FakeSecretBackend(secret)
    requested_at = datetime.now(timezone.utc).replace(microsecond=0)
    with ClusterRegistry(backend, FakeSettings()) as registry:
        updated = registry.update_cluster(Cluster(
            name="test", server="http://mycluster", refresh_requested_at=requested_at))
        assert updated.name == "test"
        assert updated.refresh_requested_at == requested_at

    stored = backend.stored("mycluster")
    assert stored.metadata.annotations[ANNOTATION_KEY_REFRESH] == requested_at.strftime("%Y-%m-%dT%H:%M:%SZ")


def test_update_merges_metadata(make_secret):
    secret = make_secret(
        "mycluster",
        {"server": "http://mycluster", "name": "mycluster"},
        labels={"keep": "label", "override": "old"},
        annotations={"keep": "annotation", LAST_APPLIED_CONFIG_ANNOTATION: "{}"},
    )
    backend = FakeSecretBackend(secret)
    with ClusterRegistry(backend, FakeSettings()) as registry:
        updated = registry.update_cluster(Cluster(
            server="http://mycluster", name="mycluster", labels={"override": "new"}, annotations={"added": "yes"}))

    assert updated.labels["keep"] == "label"
    assert updated.labels["override"] == "new"
    assert updated.annotations == {"keep": "annotation", "added": "yes"}
    stored = backend.stored("mycluster")
    assert LAST_APPLIED_CONFIG_ANNOTATION not in stored.metadata.annotations
    assert stored.metadata.labels[LABEL_KEY_SECRET_TYPE] == "cluster"


def test_update_replaces_data(registry):
    registry.create_cluster(Cluster(server="https://prod.example.com", project="a", namespaces=["x"]))
    updated = registry.update_cluster(Cluster(server="https://prod.example.com", name="prod"))
    assert updated.project == ""
    assert updated.namespaces == []
    assert registry.get_cluster("https://prod.example.com") == updated


def test_update_unknown_cluster(registry):
    with pytest.raises(NotFound):
        registry.update_cluster(Cluster(server="http://unknown"))


def test_update_rejects_reserved_annotation(registry):
    registry.create_cluster(Cluster(server="https://prod.example.com"))
    with pytest.raises(InvalidArgument):
        registry.update_cluster(Cluster(server="https://prod.example.com",
                                        annotations={LAST_APPLIED_CONFIG_ANNOTATION: "x"}))


def test_update_conflict(registry, backend, monkeypatch):
    registry.create_cluster(Cluster(server="https://prod.example.com"))

    def conflict(secret, timeout=None):
        raise ApiException(status=409, reason="Conflict")

    monkeypatch.setattr(backend, "update", conflict)
    with pytest.raises(Conflict):
        registry.update_cluster(Cluster(server="https://prod.example.com"))


def test_backend_errors_propagate(registry, backend, monkeypatch):
    registry.create_cluster(Cluster(server="https://prod.example.com"))

    def unavailable(secret, timeout=None):
        raise ApiException(status=503, reason="Service Unavailable")

    monkeypatch.setattr(backend, "update", unavailable)
    with pytest.raises(ApiException) as excinfo:
        registry.update_cluster(Cluster(server="https://prod.example.com"))
    assert excinfo.value.status == 503


def test_delete_cluster(registry, backend):
    registry.create_cluster(Cluster(server="https://prod.example.com"))
    registry.delete_cluster("https://prod.example.com")
    assert backend.stored(uri_to_secret_name("cluster", "https://prod.example.com")) is None
    with pytest.raises(NotFound):
        registry.get_cluster("https://prod.example.com")
    assert all(c.server != "https://prod.example.com" for c in registry.list_clusters())


def test_delete_unknown_cluster(make_secret):
    secret = make_secret("mycluster", {"server": "http://mycluster", "name": "mycluster"})
    with new_registry(secret) as registry:
        with pytest.raises(NotFound) as excinfo:
            registry.delete_cluster("http://unknown")
        assert str(excinfo.value) == 'cluster "http://unknown" not found'


def test_delete_implicit_local_cluster_fails(registry):
    with pytest.raises(NotFound):
        registry.delete_cluster(KUBERNETES_INTERNAL_API_SERVER_ADDR)


def test_lifecycle(registry):
    server = "https://stage.example.com"
    registry.create_cluster(Cluster(server=server, name="stage"))
    registry.update_cluster(Cluster(server=server, name="stage-2"))
    assert registry.get_cluster(server).name == "stage-2"
    registry.delete_cluster(server)
    with pytest.raises(NotFound):
        registry.update_cluster(Cluster(server=server))
    with pytest.raises(NotFound):
        registry.delete_cluster(server)
    registry.create_cluster(Cluster(server=server, name="back"))
    assert registry.get_cluster(server).name == "back"


def test_get_cluster_servers_by_name(registry):
    registry.create_cluster(Cluster(server="https://a.example.com", name="shared"))
    registry.create_cluster(Cluster(server="https://b.example.com", name="shared"))
    registry.create_cluster(Cluster(server="https://c.example.com", name="other"))
    assert registry.get_cluster_servers_by_name("shared") == ["https://a.example.com", "https://b.example.com"]
    assert registry.get_cluster_servers_by_name(IN_CLUSTER_NAME) == [KUBERNETES_INTERNAL_API_SERVER_ADDR]


def test_get_project_clusters(registry):
    registry.create_cluster(Cluster(server="https://a.example.com", project="team"))
    registry.create_cluster(Cluster(server="https://b.example.com", project="other"))
    assert [c.server for c in registry.get_project_clusters("team")] == ["https://a.example.com"]


def test_returned_clusters_are_copies(registry):
    registry.create_cluster(Cluster(server="https://a.example.com", labels={"a": "1"}))
    registry.get_cluster("https://a.example.com").labels["a"] = "changed"
    assert registry.get_cluster("https://a.example.com").labels == {"a": "1"}


def test_closed_registry_refuses_calls(backend, settings):
    registry = ClusterRegistry(backend, settings)
    registry.close()
    with pytest.raises(RuntimeError):
        registry.list_clusters()


def test_secret_type_label_stays_in_storage(registry, backend):
    cluster = Cluster(server="https://a.example.com", name="a", labels={"env": "prod"})
    created = registry.create_cluster(cluster)
    assert created.labels == {"env": "prod"}
    assert registry.get_cluster("https://a.example.com") == created

    updated = registry.update_cluster(created.model_copy(update={"labels": {"tier": "1"}}))
    assert updated.labels == {"env": "prod", "tier": "1"}
    stored = backend.stored(uri_to_secret_name("cluster", "https://a.example.com"))
    assert stored.metadata.labels[LABEL_KEY_SECRET_TYPE] == "cluster"
