import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml
from jsonschema import ValidationError, validate
from pydantic import ValidationError as ModelValidationError

from clusterreg.errors import RegistryError
from clusterreg.models import Cluster
from clusterreg.utils import cluster_view
from clusterreg.utils.kube import build_registry

app = typer.Typer(help="Manage registered deployment target clusters.")

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "server": {"type": "string"},
        "name": {"type": "string"},
        "project": {"type": "string"},
        "namespaces": {"type": "array", "items": {"type": "string"}},
        "labels": {"type": "object", "additionalProperties": {"type": "string"}},
        "annotations": {"type": "object", "additionalProperties": {"type": "string"}},
        "config": {"type": "object"},
        "shard": {"type": "integer"},
        "clusterResources": {"type": "boolean"},
    },
    "required": ["server"]
}

NamespaceOpt = typer.Option(None, "--namespace", "-n", help="Namespace holding the cluster secrets")
KubeconfigOpt = typer.Option(None, "--kubeconfig", help="Path to kubeconfig")


def get_registry(namespace: Optional[str], kubeconfig: Optional[str]):
    return build_registry(namespace=namespace, kubeconfig=kubeconfig)


@contextmanager
def registry_session(namespace: Optional[str], kubeconfig: Optional[str]):
    registry = get_registry(namespace, kubeconfig)
    try:
        yield registry
    except RegistryError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        registry.close()


def parse_pairs(pairs: Optional[List[str]], what: str) -> Dict[str, str]:
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"{what} must be key=value, got {pair!r}")
        result[key] = value
    return result


def load_cluster_file(path: Path) -> dict:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    try:
        validate(instance=data, schema=CLUSTER_SCHEMA)
    except ValidationError as e:
        raise typer.BadParameter(f"❌ Invalid cluster file {path}: {e.message}")
    return data


def render(cluster: Cluster) -> dict:
    return cluster_view(cluster, exclude_defaults=True)


@app.command("add")
def add_cluster(
    server: Optional[str] = typer.Argument(None, help="Cluster API server URL"),
    name: Optional[str] = typer.Option(None, help="Display name (defaults to the server URL)"),
    project: str = typer.Option("", help="Project the cluster belongs to"),
    scope: Optional[List[str]] = typer.Option(None, "--scope-namespace", help="Restrict management to these namespaces"),
    label: Optional[List[str]] = typer.Option(None, "--label", help="Label as key=value"),
    annotation: Optional[List[str]] = typer.Option(None, "--annotation", help="Annotation as key=value"),
    bearer_token: Optional[str] = typer.Option(None, help="Bearer token used to reach the cluster"),
    insecure: bool = typer.Option(False, help="Skip TLS verification"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="YAML/JSON cluster definition"),
    upsert: bool = typer.Option(False, help="Update the cluster if it is already registered"),
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """Register a cluster."""
    data = load_cluster_file(file) if file else {}
    if server:
        data["server"] = server
    if not data.get("server"):
        raise typer.BadParameter("a server URL is required")
    if name:
        data["name"] = name
    if project:
        data["project"] = project
    if scope:
        data["namespaces"] = list(scope)
    data.setdefault("labels", {}).update(parse_pairs(label, "label"))
    data.setdefault("annotations", {}).update(parse_pairs(annotation, "annotation"))
    config = data.setdefault("config", {})
    if bearer_token:
        config["bearerToken"] = bearer_token
    if insecure:
        config.setdefault("tlsClientConfig", {})["insecure"] = True

    try:
        cluster = Cluster.model_validate(data)
    except ModelValidationError as e:
        raise typer.BadParameter(f"❌ Invalid cluster definition: {e}")
    with registry_session(namespace, kubeconfig) as registry:
        created = registry.create_cluster(cluster, upsert=upsert)
    typer.echo(f"✅ Cluster '{created.server}' added as '{created.name}'")


@app.command("get")
def get_cluster(
    server: str = typer.Argument(..., help="Cluster API server URL"),
    output: str = typer.Option("yaml", "--output", "-o", help="Output format: yaml or json"),
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """Show a registered cluster."""
    with registry_session(namespace, kubeconfig) as registry:
        cluster = registry.get_cluster(server)
    if output == "json":
        typer.echo(json.dumps(render(cluster), indent=2))
    else:
        typer.echo(yaml.safe_dump(render(cluster), sort_keys=False).rstrip())


@app.command("list")
def list_clusters(
    output: str = typer.Option("wide", "--output", "-o", help="Output format: wide, json or server"),
    project: Optional[str] = typer.Option(None, help="Only clusters of this project"),
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """List registered clusters."""
    with registry_session(namespace, kubeconfig) as registry:
        if project is not None:
            clusters = registry.get_project_clusters(project)
        else:
            clusters = registry.list_clusters()

    if output == "json":
        typer.echo(json.dumps([render(c) for c in clusters], indent=2))
    elif output == "server":
        for cluster in clusters:
            typer.echo(cluster.server)
    else:
        typer.echo(f"{'SERVER':<45} {'NAME':<20} {'PROJECT':<12} NAMESPACES")
        for cluster in clusters:
            typer.echo(f"{cluster.server:<45} {cluster.name:<20} {cluster.project:<12} {','.join(cluster.namespaces)}")


@app.command("set")
def set_cluster(
    server: str = typer.Argument(..., help="Cluster API server URL"),
    name: Optional[str] = typer.Option(None, help="New display name"),
    project: Optional[str] = typer.Option(None, help="New project"),
    scope: Optional[List[str]] = typer.Option(None, "--scope-namespace", help="Replace the managed namespaces"),
    label: Optional[List[str]] = typer.Option(None, "--label", help="Label to add or change, key=value"),
    annotation: Optional[List[str]] = typer.Option(None, "--annotation", help="Annotation to add or change, key=value"),
    refresh: bool = typer.Option(False, "--refresh", help="Ask controllers to re-probe the cluster"),
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """Update a registered cluster."""
    with registry_session(namespace, kubeconfig) as registry:
        current = registry.get_cluster(server)
        changes = {
            "labels": parse_pairs(label, "label"),
            "annotations": parse_pairs(annotation, "annotation"),
        }
        if name is not None:
            changes["name"] = name
        if project is not None:
            changes["project"] = project
        if scope:
            changes["namespaces"] = list(scope)
        if refresh:
            changes["refresh_requested_at"] = datetime.now(timezone.utc)
        updated = registry.update_cluster(current.model_copy(update=changes))
    typer.echo(f"✅ Cluster '{updated.server}' updated")


@app.command("rm")
def remove_cluster(
    server: str = typer.Argument(..., help="Cluster API server URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """Remove a cluster registration."""
    if not yes:
        confirm = typer.confirm(f"Are you sure you want to remove the cluster '{server}'?", default=False)
        if not confirm:
            typer.echo("❌ Removal cancelled.")
            raise typer.Exit()
    with registry_session(namespace, kubeconfig) as registry:
        registry.delete_cluster(server)
    typer.echo(f"🗑️  Cluster '{server}' removed")


@app.command("watch")
def watch_clusters(
    namespace: Optional[str] = NamespaceOpt,
    kubeconfig: Optional[str] = KubeconfigOpt,
):
    """Print cluster changes as they happen. Stop with Ctrl-C."""
    stop = threading.Event()
    with registry_session(namespace, kubeconfig) as registry:
        try:
            registry.watch_clusters(
                stop,
                lambda c: typer.echo(f"ADDED    {c.server} ({c.name})"),
                lambda old, new: typer.echo(f"MODIFIED {new.server} ({new.name})"),
                lambda server: typer.echo(f"DELETED  {server}"),
            )
        except KeyboardInterrupt:
            stop.set()

