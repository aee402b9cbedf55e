import threading
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from clusterreg.models import Cluster
from clusterreg.registry import ClusterRegistry
from clusterreg.utils import cluster_view
from clusterreg.utils.kube import build_registry

router = APIRouter(prefix="/api/v1/clusters")

_registry_lock = threading.Lock()

def get_registry(request: Request) -> ClusterRegistry:
    state = request.app.state
    with _registry_lock:
        if state.registry is None:
            state.registry = build_registry()
        return state.registry

def to_response(cluster: Cluster) -> dict:
    return cluster_view(cluster)

@router.get("")
def list_clusters(project: Optional[str] = None, registry: ClusterRegistry = Depends(get_registry)) -> List[dict]:
    if project is not None:
        clusters = registry.get_project_clusters(project)
    else:
        clusters = registry.list_clusters()
    return [to_response(c) for c in clusters]

@router.post("", status_code=201)
def create_cluster(cluster: Cluster, upsert: bool = False, registry: ClusterRegistry = Depends(get_registry)):
    return to_response(registry.create_cluster(cluster, upsert=upsert))

@router.get("/{server:path}")
def get_cluster(server: str, registry: ClusterRegistry = Depends(get_registry)):
    return to_response(registry.get_cluster(server))

@router.put("/{server:path}")
def update_cluster(server: str, cluster: Cluster, registry: ClusterRegistry = Depends(get_registry)):
    if cluster.server != server:
        raise HTTPException(status_code=400, detail=f"server in body ({cluster.server}) does not match URL ({server})")
    return to_response(registry.update_cluster(cluster))

@router.delete("/{server:path}", status_code=204)
def delete_cluster(server: str, registry: ClusterRegistry = Depends(get_registry)):
    registry.delete_cluster(server)
