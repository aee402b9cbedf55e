from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clusterreg.api.middleware import AuthMiddleware
from clusterreg.api.routes import clusters
from clusterreg.errors import RegistryError
from clusterreg.registry import ClusterRegistry

STATUS_CODES = {
    "InvalidArgument": 400,
    "NotFound": 404,
    "AlreadyExists": 409,
    "Conflict": 409,
    "FailedPrecondition": 412,
}

def create_app(registry: Optional[ClusterRegistry] = None, api_key: Optional[str] = None) -> FastAPI:
    """Build the API app. Without a registry, one is built from the kubeconfig on first use."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.registry is not None:
            app.state.registry.close()

    app = FastAPI(title="clusterreg", lifespan=lifespan)
    app.state.registry = registry
    app.add_middleware(AuthMiddleware, token=api_key)
    app.include_router(clusters.router)

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        return JSONResponse(
            status_code=STATUS_CODES.get(exc.code, 500),
            content={"error": exc.code, "detail": exc.message},
        )

    return app

app = create_app()
