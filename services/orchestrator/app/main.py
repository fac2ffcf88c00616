"""FastAPI application entrypoint."""
from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import deploys, network, nodes, streams
from .api.deps import get_orchestrator
from .config import get_settings
from .domain.errors import (
    AssetGenerationError,
    NetworkStateError,
    NodeNotFoundError,
    OrchestratorError,
    ProcessError,
    ProvisioningError,
    UpgradeError,
)
from .observability.logging import configure_logging
from .observability.otel import configure_telemetry
from .persistence.db import dispose_engine, init_db

logger = structlog.get_logger(__name__)

# Most specific first.
_ERROR_STATUS: list[tuple[type[OrchestratorError], int]] = [
    (NodeNotFoundError, 404),
    (NetworkStateError, 409),
    (AssetGenerationError, 422),
    (ProvisioningError, 424),
    (UpgradeError, 424),
    (ProcessError, 500),
]


def status_for(exc: OrchestratorError) -> int:
    for kind, code in _ERROR_STATUS:
        if isinstance(exc, kind):
            return code
    return 500


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Testnet Orchestrator",
        version="0.1.0",
        openapi_version="3.1.0",
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.shutdown_event = asyncio.Event()

    configure_logging()
    configure_telemetry()

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle
        await init_db()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle
        orchestrator = get_orchestrator()
        if orchestrator.defined:
            await orchestrator.teardown()
        await dispose_engine()

    @app.exception_handler(OrchestratorError)
    async def _orchestrator_exception_handler(request: Request, exc: OrchestratorError):
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.warning
        log("api.operation_failed", path=request.url.path, status=code, error=str(exc))
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def _generic_exception_handler(request: Request, exc: Exception):  # pragma: no cover - fallback
        logger.exception("api.unhandled_error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": str(exc),
                "remediation": "Check the orchestrator log for the stack trace",
                "nodeId": None,
                "operation": None,
            },
        )

    app.include_router(network.router)
    app.include_router(nodes.router)
    app.include_router(deploys.router)
    app.include_router(streams.router)

    @app.get("/healthz")
    async def healthcheck():
        orchestrator = get_orchestrator()
        return {
            "status": "ok",
            "environment": settings.environment,
            "network": orchestrator.topology.name if orchestrator.defined else None,
        }

    return app


app = create_app()


__all__ = ["app", "create_app", "status_for"]
