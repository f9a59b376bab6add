"""
FastAPI application factory and main application setup.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ..config import AppSettings, get_settings
from ..deployment import (
    AdmissionRejectedError,
    ApprovalNotPendingError,
    DeploymentError,
    DeploymentNotFoundError,
    DeploymentOrchestrator,
    DeploymentTerminalError,
    InvalidDeploymentRequestError,
    InvalidStrategyConfigError,
    InvalidTransitionError,
    RollbackFailedError,
    StrategyNotFoundError,
)
from ..observability import MetricsMiddleware, RolloutMetrics
from .routes import router

logger = structlog.get_logger(__name__)

_STATUS_CODES: dict[type[DeploymentError], int] = {
    StrategyNotFoundError: 404,
    DeploymentNotFoundError: 404,
    InvalidDeploymentRequestError: 400,
    InvalidStrategyConfigError: 400,
    AdmissionRejectedError: 409,
    ApprovalNotPendingError: 409,
    DeploymentTerminalError: 409,
    InvalidTransitionError: 409,
    RollbackFailedError: 502,
}


def status_code_for(exc: DeploymentError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in _STATUS_CODES:
            return _STATUS_CODES[exc_type]
    return 500


def create_app(
    settings: AppSettings | None = None,
    orchestrator: DeploymentOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the rollout service.

    The orchestrator is built in the lifespan unless one is passed in, in
    which case the caller owns its shutdown.
    """
    settings = settings or get_settings()
    metrics = orchestrator.metrics if orchestrator is not None else RolloutMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = orchestrator is None
        app.state.orchestrator = orchestrator or DeploymentOrchestrator(settings, metrics=metrics)
        logger.info(
            "service.started",
            version=settings.version,
            strategies=len(app.state.orchestrator.catalog),
        )

        yield

        if owned:
            await app.state.orchestrator.shutdown()
        logger.info("service.stopped")

    app = FastAPI(
        title="Marty Rollout",
        description="Progressive-delivery deployment orchestrator",
        version=settings.version,
        lifespan=lifespan,
    )
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.include_router(router)

    @app.exception_handler(DeploymentError)
    async def deployment_error_handler(request: Request, exc: DeploymentError) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error("request.failed", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("request.unhandled", exc_info=exc, path=request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Health check endpoint."""
        active = request.app.state.orchestrator.registry.live_ids()
        return {
            "status": "healthy",
            "service": settings.service_name,
            "version": settings.version,
            "activeDeployments": len(active),
        }

    @app.get("/metrics")
    async def prometheus_metrics() -> Response:
        return metrics.render()

    return app
