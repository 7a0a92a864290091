"""FastAPI application for the animated story pipeline.

Startup builds everything request handlers need and stores it on
``app.state``: settings, database engine, session factory, provider
capabilities and the PipelineOrchestrator. Shutdown cancels pending
auto-advance chains and closes HTTP clients and the engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from animatevdo.clients.factory import build_capabilities
from animatevdo.config import load_settings
from animatevdo.database import create_engine_from_settings, create_session_factory
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.routes import projects
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator

log = structlog.get_logger()

ERROR_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.INVALID_PROJECT_DATA: status.HTTP_404_NOT_FOUND,
    ErrorCode.MISSING_DEPENDENCIES: status.HTTP_409_CONFLICT,
    ErrorCode.DATA_CORRUPTION: status.HTTP_409_CONFLICT,
    ErrorCode.API_RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.USAGE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.SUBSCRIPTION_REQUIRED: status.HTTP_402_PAYMENT_REQUIRED,
}


def status_code_for(error: ServiceError) -> int:
    """HTTP status for a classified error (503 if retryable, else 502, unless mapped)."""
    if error.code in ERROR_STATUS_CODES:
        return ERROR_STATUS_CODES[error.code]
    if error.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_502_BAD_GATEWAY


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build settings, database and orchestrator on startup; release them on shutdown."""
    settings = load_settings()
    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)
    capabilities = build_capabilities(settings)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.orchestrator = PipelineOrchestrator.from_settings(settings, session_factory, capabilities)
    log.info("application_started", mock_data=settings.use_mock_data, auto_advance=settings.auto_advance)

    yield  # Application runs here

    await app.state.orchestrator.close()
    await capabilities.close()
    await engine.dispose()
    log.info("application_stopped")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Build the app; tests pass their own lifespan (or None) and set ``app.state``."""
    application = FastAPI(
        title="animatevdo - Animated Story Pipeline",
        description="Research, script, characters, narration and video for animated stories",
        version="0.1.0",
        lifespan=lifespan_handler,
    )
    application.include_router(projects.router)

    @application.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        status_code = status_code_for(exc)
        log.warning(
            "request_failed",
            path=request.url.path,
            error_code=exc.code.value,
            status_code=status_code,
        )
        body = exc.to_dict()
        return JSONResponse(
            status_code=status_code,
            content={key: body[key] for key in ("error", "message", "retryable", "suggested_action")},
        )

    @application.get("/health", status_code=status.HTTP_200_OK)
    async def health_check() -> JSONResponse:
        """Liveness check for deployment platforms."""
        return JSONResponse(content={"status": "healthy", "service": "animatevdo"})

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "animatevdo.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
