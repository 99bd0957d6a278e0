from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from meetbot.config.logging import get_logger, setup_logging
from meetbot.config.settings import Settings, get_settings, settings as default_settings
from meetbot.v1.core.exceptions import (
    MeetBotException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    meetbot_exception_handler,
)
from meetbot.v1.healthz import router as health_router
from meetbot.v1.infra.jobs.routes import router as jobs_router
from meetbot.v1.infra.jobs.runtime import JobSystem

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None, job_system: JobSystem | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        jobs = job_system or JobSystem(settings)
        app.state.jobs = jobs
        if settings.run_workers:
            await jobs.start()
        logger.info(
            "Application started",
            environment=settings.environment,
            run_workers=settings.run_workers,
        )
        try:
            yield
        finally:
            if job_system is None:
                await jobs.close()
            else:
                await jobs.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Background job queue and worker pool for meeting recordings",
        version=settings.version,
        debug=settings.debug,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(MeetBotException, meetbot_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Dependencies resolve to the settings this app was built with
    app.dependency_overrides[get_settings] = lambda: settings

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meetbot.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        workers=1 if default_settings.debug else default_settings.workers,
    )
