from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobs_engine.config.logging import setup_logging
from jobs_engine.config.settings import settings
from jobs_engine.engine import get_engine
from jobs_engine.infra.database import get_database
from jobs_engine.v1.core.exceptions import (
    JobsEngineException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    jobs_engine_exception_handler,
)
from jobs_engine.v1.core.registries import job_registry
from jobs_engine.v1.healthz import router as health_router
from jobs_engine.v1.jobs.routes import router as jobs_router
from jobs_engine.v1.schedules.routes import router as schedules_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Durable priority job queue with retries and cron schedules",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
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
    app.add_exception_handler(JobsEngineException, jobs_engine_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(schedules_router, prefix="/v1")

    # Processors are registered when the engine is built; freeze afterwards
    # in non-development environments to prevent runtime modifications.
    if settings.environment != "development":

        @app.on_event("startup")
        async def freeze_registries() -> None:
            get_engine(settings, get_database(settings))
            job_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobs_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
