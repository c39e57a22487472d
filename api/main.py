"""
FastAPI application initialization
"""

from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.middleware import RequestContextMiddleware
from api.routes import health, partitions, runs
from core.config import settings
from core.exceptions import ETLException, StateStoreError
from core.logging import setup_logging
from ingestion.factory import RefreshRuntime, build_runtime
from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[RefreshRuntime] = None, start_scheduler: bool = True) -> FastAPI:
    """
    Create the API application.

    Args:
        runtime: Prebuilt runtime (tests); built from settings at startup if None
        start_scheduler: Start the cron/manual trigger loop on startup
    """
    app = FastAPI(
        title="Partition Refresh Service API",
        description="Incremental, partition-aware refresh orchestration",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.runtime = runtime

    app.add_middleware(RequestContextMiddleware)

    # Include routers
    app.include_router(health.router)
    app.include_router(partitions.router)
    app.include_router(runs.router)

    @app.exception_handler(StateStoreError)
    async def state_store_error_handler(request: Request, exc: StateStoreError):
        logger.error(f"State store unavailable: {exc.message}", extra={"error_context": exc.to_dict()})
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="State store unavailable", detail=exc.message).model_dump(mode="json")
        )

    @app.exception_handler(ETLException)
    async def etl_error_handler(request: Request, exc: ETLException):
        logger.error(f"Request failed: {exc.message}", extra={"error_context": exc.to_dict()})
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error=type(exc).__name__, detail=exc.message).model_dump(mode="json")
        )

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        logger.info("Starting Partition Refresh Service API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

        if app.state.runtime is None:
            app.state.runtime = build_runtime(settings)

        await app.state.runtime.orchestrator.recover()

        # Start Scheduler
        if start_scheduler:
            app.state.runtime.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event"""
        logger.info("Shutting down Partition Refresh Service API")
        current = app.state.runtime
        if current is None:
            return
        if current.scheduler.running:
            await current.scheduler.stop()
        if runtime is None:
            await current.dispose()

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
