"""FastAPI application for the tablesync refresh service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tablesync.config import get_settings
from tablesync.database import check_db_ready
from tablesync.routers import health_router, refresh_router, workers_router
from tablesync.runtime import RefreshRuntime
from tablesync.tasks.scheduler import setup_scheduler, shutdown_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting tablesync...")

    # Verify database is ready
    try:
        await check_db_ready()
        logger.info("Database ready")
    except Exception as e:
        logger.error(f"Database not ready: {e}")
        raise

    runtime = RefreshRuntime(settings=settings)
    app.state.runtime = runtime
    logger.info(f"Dispatching workers via {runtime.dispatcher.name} dispatcher")

    # Start scheduler once DB is ready.
    setup_scheduler(runtime)

    yield

    # Shutdown
    shutdown_scheduler()
    await runtime.shutdown()
    logger.info("tablesync shut down")


# Create FastAPI app
app = FastAPI(
    title="tablesync",
    description="Checkpointed warehouse-to-Postgres table refresh service",
    version="0.1.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(refresh_router)
app.include_router(workers_router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "tablesync",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tablesync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
