"""API routers."""

from tablesync.routers.health import router as health_router
from tablesync.routers.refresh import router as refresh_router
from tablesync.routers.workers import router as workers_router

__all__ = ["health_router", "refresh_router", "workers_router"]
