"""Health endpoints with per-target refresh status."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.database import get_db
from tablesync.models.refresh_audit_log import STATUS_FAILED
from tablesync.services.audit_log import AuditLogRepository
from tablesync.services.checkpoints import CheckpointRepository
from tablesync.services.registry import RefreshRegistry

router = APIRouter(tags=["health"])


class TargetStatus(BaseModel):
    """Refresh status of one sync target."""

    target: str
    enabled: bool
    priority: int
    last_refresh_at: datetime | None
    next_refresh_at: datetime | None
    last_run_status: str | None = None
    last_run_rows: int | None = None
    last_error: str | None = None
    active_checkpoint: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    targets: list[TargetStatus]
    active_checkpoints: int


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> HealthResponse:
    """
    Health check endpoint with refresh status.

    Reports "degraded" when the latest run of any enabled target failed.
    """
    configs = await RefreshRegistry(db).list_all()
    latest = await AuditLogRepository(db).latest_by_config()
    checkpoints = await CheckpointRepository(db).list_active()
    checkpointed = {(cp.table_schema, cp.table_name) for cp in checkpoints}

    targets = []
    for config in configs:
        run = latest.get(config.id)
        targets.append(
            TargetStatus(
                target=config.identity,
                enabled=config.is_enabled,
                priority=config.priority,
                last_refresh_at=config.last_refresh_at,
                next_refresh_at=config.next_refresh_at,
                last_run_status=run.status if run else None,
                last_run_rows=run.rows_processed if run else None,
                last_error=run.error_message if run else None,
                active_checkpoint=(config.table_schema, config.table_name) in checkpointed,
            )
        )

    degraded = any(t.enabled and t.last_run_status == STATUS_FAILED for t in targets)
    return HealthResponse(
        status="degraded" if degraded else "healthy",
        timestamp=datetime.now(UTC),
        targets=targets,
        active_checkpoints=len(checkpoints),
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Simple readiness probe for container orchestration."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness probe for container orchestration."""
    return {"status": "alive"}
