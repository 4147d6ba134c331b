"""Operator endpoints for the refresh pipeline."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.database import get_db
from tablesync.runtime import RefreshRuntime, get_runtime
from tablesync.schemas import SweepResult
from tablesync.services.audit_log import AuditLogRepository
from tablesync.services.checkpoints import CheckpointRepository

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh", tags=["refresh"])


class AuditLogOut(BaseModel):
    """One run attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    refresh_config_id: int | None
    table_schema: str
    table_name: str
    status: str
    refresh_started_at: datetime
    refresh_completed_at: datetime | None
    rows_processed: int
    execution_time_ms: int | None
    error_message: str | None


@router.post("/sweep", response_model=SweepResult)
async def trigger_sweep(
    runtime: Annotated[RefreshRuntime, Depends(get_runtime)],
) -> SweepResult:
    """Run one orchestration sweep now instead of waiting for the scheduler."""
    return await runtime.orchestrator().sweep()


@router.get("/history", response_model=list[AuditLogOut])
async def refresh_history(
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: int = Query(50, ge=1, le=500),
) -> list[AuditLogOut]:
    """Most recent run attempts, newest first."""
    entries = await AuditLogRepository(db).recent(limit)
    return [AuditLogOut.model_validate(entry) for entry in entries]


@router.delete("/checkpoints/{checkpoint_id}")
async def reset_checkpoint(
    checkpoint_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    runtime: Annotated[RefreshRuntime, Depends(get_runtime)],
) -> dict:
    """
    Expire an active checkpoint.

    The next run of its target starts from the destination watermark instead
    of the saved offset.
    """
    repository = CheckpointRepository(db)
    if await repository.get(checkpoint_id) is None:
        raise HTTPException(status_code=404, detail="Checkpoint not found")

    expired = await repository.expire(checkpoint_id, runtime.clock.now())
    if expired:
        logger.warning(f"Checkpoint {checkpoint_id} reset by operator")

    return {
        "message": "Checkpoint expired" if expired else "Checkpoint was not active",
        "expired": expired,
    }
