"""Audit log: create-once, terminally-update-once history of run attempts."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.models import RefreshAuditLog, RefreshConfig
from tablesync.models.refresh_audit_log import STATUS_FAILED, STATUS_RUNNING, STATUS_SUCCESS

logger = logging.getLogger(__name__)


class AuditLogRepository:
    """Data access for refresh_audit_log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, config: RefreshConfig, started_at: datetime) -> int:
        """Open a ``running`` entry for a run of ``config``."""
        entry = RefreshAuditLog(
            refresh_config_id=config.id,
            table_schema=config.table_schema,
            table_name=config.table_name,
            refresh_started_at=started_at,
            status=STATUS_RUNNING,
            rows_processed=0,
            sync_metadata={},
        )
        self.db.add(entry)
        await self.db.commit()
        return entry.id

    async def get(self, audit_log_id: int) -> RefreshAuditLog | None:
        return await self.db.get(RefreshAuditLog, audit_log_id, populate_existing=True)

    async def _finish(self, audit_log_id: int, status: str, values: dict[str, Any]) -> bool:
        # Only a running entry may be finished; terminal rows are immutable.
        result = await self.db.execute(
            update(RefreshAuditLog)
            .where(
                RefreshAuditLog.id == audit_log_id,
                RefreshAuditLog.status == STATUS_RUNNING,
            )
            .values(status=status, **values)
        )
        await self.db.commit()

        if result.rowcount == 0:
            logger.warning(
                f"Audit log {audit_log_id} is not running; ignoring {status} update"
            )
            return False
        return True

    async def mark_success(
        self,
        audit_log_id: int,
        rows_processed: int,
        completed_at: datetime,
        execution_time_ms: int | None = None,
        sync_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Terminal transition to ``success``. Returns False if already terminal."""
        return await self._finish(
            audit_log_id,
            STATUS_SUCCESS,
            {
                "rows_processed": rows_processed,
                "refresh_completed_at": completed_at,
                "execution_time_ms": execution_time_ms,
                "sync_metadata": sync_metadata or {},
            },
        )

    async def mark_failed(
        self,
        audit_log_id: int,
        error_message: str,
        completed_at: datetime,
        rows_processed: int = 0,
        error_details: dict[str, Any] | None = None,
        execution_time_ms: int | None = None,
    ) -> bool:
        """Terminal transition to ``failed``. Returns False if already terminal."""
        return await self._finish(
            audit_log_id,
            STATUS_FAILED,
            {
                "error_message": error_message,
                "error_details": error_details,
                "rows_processed": rows_processed,
                "refresh_completed_at": completed_at,
                "execution_time_ms": execution_time_ms,
            },
        )

    async def has_running(self, config_id: int, started_after: datetime | None = None) -> bool:
        """Whether the config has an open run, optionally one started after ``started_after``."""
        stmt = select(func.count(RefreshAuditLog.id)).where(
            RefreshAuditLog.refresh_config_id == config_id,
            RefreshAuditLog.status == STATUS_RUNNING,
        )
        if started_after is not None:
            stmt = stmt.where(RefreshAuditLog.refresh_started_at > started_after)
        result = await self.db.execute(stmt)
        return (result.scalar() or 0) > 0

    async def unapplied_successes(self) -> list[tuple[RefreshConfig, datetime]]:
        """
        Configs whose latest successful run finished after their last_refresh_at.

        Returns:
            List of (config, completed_at of the latest success)
        """
        latest = (
            select(
                RefreshAuditLog.refresh_config_id.label("config_id"),
                func.max(RefreshAuditLog.refresh_completed_at).label("completed_at"),
            )
            .where(RefreshAuditLog.status == STATUS_SUCCESS)
            .group_by(RefreshAuditLog.refresh_config_id)
            .subquery()
        )
        result = await self.db.execute(
            select(RefreshConfig, latest.c.completed_at)
            .join(latest, latest.c.config_id == RefreshConfig.id)
            .where(
                (RefreshConfig.last_refresh_at.is_(None))
                | (latest.c.completed_at > RefreshConfig.last_refresh_at)
            )
            .order_by(RefreshConfig.id)
        )
        return [(config, completed_at) for config, completed_at in result.all()]

    async def recent(self, limit: int = 50) -> list[RefreshAuditLog]:
        result = await self.db.execute(
            select(RefreshAuditLog)
            .order_by(RefreshAuditLog.refresh_started_at.desc(), RefreshAuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def latest_by_config(self) -> dict[int, RefreshAuditLog]:
        """Most recent audit entry of every config."""
        latest_ids = (
            select(func.max(RefreshAuditLog.id))
            .where(RefreshAuditLog.refresh_config_id.is_not(None))
            .group_by(RefreshAuditLog.refresh_config_id)
        )
        result = await self.db.execute(
            select(RefreshAuditLog).where(RefreshAuditLog.id.in_(latest_ids))
        )
        return {entry.refresh_config_id: entry for entry in result.scalars()}
