"""Checkpoint store: resumption state for runs that outlive one invocation."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.models import RefreshCheckpoint
from tablesync.models.refresh_checkpoint import (
    ACTIVE_WHERE,
    CHECKPOINT_ACTIVE,
    CHECKPOINT_COMPLETED,
    CHECKPOINT_EXPIRED,
)

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = ["function_name", "table_schema", "table_name", "status"]


class CheckpointRepository:
    """Data access for refresh_checkpoints."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self):
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite.insert(RefreshCheckpoint)
        return postgresql.insert(RefreshCheckpoint)

    async def get(self, checkpoint_id: int) -> RefreshCheckpoint | None:
        return await self.db.get(RefreshCheckpoint, checkpoint_id, populate_existing=True)

    async def get_active(
        self, function_name: str, table_schema: str, table_name: str
    ) -> RefreshCheckpoint | None:
        """The active checkpoint for a (worker, target) pair, if any."""
        result = await self.db.execute(
            select(RefreshCheckpoint)
            .where(
                RefreshCheckpoint.function_name == function_name,
                RefreshCheckpoint.table_schema == table_schema,
                RefreshCheckpoint.table_name == table_name,
                RefreshCheckpoint.status == CHECKPOINT_ACTIVE,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        function_name: str,
        table_schema: str,
        table_name: str,
        checkpoint_data: dict[str, Any],
        last_processed_row: int,
        now: datetime,
        ttl: timedelta,
    ) -> int:
        """
        Create or update the active checkpoint for a (worker, target) pair.

        Upserts against the partial unique index on active rows, so there is
        never more than one active checkpoint per pair.

        Returns:
            The checkpoint id
        """
        values = {
            "function_name": function_name,
            "table_schema": table_schema,
            "table_name": table_name,
            "checkpoint_data": checkpoint_data,
            "last_processed_row": last_processed_row,
            "status": CHECKPOINT_ACTIVE,
            "updated_at": now,
            "expires_at": now + ttl,
        }
        stmt = self._insert().values(**values, created_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=CHECKPOINT_KEY,
            index_where=ACTIVE_WHERE,
            set_={
                "checkpoint_data": stmt.excluded.checkpoint_data,
                "last_processed_row": stmt.excluded.last_processed_row,
                "updated_at": stmt.excluded.updated_at,
                "expires_at": stmt.excluded.expires_at,
            },
        ).returning(RefreshCheckpoint.id)

        result = await self.db.execute(stmt)
        checkpoint_id = result.scalar_one()
        await self.db.commit()

        logger.info(
            f"Saved checkpoint {checkpoint_id} for {function_name} "
            f"{table_schema}.{table_name} at row {last_processed_row}"
        )
        return checkpoint_id

    async def _set_status(self, checkpoint_id: int, status: str, now: datetime) -> bool:
        result = await self.db.execute(
            update(RefreshCheckpoint)
            .where(
                RefreshCheckpoint.id == checkpoint_id,
                RefreshCheckpoint.status == CHECKPOINT_ACTIVE,
            )
            .values(status=status, updated_at=now)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def complete(self, checkpoint_id: int, now: datetime) -> bool:
        """Mark an active checkpoint completed once its run finishes a full pass."""
        return await self._set_status(checkpoint_id, CHECKPOINT_COMPLETED, now)

    async def expire(self, checkpoint_id: int, now: datetime) -> bool:
        """Mark an active checkpoint expired so it can never supply an offset."""
        return await self._set_status(checkpoint_id, CHECKPOINT_EXPIRED, now)

    async def expire_stale(self, now: datetime) -> int:
        """
        Expire every active checkpoint past its TTL.

        Returns:
            Number of checkpoints expired
        """
        result = await self.db.execute(
            update(RefreshCheckpoint)
            .where(
                RefreshCheckpoint.status == CHECKPOINT_ACTIVE,
                RefreshCheckpoint.expires_at <= now,
            )
            .values(status=CHECKPOINT_EXPIRED, updated_at=now)
        )
        await self.db.commit()

        expired = result.rowcount
        if expired:
            logger.warning(f"Expired {expired} stale checkpoints")
        return expired

    async def list_active(self) -> list[RefreshCheckpoint]:
        result = await self.db.execute(
            select(RefreshCheckpoint)
            .where(RefreshCheckpoint.status == CHECKPOINT_ACTIVE)
            .order_by(RefreshCheckpoint.expires_at)
        )
        return list(result.scalars())
