"""Refresh registry: sync targets with their schedule and priority."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.clock import ensure_utc
from tablesync.exceptions import RegistryError
from tablesync.models import RefreshConfig, RefreshDependency
from tablesync.models.refresh_config import DEFAULT_FREQUENCY_HOURS, DEFAULT_PRIORITY

logger = logging.getLogger(__name__)


def calculate_next_refresh(now: datetime, frequency_hours: int) -> datetime:
    """Next scheduled refresh after a success at ``now``."""
    return now + timedelta(hours=frequency_hours)


class RefreshRegistry:
    """
    Data access for refresh_config and refresh_dependencies.

    Database errors are raised as RegistryError so that a sweep can tell a
    broken registry apart from a failing target.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def select_due_targets(self, now: datetime) -> list[RefreshConfig]:
        """
        Enabled configs whose next_refresh_at is at or before ``now``.

        Ordered by priority (highest first), then by next_refresh_at (oldest
        due first). Read-only.
        """
        try:
            result = await self.db.execute(
                select(RefreshConfig)
                .where(
                    RefreshConfig.is_enabled.is_(True),
                    RefreshConfig.next_refresh_at.is_not(None),
                    RefreshConfig.next_refresh_at <= now,
                )
                .order_by(
                    RefreshConfig.priority.desc(),
                    RefreshConfig.next_refresh_at.asc(),
                    RefreshConfig.id.asc(),
                )
            )
        except SQLAlchemyError as e:
            raise RegistryError(f"Could not read refresh registry: {e}") from e
        return list(result.scalars())

    async def get(self, config_id: int) -> RefreshConfig | None:
        try:
            return await self.db.get(RefreshConfig, config_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise RegistryError(f"Could not read refresh config {config_id}: {e}") from e

    async def get_by_name(self, table_schema: str, table_name: str) -> RefreshConfig | None:
        try:
            result = await self.db.execute(
                select(RefreshConfig).where(
                    RefreshConfig.table_schema == table_schema,
                    RefreshConfig.table_name == table_name,
                )
            )
        except SQLAlchemyError as e:
            raise RegistryError(f"Could not read refresh registry: {e}") from e
        return result.scalar_one_or_none()

    async def list_all(self) -> list[RefreshConfig]:
        try:
            result = await self.db.execute(
                select(RefreshConfig).order_by(
                    RefreshConfig.priority.desc(), RefreshConfig.table_name
                )
            )
        except SQLAlchemyError as e:
            raise RegistryError(f"Could not read refresh registry: {e}") from e
        return list(result.scalars())

    async def on_worker_success(self, config_id: int, now: datetime) -> RefreshConfig:
        """
        Record a successful run finishing at ``now``.

        Sets last_refresh_at to ``now`` and next_refresh_at to ``now`` plus the
        config's frequency. next_refresh_at never moves backwards.
        """
        config = await self.get(config_id)
        if config is None:
            raise RegistryError(f"Refresh config {config_id} not found")

        next_refresh = calculate_next_refresh(now, config.refresh_frequency_hours)
        current_next = ensure_utc(config.next_refresh_at)
        if current_next is not None and current_next > next_refresh:
            next_refresh = current_next

        try:
            await self.db.execute(
                update(RefreshConfig)
                .where(RefreshConfig.id == config_id)
                .values(last_refresh_at=now, next_refresh_at=next_refresh, updated_at=now)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise RegistryError(f"Could not update refresh config {config_id}: {e}") from e

        logger.info(f"{config.identity} refreshed at {now}; next refresh at {next_refresh}")
        return await self.get(config_id)

    async def register_target(
        self,
        table_schema: str,
        table_name: str,
        now: datetime,
        *,
        frequency_hours: int = DEFAULT_FREQUENCY_HOURS,
        priority: int = DEFAULT_PRIORITY,
        custom_sync_params: dict[str, Any] | None = None,
        first_refresh_at: datetime | None = None,
    ) -> bool:
        """
        Register a sync target with default scheduling; existing targets are kept.

        Returns:
            True if a new config was inserted
        """
        values = {
            "table_schema": table_schema,
            "table_name": table_name,
            "is_enabled": True,
            "refresh_frequency_hours": frequency_hours,
            "priority": priority,
            "next_refresh_at": first_refresh_at or calculate_next_refresh(now, frequency_hours),
            "custom_sync_params": custom_sync_params or {},
            "dependencies": [],
            "created_at": now,
            "updated_at": now,
        }
        if self.db.get_bind().dialect.name == "sqlite":
            stmt = sqlite.insert(RefreshConfig)
        else:
            stmt = postgresql.insert(RefreshConfig)
        stmt = stmt.values(**values).on_conflict_do_nothing(
            index_elements=["table_schema", "table_name"]
        )

        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise RegistryError(f"Could not register {table_schema}.{table_name}: {e}") from e

        inserted = result.rowcount > 0
        if inserted:
            logger.info(f"Registered refresh target {table_schema}.{table_name}")
        return inserted

    async def set_enabled(self, config_id: int, enabled: bool) -> None:
        await self._admin_update(config_id, is_enabled=enabled)

    async def set_priority(self, config_id: int, priority: int) -> None:
        await self._admin_update(config_id, priority=priority)

    async def _admin_update(self, config_id: int, **values: Any) -> None:
        try:
            result = await self.db.execute(
                update(RefreshConfig).where(RefreshConfig.id == config_id).values(**values)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise RegistryError(f"Could not update refresh config {config_id}: {e}") from e
        if result.rowcount == 0:
            raise RegistryError(f"Refresh config {config_id} not found")

    async def _dependency_edges(self) -> dict[int, set[int]]:
        result = await self.db.execute(
            select(RefreshDependency.parent_config_id, RefreshDependency.dependent_config_id)
        )
        edges: dict[int, set[int]] = {}
        for parent_id, dependent_id in result.all():
            edges.setdefault(parent_id, set()).add(dependent_id)
        return edges

    async def add_dependency(
        self, parent_id: int, dependent_id: int, dependency_type: str = "hard"
    ) -> None:
        """
        Declare that ``dependent_id`` should refresh after ``parent_id``.

        Raises:
            RegistryError: Unknown config, or the edge would create a cycle
        """
        if parent_id == dependent_id:
            raise RegistryError("A target cannot depend on itself")

        parent = await self.get(parent_id)
        dependent = await self.get(dependent_id)
        if parent is None or dependent is None:
            raise RegistryError(f"Unknown refresh config in {parent_id} -> {dependent_id}")

        try:
            edges = await self._dependency_edges()
        except SQLAlchemyError as e:
            raise RegistryError(f"Could not read refresh dependencies: {e}") from e

        # Walk downstream from the dependent; reaching the parent means a cycle.
        stack, seen = [dependent_id], set()
        while stack:
            node = stack.pop()
            if node == parent_id:
                raise RegistryError(
                    f"Dependency {parent.identity} -> {dependent.identity} would create a cycle"
                )
            if node in seen:
                continue
            seen.add(node)
            stack.extend(edges.get(node, ()))

        if dependent_id in edges.get(parent_id, ()):
            return

        try:
            self.db.add(
                RefreshDependency(
                    parent_config_id=parent_id,
                    dependent_config_id=dependent_id,
                    dependency_type=dependency_type,
                )
            )
            if parent.identity not in dependent.dependencies:
                dependent.dependencies = [*dependent.dependencies, parent.identity]
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise RegistryError(f"Could not add dependency: {e}") from e
