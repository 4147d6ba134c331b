"""Destination (operational store) operations used by the refresh workers."""

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import MetaData, Select, Table, func, select, text
from sqlalchemy import table as table_clause
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.config import get_settings
from tablesync.exceptions import WriteConflictError

logger = logging.getLogger(__name__)
settings = get_settings()

# Columns owned by the destination, never populated from the warehouse
BOOKKEEPING_COLUMNS = frozenset({"id", "created_at", "updated_at"})


def dedupe_by_key(rows: Iterable[dict[str, Any]], keys: Sequence[str]) -> list[dict[str, Any]]:
    """Collapse rows sharing a natural key; the last occurrence wins."""
    unique: dict[tuple, dict[str, Any]] = {}
    for row in rows:
        unique[tuple(row.get(k) for k in keys)] = row
    return list(unique.values())


class Destination:
    """
    Operational store access for one worker invocation.

    Wraps an AsyncSession. Writes are committed per call so that a failure
    in a later batch never rolls back batches already written.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._tables: dict[tuple[str | None, str], Table] = {}

    @property
    def dialect(self) -> str:
        return self.db.get_bind().dialect.name

    @staticmethod
    def qualify(schema: str | None) -> str | None:
        """Schema to render in SQL; the default schema is left implicit."""
        if not schema or schema == settings.default_schema:
            return None
        return schema

    def _insert(self, table: Table):
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        if self.dialect == "sqlite":
            return sqlite.insert(table)
        raise NotImplementedError(f"Upsert is not supported on {self.dialect}")

    async def reflect_table(self, table_name: str, schema: str | None = None) -> Table:
        """Load a destination table definition from the live database."""
        key = (self.qualify(schema), table_name)
        if key not in self._tables:

            def _reflect(sync_session) -> Table:
                return Table(
                    table_name,
                    MetaData(),
                    schema=key[0],
                    autoload_with=sync_session.connection(),
                )

            self._tables[key] = await self.db.run_sync(_reflect)
        return self._tables[key]

    async def get_columns(self, table_name: str, schema: str | None = None) -> list[str]:
        """Column names of a destination table, in table order."""
        table = await self.reflect_table(table_name, schema)
        return [column.name for column in table.columns]

    async def upsert(
        self,
        table: Table,
        rows: Sequence[dict[str, Any]],
        conflict_keys: Sequence[str],
        updated_at: datetime | None = None,
    ) -> int:
        """
        Insert rows, overwriting every non-key column on natural-key conflict.

        ``updated_at`` is stamped on every row when the table has that column.
        The batch is committed before returning.

        Returns:
            Number of rows written (after in-batch de-duplication)

        Raises:
            WriteConflictError: Any integrity violation; the batch is rolled back
        """
        if not rows:
            return 0

        batch = dedupe_by_key(rows, conflict_keys)
        if updated_at is not None and "updated_at" in table.c:
            batch = [{**row, "updated_at": updated_at} for row in batch]

        stmt = self._insert(table).values(batch)
        update_columns = [c for c in batch[0] if c not in conflict_keys]
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_keys),
                set_={c: stmt.excluded[c] for c in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_keys))

        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise WriteConflictError(
                f"Write to {table.fullname} violated a constraint: {e.orig}",
                details={"table": table.fullname, "rows": len(batch)},
            ) from e

        return len(batch)

    async def upsert_from_select(
        self, table: Table, query: Select, conflict_keys: Sequence[str]
    ) -> None:
        """
        Write the rows of ``query`` into ``table`` with one INSERT ... SELECT.

        Rows whose natural key already exists are overwritten. Committed
        before returning.

        Raises:
            WriteConflictError: Any integrity violation; nothing is written
        """
        columns = [column.name for column in query.selected_columns]
        stmt = self._insert(table).from_select(columns, query)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_keys),
            set_={c: stmt.excluded[c] for c in columns if c not in conflict_keys},
        )

        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise WriteConflictError(
                f"Aggregate into {table.fullname} violated a constraint: {e.orig}",
                details={"table": table.fullname},
            ) from e

    async def select(
        self,
        table: Table,
        filters: Mapping[str, Any] | None = None,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Rows of a table matching equality filters."""
        stmt = select(table)
        for column, value in (filters or {}).items():
            stmt = stmt.where(table.c[column] == value)
        for column in order_by:
            if column.startswith("-"):
                stmt = stmt.order_by(table.c[column[1:]].desc())
            else:
                stmt = stmt.order_by(table.c[column])
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self.db.execute(stmt)
        return [dict(row) for row in result.mappings()]

    async def max_value(self, table: Table, column: str) -> Any:
        """Largest value of a column, or None for an empty table (the watermark)."""
        result = await self.db.execute(select(func.max(table.c[column])))
        return result.scalar()

    async def count_rows(self, table_name: str, schema: str | None = None) -> int:
        """Row count of a table or view."""
        clause = table_clause(table_name, schema=self.qualify(schema))
        result = await self.db.execute(select(func.count()).select_from(clause))
        return result.scalar() or 0

    async def refresh_materialized_view(self, view_name: str, schema: str | None = None) -> None:
        """Refresh a materialized view in place."""
        preparer = self.db.get_bind().dialect.identifier_preparer
        qualified = preparer.quote(view_name)
        if self.qualify(schema):
            qualified = f"{preparer.quote_schema(schema)}.{qualified}"

        logger.info(f"Refreshing materialized view {qualified}")
        await self.db.execute(text(f"REFRESH MATERIALIZED VIEW {qualified}"))
        await self.db.commit()
