"""Generic worker for targets without a dedicated handler."""

from typing import Any

from sqlalchemy import Date, DateTime

from tablesync.exceptions import RefreshError
from tablesync.schemas import WorkerMessage
from tablesync.services.destination import BOOKKEEPING_COLUMNS
from tablesync.services.transforms import normalize_date, normalize_datetime, unwrap
from tablesync.workers.base import BatchSyncWorker


class GenericTableWorker(BatchSyncWorker):
    """
    Copies a warehouse table column-for-column into a reflected destination table.

    Driven by the target's custom_sync_params:
    - ``source_table``: warehouse table (defaults to the configured export)
    - ``conflict_keys``: natural key (defaults to start_date, end_date, asin)
    - ``watermark_column``: window column (defaults to start_date)
    """

    name = "refresh-generic-table"
    batch_size = 500
    natural_key = ("start_date", "end_date", "asin")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.columns: list[str] = []

    async def prepare(self, message: WorkerMessage) -> None:
        config = message.config
        params = config.custom_sync_params

        self.table = await self.destination.reflect_table(config.table_name, config.table_schema)
        self.conflict_keys = list(params.get("conflict_keys") or self.natural_key)
        self.watermark_column = params.get("watermark_column") or self.watermark_column
        self.columns = [c.name for c in self.table.columns if c.name not in BOOKKEEPING_COLUMNS]

        missing = [
            column
            for column in [*self.conflict_keys, self.watermark_column]
            if column not in self.table.c
        ]
        if missing:
            raise RefreshError(
                f"{config.identity} has no column(s) {', '.join(missing)}",
                code="INVALID_TARGET",
                details={"missing": missing},
            )

    def build_query(self, message: WorkerMessage) -> str:
        return (
            f"SELECT {', '.join(self.columns)} "
            f"FROM {self.source_table(message)} "
            f"WHERE {self.watermark_column} >= @since "
            f"ORDER BY {', '.join(self.conflict_keys)} "
            "LIMIT @limit OFFSET @offset"
        )

    def transform(self, record: dict[str, Any]) -> dict[str, Any] | None:
        row = {}
        for name in self.columns:
            column_type = self.table.c[name].type
            value = unwrap(record.get(name))
            if isinstance(column_type, DateTime):
                value = normalize_datetime(value)
            elif isinstance(column_type, Date):
                value = normalize_date(value)
            row[name] = value

        if not self.has_natural_key(row):
            return None
        return row
