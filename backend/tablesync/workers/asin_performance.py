"""ASIN performance worker: product rows per reporting period."""

from typing import Any

from tablesync.models import AsinPerformanceData
from tablesync.schemas import WorkerMessage
from tablesync.services.transforms import normalize_date, to_text
from tablesync.workers.base import BatchSyncWorker


class AsinPerformanceWorker(BatchSyncWorker):
    """Syncs asin_performance_data, 1000 records per batch."""

    name = "refresh-asin-performance"
    model = AsinPerformanceData
    batch_size = 1000
    natural_key = ("start_date", "end_date", "asin")

    def build_query(self, message: WorkerMessage) -> str:
        return (
            "SELECT DISTINCT start_date, end_date, asin, product_name, brand "
            f"FROM {self.source_table(message)} "
            "WHERE asin IS NOT NULL AND start_date >= @since "
            "ORDER BY start_date, end_date, asin "
            "LIMIT @limit OFFSET @offset"
        )

    def transform(self, record: dict[str, Any]) -> dict[str, Any] | None:
        row = {
            "start_date": normalize_date(record.get("start_date")),
            "end_date": normalize_date(record.get("end_date")),
            "asin": to_text(record.get("asin")),
            "product_name": to_text(record.get("product_name")),
            "brand": to_text(record.get("brand")),
        }
        if not self.has_natural_key(row):
            return None
        return row
