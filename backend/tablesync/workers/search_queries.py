"""Search query performance worker: funnel metrics per query, ASIN and period."""

from typing import Any

from tablesync.models import SearchQueryPerformance
from tablesync.schemas import WorkerMessage
from tablesync.services.transforms import normalize_date, to_float, to_int, to_text
from tablesync.workers.base import BatchSyncWorker

SOURCE_COLUMNS = [
    "start_date",
    "end_date",
    "asin",
    "search_query",
    "impressions",
    "clicks",
    "cart_adds",
    "total_orders",
    "ctr_percentage",
    "cvr_percentage",
    "cpc_dollars",
    "spend_dollars",
    "total_sales_dollars",
    "total_units",
    "search_impression_share_percentage",
    "search_impression_rank_avg",
    "click_share_percentage",
    "click_rank_avg",
]


class SearchQueryWorker(BatchSyncWorker):
    """Syncs search_query_performance, 500 records per batch."""

    name = "refresh-search-queries"
    model = SearchQueryPerformance
    batch_size = 500
    natural_key = ("start_date", "end_date", "asin", "search_query")

    def build_query(self, message: WorkerMessage) -> str:
        return (
            f"SELECT {', '.join(SOURCE_COLUMNS)} "
            f"FROM {self.source_table(message)} "
            "WHERE asin IS NOT NULL AND search_query IS NOT NULL AND start_date >= @since "
            "ORDER BY start_date, end_date, asin, search_query "
            "LIMIT @limit OFFSET @offset"
        )

    def transform(self, record: dict[str, Any]) -> dict[str, Any] | None:
        orders = record.get("total_orders", record.get("purchases"))
        row = {
            "start_date": normalize_date(record.get("start_date")),
            "end_date": normalize_date(record.get("end_date")),
            "asin": to_text(record.get("asin")),
            "search_query": to_text(record.get("search_query")),
            # Funnel
            "impressions": to_int(record.get("impressions")),
            "clicks": to_int(record.get("clicks")),
            "cart_adds": to_int(record.get("cart_adds")),
            "purchases": to_int(orders),
            # Performance
            "ctr_percentage": to_float(record.get("ctr_percentage")),
            "cvr_percentage": to_float(record.get("cvr_percentage")),
            "cpc_dollars": to_float(record.get("cpc_dollars")),
            "spend_dollars": to_float(record.get("spend_dollars")),
            "total_sales_dollars": to_float(record.get("total_sales_dollars")),
            "total_units": to_int(record.get("total_units")),
            # Share of voice
            "search_impression_share_percentage": to_float(
                record.get("search_impression_share_percentage"), None
            ),
            "search_impression_rank_avg": to_float(record.get("search_impression_rank_avg"), None),
            "click_share_percentage": to_float(record.get("click_share_percentage"), None),
            "click_rank_avg": to_float(record.get("click_rank_avg"), None),
        }
        if not self.has_natural_key(row):
            return None
        return row
