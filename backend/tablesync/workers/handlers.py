"""Registered-handler table: which worker refreshes which target."""

import logging
from collections.abc import Iterable, Mapping
from enum import Enum

from tablesync.config import Settings, get_settings
from tablesync.exceptions import DispatchError
from tablesync.schemas import RefreshConfigPayload
from tablesync.workers.asin_performance import AsinPerformanceWorker
from tablesync.workers.base import BaseWorker
from tablesync.workers.generic_table import GenericTableWorker
from tablesync.workers.materialized_view import MaterializedViewWorker
from tablesync.workers.search_queries import SearchQueryWorker
from tablesync.workers.summary_table import SummaryTableWorker

logger = logging.getLogger(__name__)


class TargetKind(str, Enum):
    """Kinds of sync target, each served by one worker."""

    ASIN_PERFORMANCE = "asin_performance"
    SEARCH_QUERY_PERFORMANCE = "search_query_performance"
    MATERIALIZED_VIEW = "materialized_view"
    SUMMARY_TABLE = "summary_table"
    GENERIC = "generic"


DEFAULT_WORKERS: dict[TargetKind, type[BaseWorker]] = {
    TargetKind.ASIN_PERFORMANCE: AsinPerformanceWorker,
    TargetKind.SEARCH_QUERY_PERFORMANCE: SearchQueryWorker,
    TargetKind.MATERIALIZED_VIEW: MaterializedViewWorker,
    TargetKind.SUMMARY_TABLE: SummaryTableWorker,
    TargetKind.GENERIC: GenericTableWorker,
}

DEFAULT_TABLE_KINDS: dict[str, TargetKind] = {
    "asin_performance_data": TargetKind.ASIN_PERFORMANCE,
    "search_query_performance": TargetKind.SEARCH_QUERY_PERFORMANCE,
    "weekly_summary": TargetKind.SUMMARY_TABLE,
    "monthly_summary": TargetKind.SUMMARY_TABLE,
    "quarterly_summary": TargetKind.SUMMARY_TABLE,
    "yearly_summary": TargetKind.SUMMARY_TABLE,
}


class HandlerRegistry:
    """
    Maps targets to workers.

    Resolution order: an explicit ``target_kind`` in the target's
    custom_sync_params, then an exact match on the table name, then the
    generic worker. Built once at startup.
    """

    def __init__(
        self,
        workers: Mapping[TargetKind, type[BaseWorker]],
        table_kinds: Mapping[str, TargetKind],
    ):
        if TargetKind.GENERIC not in workers:
            raise ValueError("A generic worker is required as the fallback handler")
        self.workers = dict(workers)
        self.table_kinds = dict(table_kinds)
        self._by_name = {worker.name: worker for worker in self.workers.values()}

    @classmethod
    def default(
        cls,
        settings: Settings | None = None,
        materialized_views: Iterable[str] | None = None,
    ) -> "HandlerRegistry":
        settings = settings or get_settings()
        table_kinds = dict(DEFAULT_TABLE_KINDS)
        for view in materialized_views or settings.materialized_views:
            table_kinds[view] = TargetKind.MATERIALIZED_VIEW
        return cls(DEFAULT_WORKERS, table_kinds)

    @property
    def worker_names(self) -> list[str]:
        return sorted(self._by_name)

    def resolve_kind(self, config: RefreshConfigPayload) -> TargetKind:
        explicit = (config.custom_sync_params or {}).get("target_kind")
        if explicit:
            try:
                kind = TargetKind(explicit)
            except ValueError:
                logger.warning(f"Unknown target_kind {explicit!r} for {config.identity}")
            else:
                if kind in self.workers:
                    return kind
        return self.table_kinds.get(config.table_name, TargetKind.GENERIC)

    def worker_for(self, config: RefreshConfigPayload) -> type[BaseWorker]:
        return self.workers[self.resolve_kind(config)]

    def worker_name_for(self, config: RefreshConfigPayload) -> str:
        return self.worker_for(config).name

    def get_worker(self, worker_name: str) -> type[BaseWorker]:
        """Worker class by name; DispatchError if no such worker is registered."""
        try:
            return self._by_name[worker_name]
        except KeyError:
            raise DispatchError(
                f"Unknown worker: {worker_name}", details={"worker": worker_name}
            ) from None
