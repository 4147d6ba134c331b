"""Refresh workers and the handler table."""

from tablesync.workers.asin_performance import AsinPerformanceWorker
from tablesync.workers.base import BaseWorker, BatchSyncWorker, StartPosition
from tablesync.workers.generic_table import GenericTableWorker
from tablesync.workers.handlers import HandlerRegistry, TargetKind
from tablesync.workers.materialized_view import MaterializedViewWorker
from tablesync.workers.search_queries import SearchQueryWorker
from tablesync.workers.summary_table import SummaryTableWorker

__all__ = [
    "AsinPerformanceWorker",
    "BaseWorker",
    "BatchSyncWorker",
    "GenericTableWorker",
    "HandlerRegistry",
    "MaterializedViewWorker",
    "SearchQueryWorker",
    "StartPosition",
    "SummaryTableWorker",
    "TargetKind",
]
