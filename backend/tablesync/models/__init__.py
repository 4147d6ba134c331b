"""Database models."""

from tablesync.models.asin_performance import AsinPerformanceData
from tablesync.models.refresh_audit_log import RefreshAuditLog
from tablesync.models.refresh_checkpoint import RefreshCheckpoint
from tablesync.models.refresh_config import RefreshConfig, RefreshDependency
from tablesync.models.search_query_performance import SearchQueryPerformance
from tablesync.models.search_summary import (
    MonthlySummary,
    QuarterlySummary,
    WeeklySummary,
    YearlySummary,
)

__all__ = [
    "AsinPerformanceData",
    "MonthlySummary",
    "QuarterlySummary",
    "RefreshAuditLog",
    "RefreshCheckpoint",
    "RefreshConfig",
    "RefreshDependency",
    "SearchQueryPerformance",
    "WeeklySummary",
    "YearlySummary",
]
