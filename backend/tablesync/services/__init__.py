"""Data access and collaborators for the refresh pipeline."""

from tablesync.services.audit_log import AuditLogRepository
from tablesync.services.checkpoints import CheckpointRepository
from tablesync.services.destination import Destination
from tablesync.services.dispatch import HttpDispatcher, LocalDispatcher, WorkerDispatcher
from tablesync.services.registry import RefreshRegistry
from tablesync.services.warehouse_client import WarehouseClient

__all__ = [
    "AuditLogRepository",
    "CheckpointRepository",
    "Destination",
    "HttpDispatcher",
    "LocalDispatcher",
    "RefreshRegistry",
    "WarehouseClient",
    "WorkerDispatcher",
]
