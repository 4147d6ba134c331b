"""Pydantic schemas for worker payloads and API responses."""

from tablesync.schemas.refresh import (
    DispatchOutcome,
    RefreshConfigPayload,
    SweepResult,
    WorkerMessage,
    WorkerResult,
)

__all__ = [
    "DispatchOutcome",
    "RefreshConfigPayload",
    "SweepResult",
    "WorkerMessage",
    "WorkerResult",
]
