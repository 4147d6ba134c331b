"""Pydantic schemas for refresh configs, worker messages and sweep results."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RefreshConfigPayload(BaseModel):
    """Snapshot of a RefreshConfig carried in worker messages."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    table_schema: str
    table_name: str
    is_enabled: bool = True
    refresh_frequency_hours: int = 24
    priority: int = 100
    last_refresh_at: datetime | None = None
    next_refresh_at: datetime | None = None
    custom_sync_params: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)

    @property
    def identity(self) -> str:
        return f"{self.table_schema}.{self.table_name}"


class WorkerMessage(BaseModel):
    """
    Payload of one worker invocation.

    The first invocation of a run carries no checkpoint; each continuation
    carries the checkpoint it was suspended on and an incremented chain depth.
    """

    config: RefreshConfigPayload
    audit_log_id: int
    checkpoint_id: int | None = None
    chain_depth: int = Field(default=0, ge=0)

    def continuation(self, checkpoint_id: int) -> "WorkerMessage":
        """Message for the next invocation in this run's chain."""
        return self.model_copy(
            update={"checkpoint_id": checkpoint_id, "chain_depth": self.chain_depth + 1}
        )


class DispatchOutcome(BaseModel):
    """Result of dispatching one target."""

    config_id: int
    target: str
    worker_name: str | None = None
    audit_log_id: int | None = None
    status: Literal["dispatched", "failed"]
    error: str | None = None


class SweepResult(BaseModel):
    """Summary of one orchestration sweep."""

    started_at: datetime
    expired_checkpoints: int = 0
    reconciled: list[str] = Field(default_factory=list)
    due: list[str] = Field(default_factory=list)
    skipped_in_flight: list[str] = Field(default_factory=list)
    outcomes: list[DispatchOutcome] = Field(default_factory=list)

    @property
    def dispatched(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "dispatched")


class WorkerResult(BaseModel):
    """Outcome of one worker invocation."""

    worker_name: str
    target: str
    status: Literal["completed", "suspended", "failed"]
    rows_processed: int = 0
    checkpoint_id: int | None = None
    chain_depth: int = 0
    error: str | None = None
