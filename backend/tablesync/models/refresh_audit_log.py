"""RefreshAuditLog model: one row per run attempt."""

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from tablesync.database import Base
from tablesync.models.types import JSONType

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class RefreshAuditLog(Base):
    """
    History of a logical run of a sync target.

    Created as ``running`` at dispatch; moved to ``success`` or ``failed``
    exactly once by the worker that owns it. refresh_completed_at is set iff
    the status is terminal.
    """

    __tablename__ = "refresh_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    refresh_config_id: Mapped[int | None] = mapped_column(
        ForeignKey("refresh_config.id", ondelete="SET NULL")
    )
    table_schema: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(200), nullable=False)

    refresh_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refresh_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_RUNNING)

    rows_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    sync_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'success', 'failed')", name="ck_audit_log_status"
        ),
        Index("idx_audit_log_status_time", "status", refresh_started_at.desc()),
        Index("idx_audit_log_config_id", "refresh_config_id", refresh_started_at.desc()),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != STATUS_RUNNING

    def __repr__(self) -> str:
        return f"<RefreshAuditLog {self.id} {self.table_schema}.{self.table_name}: {self.status}>"
