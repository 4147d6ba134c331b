"""RefreshCheckpoint model for resumable worker runs."""

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from tablesync.clock import ensure_utc
from tablesync.database import Base
from tablesync.models.types import JSONType

CHECKPOINT_ACTIVE = "active"
CHECKPOINT_COMPLETED = "completed"
CHECKPOINT_EXPIRED = "expired"

ACTIVE_WHERE = text("status = 'active'")


class RefreshCheckpoint(Base):
    """
    Resumption state of one logical run of a worker against a target.

    Saved when a worker invocation runs out of time budget, read back by the
    continuation invocation. The partial unique index allows at most one
    active row per (function_name, table_schema, table_name).
    """

    __tablename__ = "refresh_checkpoints"

    id: Mapped[int] = mapped_column(primary_key=True)
    function_name: Mapped[str] = mapped_column(String(100), nullable=False)
    table_schema: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # {"offset", "since", "rows_processed", "audit_log_id"}
    checkpoint_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    last_processed_row: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "idx_checkpoints_unique_active",
            "function_name",
            "table_schema",
            "table_name",
            "status",
            unique=True,
            postgresql_where=ACTIVE_WHERE,
            sqlite_where=ACTIVE_WHERE,
        ),
        Index("idx_checkpoints_expires", "expires_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= now

    def __repr__(self) -> str:
        return (
            f"<RefreshCheckpoint {self.function_name} "
            f"{self.table_schema}.{self.table_name}: {self.status}>"
        )
