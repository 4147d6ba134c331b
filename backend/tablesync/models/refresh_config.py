"""RefreshConfig and RefreshDependency models (the refresh registry)."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from tablesync.database import Base
from tablesync.models.types import JSONType

DEFAULT_FREQUENCY_HOURS = 24
DEFAULT_PRIORITY = 100


class RefreshConfig(Base):
    """
    One sync target: a destination table kept in step with the warehouse.

    Timestamps are written only by the orchestrator; enabled/priority only by
    administrators. Rows are never deleted by the pipeline.
    """

    __tablename__ = "refresh_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    table_schema: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(200), nullable=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    refresh_frequency_hours: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_FREQUENCY_HOURS, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=DEFAULT_PRIORITY, nullable=False)

    last_refresh_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_refresh_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    custom_sync_params: Mapped[dict[str, Any]] = mapped_column(
        JSONType, default=dict, nullable=False
    )
    # "schema.table" identities this target depends on
    dependencies: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("table_schema", "table_name", name="uq_refresh_config_target"),
        Index("idx_refresh_config_due", "is_enabled", "next_refresh_at"),
        Index("idx_refresh_config_priority", priority.desc()),
    )

    @property
    def identity(self) -> str:
        return f"{self.table_schema}.{self.table_name}"

    def __repr__(self) -> str:
        return f"<RefreshConfig {self.identity} p={self.priority}>"


class RefreshDependency(Base):
    """Edge of the dependency DAG: ``dependent`` should refresh after ``parent``."""

    __tablename__ = "refresh_dependencies"

    id: Mapped[int] = mapped_column(primary_key=True)
    parent_config_id: Mapped[int] = mapped_column(
        ForeignKey("refresh_config.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dependent_config_id: Mapped[int] = mapped_column(
        ForeignKey("refresh_config.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dependency_type: Mapped[str] = mapped_column(String(10), default="hard", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("parent_config_id", "dependent_config_id", name="uq_refresh_dependency"),
        CheckConstraint("dependency_type IN ('hard', 'soft')", name="ck_dependency_type"),
    )

    def __repr__(self) -> str:
        return f"<RefreshDependency {self.parent_config_id} -> {self.dependent_config_id}>"
