"""Refresh infrastructure and destination tables.

Revision ID: 1f7a2c9e4b30
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "1f7a2c9e4b30"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "refresh_config",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("table_schema", sa.String(length=100), nullable=False),
        sa.Column("table_name", sa.String(length=200), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "refresh_frequency_hours", sa.Integer(), server_default=sa.text("24"), nullable=False
        ),
        sa.Column("priority", sa.Integer(), server_default=sa.text("100"), nullable=False),
        sa.Column("last_refresh_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_refresh_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "custom_sync_params", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False
        ),
        sa.Column("dependencies", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("table_schema", "table_name", name="uq_refresh_config_target"),
        if_not_exists=True,
    )

    op.create_table(
        "refresh_dependencies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "parent_config_id",
            sa.Integer(),
            sa.ForeignKey("refresh_config.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "dependent_config_id",
            sa.Integer(),
            sa.ForeignKey("refresh_config.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "dependency_type", sa.String(length=10), server_default="hard", nullable=False
        ),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "parent_config_id", "dependent_config_id", name="uq_refresh_dependency"
        ),
        sa.CheckConstraint("dependency_type IN ('hard', 'soft')", name="ck_dependency_type"),
        if_not_exists=True,
    )

    op.create_table(
        "refresh_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "refresh_config_id",
            sa.Integer(),
            sa.ForeignKey("refresh_config.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("table_schema", sa.String(length=100), nullable=False),
        sa.Column("table_name", sa.String(length=200), nullable=False),
        sa.Column("refresh_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("rows_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", JSONB(), nullable=True),
        sa.Column(
            "sync_metadata", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False
        ),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed')", name="ck_audit_log_status"
        ),
        if_not_exists=True,
    )

    op.create_table(
        "refresh_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("function_name", sa.String(length=100), nullable=False),
        sa.Column("table_schema", sa.String(length=100), nullable=False),
        sa.Column("table_name", sa.String(length=200), nullable=False),
        sa.Column("checkpoint_data", JSONB(), nullable=False),
        sa.Column("last_processed_row", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        *_timestamps(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'expired')", name="ck_checkpoint_status"
        ),
        if_not_exists=True,
    )

    op.create_table(
        "asin_performance_data",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("asin", sa.String(length=20), nullable=False),
        sa.Column("product_name", sa.String(length=500), nullable=True),
        sa.Column("brand", sa.String(length=200), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("start_date", "end_date", "asin", name="uq_asin_performance_period"),
        if_not_exists=True,
    )

    op.create_table(
        "search_query_performance",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("asin", sa.String(length=20), nullable=False),
        sa.Column("search_query", sa.String(length=500), nullable=False),
        sa.Column("impressions", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("clicks", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cart_adds", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("purchases", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("ctr_percentage", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("cvr_percentage", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("cpc_dollars", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("spend_dollars", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_sales_dollars", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_units", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("search_impression_share_percentage", sa.Float(), nullable=True),
        sa.Column("search_impression_rank_avg", sa.Float(), nullable=True),
        sa.Column("click_share_percentage", sa.Float(), nullable=True),
        sa.Column("click_rank_avg", sa.Float(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "start_date", "end_date", "asin", "search_query", name="uq_search_query_period"
        ),
        if_not_exists=True,
    )

    # Indexes - registry and audit log
    op.create_index(
        "idx_refresh_config_due",
        "refresh_config",
        ["is_enabled", "next_refresh_at"],
        if_not_exists=True,
    )
    op.create_index(
        "idx_refresh_config_priority",
        "refresh_config",
        [sa.text("priority DESC")],
        if_not_exists=True,
    )
    op.create_index(
        "ix_refresh_dependencies_parent_config_id",
        "refresh_dependencies",
        ["parent_config_id"],
        if_not_exists=True,
    )
    op.create_index(
        "ix_refresh_dependencies_dependent_config_id",
        "refresh_dependencies",
        ["dependent_config_id"],
        if_not_exists=True,
    )
    op.create_index(
        "idx_audit_log_status_time",
        "refresh_audit_log",
        ["status", sa.text("refresh_started_at DESC")],
        if_not_exists=True,
    )
    op.create_index(
        "idx_audit_log_config_id",
        "refresh_audit_log",
        ["refresh_config_id", sa.text("refresh_started_at DESC")],
        if_not_exists=True,
    )

    # Indexes - checkpoints (at most one active row per worker and target)
    op.create_index(
        "idx_checkpoints_unique_active",
        "refresh_checkpoints",
        ["function_name", "table_schema", "table_name", "status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        if_not_exists=True,
    )
    op.create_index(
        "idx_checkpoints_expires",
        "refresh_checkpoints",
        ["expires_at"],
        if_not_exists=True,
    )

    # Indexes - destination tables
    op.create_index(
        "idx_asin_performance_start",
        "asin_performance_data",
        [sa.text("start_date DESC")],
        if_not_exists=True,
    )
    op.create_index(
        "idx_search_query_start",
        "search_query_performance",
        [sa.text("start_date DESC"), "asin"],
        if_not_exists=True,
    )


def downgrade() -> None:
    op.drop_index("idx_search_query_start", table_name="search_query_performance", if_exists=True)
    op.drop_index("idx_asin_performance_start", table_name="asin_performance_data", if_exists=True)
    op.drop_index("idx_checkpoints_expires", table_name="refresh_checkpoints", if_exists=True)
    op.drop_index(
        "idx_checkpoints_unique_active", table_name="refresh_checkpoints", if_exists=True
    )
    op.drop_index("idx_audit_log_config_id", table_name="refresh_audit_log", if_exists=True)
    op.drop_index("idx_audit_log_status_time", table_name="refresh_audit_log", if_exists=True)
    op.drop_index(
        "ix_refresh_dependencies_dependent_config_id",
        table_name="refresh_dependencies",
        if_exists=True,
    )
    op.drop_index(
        "ix_refresh_dependencies_parent_config_id",
        table_name="refresh_dependencies",
        if_exists=True,
    )
    op.drop_index("idx_refresh_config_priority", table_name="refresh_config", if_exists=True)
    op.drop_index("idx_refresh_config_due", table_name="refresh_config", if_exists=True)

    op.drop_table("search_query_performance", if_exists=True)
    op.drop_table("asin_performance_data", if_exists=True)
    op.drop_table("refresh_checkpoints", if_exists=True)
    op.drop_table("refresh_audit_log", if_exists=True)
    op.drop_table("refresh_dependencies", if_exists=True)
    op.drop_table("refresh_config", if_exists=True)
