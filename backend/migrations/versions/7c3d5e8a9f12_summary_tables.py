"""Search query period summaries.

Revision ID: 7c3d5e8a9f12
Revises: 1f7a2c9e4b30
Create Date: 2026-10-17
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c3d5e8a9f12"
down_revision: str | None = "1f7a2c9e4b30"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

SUMMARY_TABLES = ["weekly_summary", "monthly_summary", "quarterly_summary", "yearly_summary"]


def _summary_columns() -> list[sa.Column]:
    totals = [
        ("total_impressions", sa.Integer()),
        ("total_clicks", sa.Integer()),
        ("total_cart_adds", sa.Integer()),
        ("total_purchases", sa.Integer()),
        ("total_spend", sa.Float()),
        ("total_sales", sa.Float()),
        ("total_units", sa.Integer()),
    ]
    averages = [
        "avg_ctr",
        "avg_cvr",
        "avg_cpc",
        "avg_impression_share",
        "avg_click_share",
        "avg_impression_rank",
        "avg_click_rank",
    ]
    return [
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("period_start_date", sa.Date(), nullable=False),
        sa.Column("period_end_date", sa.Date(), nullable=False),
        sa.Column("asin", sa.String(length=20), nullable=False),
        sa.Column("search_query", sa.String(length=500), nullable=False),
        *[
            sa.Column(name, type_, server_default=sa.text("0"), nullable=False)
            for name, type_ in totals
        ],
        *[sa.Column(name, sa.Float(), nullable=True) for name in averages],
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    for table_name in SUMMARY_TABLES:
        op.create_table(
            table_name,
            *_summary_columns(),
            sa.UniqueConstraint(
                "period_start_date",
                "period_end_date",
                "asin",
                "search_query",
                name=f"uq_{table_name}_period",
            ),
            if_not_exists=True,
        )
        op.create_index(
            f"idx_{table_name}_asin",
            table_name,
            ["asin", sa.text("period_start_date DESC")],
            if_not_exists=True,
        )


def downgrade() -> None:
    for table_name in reversed(SUMMARY_TABLES):
        op.drop_index(f"idx_{table_name}_asin", table_name=table_name, if_exists=True)
        op.drop_table(table_name, if_exists=True)
