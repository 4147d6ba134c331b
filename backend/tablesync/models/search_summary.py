"""Period rollups of search query performance, rebuilt in place from the synced rows."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from tablesync.database import Base


class SearchSummaryMixin:
    """
    Columns shared by every summary period.

    Natural key: (period_start_date, period_end_date, asin, search_query).
    """

    id: Mapped[int] = mapped_column(primary_key=True)
    period_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    asin: Mapped[str] = mapped_column(String(20), nullable=False)
    search_query: Mapped[str] = mapped_column(String(500), nullable=False)

    total_impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cart_adds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_purchases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_spend: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_sales: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    avg_ctr: Mapped[float | None] = mapped_column(Float)
    avg_cvr: Mapped[float | None] = mapped_column(Float)
    avg_cpc: Mapped[float | None] = mapped_column(Float)
    avg_impression_share: Mapped[float | None] = mapped_column(Float)
    avg_click_share: Mapped[float | None] = mapped_column(Float)
    avg_impression_rank: Mapped[float | None] = mapped_column(Float)
    avg_click_rank: Mapped[float | None] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint(
                "period_start_date",
                "period_end_date",
                "asin",
                "search_query",
                name=f"uq_{cls.__tablename__}_period",
            ),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.asin} '{self.search_query}' {self.period_start_date}>"


class WeeklySummary(SearchSummaryMixin, Base):
    __tablename__ = "weekly_summary"


class MonthlySummary(SearchSummaryMixin, Base):
    __tablename__ = "monthly_summary"


class QuarterlySummary(SearchSummaryMixin, Base):
    __tablename__ = "quarterly_summary"


class YearlySummary(SearchSummaryMixin, Base):
    __tablename__ = "yearly_summary"
