"""SearchQueryPerformance model: per-query funnel metrics synced from the warehouse."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from tablesync.database import Base


class SearchQueryPerformance(Base):
    """
    Funnel metrics for one search query against one ASIN in one period.

    Natural key: (start_date, end_date, asin, search_query).
    """

    __tablename__ = "search_query_performance"

    id: Mapped[int] = mapped_column(primary_key=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    asin: Mapped[str] = mapped_column(String(20), nullable=False)
    search_query: Mapped[str] = mapped_column(String(500), nullable=False)

    # Funnel
    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cart_adds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Performance
    ctr_percentage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    cvr_percentage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    cpc_dollars: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    spend_dollars: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_sales_dollars: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Share of voice
    search_impression_share_percentage: Mapped[float | None] = mapped_column(Float)
    search_impression_rank_avg: Mapped[float | None] = mapped_column(Float)
    click_share_percentage: Mapped[float | None] = mapped_column(Float)
    click_rank_avg: Mapped[float | None] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "start_date", "end_date", "asin", "search_query", name="uq_search_query_period"
        ),
        Index("idx_search_query_start", start_date.desc(), asin),
    )

    def __repr__(self) -> str:
        return f"<SearchQueryPerformance {self.asin} '{self.search_query}' {self.start_date}>"
