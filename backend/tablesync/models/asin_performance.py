"""AsinPerformanceData model: product catalogue rows synced from the warehouse."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from tablesync.database import Base


class AsinPerformanceData(Base):
    """
    One product (ASIN) observed in one reporting period.

    Natural key: (start_date, end_date, asin).
    """

    __tablename__ = "asin_performance_data"

    id: Mapped[int] = mapped_column(primary_key=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    asin: Mapped[str] = mapped_column(String(20), nullable=False)

    product_name: Mapped[str | None] = mapped_column(String(500))
    brand: Mapped[str | None] = mapped_column(String(200))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("start_date", "end_date", "asin", name="uq_asin_performance_period"),
        Index("idx_asin_performance_start", start_date.desc()),
    )

    def __repr__(self) -> str:
        return f"<AsinPerformanceData {self.asin} {self.start_date}..{self.end_date}>"
