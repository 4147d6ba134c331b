"""Period rollups of search query performance: bucket boundaries and the aggregate query."""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import (
    Date,
    DateTime,
    Integer,
    Select,
    Table,
    cast,
    func,
    literal,
    literal_column,
    select,
)
from sqlalchemy.sql.elements import ColumnElement

from tablesync.exceptions import RefreshError

DEFAULT_SUMMARY_SOURCE = "search_query_performance"
SUMMARY_KEY = ("period_start_date", "period_end_date", "asin", "search_query")

# Period length as (postgres interval, sqlite date modifier)
PERIOD_LENGTHS = {
    "week": ("7 days", "+7 days"),
    "month": ("1 month", "+1 months"),
    "quarter": ("3 months", "+3 months"),
    "year": ("1 year", "+1 years"),
}


def shift_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping to the end of shorter months."""
    index = day.year * 12 + day.month - 1 + months
    year, month = divmod(index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


@dataclass(frozen=True)
class SummaryPeriod:
    """A rollup granularity and how far back each rebuild reaches."""

    unit: str
    lookback_weeks: int = 0
    lookback_months: int = 0

    def window_start(self, today: date) -> date:
        if self.lookback_weeks:
            return today - timedelta(weeks=self.lookback_weeks)
        return shift_months(today, -self.lookback_months)


SUMMARY_PERIODS: dict[str, SummaryPeriod] = {
    "weekly_summary": SummaryPeriod("week", lookback_weeks=8),
    "monthly_summary": SummaryPeriod("month", lookback_months=6),
    "quarterly_summary": SummaryPeriod("quarter", lookback_months=24),
    "yearly_summary": SummaryPeriod("year", lookback_months=36),
}


def summary_period_for(table_name: str, params: dict[str, Any] | None = None) -> SummaryPeriod:
    """
    Period of a summary target.

    A ``period`` in the target's custom_sync_params overrides the table name
    lookup, with ``lookback_months`` defaulting to a year.

    Raises:
        RefreshError: The target is not a known summary and names no valid period
    """
    params = params or {}
    unit = params.get("period")
    if unit:
        if unit not in PERIOD_LENGTHS:
            raise RefreshError(
                f"Unknown summary period {unit!r} for {table_name}",
                code="INVALID_TARGET",
                details={"period": unit},
            )
        return SummaryPeriod(unit, lookback_months=int(params.get("lookback_months", 12)))
    try:
        return SUMMARY_PERIODS[table_name]
    except KeyError:
        raise RefreshError(
            f"No summary period defined for {table_name}",
            code="INVALID_TARGET",
            details={"table": table_name},
        ) from None


def period_bounds(
    unit: str, column: ColumnElement, dialect: str
) -> tuple[ColumnElement, ColumnElement, ColumnElement]:
    """
    (group key, period start, period end) expressions for a date column.

    Every literal is inlined so the start and end render the grouped
    expression verbatim.
    """
    if unit not in PERIOD_LENGTHS:
        raise ValueError(f"Unknown period: {unit}")
    interval, modifier = PERIOD_LENGTHS[unit]

    if dialect == "postgresql":
        truncated = func.date_trunc(literal_column(f"'{unit}'"), column)
        one_day = literal_column("INTERVAL '1 day'")
        end = truncated + literal_column(f"INTERVAL '{interval}'") - one_day
        return truncated, cast(truncated, Date), cast(end, Date)

    if dialect == "sqlite":
        if unit == "week":
            # Monday on or before the date
            start = func.date(column, literal_column("'-6 days'"), literal_column("'weekday 1'"))
        elif unit == "month":
            start = func.date(column, literal_column("'start of month'"))
        elif unit == "quarter":
            months_in = (
                cast(func.strftime(literal_column("'%m'"), column), Integer) - literal_column("1")
            ) % literal_column("3")
            start = func.date(
                column,
                literal_column("'start of month'"),
                func.printf(literal_column("'-%d months'"), months_in),
            )
        else:
            start = func.date(column, literal_column("'start of year'"))
        end = func.date(start, literal_column(f"'{modifier}'"), literal_column("'-1 day'"))
        return start, start, end

    raise NotImplementedError(f"Summary rollups are not supported on {dialect}")


def build_summary_select(
    source: Table,
    period: SummaryPeriod,
    since: date,
    dialect: str,
    updated_at: datetime,
) -> Select:
    """Aggregate of the source rows since ``since``, one row per (period, asin, search_query)."""
    c = source.c
    group_key, start, end = period_bounds(period.unit, c.start_date, dialect)

    return (
        select(
            start.label("period_start_date"),
            end.label("period_end_date"),
            c.asin,
            c.search_query,
            func.sum(c.impressions).label("total_impressions"),
            func.sum(c.clicks).label("total_clicks"),
            func.sum(c.cart_adds).label("total_cart_adds"),
            func.sum(c.purchases).label("total_purchases"),
            func.sum(c.spend_dollars).label("total_spend"),
            func.sum(c.total_sales_dollars).label("total_sales"),
            func.sum(c.total_units).label("total_units"),
            func.avg(c.ctr_percentage).label("avg_ctr"),
            func.avg(c.cvr_percentage).label("avg_cvr"),
            func.avg(c.cpc_dollars).label("avg_cpc"),
            func.avg(c.search_impression_share_percentage).label("avg_impression_share"),
            func.avg(c.click_share_percentage).label("avg_click_share"),
            func.avg(c.search_impression_rank_avg).label("avg_impression_rank"),
            func.avg(c.click_rank_avg).label("avg_click_rank"),
            literal(updated_at, DateTime(timezone=True)).label("updated_at"),
        )
        .where(c.start_date >= since)
        .group_by(group_key, c.asin, c.search_query)
    )
