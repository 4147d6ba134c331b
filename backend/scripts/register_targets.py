#!/usr/bin/env python3
"""
Register the default refresh targets.

Existing targets are left untouched, so the script is safe to re-run.
Usage: register_targets.py [schema]
"""

import asyncio
import sys
from datetime import timedelta

from tablesync.clock import SystemClock
from tablesync.database import async_session_maker
from tablesync.exceptions import RegistryError
from tablesync.services.registry import RefreshRegistry

# (table, priority); rollups refresh after the table they aggregate
DEFAULT_TARGETS = [
    ("asin_performance_data", 90),
    ("search_query_performance", 85),
    ("search_performance_summary", 80),
    ("weekly_summary", 70),
    ("monthly_summary", 65),
    ("quarterly_summary", 60),
    ("yearly_summary", 55),
]
SUMMARY_TABLES = ["weekly_summary", "monthly_summary", "quarterly_summary", "yearly_summary"]
DEFAULT_DEPENDENCIES = [
    ("search_query_performance", "search_performance_summary"),
    *[("search_query_performance", summary) for summary in SUMMARY_TABLES],
]

FIRST_REFRESH_DELAY = timedelta(hours=1)


def log(msg):
    """Print with flush for immediate output."""
    print(msg, flush=True)


async def register_targets(schema: str) -> None:
    now = SystemClock().now()

    async with async_session_maker() as db:
        registry = RefreshRegistry(db)

        for table_name, priority in DEFAULT_TARGETS:
            inserted = await registry.register_target(
                schema,
                table_name,
                now,
                priority=priority,
                first_refresh_at=now + FIRST_REFRESH_DELAY,
            )
            log(f"{schema}.{table_name}: {'registered' if inserted else 'already registered'}")

        for parent_name, dependent_name in DEFAULT_DEPENDENCIES:
            parent = await registry.get_by_name(schema, parent_name)
            dependent = await registry.get_by_name(schema, dependent_name)
            await registry.add_dependency(parent.id, dependent.id)
            log(f"{schema}.{dependent_name} depends on {schema}.{parent_name}")


if __name__ == "__main__":
    schema = sys.argv[1] if len(sys.argv) > 1 else "public"

    try:
        asyncio.run(register_targets(schema))
    except RegistryError as e:
        log(f"Error: {e}")
        sys.exit(1)
