"""Pytest fixtures for tablesync tests."""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tablesync.config import Settings
from tablesync.database import Base, get_db
from tablesync.exceptions import DispatchError
from tablesync.main import app
from tablesync.models import RefreshAuditLog, RefreshConfig
from tablesync.runtime import RefreshRuntime, get_runtime
from tablesync.schemas import RefreshConfigPayload, WorkerMessage
from tablesync.services.audit_log import AuditLogRepository


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds


class StubSource:
    """
    In-memory warehouse.

    Serves ``rows`` (or the rows of the first ``routes`` key found in the
    query text) by limit/offset and records every call. ``on_fetch`` runs
    before each fetch with the call number and params; it may advance a
    clock or raise.
    """

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        routes: dict[str, list[dict[str, Any]]] | None = None,
        on_fetch: Callable[[int, str, dict[str, Any]], None] | None = None,
    ):
        self.rows = rows or []
        self.routes = routes or {}
        self.on_fetch = on_fetch
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _rows_for(self, query: str) -> list[dict[str, Any]]:
        for marker, rows in self.routes.items():
            if marker in query:
                return rows
        return self.rows

    async def run_query(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        params = params or {}
        self.calls.append((query, params))
        if self.on_fetch:
            self.on_fetch(len(self.calls), query, params)

        rows = self._rows_for(query)
        offset = params.get("offset", 0)
        limit = params.get("limit", len(rows))
        return rows[offset : offset + limit]

    @property
    def offsets(self) -> list[int]:
        return [params["offset"] for _, params in self.calls]


class RecordingDispatcher:
    """Dispatcher that records invocations instead of running workers."""

    name = "recording"

    def __init__(self, fail_for: set[str] | None = None):
        self.invocations: list[tuple[str, dict[str, Any]]] = []
        self.fail_for = fail_for or set()

    async def invoke(self, worker_name: str, payload: dict[str, Any]) -> None:
        if payload["config"]["table_name"] in self.fail_for:
            raise DispatchError(f"Could not reach worker {worker_name}")
        self.invocations.append((worker_name, payload))


def make_asin_rows(count: int, start: date = date(2024, 1, 7)) -> list[dict[str, Any]]:
    """Warehouse ASIN records with distinct natural keys."""
    end = start + timedelta(days=6)
    return [
        {
            "start_date": {"value": start.isoformat()},
            "end_date": end.isoformat(),
            "asin": f"B{i:09d}",
            "product_name": f"Product {i}",
            "brand": "Acme",
        }
        for i in range(count)
    ]


def make_search_rows(count: int, start: date = date(2024, 1, 7)) -> list[dict[str, Any]]:
    """Warehouse search query records with distinct natural keys."""
    end = start + timedelta(days=6)
    return [
        {
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "asin": "B000000001",
            "search_query": f"query {i}",
            "impressions": "1,200",
            "clicks": 40,
            "cart_adds": 8,
            "total_orders": 3,
            "ctr_percentage": "3.33%",
            "cvr_percentage": 7.5,
            "cpc_dollars": 0.8,
            "spend_dollars": 32.0,
            "total_sales_dollars": 89.97,
            "total_units": 3,
            "search_impression_share_percentage": None,
            "search_impression_rank_avg": 2.4,
            "click_share_percentage": 12.5,
            "click_rank_avg": None,
        }
        for i in range(count)
    ]


@pytest.fixture
def sample_datetime() -> datetime:
    """Fixed "now" for scheduling tests."""
    return datetime(2024, 1, 18, 10, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock(sample_datetime) -> FakeClock:
    return FakeClock(sample_datetime)


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with safe defaults."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        warehouse_base_url="http://warehouse.test",
        warehouse_token="test_token",
        worker_base_url="http://workers.test",
        worker_time_budget_seconds=300.0,
        worker_safety_margin_seconds=30.0,
        checkpoint_ttl_seconds=3600,
        max_chain_depth=200,
        materialized_views=["search_performance_summary"],
        debug=True,
    )


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions share one database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_config(session_maker, sample_datetime):
    """Factory inserting a RefreshConfig; due one hour ago by default."""

    async def _make(
        table_name: str,
        *,
        table_schema: str = "public",
        priority: int = 100,
        next_refresh_at: datetime | None = sample_datetime - timedelta(hours=1),
        last_refresh_at: datetime | None = None,
        is_enabled: bool = True,
        refresh_frequency_hours: int = 24,
        custom_sync_params: dict[str, Any] | None = None,
    ) -> RefreshConfig:
        async with session_maker() as db:
            config = RefreshConfig(
                table_schema=table_schema,
                table_name=table_name,
                priority=priority,
                next_refresh_at=next_refresh_at,
                last_refresh_at=last_refresh_at,
                is_enabled=is_enabled,
                refresh_frequency_hours=refresh_frequency_hours,
                custom_sync_params=custom_sync_params or {},
                dependencies=[],
            )
            db.add(config)
            await db.commit()
            return config

    return _make


@pytest.fixture
def start_run(session_maker, sample_datetime):
    """Open a running audit entry for a config and build its first worker message."""

    async def _start(config: RefreshConfig) -> WorkerMessage:
        async with session_maker() as db:
            audit_log_id = await AuditLogRepository(db).create(config, sample_datetime)
        return WorkerMessage(
            config=RefreshConfigPayload.model_validate(config),
            audit_log_id=audit_log_id,
        )

    return _start


@pytest.fixture
def fetch_audit(session_maker):
    async def _fetch(audit_log_id: int) -> RefreshAuditLog:
        async with session_maker() as db:
            return await db.get(RefreshAuditLog, audit_log_id)

    return _fetch


@pytest.fixture
def count_rows(session_maker):
    async def _count(model) -> int:
        async with session_maker() as db:
            return (await db.execute(select(func.count()).select_from(model))).scalar()

    return _count


@pytest.fixture
def runtime(session_maker, clock, test_settings) -> RefreshRuntime:
    """Runtime with an in-memory warehouse and a recording dispatcher."""
    return RefreshRuntime(
        session_maker=session_maker,
        source=StubSource(make_asin_rows(3)),
        dispatcher=RecordingDispatcher(),
        clock=clock,
        settings=test_settings,
    )


@pytest_asyncio.fixture
async def client(db_session, runtime) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database and runtime overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = lambda: runtime

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
