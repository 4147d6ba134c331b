"""Tests for the refresh workers."""

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError

from tablesync.exceptions import SourceReadError, WriteConflictError
from tablesync.models import (
    AsinPerformanceData,
    QuarterlySummary,
    SearchQueryPerformance,
    WeeklySummary,
)
from tablesync.models.refresh_audit_log import STATUS_FAILED, STATUS_RUNNING, STATUS_SUCCESS
from tablesync.models.refresh_checkpoint import (
    CHECKPOINT_ACTIVE,
    CHECKPOINT_COMPLETED,
    CHECKPOINT_EXPIRED,
)
from tablesync.schemas import WorkerMessage
from tablesync.services.checkpoints import CheckpointRepository
from tablesync.workers import (
    AsinPerformanceWorker,
    GenericTableWorker,
    MaterializedViewWorker,
    SearchQueryWorker,
    SummaryTableWorker,
)
from tablesync.workers.base import EPOCH

from conftest import RecordingDispatcher, StubSource, make_asin_rows, make_search_rows


@pytest_asyncio.fixture
async def worker_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_worker(worker_session, clock, test_settings):
    def _make(worker_class, source, dispatcher=None, settings=None):
        return worker_class(
            worker_session,
            source,
            dispatcher or RecordingDispatcher(),
            clock=clock,
            settings=settings or test_settings,
        )

    return _make


@pytest.fixture
def checkpoint_of(session_maker):
    async def _get(checkpoint_id):
        async with session_maker() as db:
            return await CheckpointRepository(db).get(checkpoint_id)

    return _get


class TestBatchLoop:
    """Tests for the fetch/transform/write loop."""

    @pytest.mark.asyncio
    async def test_paginates_until_short_batch(
        self, make_config, start_run, make_worker, fetch_audit, count_rows
    ):
        """2340 records in batches of 1000: offsets 0, 1000, 2000 then done."""
        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(make_asin_rows(2340))
        dispatcher = RecordingDispatcher()

        result = await make_worker(AsinPerformanceWorker, source, dispatcher).run(message)

        assert result.status == "completed"
        assert result.rows_processed == 2340
        assert source.offsets == [0, 1000, 2000]
        assert dispatcher.invocations == []
        assert await count_rows(AsinPerformanceData) == 2340

        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_SUCCESS
        assert entry.rows_processed == 2340
        assert entry.sync_metadata["table_type"] == "table"

    @pytest.mark.asyncio
    async def test_exact_multiple_ends_on_empty_batch(
        self, make_config, start_run, make_worker
    ):
        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(make_asin_rows(2000))

        result = await make_worker(AsinPerformanceWorker, source).run(message)

        assert result.rows_processed == 2000
        assert source.offsets == [0, 1000, 2000]

    @pytest.mark.asyncio
    async def test_query_parameters(self, make_config, start_run, make_worker):
        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(make_asin_rows(3))

        await make_worker(AsinPerformanceWorker, source).run(message)

        query, params = source.calls[0]
        assert "FROM search_query_performance_export" in query
        assert "ORDER BY start_date, end_date, asin" in query
        assert params == {"since": EPOCH.isoformat(), "limit": 1000, "offset": 0}

    @pytest.mark.asyncio
    async def test_window_starts_at_destination_watermark(
        self, make_config, start_run, make_worker
    ):
        config = await make_config("asin_performance_data")
        await make_worker(AsinPerformanceWorker, StubSource(make_asin_rows(2))).run(
            await start_run(config)
        )
        source = StubSource([])

        await make_worker(AsinPerformanceWorker, source).run(await start_run(config))

        assert source.calls[0][1]["since"] == "2024-01-07"

    @pytest.mark.asyncio
    async def test_records_without_natural_key_are_skipped(
        self, make_config, start_run, make_worker, count_rows
    ):
        rows = make_asin_rows(5)
        rows[2]["asin"] = None
        rows[4]["start_date"] = {"value": None}
        message = await start_run(await make_config("asin_performance_data"))

        result = await make_worker(AsinPerformanceWorker, StubSource(rows)).run(message)

        assert result.status == "completed"
        assert result.rows_processed == 5
        assert await count_rows(AsinPerformanceData) == 3

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_config, start_run, make_worker, count_rows):
        config = await make_config("asin_performance_data")
        rows = make_asin_rows(1200)

        await make_worker(AsinPerformanceWorker, StubSource(rows)).run(await start_run(config))
        await make_worker(AsinPerformanceWorker, StubSource(rows)).run(await start_run(config))

        assert await count_rows(AsinPerformanceData) == 1200


class TestSuspension:
    """Tests for time-budget suspension and continuation."""

    @pytest.mark.asyncio
    async def test_suspends_and_continuation_completes(
        self, make_config, start_run, make_worker, clock, fetch_audit, checkpoint_of, count_rows
    ):
        message = await start_run(await make_config("asin_performance_data"))

        def slow_first_fetch(call_no, query, params):
            if call_no == 1:
                clock.advance(280)

        source = StubSource(make_asin_rows(2340), on_fetch=slow_first_fetch)
        dispatcher = RecordingDispatcher()

        first = await make_worker(AsinPerformanceWorker, source, dispatcher).run(message)

        assert first.status == "suspended"
        assert first.rows_processed == 1000
        checkpoint = await checkpoint_of(first.checkpoint_id)
        assert checkpoint.status == CHECKPOINT_ACTIVE
        assert checkpoint.checkpoint_data == {
            "offset": 1000,
            "since": EPOCH.isoformat(),
            "rows_processed": 1000,
            "audit_log_id": message.audit_log_id,
        }

        worker_name, payload = dispatcher.invocations[0]
        assert worker_name == "refresh-asin-performance"
        assert payload["chain_depth"] == 1
        assert payload["checkpoint_id"] == first.checkpoint_id
        assert payload["audit_log_id"] == message.audit_log_id
        assert (await fetch_audit(message.audit_log_id)).status == STATUS_RUNNING

        second = await make_worker(AsinPerformanceWorker, source, dispatcher).run(
            WorkerMessage.model_validate(payload)
        )

        assert second.status == "completed"
        assert second.rows_processed == 2340
        assert source.offsets == [0, 1000, 2000]
        assert len(dispatcher.invocations) == 1
        assert (await checkpoint_of(first.checkpoint_id)).status == CHECKPOINT_COMPLETED
        assert await count_rows(AsinPerformanceData) == 2340

        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_SUCCESS
        assert entry.rows_processed == 2340
        assert entry.sync_metadata["chain_depth"] == 1

    @pytest.mark.asyncio
    async def test_resume_is_repeatable(self, make_config, start_run, make_worker, clock):
        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(
            make_asin_rows(2340), on_fetch=lambda n, q, p: clock.advance(280)
        )
        dispatcher = RecordingDispatcher()
        suspended = await make_worker(AsinPerformanceWorker, source, dispatcher).run(message)
        continuation = WorkerMessage.model_validate(dispatcher.invocations[0][1])

        worker = make_worker(AsinPerformanceWorker, source)
        await worker.prepare(continuation)
        first = await worker.resume(continuation)
        second = await worker.resume(continuation)

        assert first == second
        assert first.offset == 1000
        assert first.rows_processed == 1000
        assert first.checkpoint_id == suspended.checkpoint_id

    @pytest.mark.asyncio
    async def test_expired_checkpoint_is_ignored(
        self, session_maker, make_config, start_run, make_worker, clock, checkpoint_of
    ):
        config = await make_config("asin_performance_data")
        async with session_maker() as db:
            stale_id = await CheckpointRepository(db).save(
                "refresh-asin-performance",
                "public",
                "asin_performance_data",
                {"offset": 1000, "since": EPOCH.isoformat(), "rows_processed": 1000, "audit_log_id": 999},
                1000,
                clock.now() - timedelta(hours=2),
                timedelta(hours=1),
            )
        source = StubSource(make_asin_rows(10))

        result = await make_worker(AsinPerformanceWorker, source).run(await start_run(config))

        assert result.status == "completed"
        assert result.rows_processed == 10
        assert source.offsets == [0]
        assert (await checkpoint_of(stale_id)).status == CHECKPOINT_EXPIRED

    @pytest.mark.asyncio
    async def test_checkpoint_of_an_earlier_run_restarts_the_count(
        self, session_maker, make_config, start_run, make_worker, clock
    ):
        config = await make_config("asin_performance_data")
        async with session_maker() as db:
            await CheckpointRepository(db).save(
                "refresh-asin-performance",
                "public",
                "asin_performance_data",
                {"offset": 1000, "since": EPOCH.isoformat(), "rows_processed": 1000, "audit_log_id": 999},
                1000,
                clock.now(),
                timedelta(hours=1),
            )
        source = StubSource(make_asin_rows(1500))

        result = await make_worker(AsinPerformanceWorker, source).run(await start_run(config))

        assert source.offsets == [1000]
        assert result.rows_processed == 500

    @pytest.mark.asyncio
    async def test_chain_depth_ceiling(
        self, make_config, start_run, make_worker, clock, test_settings, fetch_audit
    ):
        message = await start_run(await make_config("asin_performance_data"))
        message = message.model_copy(update={"chain_depth": 1})
        source = StubSource(make_asin_rows(2340), on_fetch=lambda n, q, p: clock.advance(280))
        dispatcher = RecordingDispatcher()
        settings = test_settings.model_copy(update={"max_chain_depth": 1})

        result = await make_worker(AsinPerformanceWorker, source, dispatcher, settings).run(message)

        assert result.status == "failed"
        assert dispatcher.invocations == []
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.error_details["code"] == "CHAIN_DEPTH_EXCEEDED"
        assert entry.error_details["chain_depth"] == 1


class TestFailures:
    """Tests for failure handling inside a worker run."""

    @pytest.mark.asyncio
    async def test_source_error_keeps_committed_batches(
        self, make_config, start_run, make_worker, fetch_audit, count_rows
    ):
        def fail_second_fetch(call_no, query, params):
            if call_no == 2:
                raise SourceReadError("Warehouse query timeout", code="TIMEOUT")

        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(make_asin_rows(2340), on_fetch=fail_second_fetch)

        result = await make_worker(AsinPerformanceWorker, source).run(message)

        assert result.status == "failed"
        assert result.rows_processed == 1000
        assert await count_rows(AsinPerformanceData) == 1000
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.rows_processed == 1000
        assert entry.error_details["code"] == "TIMEOUT"
        assert entry.error_details["worker"] == "refresh-asin-performance"

    @pytest.mark.asyncio
    async def test_write_failure_in_continuation_leaves_checkpoint_active(
        self, make_config, start_run, make_worker, clock, fetch_audit, checkpoint_of
    ):
        message = await start_run(await make_config("asin_performance_data"))
        source = StubSource(
            make_asin_rows(2340),
            on_fetch=lambda n, q, p: clock.advance(280) if n == 1 else None,
        )
        dispatcher = RecordingDispatcher()
        suspended = await make_worker(AsinPerformanceWorker, source, dispatcher).run(message)

        worker = make_worker(AsinPerformanceWorker, source, dispatcher)
        worker.destination.upsert = AsyncMock(
            side_effect=WriteConflictError("Write to asin_performance_data violated a constraint")
        )
        result = await worker.run(WorkerMessage.model_validate(dispatcher.invocations[0][1]))

        assert result.status == "failed"
        assert result.rows_processed == 1000
        checkpoint = await checkpoint_of(suspended.checkpoint_id)
        assert checkpoint.status == CHECKPOINT_ACTIVE
        assert checkpoint.checkpoint_data["offset"] == 1000
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.rows_processed == 1000
        assert entry.error_details["code"] == "WRITE_CONFLICT"

    @pytest.mark.asyncio
    async def test_terminal_status_is_written_once(
        self, make_config, start_run, make_worker, fetch_audit
    ):
        message = await start_run(await make_config("asin_performance_data"))
        await make_worker(AsinPerformanceWorker, StubSource(make_asin_rows(3))).run(message)

        def late_failure(call_no, query, params):
            raise SourceReadError("late")

        source = StubSource(on_fetch=late_failure)
        await make_worker(AsinPerformanceWorker, source).run(message)

        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_SUCCESS
        assert entry.rows_processed == 3


class TestSearchQueryWorker:
    """Tests for the search query worker."""

    def test_transform(self, worker_session, test_settings):
        worker = SearchQueryWorker(worker_session, StubSource(), RecordingDispatcher(), settings=test_settings)

        row = worker.transform(make_search_rows(1)[0])

        assert row["start_date"].isoformat() == "2024-01-07"
        assert row["search_query"] == "query 0"
        assert row["impressions"] == 1200
        assert row["purchases"] == 3
        assert row["ctr_percentage"] == 3.33
        assert row["search_impression_share_percentage"] is None
        assert row["search_impression_rank_avg"] == 2.4

    def test_transform_falls_back_to_purchases(self, worker_session, test_settings):
        worker = SearchQueryWorker(worker_session, StubSource(), RecordingDispatcher(), settings=test_settings)
        record = make_search_rows(1)[0]
        del record["total_orders"]
        record["purchases"] = "7"

        assert worker.transform(record)["purchases"] == 7

    @pytest.mark.asyncio
    async def test_run(self, make_config, start_run, make_worker, count_rows):
        message = await start_run(await make_config("search_query_performance"))
        source = StubSource(make_search_rows(730))

        result = await make_worker(SearchQueryWorker, source).run(message)

        assert result.rows_processed == 730
        assert source.offsets == [0, 500]
        assert await count_rows(SearchQueryPerformance) == 730


class TestGenericTableWorker:
    """Tests for the reflected, parameter-driven worker."""

    @pytest.mark.asyncio
    async def test_syncs_reflected_columns(self, make_config, start_run, make_worker, count_rows):
        config = await make_config(
            "asin_performance_data",
            custom_sync_params={"target_kind": "generic", "source_table": "asin_export"},
        )
        message = await start_run(config)
        source = StubSource(make_asin_rows(620))

        result = await make_worker(GenericTableWorker, source).run(message)

        assert result.status == "completed"
        assert result.rows_processed == 620
        assert source.offsets == [0, 500]
        query = source.calls[0][0]
        assert query.startswith("SELECT start_date, end_date, asin, product_name, brand ")
        assert "FROM asin_export" in query
        assert await count_rows(AsinPerformanceData) == 620

    @pytest.mark.asyncio
    async def test_unknown_conflict_key_fails_the_run(
        self, make_config, start_run, make_worker, fetch_audit
    ):
        config = await make_config(
            "asin_performance_data", custom_sync_params={"conflict_keys": ["campaign_id"]}
        )
        message = await start_run(config)
        source = StubSource(make_asin_rows(5))

        result = await make_worker(GenericTableWorker, source).run(message)

        assert result.status == "failed"
        assert source.calls == []
        entry = await fetch_audit(message.audit_log_id)
        assert entry.error_details["code"] == "INVALID_TARGET"
        assert entry.error_details["details"] == {"missing": ["campaign_id"]}


class TestMaterializedViewWorker:
    """Tests for the materialized view worker."""

    @pytest.mark.asyncio
    async def test_refresh_reports_row_count(self, make_config, start_run, make_worker, fetch_audit):
        message = await start_run(await make_config("search_performance_summary"))
        worker = make_worker(MaterializedViewWorker, StubSource())
        worker.destination.refresh_materialized_view = AsyncMock()
        worker.destination.count_rows = AsyncMock(return_value=42)

        result = await worker.run(message)

        assert result.status == "completed"
        assert result.rows_processed == 42
        worker.destination.refresh_materialized_view.assert_awaited_once_with(
            "search_performance_summary", "public"
        )
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_SUCCESS
        assert entry.rows_processed == 42
        assert entry.sync_metadata["table_type"] == "materialized_view"

    @pytest.mark.asyncio
    async def test_refresh_failure(self, make_config, start_run, make_worker, fetch_audit):
        message = await start_run(await make_config("search_performance_summary"))
        worker = make_worker(MaterializedViewWorker, StubSource())
        worker.destination.refresh_materialized_view = AsyncMock(
            side_effect=ProgrammingError("REFRESH", {}, Exception("relation does not exist"))
        )

        result = await worker.run(message)

        assert result.status == "failed"
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.rows_processed == 0
        assert entry.error_details["code"] == "UNEXPECTED_ERROR"

    @pytest.mark.asyncio
    async def test_failed_success_write_marks_run_failed(
        self, make_config, start_run, make_worker, fetch_audit
    ):
        message = await start_run(await make_config("search_performance_summary"))
        worker = make_worker(MaterializedViewWorker, StubSource())
        worker.destination.refresh_materialized_view = AsyncMock()
        worker.destination.count_rows = AsyncMock(return_value=42)
        worker.audit_log.mark_success = AsyncMock(
            side_effect=OperationalError("UPDATE", {}, Exception("connection reset"))
        )

        result = await worker.run(message)

        assert result.status == "failed"
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.error_details["error"] == "OperationalError"
        assert entry.error_details["worker"] == "refresh-materialized-view"


@pytest.fixture
def add_search_rows(session_maker):
    """Insert synced search query rows: (start_date, impressions, clicks, ctr_percentage)."""

    async def _add(rows, asin="B0TEST0001", search_query="dog bed"):
        async with session_maker() as db:
            for start, impressions, clicks, ctr in rows:
                db.add(
                    SearchQueryPerformance(
                        start_date=start,
                        end_date=start + timedelta(days=6),
                        asin=asin,
                        search_query=search_query,
                        impressions=impressions,
                        clicks=clicks,
                        ctr_percentage=ctr,
                    )
                )
            await db.commit()

    return _add


@pytest.fixture
def summary_rows(session_maker):
    async def _get(model):
        async with session_maker() as db:
            result = await db.execute(select(model).order_by(model.period_start_date))
            return list(result.scalars())

    return _get


class TestSummaryTableWorker:
    """Tests for the summary table worker."""

    @pytest.mark.asyncio
    async def test_weekly_rollup(
        self, make_config, start_run, make_worker, add_search_rows, summary_rows, fetch_audit
    ):
        await add_search_rows(
            [
                (date(2024, 1, 8), 100, 10, 10.0),
                (date(2024, 1, 10), 50, 5, 20.0),
                (date(2024, 1, 15), 30, 3, 10.0),
                # Outside the eight week window
                (date(2023, 10, 2), 999, 99, 10.0),
            ]
        )
        message = await start_run(await make_config("weekly_summary"))

        result = await make_worker(SummaryTableWorker, StubSource()).run(message)

        assert result.status == "completed"
        assert result.rows_processed == 2
        weeks = await summary_rows(WeeklySummary)
        assert [(w.period_start_date, w.period_end_date) for w in weeks] == [
            (date(2024, 1, 8), date(2024, 1, 14)),
            (date(2024, 1, 15), date(2024, 1, 21)),
        ]
        assert weeks[0].total_impressions == 150
        assert weeks[0].total_clicks == 15
        assert weeks[0].avg_ctr == pytest.approx(15.0)
        assert weeks[1].total_impressions == 30

        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_SUCCESS
        assert entry.rows_processed == 2
        assert entry.sync_metadata["table_type"] == "summary"
        assert entry.sync_metadata["period"] == "week"
        assert entry.sync_metadata["since"] == "2023-11-23"

    @pytest.mark.asyncio
    async def test_rebuild_overwrites_existing_periods(
        self, make_config, start_run, make_worker, add_search_rows, summary_rows
    ):
        config = await make_config("weekly_summary")
        await add_search_rows(
            [(date(2024, 1, 8), 100, 10, 10.0), (date(2024, 1, 15), 30, 3, 10.0)]
        )
        await make_worker(SummaryTableWorker, StubSource()).run(await start_run(config))

        await add_search_rows([(date(2024, 1, 16), 20, 2, 10.0)])
        result = await make_worker(SummaryTableWorker, StubSource()).run(await start_run(config))

        assert result.rows_processed == 2
        weeks = await summary_rows(WeeklySummary)
        assert [w.total_impressions for w in weeks] == [100, 50]

    @pytest.mark.asyncio
    async def test_quarterly_rollup(
        self, make_config, start_run, make_worker, add_search_rows, summary_rows
    ):
        await add_search_rows(
            [
                (date(2023, 2, 20), 10, 1, 10.0),
                (date(2023, 11, 6), 20, 2, 10.0),
                (date(2023, 12, 4), 5, 1, 20.0),
                (date(2024, 1, 8), 40, 4, 10.0),
            ]
        )
        message = await start_run(await make_config("quarterly_summary"))

        result = await make_worker(SummaryTableWorker, StubSource()).run(message)

        assert result.rows_processed == 3
        quarters = await summary_rows(QuarterlySummary)
        assert [(q.period_start_date, q.period_end_date, q.total_impressions) for q in quarters] == [
            (date(2023, 1, 1), date(2023, 3, 31), 10),
            (date(2023, 10, 1), date(2023, 12, 31), 25),
            (date(2024, 1, 1), date(2024, 3, 31), 40),
        ]

    @pytest.mark.asyncio
    async def test_unknown_summary_fails_the_run(
        self, make_config, start_run, make_worker, fetch_audit
    ):
        config = await make_config(
            "daily_summary", custom_sync_params={"target_kind": "summary_table"}
        )
        message = await start_run(config)

        result = await make_worker(SummaryTableWorker, StubSource()).run(message)

        assert result.status == "failed"
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.error_details["code"] == "INVALID_TARGET"
        assert entry.error_details["worker"] == "refresh-summary-tables"

    @pytest.mark.asyncio
    async def test_aggregate_failure(self, make_config, start_run, make_worker, fetch_audit):
        message = await start_run(await make_config("monthly_summary"))
        worker = make_worker(SummaryTableWorker, StubSource())
        worker.destination.upsert_from_select = AsyncMock(
            side_effect=WriteConflictError("Aggregate into monthly_summary violated a constraint")
        )

        result = await worker.run(message)

        assert result.status == "failed"
        assert result.rows_processed == 0
        entry = await fetch_audit(message.audit_log_id)
        assert entry.status == STATUS_FAILED
        assert entry.error_details["code"] == "WRITE_CONFLICT"
