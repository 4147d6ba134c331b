"""Summary table worker: rebuild a period rollup in place, then report the row count."""

import logging

from tablesync.schemas import WorkerMessage, WorkerResult
from tablesync.services.summaries import (
    DEFAULT_SUMMARY_SOURCE,
    SUMMARY_KEY,
    build_summary_select,
    summary_period_for,
)
from tablesync.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class SummaryTableWorker(BaseWorker):
    """
    Aggregates synced search query rows into a weekly, monthly, quarterly or
    yearly summary with a single INSERT ... SELECT upsert.

    Runs entirely inside the destination, so there is no batching and no
    checkpoint. Only periods inside the lookback window are rewritten; older
    summary rows are left as they are. The source table can be overridden
    with ``summary_source`` in the target's custom_sync_params.
    """

    name = "refresh-summary-tables"

    async def run(self, message: WorkerMessage) -> WorkerResult:
        started = self.clock.monotonic()
        config = message.config
        params = config.custom_sync_params or {}

        try:
            period = summary_period_for(config.table_name, params)
            now = self.clock.now()
            since = period.window_start(now.date())

            target = await self.destination.reflect_table(config.table_name, config.table_schema)
            source = await self.destination.reflect_table(
                params.get("summary_source") or DEFAULT_SUMMARY_SOURCE, config.table_schema
            )
            query = build_summary_select(source, period, since, self.destination.dialect, now)
            await self.destination.upsert_from_select(target, query, SUMMARY_KEY)

            row_count = await self.destination.count_rows(config.table_name, config.table_schema)
            await self.audit_log.mark_success(
                message.audit_log_id,
                row_count,
                self.clock.now(),
                execution_time_ms=self.elapsed_ms(started),
                sync_metadata={
                    "worker": self.name,
                    "table_type": "summary",
                    "refresh_type": "aggregate",
                    "period": period.unit,
                    "since": since.isoformat(),
                },
            )
        except Exception as e:
            return await self.fail(message, e, 0, started)

        logger.info(
            f"Rebuilt {period.unit} summary {config.identity} since {since}: {row_count} rows"
        )
        return WorkerResult(
            worker_name=self.name,
            target=config.identity,
            status="completed",
            rows_processed=row_count,
            chain_depth=message.chain_depth,
        )
