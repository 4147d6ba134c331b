"""Materialized view worker: refresh in place, then report the row count."""

import logging

from tablesync.schemas import WorkerMessage, WorkerResult
from tablesync.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class MaterializedViewWorker(BaseWorker):
    """Single-step refresh of a derived view; no batching or checkpoints."""

    name = "refresh-materialized-view"

    async def run(self, message: WorkerMessage) -> WorkerResult:
        started = self.clock.monotonic()
        config = message.config

        try:
            await self.destination.refresh_materialized_view(config.table_name, config.table_schema)
            row_count = await self.destination.count_rows(config.table_name, config.table_schema)
            await self.audit_log.mark_success(
                message.audit_log_id,
                row_count,
                self.clock.now(),
                execution_time_ms=self.elapsed_ms(started),
                sync_metadata={"worker": self.name, "table_type": "materialized_view"},
            )
        except Exception as e:
            return await self.fail(message, e, 0, started)

        logger.info(f"Refreshed materialized view {config.identity}: {row_count} rows")
        return WorkerResult(
            worker_name=self.name,
            target=config.identity,
            status="completed",
            rows_processed=row_count,
            chain_depth=message.chain_depth,
        )
