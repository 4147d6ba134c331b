"""Base refresh worker and the checkpointed batch sync loop."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy import MetaData, Table
from sqlalchemy.ext.asyncio import AsyncSession

from tablesync.clock import Clock, SystemClock
from tablesync.config import Settings, get_settings
from tablesync.exceptions import ChainDepthExceeded, RefreshError
from tablesync.schemas import WorkerMessage, WorkerResult
from tablesync.services.audit_log import AuditLogRepository
from tablesync.services.checkpoints import CheckpointRepository
from tablesync.services.destination import Destination
from tablesync.services.dispatch import WorkerDispatcher
from tablesync.services.transforms import normalize_date
from tablesync.services.warehouse_client import QuerySource

logger = logging.getLogger(__name__)

# Start of the sync window for an empty destination
EPOCH = date(1970, 1, 1)


@dataclass
class StartPosition:
    """Where an invocation starts reading the source."""

    offset: int
    since: date
    rows_processed: int = 0
    checkpoint_id: int | None = None


class BaseWorker(ABC):
    """
    A refresh worker handles one invocation for one target.

    Workers own the terminal update of their run's audit log entry. They
    never write the refresh registry; the orchestrator observes success
    through the audit log.
    """

    name: str

    def __init__(
        self,
        db: AsyncSession,
        source: QuerySource,
        dispatcher: WorkerDispatcher,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.source = source
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

        self.destination = Destination(db)
        self.checkpoints = CheckpointRepository(db)
        self.audit_log = AuditLogRepository(db)

    @abstractmethod
    async def run(self, message: WorkerMessage) -> WorkerResult:
        """Process one invocation. Never raises for per-target failures."""

    def elapsed_ms(self, started: float) -> int:
        return int((self.clock.monotonic() - started) * 1000)

    async def fail(
        self,
        message: WorkerMessage,
        error: Exception,
        rows_processed: int,
        started: float,
    ) -> WorkerResult:
        """Mark the run failed with the rows already committed by earlier batches."""
        await self.db.rollback()

        config = message.config
        if isinstance(error, RefreshError):
            details = error.to_details()
        else:
            details = {"code": "UNEXPECTED_ERROR", "error": type(error).__name__, "message": str(error)}
        details["worker"] = self.name
        details["chain_depth"] = message.chain_depth

        logger.error(f"{self.name} failed for {config.identity}: {error}", exc_info=True)
        await self.audit_log.mark_failed(
            message.audit_log_id,
            str(error),
            self.clock.now(),
            rows_processed=rows_processed,
            error_details=details,
            execution_time_ms=self.elapsed_ms(started),
        )
        return WorkerResult(
            worker_name=self.name,
            target=config.identity,
            status="failed",
            rows_processed=rows_processed,
            chain_depth=message.chain_depth,
            error=str(error),
        )


class BatchSyncWorker(BaseWorker):
    """
    Resumable fetch -> transform -> write loop over a warehouse query.

    Each invocation measures its own elapsed time. When a batch finishes past
    the time budget (minus the safety margin) the worker saves a checkpoint,
    dispatches a continuation of itself and returns. A fetch shorter than the
    batch size ends the run.

    Subclasses provide the destination model, the natural key, the source
    query and the record transform.
    """

    batch_size = 500
    natural_key: tuple[str, ...] = ()
    watermark_column = "start_date"
    model: Any = None

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.table: Table | None = None
        self.conflict_keys = list(self.natural_key)

    async def prepare(self, message: WorkerMessage) -> None:
        """Resolve the destination table for the target."""
        table = self.model.__table__
        schema = self.destination.qualify(message.config.table_schema)
        if schema:
            table = table.to_metadata(MetaData(), schema=schema)
        self.table = table

    def source_table(self, message: WorkerMessage) -> str:
        params = message.config.custom_sync_params
        return params.get("source_table") or self.settings.warehouse_source_table

    @abstractmethod
    def build_query(self, message: WorkerMessage) -> str:
        """Source query using @since, @limit and @offset parameters."""

    @abstractmethod
    def transform(self, record: dict[str, Any]) -> dict[str, Any] | None:
        """Map a source record to a destination row; None skips the record."""

    def has_natural_key(self, row: dict[str, Any]) -> bool:
        return all(row.get(key) not in (None, "") for key in self.conflict_keys)

    async def default_start(self) -> date:
        """Destination watermark, or EPOCH when the destination is empty."""
        watermark = await self.destination.max_value(self.table, self.watermark_column)
        return normalize_date(watermark) or EPOCH

    async def resume(self, message: WorkerMessage) -> StartPosition:
        """
        Start position for this invocation.

        An active, unexpired checkpoint supplies the offset and window start.
        Its cumulative row count is carried only when it belongs to the same
        run. An expired checkpoint is marked expired and ignored.
        """
        config = message.config
        now = self.clock.now()

        checkpoint = await self.checkpoints.get_active(
            self.name, config.table_schema, config.table_name
        )
        if checkpoint is not None and checkpoint.is_expired(now):
            logger.warning(
                f"Checkpoint {checkpoint.id} for {config.identity} expired at "
                f"{checkpoint.expires_at}; starting over"
            )
            await self.checkpoints.expire(checkpoint.id, now)
            checkpoint = None

        if checkpoint is None:
            return StartPosition(offset=0, since=await self.default_start())

        data = checkpoint.checkpoint_data or {}
        offset = int(data.get("offset", checkpoint.last_processed_row or 0))
        since = normalize_date(data.get("since")) or await self.default_start()
        rows_processed = 0
        if data.get("audit_log_id") == message.audit_log_id:
            rows_processed = int(data.get("rows_processed", 0))

        logger.info(
            f"Resuming {self.name} for {config.identity} from checkpoint "
            f"{checkpoint.id} at offset {offset}"
        )
        return StartPosition(
            offset=offset,
            since=since,
            rows_processed=rows_processed,
            checkpoint_id=checkpoint.id,
        )

    async def fetch_batch(
        self, message: WorkerMessage, position: StartPosition
    ) -> list[dict[str, Any]]:
        params = {
            "since": position.since.isoformat(),
            "limit": self.batch_size,
            "offset": position.offset,
        }
        return await self.source.run_query(self.build_query(message), params)

    async def write(self, rows: list[dict[str, Any]]) -> int:
        return await self.destination.upsert(
            self.table, rows, self.conflict_keys, updated_at=self.clock.now()
        )

    def over_budget(self, started: float) -> bool:
        budget = self.settings.worker_time_budget_seconds - self.settings.worker_safety_margin_seconds
        return self.clock.monotonic() - started > budget

    async def run(self, message: WorkerMessage) -> WorkerResult:
        started = self.clock.monotonic()
        config = message.config
        rows_processed = 0

        try:
            await self.prepare(message)
            position = await self.resume(message)
            rows_processed = position.rows_processed

            while True:
                records = await self.fetch_batch(message, position)

                if records:
                    batch = [row for row in map(self.transform, records) if row is not None]
                    if len(batch) < len(records):
                        logger.warning(
                            f"Skipped {len(records) - len(batch)} records without a "
                            f"natural key for {config.identity}"
                        )
                    written = await self.write(batch)

                    position.offset += len(records)
                    position.rows_processed += len(records)
                    rows_processed = position.rows_processed
                    logger.info(
                        f"{self.name} {config.identity}: wrote {written} rows "
                        f"(offset {position.offset})"
                    )

                if len(records) < self.batch_size:
                    return await self.finish(message, position, started)

                if self.over_budget(started):
                    return await self.suspend(message, position, started)

        except Exception as e:
            return await self.fail(message, e, rows_processed, started)

    async def finish(
        self, message: WorkerMessage, position: StartPosition, started: float
    ) -> WorkerResult:
        """Complete the run: close the checkpoint and mark the audit entry success."""
        config = message.config
        now = self.clock.now()

        if position.checkpoint_id is not None:
            await self.checkpoints.complete(position.checkpoint_id, now)

        await self.audit_log.mark_success(
            message.audit_log_id,
            position.rows_processed,
            now,
            execution_time_ms=self.elapsed_ms(started),
            sync_metadata={
                "worker": self.name,
                "table_type": "table",
                "chain_depth": message.chain_depth,
            },
        )
        logger.info(
            f"{self.name} completed {config.identity}: {position.rows_processed} rows "
            f"across {message.chain_depth + 1} invocations"
        )
        return WorkerResult(
            worker_name=self.name,
            target=config.identity,
            status="completed",
            rows_processed=position.rows_processed,
            checkpoint_id=position.checkpoint_id,
            chain_depth=message.chain_depth,
        )

    async def suspend(
        self, message: WorkerMessage, position: StartPosition, started: float
    ) -> WorkerResult:
        """Save a checkpoint and hand the rest of the run to a new invocation."""
        config = message.config
        now = self.clock.now()

        checkpoint_id = await self.checkpoints.save(
            self.name,
            config.table_schema,
            config.table_name,
            {
                "offset": position.offset,
                "since": position.since.isoformat(),
                "rows_processed": position.rows_processed,
                "audit_log_id": message.audit_log_id,
            },
            position.offset,
            now,
            timedelta(seconds=self.settings.checkpoint_ttl_seconds),
        )

        next_depth = message.chain_depth + 1
        ceiling = self.settings.max_chain_depth
        if ceiling is not None:
            if next_depth > ceiling:
                raise ChainDepthExceeded(
                    f"{config.identity} needs more than {ceiling} invocations",
                    details={"checkpoint_id": checkpoint_id, "offset": position.offset},
                )
            if next_depth > ceiling // 2:
                logger.warning(
                    f"{config.identity} continuation {next_depth} of at most {ceiling}"
                )

        continuation = message.continuation(checkpoint_id)
        await self.dispatcher.invoke(self.name, continuation.model_dump(mode="json"))

        logger.info(
            f"{self.name} suspended {config.identity} at offset {position.offset} "
            f"after {self.elapsed_ms(started)}ms; continuation {next_depth} dispatched"
        )
        return WorkerResult(
            worker_name=self.name,
            target=config.identity,
            status="suspended",
            rows_processed=position.rows_processed,
            checkpoint_id=checkpoint_id,
            chain_depth=message.chain_depth,
        )
