"""Refresh orchestrator: selects due targets and dispatches their workers."""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablesync.clock import Clock, SystemClock, ensure_utc
from tablesync.config import Settings, get_settings
from tablesync.exceptions import RefreshError, RegistryError
from tablesync.models import RefreshConfig
from tablesync.schemas import DispatchOutcome, RefreshConfigPayload, SweepResult, WorkerMessage
from tablesync.services.audit_log import AuditLogRepository
from tablesync.services.checkpoints import CheckpointRepository
from tablesync.services.dispatch import WorkerDispatcher
from tablesync.services.registry import RefreshRegistry
from tablesync.workers.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


class RefreshOrchestrator:
    """
    Drives one sweep of the refresh pipeline.

    Every concurrent step opens its own session from ``session_maker`` so
    that targets never share a transaction. A registry read failure aborts
    the sweep; anything that goes wrong for a single target is recorded in
    that target's audit log entry and does not affect the others.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatcher: WorkerDispatcher,
        handlers: HandlerRegistry,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.dispatcher = dispatcher
        self.handlers = handlers
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    async def select_due_targets(self, now: datetime) -> list[RefreshConfig]:
        async with self.session_maker() as db:
            return await RefreshRegistry(db).select_due_targets(now)

    async def on_worker_success(self, config: RefreshConfig, now: datetime) -> RefreshConfig:
        async with self.session_maker() as db:
            return await RefreshRegistry(db).on_worker_success(config.id, now)

    async def _open_audit(self, config: RefreshConfig, now: datetime) -> int:
        async with self.session_maker() as db:
            return await AuditLogRepository(db).create(config, now)

    async def _fail_audit(self, audit_log_id: int, worker_name: str, error: Exception) -> None:
        if isinstance(error, RefreshError):
            details = error.to_details()
        else:
            details = {"code": "DISPATCH_ERROR", "error": type(error).__name__, "message": str(error)}
        details["worker"] = worker_name

        async with self.session_maker() as db:
            await AuditLogRepository(db).mark_failed(
                audit_log_id, str(error), self.clock.now(), error_details=details
            )

    async def _invoke(self, config: RefreshConfig, audit_log_id: int) -> str:
        """Invoke the target's worker; on failure mark its audit entry failed and re-raise."""
        payload = RefreshConfigPayload.model_validate(config)
        worker_name = self.handlers.worker_name_for(payload)
        message = WorkerMessage(config=payload, audit_log_id=audit_log_id)

        try:
            await self.dispatcher.invoke(worker_name, message.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Dispatch of {worker_name} for {config.identity} failed: {e}")
            await self._fail_audit(audit_log_id, worker_name, e)
            raise

        logger.info(f"Dispatched {worker_name} for {config.identity} (audit log {audit_log_id})")
        return worker_name

    async def dispatch(self, config: RefreshConfig) -> int:
        """
        Start a run of one target.

        Creates the ``running`` audit entry, then invokes the worker without
        waiting for it.

        Returns:
            The audit log id of the new run
        """
        audit_log_id = await self._open_audit(config, self.clock.now())
        await self._invoke(config, audit_log_id)
        return audit_log_id

    async def process_all(self, configs: Sequence[RefreshConfig]) -> list[DispatchOutcome]:
        """
        Dispatch every config concurrently, settling all of them.

        All audit entries are created before any worker is invoked. Outcomes
        are returned in input order.
        """
        if not configs:
            return []

        now = self.clock.now()
        audit_ids = await asyncio.gather(
            *(self._open_audit(config, now) for config in configs),
            return_exceptions=True,
        )

        pending = [
            (index, config, audit_id)
            for index, (config, audit_id) in enumerate(zip(configs, audit_ids))
            if not isinstance(audit_id, BaseException)
        ]
        invoked = await asyncio.gather(
            *(self._invoke(config, audit_id) for _, config, audit_id in pending),
            return_exceptions=True,
        )
        invoke_results = {index: result for (index, _, _), result in zip(pending, invoked)}

        outcomes = []
        for index, (config, audit_id) in enumerate(zip(configs, audit_ids)):
            if isinstance(audit_id, BaseException):
                logger.error(f"Could not open audit entry for {config.identity}: {audit_id}")
                outcomes.append(
                    DispatchOutcome(
                        config_id=config.id,
                        target=config.identity,
                        status="failed",
                        error=str(audit_id),
                    )
                )
                continue

            result = invoke_results[index]
            if isinstance(result, BaseException):
                outcomes.append(
                    DispatchOutcome(
                        config_id=config.id,
                        target=config.identity,
                        audit_log_id=audit_id,
                        status="failed",
                        error=str(result),
                    )
                )
            else:
                outcomes.append(
                    DispatchOutcome(
                        config_id=config.id,
                        target=config.identity,
                        worker_name=result,
                        audit_log_id=audit_id,
                        status="dispatched",
                    )
                )

        failed = sum(1 for outcome in outcomes if outcome.status == "failed")
        logger.info(f"Dispatched {len(outcomes) - failed} of {len(outcomes)} targets")
        return outcomes

    async def reconcile(self, now: datetime) -> list[str]:
        """
        Apply finished successful runs to the registry schedule.

        Returns:
            Identities of the targets whose schedule advanced
        """
        reconciled = []
        async with self.session_maker() as db:
            try:
                pending = await AuditLogRepository(db).unapplied_successes()
            except SQLAlchemyError as e:
                raise RegistryError(f"Could not read audit log: {e}") from e

            registry = RefreshRegistry(db)
            for config, completed_at in pending:
                await registry.on_worker_success(config.id, ensure_utc(completed_at) or now)
                reconciled.append(config.identity)

        if reconciled:
            logger.info(f"Reconciled {len(reconciled)} successful runs")
        return reconciled

    async def _in_flight(
        self,
        audit_log: AuditLogRepository,
        checkpoints: CheckpointRepository,
        config: RefreshConfig,
        now: datetime,
    ) -> bool:
        """
        Whether a run of the target is still going.

        A run is in flight while its audit entry is open and either it started
        within the checkpoint TTL or its chain still holds an unexpired
        checkpoint. Each suspension pushes the checkpoint expiry forward, so a
        chain that outlives the TTL stays in flight until it stops suspending.
        """
        in_flight_after = now - timedelta(seconds=self.settings.checkpoint_ttl_seconds)
        if await audit_log.has_running(config.id, in_flight_after):
            return True
        if not await audit_log.has_running(config.id):
            return False

        worker_name = self.handlers.worker_name_for(RefreshConfigPayload.model_validate(config))
        checkpoint = await checkpoints.get_active(
            worker_name, config.table_schema, config.table_name
        )
        return checkpoint is not None and not checkpoint.is_expired(now)

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """
        One timer tick.

        Expires stale checkpoints, applies finished runs, then dispatches every
        due target that has no run in flight.
        """
        now = now or self.clock.now()
        result = SweepResult(started_at=now)

        async with self.session_maker() as db:
            result.expired_checkpoints = await CheckpointRepository(db).expire_stale(now)

        result.reconciled = await self.reconcile(now)

        due = await self.select_due_targets(now)
        result.due = [config.identity for config in due]

        ready = []
        async with self.session_maker() as db:
            audit_log = AuditLogRepository(db)
            checkpoints = CheckpointRepository(db)
            for config in due:
                if await self._in_flight(audit_log, checkpoints, config, now):
                    result.skipped_in_flight.append(config.identity)
                else:
                    ready.append(config)

        if result.skipped_in_flight:
            logger.info(f"Skipping targets with a run in flight: {result.skipped_in_flight}")

        result.outcomes = await self.process_all(ready)
        logger.info(
            f"Sweep at {now}: {len(due)} due, {result.dispatched} dispatched, "
            f"{len(result.skipped_in_flight)} in flight"
        )
        return result
