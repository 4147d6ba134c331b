"""Wiring of the refresh pipeline's collaborators."""

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablesync.clock import Clock, SystemClock
from tablesync.config import Settings, get_settings
from tablesync.database import async_session_maker
from tablesync.schemas import WorkerMessage, WorkerResult
from tablesync.services.dispatch import HttpDispatcher, LocalDispatcher, WorkerDispatcher
from tablesync.services.orchestrator import RefreshOrchestrator
from tablesync.services.warehouse_client import QuerySource, WarehouseClient
from tablesync.workers.base import BaseWorker
from tablesync.workers.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


class RefreshRuntime:
    """
    Holds the long-lived collaborators of one process.

    Workers and orchestrators are cheap and created per use; each worker
    invocation gets its own database session.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        source: QuerySource | None = None,
        dispatcher: WorkerDispatcher | None = None,
        clock: Clock | None = None,
        handlers: HandlerRegistry | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_maker = session_maker
        self.source = source or WarehouseClient()
        self.clock = clock or SystemClock()
        self.handlers = handlers or HandlerRegistry.default(self.settings)
        self.dispatcher = dispatcher or self._default_dispatcher()

    def _default_dispatcher(self) -> WorkerDispatcher:
        if self.settings.dispatch_mode == "http":
            return HttpDispatcher(
                base_url=self.settings.worker_base_url,
                token=self.settings.worker_invoke_token,
            )
        return LocalDispatcher(self.run_worker, self.handlers.worker_names)

    def orchestrator(self) -> RefreshOrchestrator:
        return RefreshOrchestrator(
            self.session_maker,
            self.dispatcher,
            self.handlers,
            clock=self.clock,
            settings=self.settings,
        )

    def create_worker(self, worker_name: str, db: AsyncSession) -> BaseWorker:
        worker_class = self.handlers.get_worker(worker_name)
        return worker_class(
            db,
            self.source,
            self.dispatcher,
            clock=self.clock,
            settings=self.settings,
        )

    async def run_worker(self, worker_name: str, payload: dict[str, Any]) -> WorkerResult:
        """Run one worker invocation from its wire payload."""
        message = WorkerMessage.model_validate(payload)
        async with self.session_maker() as db:
            worker = self.create_worker(worker_name, db)
            result = await worker.run(message)

        logger.info(
            f"{worker_name} {result.target}: {result.status} "
            f"({result.rows_processed} rows, depth {result.chain_depth})"
        )
        return result

    async def shutdown(self) -> None:
        if isinstance(self.dispatcher, LocalDispatcher):
            await self.dispatcher.drain()


def get_runtime(request: Request) -> RefreshRuntime:
    """Dependency returning the runtime created at application startup."""
    return request.app.state.runtime
