"""Worker dispatch: fire-and-forget invocation of refresh workers."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol, runtime_checkable

import httpx

from tablesync.config import get_settings
from tablesync.exceptions import DispatchError

logger = logging.getLogger(__name__)
settings = get_settings()

WorkerRunner = Callable[[str, dict[str, Any]], Awaitable[Any]]


@runtime_checkable
class WorkerDispatcher(Protocol):
    """
    Protocol for worker dispatch mechanisms.

    ``invoke`` returns once the invocation has been accepted. It never waits
    for the worker to finish, and errors raised inside the worker never reach
    the caller. Failing to start the worker raises DispatchError.
    """

    name: str

    async def invoke(self, worker_name: str, payload: dict[str, Any]) -> None:
        ...


class LocalDispatcher:
    """
    Runs workers as asyncio tasks in the current event loop.

    Used for single-process deployments and tests. Tasks are tracked so that
    shutdown (or a test) can wait for every chain to settle with ``drain``.
    """

    name = "local"

    def __init__(self, runner: WorkerRunner, worker_names: Iterable[str] | None = None):
        self.runner = runner
        self.worker_names = set(worker_names) if worker_names is not None else None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def invoke(self, worker_name: str, payload: dict[str, Any]) -> None:
        if self.worker_names is not None and worker_name not in self.worker_names:
            raise DispatchError(f"Unknown worker: {worker_name}", details={"worker": worker_name})

        task = asyncio.create_task(self._run(worker_name, payload), name=worker_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Dispatched {worker_name} locally")

    async def _run(self, worker_name: str, payload: dict[str, Any]) -> None:
        try:
            await self.runner(worker_name, payload)
        except Exception as e:
            logger.error(f"Worker {worker_name} crashed: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait until no worker task (including continuations) is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class HttpDispatcher:
    """
    Invokes workers through the service's worker endpoint.

    POSTs the payload to ``{base_url}/workers/{worker_name}``; the endpoint
    answers 202 before the worker runs, so the call returns quickly.
    """

    name = "http"

    def __init__(
        self,
        base_url: str = settings.worker_base_url,
        token: str | None = settings.worker_invoke_token,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        self.headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def invoke(self, worker_name: str, payload: dict[str, Any]) -> None:
        url = f"{self.base_url}/workers/{worker_name}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, headers=self.headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DispatchError(
                f"Worker {worker_name} rejected invocation: HTTP {e.response.status_code}",
                details={"worker": worker_name, "status": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            raise DispatchError(
                f"Could not reach worker {worker_name}: {e}",
                details={"worker": worker_name},
            ) from e

        logger.debug(f"Dispatched {worker_name} over HTTP ({response.status_code})")
