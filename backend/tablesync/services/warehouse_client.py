"""Warehouse client for the analytical source with retry logic and token support."""

import asyncio
import logging
from typing import Any, Protocol

import httpx

from tablesync.config import get_settings
from tablesync.exceptions import SourceReadError, describe_source_error

logger = logging.getLogger(__name__)
settings = get_settings()


class WarehouseClient:
    """
    Client for the warehouse's HTTP query endpoint.

    Features:
    - Bearer token authentication
    - Exponential backoff retry on rate limits, server and transport errors
    - Parameterized queries; pagination is driven through limit/offset params

    The endpoint accepts ``{"query": ..., "params": {...}}`` and answers with
    either a JSON list of rows or ``{"rows": [...]}``. Errors are reported as
    ``{"error": {"code": ..., "message": ...}}``.
    """

    def __init__(
        self,
        base_url: str = settings.warehouse_base_url,
        token: str | None = settings.warehouse_token,
        max_retries: int = settings.warehouse_max_retries,
        timeout: float = settings.warehouse_timeout_seconds,
        backoff_seconds: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds

        self.headers: dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    @staticmethod
    def _error_from_body(response: httpx.Response) -> tuple[str | None, str]:
        """Extract (code, message) from an error response body."""
        try:
            body = response.json()
        except ValueError:
            return None, response.text or f"HTTP {response.status_code}"

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("code"), error.get("message") or str(error)
        if isinstance(error, str):
            return None, error
        return None, f"HTTP {response.status_code}"

    async def _request_with_retry(
        self,
        url: str,
        payload: dict[str, Any],
    ) -> Any:
        """Make HTTP request with exponential backoff retry."""
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, headers=self.headers, json=payload)
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                if status == 429:  # Rate limited
                    wait_time = 2**attempt * 10 * self.backoff_seconds
                    logger.warning(f"Rate limited, waiting {wait_time}s before retry")
                    await asyncio.sleep(wait_time)
                elif status >= 500:
                    wait_time = 2**attempt * self.backoff_seconds
                    logger.warning(f"Server error {status}, retry in {wait_time}s")
                    await asyncio.sleep(wait_time)
                else:
                    code, message = self._error_from_body(e.response)
                    raise SourceReadError(
                        describe_source_error(code, f"HTTP error {status}: {message}"),
                        code=code,
                        details={"status": status},
                    ) from e

            except httpx.RequestError as e:
                last_error = e
                wait_time = 2**attempt * self.backoff_seconds
                logger.warning(f"Request error: {e}, retry in {wait_time}s")
                await asyncio.sleep(wait_time)

        raise SourceReadError(f"Failed after {self.max_retries} retries: {last_error}")

    async def run_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Run a parameterized query and return its rows.

        Args:
            query: Query text; parameters are referenced as ``@name``
            params: Parameter values, including ``limit`` and ``offset`` for paging

        Returns:
            List of row dicts, in the order produced by the query
        """
        url = f"{self.base_url}/query"
        payload = {"query": query, "params": params or {}}

        body = await self._request_with_retry(url, payload)

        if isinstance(body, dict):
            if body.get("error"):
                error = body["error"]
                code = error.get("code") if isinstance(error, dict) else None
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise SourceReadError(describe_source_error(code, message), code=code)
            rows = body.get("rows", [])
        else:
            rows = body

        if not isinstance(rows, list):
            raise SourceReadError(f"Unexpected warehouse response: {type(rows).__name__}")

        logger.debug(f"Warehouse returned {len(rows)} rows")
        return rows


class QuerySource(Protocol):
    """Anything that can run a parameterized query against the warehouse."""

    async def run_query(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        ...
