"""Rate-limited, retrying Notion API transport.

Every upstream call made by notion-lite goes through NotionTransport.execute:
a single-lane RateLimiter paces call starts, and transient failures (429 and
upstream-unavailable 5xx) are retried with exponential backoff plus jitter.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import CliError, ErrorCode, UpstreamError

logger = logging.getLogger("notion-lite")

T = TypeVar("T")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"

# Retry configuration
MAX_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.5  # seconds, doubled each attempt
RETRY_JITTER_MAX = 0.2  # max random jitter to add (seconds)

# Notion allows ~3 requests/sec per integration
MIN_REQUEST_INTERVAL = 0.35  # seconds between call starts

# Notion's page_size cap for list endpoints
MAX_PAGE_SIZE = 100


def compute_retry_delay(attempt: int, retry_after: Optional[float] = None) -> float:
    """Compute the wait before the next attempt.

    Args:
        attempt: Attempt number that just failed (1-indexed).
        retry_after: Retry-After value from the server, in seconds.

    Returns:
        The server's Retry-After when given, otherwise exponential backoff
        with random jitter to prevent thundering herd.
    """
    if retry_after is not None:
        return retry_after
    base_delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


class RateLimiter:
    """Single-lane scheduler enforcing a minimum interval between call starts.

    Tasks run one at a time in arrival order; each starts no sooner than
    min_interval after the previous one started.
    """

    def __init__(
        self,
        min_interval: float = MIN_REQUEST_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lane = asyncio.Lock()
        self._last_start: Optional[float] = None

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self._lane:
            if self._last_start is not None:
                wait = self.min_interval - (self._clock() - self._last_start)
                if wait > 0:
                    await self._sleep(wait)
            self._last_start = self._clock()
            return await task()


class NotionTransport:
    """The sole network boundary to the Notion API."""

    def __init__(
        self,
        token: str,
        timeout: float = 30.0,
        *,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not token:
            raise CliError(
                ErrorCode.AUTH_OR_CONFIG,
                "Notion API token is missing. Set the configured token environment "
                "variable or pass --token-file.",
            )
        headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        if client is None:
            client = httpx.AsyncClient(base_url=NOTION_API_BASE, timeout=timeout)
        client.headers.update(headers)
        self._client = client
        self._limiter = limiter or RateLimiter()
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "NotionTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Retry loop
    # -------------------------------------------------------------------------

    async def execute(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn through the rate limiter, retrying transient failures.

        Non-transient UpstreamErrors (and any other exception) propagate
        unmodified. Running out of attempts raises a retryable CliError.
        """
        last_error: Optional[UpstreamError] = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return await self._limiter.schedule(fn)
            except UpstreamError as e:
                if not e.is_transient:
                    raise
                last_error = e
                if attempt >= MAX_ATTEMPTS:
                    break
                delay = compute_retry_delay(attempt, e.retry_after)
                logger.warning(
                    f"{operation}: HTTP {e.status}, waiting {delay:.1f}s "
                    f"(attempt {attempt}/{MAX_ATTEMPTS})"
                )
                await self._sleep(delay)

        raise CliError(
            ErrorCode.RETRYABLE_UPSTREAM,
            f"Failed operation {operation} after {MAX_ATTEMPTS} attempts.",
            retryable=True,
            details=last_error.to_details() if last_error else None,
        )

    async def _send(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        if method in ("POST", "PATCH"):
            response = await self._client.request(
                method, endpoint, json=json_body or {}, params=params
            )
        elif method in ("GET", "DELETE"):
            response = await self._client.request(method, endpoint, params=params)
        else:
            raise ValueError(f"Unsupported method: {method}")

        if response.status_code >= 400:
            raise UpstreamError.from_response(response)
        return response.json()

    async def request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        return await self.execute(
            operation, lambda: self._send(method, endpoint, json_body, params)
        )

    # -------------------------------------------------------------------------
    # Notion operations
    # -------------------------------------------------------------------------

    async def retrieve_page(self, page_id: str) -> dict:
        return await self.request("pages.retrieve", "GET", f"/pages/{page_id}")

    async def create_page(self, body: dict) -> dict:
        return await self.request("pages.create", "POST", "/pages", json_body=body)

    async def update_page(self, page_id: str, body: dict) -> dict:
        return await self.request("pages.update", "PATCH", f"/pages/{page_id}", json_body=body)

    async def retrieve_data_source(self, data_source_id: str) -> dict:
        return await self.request(
            "data_sources.retrieve", "GET", f"/data_sources/{data_source_id}"
        )

    async def query_data_source(self, data_source_id: str, body: dict) -> dict:
        return await self.request(
            "data_sources.query",
            "POST",
            f"/data_sources/{data_source_id}/query",
            json_body=body,
        )

    async def retrieve_block(self, block_id: str) -> dict:
        return await self.request("blocks.retrieve", "GET", f"/blocks/{block_id}")

    async def delete_block(self, block_id: str) -> dict:
        return await self.request("blocks.delete", "DELETE", f"/blocks/{block_id}")

    async def list_block_children(
        self,
        block_id: str,
        start_cursor: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> dict:
        params: dict = {"page_size": page_size}
        if start_cursor:
            params["start_cursor"] = start_cursor
        return await self.request(
            "blocks.children.list", "GET", f"/blocks/{block_id}/children", params=params
        )

    async def append_block_children(
        self,
        block_id: str,
        children: list[dict],
        position: Optional[dict] = None,
    ) -> dict:
        body: dict = {"children": children}
        if position:
            body["position"] = position
        return await self.request(
            "blocks.children.append",
            "PATCH",
            f"/blocks/{block_id}/children",
            json_body=body,
        )

    async def search(self, body: dict) -> dict:
        return await self.request("search", "POST", "/search", json_body=body)

    async def retrieve_me(self) -> dict:
        return await self.request("users.me", "GET", "/users/me")
