"""Tests for the rate-limited, retrying transport."""

import asyncio
import json

import httpx
import pytest

from notion_lite.errors import CliError, ErrorCode, StatusClass, UpstreamError
from notion_lite.transport import (
    MAX_ATTEMPTS,
    NOTION_API_BASE,
    NOTION_VERSION,
    NotionTransport,
    RateLimiter,
    compute_retry_delay,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_transport(handler, sleeps: list[float]) -> NotionTransport:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=NOTION_API_BASE)
    return NotionTransport(
        "secret-token",
        client=client,
        limiter=RateLimiter(min_interval=0),
        sleep=fake_sleep,
    )


def scripted(*responses):
    """Handler returning the given httpx.Responses in order, recording requests."""
    queue = list(responses)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return queue.pop(0)

    return handler, requests


class TestComputeRetryDelay:
    """Tests for compute_retry_delay."""

    def test_retry_after_takes_precedence(self):
        assert compute_retry_delay(3, retry_after=7.0) == 7.0

    def test_exponential_backoff_with_jitter(self):
        for attempt, base in ((1, 0.5), (2, 1.0), (3, 2.0), (4, 4.0)):
            delay = compute_retry_delay(attempt)
            assert base <= delay <= base + 0.2


class TestRateLimiter:
    """Tests for the single-lane rate limiter."""

    def test_spaces_call_starts_by_min_interval(self):
        clock = FakeClock()
        limiter = RateLimiter(min_interval=0.35, clock=clock, sleep=clock.sleep)
        starts = []

        async def task():
            starts.append(clock.now)
            return len(starts)

        async def run():
            return [await limiter.schedule(task) for _ in range(3)]

        assert asyncio.run(run()) == [1, 2, 3]
        assert starts == pytest.approx([0.0, 0.35, 0.70])

    def test_runs_one_task_at_a_time(self):
        limiter = RateLimiter(min_interval=0)
        active = 0
        peak = 0

        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1

        async def run():
            await asyncio.gather(*(limiter.schedule(task) for _ in range(5)))

        asyncio.run(run())
        assert peak == 1


class TestNotionTransport:
    """Tests for NotionTransport request handling and retries."""

    def test_sends_auth_and_version_headers(self):
        handler, requests = scripted(httpx.Response(200, json={"object": "page", "id": "p1"}))
        transport = make_transport(handler, [])

        page = asyncio.run(transport.retrieve_page("p1"))

        assert page["id"] == "p1"
        assert requests[0].headers["Authorization"] == "Bearer secret-token"
        assert requests[0].headers["Notion-Version"] == NOTION_VERSION
        assert requests[0].url.path == "/v1/pages/p1"

    def test_missing_token_is_auth_error(self):
        with pytest.raises(CliError) as exc:
            NotionTransport("")
        assert exc.value.code is ErrorCode.AUTH_OR_CONFIG

    def test_retries_429_honoring_retry_after(self):
        sleeps: list[float] = []
        handler, requests = scripted(
            httpx.Response(429, headers={"Retry-After": "2"}, json={"code": "rate_limited"}),
            httpx.Response(200, json={"results": [], "has_more": False}),
        )
        transport = make_transport(handler, sleeps)

        result = asyncio.run(transport.search({"query": "x"}))

        assert result["has_more"] is False
        assert len(requests) == 2
        assert sleeps == [2.0]

    def test_retries_unavailable_5xx(self):
        sleeps: list[float] = []
        handler, requests = scripted(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"object": "page", "id": "p1"}),
        )
        transport = make_transport(handler, sleeps)

        asyncio.run(transport.retrieve_page("p1"))

        assert len(requests) == 3
        assert len(sleeps) == 2

    def test_does_not_retry_400(self):
        sleeps: list[float] = []
        handler, requests = scripted(
            httpx.Response(400, json={"code": "validation_error", "message": "bad body"}),
        )
        transport = make_transport(handler, sleeps)

        with pytest.raises(UpstreamError) as exc:
            asyncio.run(transport.create_page({}))

        assert len(requests) == 1
        assert sleeps == []
        assert exc.value.status_class is StatusClass.CLIENT_ERROR
        assert exc.value.code == "validation_error"
        assert exc.value.message == "bad body"

    def test_does_not_retry_500(self):
        handler, requests = scripted(httpx.Response(500, text="boom"))
        transport = make_transport(handler, [])

        with pytest.raises(UpstreamError) as exc:
            asyncio.run(transport.retrieve_page("p1"))

        assert len(requests) == 1
        assert exc.value.status_class is StatusClass.SERVER_ERROR

    def test_conflict_propagates_tagged(self):
        handler, _ = scripted(httpx.Response(409, json={"code": "conflict_error"}))
        transport = make_transport(handler, [])

        with pytest.raises(UpstreamError) as exc:
            asyncio.run(transport.update_page("p1", {"properties": {}}))

        assert exc.value.status_class is StatusClass.CONFLICT

    def test_exhausted_retries_raise_retryable_upstream(self):
        sleeps: list[float] = []
        handler, requests = scripted(*[httpx.Response(429) for _ in range(MAX_ATTEMPTS)])
        transport = make_transport(handler, sleeps)

        with pytest.raises(CliError) as exc:
            asyncio.run(transport.search({"query": "x"}))

        assert exc.value.code is ErrorCode.RETRYABLE_UPSTREAM
        assert exc.value.retryable is True
        assert exc.value.details["status"] == 429
        assert len(requests) == MAX_ATTEMPTS
        assert len(sleeps) == MAX_ATTEMPTS - 1

    def test_list_block_children_sends_query_params(self):
        handler, requests = scripted(httpx.Response(200, json={"results": [], "has_more": False}))
        transport = make_transport(handler, [])

        asyncio.run(transport.list_block_children("b1", start_cursor="c2", page_size=50))

        params = requests[0].url.params
        assert requests[0].method == "GET"
        assert params["start_cursor"] == "c2"
        assert params["page_size"] == "50"

    def test_append_sends_position(self):
        handler, requests = scripted(httpx.Response(200, json={"results": [{"id": "n1"}]}))
        transport = make_transport(handler, [])
        position = {"type": "after_block", "after_block": {"id": "b7"}}

        asyncio.run(transport.append_block_children("p1", [{"type": "divider"}], position))

        body = json.loads(requests[0].content)
        assert requests[0].method == "PATCH"
        assert body == {"children": [{"type": "divider"}], "position": position}
