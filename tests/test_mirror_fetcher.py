from __future__ import annotations

import asyncio
import gzip

import httpx
import pytest

from forgemirror.mirror.errors import UpstreamTimeout, UpstreamUnavailable
from forgemirror.mirror.fetcher import (
    UPSTREAM_RETRY_COUNTER,
    ResilientFetcher,
    TransformHints,
    is_transient_status,
)
from forgemirror.mirror.policy import DEFAULT_RULES


URL = "https://raw.githubusercontent.com/octocat/Hello-World/main/README.md"


class ScriptedHandler:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, int):
            return httpx.Response(outcome, content=f"status {outcome}".encode())
        return outcome


@pytest.fixture
def sleeps(monkeypatch):
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("forgemirror.mirror.fetcher.asyncio.sleep", fake_sleep)
    return delays


def make_fetcher(handler, **kwargs) -> tuple[httpx.AsyncClient, ResilientFetcher]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return client, ResilientFetcher(client, **kwargs)


@pytest.mark.asyncio
async def test_transient_statuses_are_retried_with_linear_backoff(sleeps):
    handler = ScriptedHandler(503, 502, 200)
    client, fetcher = make_fetcher(handler, max_retries=2, retry_delay=0.5)
    retries_before = UPSTREAM_RETRY_COUNTER.value
    async with client:
        response = await fetcher.fetch(URL)

    assert response.status_code == 200
    assert response.body == b"status 200"
    assert response.attempts == 3
    assert len(handler.calls) == 3
    assert sleeps == [0.5, 1.0]
    assert UPSTREAM_RETRY_COUNTER.value - retries_before == 2


@pytest.mark.asyncio
async def test_client_errors_are_returned_without_retry(sleeps):
    handler = ScriptedHandler(404)
    client, fetcher = make_fetcher(handler, max_retries=2, retry_delay=0.5)
    async with client:
        response = await fetcher.fetch(URL)

    assert response.status_code == 404
    assert response.attempts == 1
    assert len(handler.calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_last_server_error_is_returned_once_attempts_run_out(sleeps):
    handler = ScriptedHandler(503)
    client, fetcher = make_fetcher(handler, max_retries=2, retry_delay=0.1)
    async with client:
        response = await fetcher.fetch(URL)

    assert response.status_code == 503
    assert response.attempts == 3
    assert len(handler.calls) == 3
    assert sleeps == pytest.approx([0.1, 0.2])


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt(sleeps):
    handler = ScriptedHandler(500)
    client, fetcher = make_fetcher(handler, max_retries=0, retry_delay=1.0)
    async with client:
        response = await fetcher.fetch(URL)

    assert fetcher.max_attempts == 1
    assert response.status_code == 500
    assert len(handler.calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_transport_errors_raise_unavailable_after_all_attempts(sleeps):
    handler = ScriptedHandler(httpx.ConnectError("connection refused"))
    client, fetcher = make_fetcher(handler, max_retries=2, retry_delay=0.0)
    async with client:
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await fetcher.fetch(URL)

    assert not isinstance(exc_info.value, UpstreamTimeout)
    assert exc_info.value.status_code == 502
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, httpx.ConnectError)
    assert len(handler.calls) == 3
    assert sleeps == []


@pytest.mark.asyncio
async def test_transport_error_then_success(sleeps):
    handler = ScriptedHandler(httpx.ReadError("reset"), 200)
    client, fetcher = make_fetcher(handler, max_retries=1, retry_delay=0.25)
    async with client:
        response = await fetcher.fetch(URL)

    assert response.status_code == 200
    assert response.attempts == 2
    assert sleeps == [0.25]


@pytest.mark.asyncio
async def test_httpx_timeout_is_reported_as_timeout(sleeps):
    handler = ScriptedHandler(httpx.ReadTimeout("read timed out"))
    client, fetcher = make_fetcher(handler, max_retries=1, retry_delay=0.0)
    async with client:
        with pytest.raises(UpstreamTimeout) as exc_info:
            await fetcher.fetch(URL)

    assert exc_info.value.status_code == 504
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_slow_upstream_hits_attempt_timeout():
    calls = 0

    async def slow(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        await asyncio.sleep(1.0)
        return httpx.Response(200)

    client, fetcher = make_fetcher(slow, max_retries=1, retry_delay=0.0, timeout=0.05)
    async with client:
        with pytest.raises(UpstreamTimeout):
            await fetcher.fetch(URL)
    assert calls == 2


@pytest.mark.asyncio
async def test_non_transport_errors_are_not_retried(sleeps):
    def always_redirect(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": str(request.url.copy_with(path=request.url.path + "x"))})

    client = httpx.AsyncClient(
        transport=httpx.MockTransport(always_redirect),
        follow_redirects=True,
        max_redirects=2,
    )
    fetcher = ResilientFetcher(client, max_retries=2, retry_delay=0.0)
    async with client:
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await fetcher.fetch(URL)

    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value.cause, httpx.TooManyRedirects)


@pytest.mark.asyncio
async def test_redirects_are_followed():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "github.com":
            return httpx.Response(302, headers={"location": URL})
        return httpx.Response(200, content=b"final")

    client, fetcher = make_fetcher(handler)
    async with client:
        response = await fetcher.fetch("https://github.com/octocat/Hello-World/raw/main/README.md")

    assert response.status_code == 200
    assert response.body == b"final"
    assert response.url == URL


@pytest.mark.asyncio
async def test_encoded_body_is_passed_through_untouched():
    payload = b"hello " * 100
    compressed = gzip.compress(payload)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=compressed, headers={"content-encoding": "gzip"})

    client, fetcher = make_fetcher(handler)
    async with client:
        response = await fetcher.fetch(URL)

    assert response.body == compressed
    assert response.headers["content-encoding"] == "gzip"


@pytest.mark.asyncio
async def test_method_and_headers_are_forwarded():
    handler = ScriptedHandler(200)
    client, fetcher = make_fetcher(handler)
    async with client:
        await fetcher.fetch(URL, method="HEAD", headers={"range": "bytes=0-9", "user-agent": "curl/8"})

    request = handler.calls[0]
    assert request.method == "HEAD"
    assert request.headers["range"] == "bytes=0-9"
    assert request.headers["user-agent"] == "curl/8"


def test_is_transient_status():
    assert is_transient_status(500)
    assert is_transient_status(599)
    assert not is_transient_status(404)
    assert not is_transient_status(304)


def test_transform_hints_follow_policy_ttl():
    hints = TransformHints.for_policy(DEFAULT_RULES.versioned)
    attributes = hints.span_attributes()
    assert hints.cache_ttl == 2592000
    assert attributes["forgemirror.hint.cache_ttl"] == 2592000
    assert attributes["forgemirror.hint.cache_ttl.200-299"] == 2592000
    assert attributes["forgemirror.hint.cache_ttl.500-599"] == 0
    assert attributes["forgemirror.hint.polish"] == "lossy"
    assert attributes["forgemirror.hint.resolve_override"] == "1.1.1.1"
