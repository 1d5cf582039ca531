"""Upstream fetches with per-attempt timeouts and linear backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .errors import UpstreamTimeout, UpstreamUnavailable
from .policy import CachePolicy


LOGGER = structlog.get_logger("forgemirror.fetcher")
TRACER = trace.get_tracer("forgemirror.fetcher")

UPSTREAM_ATTEMPT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_upstream_attempts_total", "Upstream request attempts"))
UPSTREAM_RETRY_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_upstream_retries_total", "Upstream attempts retried after a transient failure"))
UPSTREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_upstream_failures_total", "Upstream fetches that exhausted every attempt without a response"))


@dataclass(slots=True)
class UpstreamResponse:
    status_code: int
    headers: httpx.Headers
    body: bytes
    url: str
    attempts: int = 1


@dataclass(frozen=True)
class TransformHints:
    """Advisory hints for an edge platform sitting in front of the fetch.

    They are recorded on the fetch span and otherwise ignored.
    """

    cache_ttl: int
    cache_ttl_by_status: Mapping[str, int] = field(default_factory=dict)
    minify: bool = True
    polish: str = "lossy"
    resolve_override: Optional[str] = "1.1.1.1"

    @classmethod
    def for_policy(cls, policy: CachePolicy) -> "TransformHints":
        return cls(
            cache_ttl=policy.edge_ttl,
            cache_ttl_by_status={"200-299": policy.edge_ttl, "404": 60, "500-599": 0},
        )

    def span_attributes(self) -> dict[str, object]:
        attributes: dict[str, object] = {
            "forgemirror.hint.cache_ttl": self.cache_ttl,
            "forgemirror.hint.minify": self.minify,
            "forgemirror.hint.polish": self.polish,
        }
        for status_range, ttl in self.cache_ttl_by_status.items():
            attributes[f"forgemirror.hint.cache_ttl.{status_range}"] = ttl
        if self.resolve_override:
            attributes["forgemirror.hint.resolve_override"] = self.resolve_override
        return attributes


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500


class ResilientFetcher:
    """Fetch from a source host, retrying 5xx replies and transport failures.

    ``max_retries`` extra attempts follow the first one; before attempt ``n``
    (zero-based) the fetcher sleeps ``retry_delay * n``. Anything below 500 is
    returned as soon as it arrives. Once attempts run out the last 5xx reply is
    returned, or :class:`UpstreamTimeout` / :class:`UpstreamUnavailable` is
    raised if the last attempt produced no reply at all.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._max_retries = max(0, max_retries)
        self._retry_delay = max(0.0, retry_delay)
        self._timeout = timeout

    @property
    def max_attempts(self) -> int:
        return self._max_retries + 1

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        hints: Optional[TransformHints] = None,
    ) -> UpstreamResponse:
        attributes: dict[str, object] = {"http.method": method, "forgemirror.upstream_url": url}
        if hints is not None:
            attributes.update(hints.span_attributes())

        with TRACER.start_as_current_span("mirror.upstream_fetch", attributes=attributes) as span:
            last_response: Optional[UpstreamResponse] = None
            last_error: Optional[BaseException] = None
            timed_out = False

            for attempt in range(self.max_attempts):
                UPSTREAM_ATTEMPT_COUNTER.inc()
                try:
                    response = await asyncio.wait_for(
                        self._attempt(method, url, headers or {}),
                        timeout=self._timeout,
                    )
                except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                    last_response, last_error, timed_out = None, exc, True
                    reason = "timeout"
                except httpx.TransportError as exc:
                    last_response, last_error, timed_out = None, exc, False
                    reason = type(exc).__name__
                except httpx.HTTPError as exc:
                    UPSTREAM_FAILURE_COUNTER.inc()
                    LOGGER.warning("upstream_failed", url=url, attempt=attempt + 1, error=str(exc))
                    raise UpstreamUnavailable(url, attempt + 1, exc) from exc
                else:
                    response.attempts = attempt + 1
                    if not is_transient_status(response.status_code):
                        span.set_attribute("forgemirror.attempts", attempt + 1)
                        span.set_attribute("http.status_code", response.status_code)
                        return response
                    last_response, last_error = response, None
                    reason = f"status_{response.status_code}"

                if attempt + 1 >= self.max_attempts:
                    break
                delay = self._retry_delay * (attempt + 1)
                UPSTREAM_RETRY_COUNTER.inc()
                LOGGER.warning(
                    "upstream_retry",
                    url=url,
                    attempt=attempt + 1,
                    reason=reason,
                    retry_in=delay,
                )
                if delay:
                    await asyncio.sleep(delay)

            span.set_attribute("forgemirror.attempts", self.max_attempts)
            if last_response is not None:
                span.set_attribute("http.status_code", last_response.status_code)
                return last_response

            UPSTREAM_FAILURE_COUNTER.inc()
            LOGGER.error(
                "upstream_failed",
                url=url,
                attempts=self.max_attempts,
                timed_out=timed_out,
                error=str(last_error) or type(last_error).__name__,
            )
            if timed_out:
                raise UpstreamTimeout(url, self.max_attempts, last_error) from last_error
            raise UpstreamUnavailable(url, self.max_attempts, last_error) from last_error

    async def _attempt(self, method: str, url: str, headers: Mapping[str, str]) -> UpstreamResponse:
        request = self._client.build_request(method, url, headers=headers)
        response = await self._client.send(request, stream=True)
        try:
            # Raw chunks keep the upstream Content-Encoding intact for the client.
            body = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            body=body,
            url=str(response.url),
        )
