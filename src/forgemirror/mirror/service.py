"""Request orchestration: resolve, look up the store, fetch, rewrite, populate."""

from __future__ import annotations

import time
from typing import Iterable, Optional

import httpx
import structlog
from fastapi import Request, Response, status
from fastapi.responses import PlainTextResponse
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram, LabeledCounter
from ..common.settings import MirrorSettings
from .cache_keys import build_cache_key, cache_version, normalize_validator
from .errors import MethodNotAllowed, PathResolutionError, UpstreamUnavailable
from .fetcher import ResilientFetcher, TransformHints, UpstreamResponse
from .policy import CachePolicy, PolicyRules, classify
from .store import CACHE_READ_ERROR_COUNTER, CachedEntry, CacheWriter, ResponseStore
from .targets import USAGE_MESSAGE, SourceTarget, resolve_target


FORWARDED_REQUEST_HEADERS = (
    "range",
    "if-range",
    "if-none-match",
    "if-modified-since",
    "user-agent",
    "accept",
    "accept-encoding",
)

# RFC 9110 section 7.6.1 connection-specific fields; the ASGI server frames the body itself.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,HEAD,OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

READ_METHODS = frozenset({"GET", "HEAD"})

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("forgemirror_requests_total", "Mirror requests received"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("forgemirror_cache_hits_total", "Responses served from the store"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("forgemirror_cache_misses_total", "Responses fetched from a source host"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("forgemirror_bytes_served_total", "Body bytes returned to clients"))
POLICY_COUNTER = GLOBAL_REGISTRY.register(
    LabeledCounter("forgemirror_policy_requests_total", "policy", "Requests per cache policy"))
REJECTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_rejected_requests_total", "Requests rejected before any upstream traffic"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "forgemirror_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        description="Mirror request latency",
    )
)
TRACER = trace.get_tracer("forgemirror.mirror")


def _elapsed_ms(start: float) -> str:
    return f"{int((time.perf_counter() - start) * 1000)}ms"


def _is_range_request(request: Request) -> bool:
    return bool(request.headers.get("range"))


def request_path(request: Request) -> str:
    """Path as the client sent it, before percent-decoding."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


def forwarded_headers(request: Request) -> dict[str, str]:
    headers = {name: request.headers[name] for name in FORWARDED_REQUEST_HEADERS if request.headers.get(name)}
    # Without this httpx would ask for gzip on the client's behalf and pass the encoded body through.
    headers.setdefault("accept-encoding", "identity")
    return headers


def build_response(status_code: int, headers: Iterable[tuple[str, str]], body: bytes) -> Response:
    response = Response(content=body, status_code=status_code)
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in headers
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]
    if not any(name == b"content-length" for name, _ in raw_headers):
        raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
    response.raw_headers = raw_headers
    return response


class MirrorService:
    """Serves mirror requests against the allow-listed source hosts.

    Reads always use the date-versioned key, while writes use the
    validator-versioned key whenever the policy asks for a validator and the
    source host supplied one. The first request after a validator change is
    therefore a miss; the superseded entry is removed by the store prune once
    it expires.
    """

    def __init__(
        self,
        settings: MirrorSettings,
        store: ResponseStore,
        fetcher: ResilientFetcher,
        writer: Optional[CacheWriter] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.writer = writer or CacheWriter(store)
        self.rules = PolicyRules.from_settings(settings)
        self.logger = structlog.get_logger("forgemirror.mirror").bind(store=store.status().get("backend"))

    def resolve(self, path: str) -> SourceTarget:
        return resolve_target(
            path,
            source_hosts=self.settings.source_hosts,
            primary_host=self.settings.primary_host,
        )

    async def handle(self, request: Request) -> Response:
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            return await self._handle(request, start)
        finally:
            LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

    async def _handle(self, request: Request, start: float) -> Response:
        method = request.method.upper()
        try:
            target = self.resolve(request_path(request))
        except PathResolutionError as exc:
            REJECTED_COUNTER.inc()
            self.logger.info("invalid_mirror_path", path=request.url.path, reason=type(exc).__name__)
            return PlainTextResponse(USAGE_MESSAGE, status_code=exc.status_code)

        if method == "OPTIONS":
            return Response(status_code=status.HTTP_204_NO_CONTENT, headers=PREFLIGHT_HEADERS)
        if method not in READ_METHODS:
            REJECTED_COUNTER.inc()
            error = MethodNotAllowed(method)
            return PlainTextResponse("Method Not Allowed", status_code=error.status_code, headers={"Allow": "GET, HEAD, OPTIONS"})

        policy = classify(target.path, self.rules)
        POLICY_COUNTER.inc(policy.label)
        accept_encoding = request.headers.get("accept-encoding", "")
        original_url = str(request.url)
        initial_key = build_cache_key(original_url, accept_encoding)
        is_range = _is_range_request(request)

        with TRACER.start_as_current_span(
            "mirror.request",
            attributes={
                "forgemirror.target": target.full_url,
                "forgemirror.policy": policy.label,
                "forgemirror.range": is_range,
            },
        ) as span:
            if method == "GET" and not is_range:
                cached = await self._lookup(initial_key)
                if cached is not None:
                    HIT_COUNTER.inc()
                    BYTES_SERVED_COUNTER.inc(len(cached.body))
                    span.set_attribute("forgemirror.cache_status", "HIT")
                    self.logger.info("cache_hit", cache_key=initial_key, policy=policy.label, bytes=len(cached.body))
                    return self._hit_response(cached, policy, start)

            MISS_COUNTER.inc()
            span.set_attribute("forgemirror.cache_status", "MISS")
            upstream_url = target.full_url + (f"?{request.url.query}" if request.url.query else "")
            try:
                upstream = await self.fetcher.fetch(
                    upstream_url,
                    method=method,
                    headers=forwarded_headers(request),
                    hints=TransformHints.for_policy(policy),
                )
            except UpstreamUnavailable as exc:
                span.set_attribute("forgemirror.upstream_error", type(exc).__name__)
                return PlainTextResponse(str(exc), status_code=exc.status_code)

            version, final_key = self._final_key(policy, upstream, original_url, accept_encoding, initial_key)
            headers = self.rewrite_headers(upstream.headers, policy, version, upstream_url)
            headers["X-Response-Time"] = _elapsed_ms(start)
            response = build_response(upstream.status_code, headers.multi_items(), upstream.body)
            BYTES_SERVED_COUNTER.inc(len(upstream.body))
            self.logger.info(
                "cache_miss",
                cache_key=final_key,
                policy=policy.label,
                status=upstream.status_code,
                attempts=upstream.attempts,
                target=upstream_url,
            )

            if method == "GET" and upstream.status_code == status.HTTP_200_OK and not is_range:
                entry = CachedEntry(
                    status=upstream.status_code,
                    headers=tuple(headers.multi_items()),
                    body=upstream.body,
                )
                self.writer.schedule(final_key, entry, policy.edge_ttl)
            return response

    async def _lookup(self, key: str) -> Optional[CachedEntry]:
        try:
            return await self.store.get(key)
        except Exception as exc:  # noqa: BLE001 - store failures degrade to a miss
            CACHE_READ_ERROR_COUNTER.inc()
            self.logger.warning("cache_read_failed", cache_key=key, error=str(exc))
            return None

    @staticmethod
    def _final_key(
        policy: CachePolicy,
        upstream: UpstreamResponse,
        original_url: str,
        accept_encoding: str,
        initial_key: str,
    ) -> tuple[str, str]:
        if policy.use_validator:
            validator = normalize_validator(upstream.headers.get("etag"))
            if validator:
                return validator, build_cache_key(original_url, accept_encoding, validator)
        return cache_version(), initial_key

    def rewrite_headers(
        self,
        upstream_headers: httpx.Headers,
        policy: CachePolicy,
        version: str,
        upstream_url: str,
    ) -> httpx.Headers:
        headers = httpx.Headers(upstream_headers)
        headers["Cache-Control"] = policy.cache_control(self.settings.stale_while_revalidate_seconds)

        vary = ["Accept-Encoding"]
        existing_vary = ", ".join(headers.get_list("vary"))
        if existing_vary:
            vary.append(existing_vary)
        headers["Vary"] = ", ".join(vary)

        headers["Access-Control-Allow-Origin"] = "*"
        headers["Access-Control-Expose-Headers"] = "*"
        headers["X-Mirror-Version"] = version
        headers["X-Cache-Strategy"] = policy.label
        headers["X-Mirror-Target"] = upstream_url
        headers["X-Cache-Status"] = "MISS"
        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "SAMEORIGIN"
        return headers

    def _hit_response(self, cached: CachedEntry, policy: CachePolicy, start: float) -> Response:
        headers = httpx.Headers(list(cached.headers))
        headers["X-Cache-Status"] = "HIT"
        headers["X-Cache-Strategy"] = policy.label
        headers["X-Response-Time"] = _elapsed_ms(start)
        return build_response(cached.status, headers.multi_items(), cached.body)
