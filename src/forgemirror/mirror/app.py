"""FastAPI application exposing the mirror."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from structlog.contextvars import bound_contextvars

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import MirrorSettings
from .fetcher import ResilientFetcher
from .service import MirrorService
from .store import CacheWriter, ResponseStore, build_store


LOGGER = structlog.get_logger("forgemirror.app")

ADMIN_PREFIX = "/_mirror"
ALL_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def get_service(request: Request) -> MirrorService:
    return request.app.state.mirror  # type: ignore[attr-defined]


def create_upstream_client(
    settings: MirrorSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    # asyncio.wait_for in the fetcher bounds each attempt; this is only a backstop.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        follow_redirects=True,
        transport=transport,
    )


def create_app(
    settings: Optional[MirrorSettings] = None,
    *,
    store: Optional[ResponseStore] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or MirrorSettings()
    configure_observability(settings)
    store = store or build_store(settings)
    client = create_upstream_client(settings, upstream_transport)
    fetcher = ResilientFetcher(
        client,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        timeout=settings.request_timeout_seconds,
    )
    service = MirrorService(settings, store, fetcher, CacheWriter(store, prune_every=settings.store_prune_every))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info(
            "mirror_started",
            source_hosts=settings.source_hosts,
            primary_host=settings.primary_host,
            store=store.status().get("backend"),
        )
        # Entries left over from earlier runs are only reachable through a sweep.
        await service.writer.prune()
        try:
            yield
        finally:
            await service.writer.drain()
            await client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.mirror = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            with bound_contextvars(method=request.method, mirror_path=request.url.path):
                response = await call_next(request)
        except Exception:
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "cache_status": response.headers.get("x-cache-status"),
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get(f"{ADMIN_PREFIX}/healthz")
    async def health_check(service: MirrorService = Depends(get_service)) -> dict:
        health: dict = {"status": "healthy", "checks": {}}
        try:
            store_status = service.store.status()
            health["checks"]["store"] = store_status.get("backend", "unknown")
            if "writable" in store_status:
                health["checks"]["writable"] = store_status["writable"]
                if not store_status["writable"]:
                    health["status"] = "unhealthy"
        except Exception as exc:  # noqa: BLE001
            health["checks"]["store"] = f"error: {exc}"
            health["status"] = "unhealthy"
        health["checks"]["pending_writes"] = service.writer.pending

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get(f"{ADMIN_PREFIX}/status")
    async def status_report(service: MirrorService = Depends(get_service)) -> JSONResponse:
        payload = dict(service.store.status())
        payload.update(
            {
                "source_hosts": list(service.settings.source_hosts),
                "primary_host": service.settings.primary_host,
                "max_retries": service.settings.max_retries,
                "pending_writes": service.writer.pending,
            }
        )
        return JSONResponse(payload)

    @app.get(f"{ADMIN_PREFIX}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, service: MirrorService = Depends(get_service)) -> PlainTextResponse:
        token = service.settings.metrics_token.get_secret_value() if service.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{mirror_path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def mirror(request: Request, service: MirrorService = Depends(get_service)) -> Response:
        return await service.handle(request)

    return app
