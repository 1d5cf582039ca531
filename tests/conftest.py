from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

import httpx
import pytest

from forgemirror.common.settings import MirrorSettings
from forgemirror.mirror.app import create_app
from forgemirror.mirror.store import MemoryResponseStore, ResponseStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def mirror_settings() -> Callable[..., MirrorSettings]:
    def _build(**overrides) -> MirrorSettings:
        values = {
            "max_retries": 2,
            "retry_delay_seconds": 0.0,
            "request_timeout_seconds": 5.0,
            "store_backend": "memory",
            "log_level": "WARNING",
        }
        values.update(overrides)
        return MirrorSettings(**values)

    return _build


class Upstream:
    """Scripted source host behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []
        self.default_headers: dict[str, str] = {"content-type": "text/plain"}

    def queue(self, *responses: httpx.Response) -> None:
        self.responses.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, content=b"upstream-body", headers=self.default_headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def memory_store() -> MemoryResponseStore:
    return MemoryResponseStore(max_entries=64)


@asynccontextmanager
async def running_mirror(settings: MirrorSettings, store: ResponseStore, transport: httpx.AsyncBaseTransport):
    app = create_app(settings, store=store, upstream_transport=transport)
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://mirror.test") as client:
            yield app, client
    finally:
        await lifespan.__aexit__(None, None, None)


@pytest.fixture
def run_mirror():
    return running_mirror
