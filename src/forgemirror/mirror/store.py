"""Response stores and the detached cache writer."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.settings import MirrorSettings


LOGGER = structlog.get_logger("forgemirror.store")

CACHE_WRITE_COUNTER = GLOBAL_REGISTRY.register(Counter("forgemirror_cache_writes_total", "Responses written to the store"))
CACHE_WRITE_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_cache_write_errors_total", "Background store writes that failed"))
CACHE_READ_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_cache_read_errors_total", "Store lookups that failed and were treated as misses"))
CACHE_EVICTION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("forgemirror_cache_evictions_total", "Entries removed by store pruning"))
PENDING_WRITES_GAUGE = GLOBAL_REGISTRY.register(Gauge("forgemirror_cache_writes_pending", "Background store writes in flight"))


@dataclass(frozen=True)
class CachedEntry:
    status: int
    headers: tuple[tuple[str, str], ...]
    body: bytes
    stored_at: float = field(default_factory=time.time)


class ResponseStore:
    async def get(self, key: str) -> Optional[CachedEntry]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, entry: CachedEntry, ttl_seconds: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def prune(self) -> int:
        """Drop entries no read will ever return; returns how many were removed."""
        return 0

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryResponseStore(ResponseStore):
    """Bounded LRU of whole responses with per-entry expiry."""

    def __init__(self, max_entries: int = 1024, clock=time.monotonic) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, CachedEntry]] = OrderedDict()

    async def get(self, key: str) -> Optional[CachedEntry]:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, entry = item
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    async def put(self, key: str, entry: CachedEntry, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock() + ttl_seconds, entry)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            LOGGER.debug("store_evicted", cache_key=evicted)

    async def prune(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries), "max_entries": self._max_entries}


class DiskResponseStore(ResponseStore):
    """One metadata file and one body file per key, named by the key's SHA-256.

    Superseded keys (yesterday's date version, a rotated validator) are never
    read again, so expiry on read alone would leave them on disk forever.
    :meth:`prune` sweeps expired entries and, when ``max_bytes`` is set,
    evicts the oldest live entries until the store fits.
    """

    def __init__(self, root: Path, clock=time.time, max_bytes: Optional[int] = None) -> None:
        self._root = Path(root).expanduser().resolve()
        self._clock = clock
        self._max_bytes = max_bytes

    def _paths(self, key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        directory = self._root / digest[:2]
        return directory / f"{digest}.json", directory / f"{digest}.body"

    async def get(self, key: str) -> Optional[CachedEntry]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, entry: CachedEntry, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await asyncio.to_thread(self._write, key, entry, ttl_seconds)

    async def prune(self) -> int:
        return await asyncio.to_thread(self._prune)

    def _read(self, key: str) -> Optional[CachedEntry]:
        meta_path, body_path = self._paths(key)
        if not meta_path.exists() or not body_path.exists():
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        if meta.get("key") != key:
            return None
        if float(meta["expires_at"]) <= self._clock():
            _remove_entry(meta_path, body_path)
            return None
        return CachedEntry(
            status=int(meta["status"]),
            headers=tuple((str(name), str(value)) for name, value in meta["headers"]),
            body=body_path.read_bytes(),
            stored_at=float(meta["stored_at"]),
        )

    def _write(self, key: str, entry: CachedEntry, ttl_seconds: int) -> None:
        meta_path, body_path = self._paths(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta = {
            "key": key,
            "status": entry.status,
            "headers": [list(pair) for pair in entry.headers],
            "stored_at": entry.stored_at,
            "expires_at": self._clock() + ttl_seconds,
        }
        # Body first: a reader only trusts the body once matching metadata exists.
        _atomic_write(body_path, entry.body)
        _atomic_write(meta_path, json.dumps(meta).encode("utf-8"))

    def _prune(self) -> int:
        if not self._root.is_dir():
            return 0
        now = self._clock()
        removed = 0
        live: list[tuple[float, Path, Path, int]] = []
        for meta_path in self._root.glob("*/*.json"):
            body_path = meta_path.with_suffix(".body")
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                expires_at = float(meta["expires_at"])
                stored_at = float(meta["stored_at"])
                size = meta_path.stat().st_size + (body_path.stat().st_size if body_path.exists() else 0)
            except FileNotFoundError:
                # Removed by a concurrent read or prune.
                continue
            except (ValueError, KeyError, TypeError):
                LOGGER.warning("store_metadata_unreadable", path=str(meta_path))
                expires_at, stored_at, size = 0.0, 0.0, 0
            if expires_at <= now:
                _remove_entry(meta_path, body_path)
                removed += 1
            else:
                live.append((stored_at, meta_path, body_path, size))

        if self._max_bytes:
            total = sum(size for _, _, _, size in live)
            if total > self._max_bytes:
                LOGGER.info("store_eviction_started", total_bytes=total, max_bytes=self._max_bytes)
                for _, meta_path, body_path, size in sorted(live, key=lambda item: item[0]):
                    if total <= self._max_bytes:
                        break
                    _remove_entry(meta_path, body_path)
                    removed += 1
                    total -= size
                LOGGER.info("store_eviction_completed", total_bytes=total)
        return removed

    def status(self) -> dict[str, object]:
        # The root is created on first write; report whether that write could succeed.
        existing = self._root
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        return {
            "backend": "disk",
            "store_path": str(self._root),
            "writable": os.access(existing, os.W_OK),
        }


def _atomic_write(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tmp_path.open("wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _remove_entry(meta_path: Path, body_path: Path) -> None:
    # Shard directories stay; a concurrent writer may be about to use them.
    meta_path.unlink(missing_ok=True)
    body_path.unlink(missing_ok=True)


def build_store(settings: MirrorSettings) -> ResponseStore:
    if settings.store_backend == "disk":
        return DiskResponseStore(settings.store_path, max_bytes=settings.store_max_bytes)
    return MemoryResponseStore(settings.store_max_entries)


class CacheWriter:
    """Runs store writes as background tasks the response never waits for.

    Every ``prune_every`` successful writes the store is pruned inside the
    same background task; ``0`` disables write-triggered pruning.
    """

    def __init__(self, store: ResponseStore, prune_every: int = 64) -> None:
        self._store = store
        self._tasks: set[asyncio.Task] = set()
        self._prune_every = max(0, prune_every)
        self._writes_since_prune = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, key: str, entry: CachedEntry, ttl_seconds: int) -> asyncio.Task:
        task = asyncio.create_task(self._write(key, entry, ttl_seconds))
        self._tasks.add(task)
        PENDING_WRITES_GAUGE.set(float(len(self._tasks)))
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        PENDING_WRITES_GAUGE.set(float(len(self._tasks)))

    async def _write(self, key: str, entry: CachedEntry, ttl_seconds: int) -> None:
        try:
            await self._store.put(key, entry, ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - a failed write must never reach the client
            CACHE_WRITE_ERROR_COUNTER.inc()
            LOGGER.warning("cache_write_failed", cache_key=key, error=str(exc))
            return
        CACHE_WRITE_COUNTER.inc()
        LOGGER.debug("cache_write", cache_key=key, bytes=len(entry.body), ttl=ttl_seconds)

        if self._prune_every:
            self._writes_since_prune += 1
            if self._writes_since_prune >= self._prune_every:
                self._writes_since_prune = 0
                await self.prune()

    async def prune(self) -> int:
        try:
            removed = await self._store.prune()
        except Exception as exc:  # noqa: BLE001 - pruning is best effort
            LOGGER.warning("store_prune_failed", error=str(exc))
            return 0
        if removed:
            CACHE_EVICTION_COUNTER.inc(removed)
            LOGGER.info("store_pruned", removed=removed)
        return removed

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
