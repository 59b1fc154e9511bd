# Hey future me - Asset Fetch Cache für Cover-Bilder!
#
# Die Library-Ansicht meldet welche Items gerade sichtbar sind. Für jedes Item
# mit Cover holen wir die Bytes vom Backend (resolve-asset-blob) und wickeln sie
# in einen AssetHandle (wie eine Object-URL im Browser).
#
# Regeln:
# 1. Max K gleichzeitige Fetches (default 4) - sonst flutet ein Scroll das Backend
# 2. Pro Key höchstens EIN Fetch in flight
# 3. Jeder Handle wird GENAU EINMAL released (Evict, Replace oder aclose)
# 4. Fehlgeschlagene Fetches → ABSENT, kein Auto-Retry (Cover sind Kosmetik!)
#
# Flow:
#   cache.request_visible(["a", "b", ...])
#       └─► _drain()  (Schleife, startet Tasks solange Slots frei sind)
#           └─► _fetch(entry)  → finally: Slot frei → _drain() genau einmal
"""Bounded-concurrency asset fetch cache with handle lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from shelfsync.domain.entities.asset import AssetBlob, AssetEntryState, AssetHandle
from shelfsync.domain.exceptions import InvalidStateException
from shelfsync.domain.ports import IAssetHandleFactory, ICommandService

logger = logging.getLogger(__name__)

RESOLVE_ASSET_COMMAND = "resolve-asset-blob"
DEFAULT_MAX_CONCURRENT = 4


@dataclass(eq=False)
class AssetCacheEntry:
    """Bookkeeping for one key. Identity matters: a replaced entry is a NEW object."""

    key: str
    state: AssetEntryState = AssetEntryState.QUEUED
    reference: str | None = None
    handle: AssetHandle | None = None
    _waiters: list[asyncio.Future[None]] = field(default_factory=list, repr=False)

    def wait(self) -> asyncio.Future[None]:
        """Future that completes when this entry settles (resolved/absent/evicted)."""
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self.state in (AssetEntryState.RESOLVED, AssetEntryState.ABSENT):
            waiter.set_result(None)
        else:
            self._waiters.append(waiter)
        return waiter

    def settle(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)


class AssetFetchCache:
    """Key → resolved asset cache, populated by a bounded pool of fetch tasks.

    Hey future me - everything here runs on ONE event loop, so there's no lock.
    The discipline that replaces the lock:
    - state changes happen synchronously between awaits
    - `_active` is decremented in exactly one place (the fetch task's finally)
    - a fetch result is only stored if its entry is still the current one

    Usage:
        cache = AssetFetchCache(commands, MemoryHandleFactory())
        cache.set_records({"item-1": "/covers/1.jpg", "item-2": None})
        cache.request_visible(["item-1", "item-2"])   # item-2 has no cover → skipped
        ...
        handle = cache.get("item-1")
        await cache.aclose()
    """

    def __init__(
        self,
        commands: ICommandService,
        handle_factory: IAssetHandleFactory,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        command: str = RESOLVE_ASSET_COMMAND,
    ) -> None:
        """Initialize cache.

        Args:
            commands: Backend command service
            handle_factory: Wraps resolved bytes into revocable handles
            max_concurrent: K - max fetches with unresolved responses
            command: Name of the resolve command
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._commands = commands
        self._handle_factory = handle_factory
        self._max_concurrent = max_concurrent
        self._command = command

        self._entries: dict[str, AssetCacheEntry] = {}
        self._queue: deque[str] = deque()
        # None = no record set given yet, every requested key is eligible
        self._records: dict[str, str | None] | None = None
        self._active = 0
        # Keys with a running fetch task - including orphans of evicted entries
        self._in_flight_keys: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._stats: dict[str, int] = {
            "requested": 0,
            "fetched": 0,
            "absent": 0,
            "failed": 0,
            "evicted": 0,
            "released": 0,
            "max_active": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_fetches(self) -> int:
        return self._active

    @property
    def queued_keys(self) -> list[str]:
        return list(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def state_of(self, key: str) -> AssetEntryState | None:
        entry = self._entries.get(key)
        return entry.state if entry else None

    def get(self, key: str) -> AssetHandle | None:
        """Resolved handle for `key`, or None (not resolved yet, absent, unknown)."""
        entry = self._entries.get(key)
        if entry is None or entry.state is not AssetEntryState.RESOLVED:
            return None
        return entry.handle

    def set_records(self, records: Mapping[str, str | None]) -> list[str]:
        """Replace the owning record set (key → asset reference or None).

        Keys that vanished, lost their asset, or point at a different asset now
        are evicted. Returns the evicted keys.
        """
        self._ensure_open()
        new_records = dict(records)
        stale: list[str] = []
        for key, entry in self._entries.items():
            reference = new_records.get(key)
            if not reference:
                stale.append(key)
            elif entry.reference is not None and reference != entry.reference:
                stale.append(key)
            else:
                entry.reference = reference
        self._records = new_records
        if stale:
            self.evict(stale)
        return stale

    def request_visible(self, keys: Iterable[str]) -> None:
        """Queue fetches for newly visible keys and kick the drain loop.

        Already tracked keys (queued, in flight, resolved, AND absent) are a no-op.
        Absent stays absent until force_refresh() - no failure storms.
        """
        self._ensure_open()
        for key in keys:
            if key in self._entries:
                continue
            if not self._references_asset(key):
                continue
            self._entries[key] = AssetCacheEntry(key=key, reference=self._reference(key))
            self._queue.append(key)
            self._stats["requested"] += 1
        self._drain()

    async def force_refresh(self, key: str) -> AssetHandle | None:
        """Drop whatever we have for `key` and fetch it again, unconditionally.

        Waits for a fetch already in flight to land first (one fetch per key),
        then releases the old handle BEFORE the new one is stored.

        Returns:
            The new handle, or None if absent/evicted meanwhile
        """
        self._ensure_open()
        if not self._references_asset(key):
            self.evict([key])
            return None

        current = self._entries.get(key)
        if current is not None and current.state is AssetEntryState.IN_FLIGHT:
            await current.wait()
            self._ensure_open()

        current = self._entries.pop(key, None)
        if current is not None:
            self._discard_from_queue(key)
            self._release(current.handle)
            current.handle = None
            current.settle()

        entry = AssetCacheEntry(key=key, reference=self._reference(key))
        self._entries[key] = entry
        # Front of the line - the user explicitly asked for this one
        self._queue.appendleft(key)
        waiter = entry.wait()
        self._drain()
        await waiter
        return self.get(key)

    def evict(self, keys: Iterable[str]) -> None:
        """Forget `keys`: release their handles, drop queue/in-flight bookkeeping.

        A fetch still in flight for an evicted key keeps its slot until the
        backend answers; its result is released right away instead of stored.
        """
        for key in keys:
            entry = self._entries.pop(key, None)
            if entry is None:
                continue
            if entry.state is AssetEntryState.QUEUED:
                self._discard_from_queue(key)
            self._release(entry.handle)
            entry.handle = None
            entry.settle()
            self._stats["evicted"] += 1

    def get_stats(self) -> dict[str, Any]:
        """Counters for monitoring/debugging."""
        return {
            **self._stats,
            "entries": len(self._entries),
            "queue_size": len(self._queue),
            "active": self._active,
            "max_concurrent": self._max_concurrent,
        }

    async def aclose(self) -> None:
        """Tear down: cancel fetches, release every handle exactly once."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        entries = list(self._entries.values())
        self._entries.clear()
        self._queue.clear()
        for entry in entries:
            self._release(entry.handle)
            entry.handle = None
            entry.settle()

        logger.info(
            "Asset cache closed (%d fetched, %d absent, %d released)",
            self._stats["fetched"],
            self._stats["absent"],
            self._stats["released"],
        )

    async def __aenter__(self) -> AssetFetchCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------

    def _drain(self) -> None:
        """Start fetches while slots are free. Plain loop, never recursive."""
        deferred: list[str] = []
        while (
            not self._closed
            and self._active < self._max_concurrent
            and self._queue
        ):
            key = self._queue.popleft()
            entry = self._entries.get(key)
            if entry is None or entry.state is not AssetEntryState.QUEUED:
                continue
            if not self._references_asset(key):
                # Record lost its asset while we were queued
                del self._entries[key]
                entry.settle()
                continue
            if key in self._in_flight_keys:
                # An orphaned fetch for this key hasn't landed yet - wait for its slot
                deferred.append(key)
                continue
            self._start_fetch(entry)

        if deferred:
            self._queue.extendleft(reversed(deferred))

    def _start_fetch(self, entry: AssetCacheEntry) -> None:
        entry.state = AssetEntryState.IN_FLIGHT
        self._active += 1
        self._stats["max_active"] = max(self._stats["max_active"], self._active)
        self._in_flight_keys.add(entry.key)
        task = asyncio.create_task(self._fetch(entry), name=f"asset-fetch-{entry.key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch(self, entry: AssetCacheEntry) -> None:
        try:
            handle = await self._resolve(entry.key)
            self._store(entry, handle)
        finally:
            self._active -= 1
            self._in_flight_keys.discard(entry.key)
            if not self._closed:
                self._drain()

    async def _resolve(self, key: str) -> AssetHandle | None:
        try:
            result = await self._commands.invoke(self._command, {"key": key})
            blob = AssetBlob.from_payload(result)
            if blob is None:
                return None
            return self._handle_factory.acquire(key, blob)
        except Exception as e:
            # Covers are cosmetic - stay quiet, mark absent, don't retry
            self._stats["failed"] += 1
            logger.debug("Asset fetch failed for %s: %s", key, e)
            return None

    def _store(self, entry: AssetCacheEntry, handle: AssetHandle | None) -> None:
        if self._closed or self._entries.get(entry.key) is not entry:
            # Evicted/replaced while in flight - nobody owns this handle
            self._release(handle)
            entry.settle()
            return

        previous = entry.handle
        entry.handle = handle
        entry.state = AssetEntryState.RESOLVED if handle else AssetEntryState.ABSENT
        if previous is not None and previous is not handle:
            self._release(previous)

        if handle is None:
            self._stats["absent"] += 1
        else:
            self._stats["fetched"] += 1
        entry.settle()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _references_asset(self, key: str) -> bool:
        if self._records is None:
            return True
        return bool(self._records.get(key))

    def _reference(self, key: str) -> str | None:
        if self._records is None:
            return None
        return self._records.get(key)

    def _discard_from_queue(self, key: str) -> None:
        with contextlib.suppress(ValueError):
            self._queue.remove(key)

    def _release(self, handle: AssetHandle | None) -> None:
        if handle is not None and handle.release():
            self._stats["released"] += 1

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidStateException("Asset cache is closed")
