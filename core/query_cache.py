"""
Keyed cache of remote reads.

Rules:
- At most one fetch in flight per key; concurrent readers share it
- A failed fetch never replaces a good value (last known good + error flag)
- Entries are reference-counted by subscribers and torn down at zero
- Unsubscribed entries (one-shot reads) are pruned once they have been
  stale for `retain_after` seconds
- A fetch that lands after its entry was torn down writes nothing
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from core.retry import NO_RETRY, RetryPolicy, run_with_retry
from services.actor.errors import ChatError
from shared.logging.logger import get_logger

log = get_logger("core.query_cache")

Key = Tuple[Hashable, ...]
Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[["CacheEntry"], None]

FOREVER = math.inf


@dataclass(frozen=True)
class QueryOptions:
    stale_after: float = 0.0
    retry: RetryPolicy = NO_RETRY


@dataclass
class CacheEntry:
    key: Key
    stale_after: float = 0.0
    value: Any = None
    has_value: bool = False
    fetched_at: float = 0.0
    error: Optional[ChatError] = None
    invalidated: bool = False
    generation: int = 0
    listeners: List[Listener] = field(default_factory=list)
    in_flight: Optional[asyncio.Task] = None

    @property
    def subscriber_count(self) -> int:
        return len(self.listeners)

    @property
    def fetching(self) -> bool:
        return self.in_flight is not None

    def is_stale(self, now: float) -> bool:
        if self.invalidated or not self.has_value:
            return True
        return (now - self.fetched_at) >= self.stale_after


class Subscription:
    """
    Handle returned by QueryCache.subscribe. close() is synchronous and
    safe to call more than once.
    """

    def __init__(self, cache: "QueryCache", key: Key, listener: Listener):
        self.key = key
        self._cache = cache
        self._listener = listener
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cache._release(self.key, self._listener)


class QueryCache:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        retain_after: float = 300.0,
    ):
        self._clock = clock
        self._retain_after = retain_after
        self._last_prune = clock()
        self._entries: Dict[Key, CacheEntry] = {}
        self._idle_callbacks: List[Callable[[Key], None]] = []

        # Observational counters only.
        self._metrics = {
            "fetches": 0,
            "failures": 0,
            "dropped": 0,
            "pruned": 0,
        }

    # ------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------

    def peek(self, key: Key) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_fresh(self, key: Key) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_stale(self._clock())

    def keys(self) -> List[Key]:
        return list(self._entries.keys())

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def get(
        self,
        key: Key,
        fetcher: Fetcher,
        options: QueryOptions = QueryOptions(),
    ) -> Any:
        """
        Return the cached value for `key`, fetching when stale.

        With a previous value on hand the stale value is returned at once
        and the refresh runs in the background. Without one the caller
        waits for the (shared) first fetch and sees its ChatError on failure.
        """
        entry = self._entry(key, options)

        if not entry.is_stale(self._clock()):
            return entry.value

        task = self._start_fetch(entry, fetcher, options)

        if entry.has_value:
            return entry.value

        ok, result = await asyncio.shield(task)
        if not ok:
            raise result
        return result

    async def refresh(
        self,
        key: Key,
        fetcher: Fetcher,
        options: QueryOptions = QueryOptions(),
    ) -> bool:
        """
        Fetch now (joining any in-flight fetch) and report success.
        """
        entry = self._entry(key, options)
        ok, _ = await asyncio.shield(self._start_fetch(entry, fetcher, options))
        return ok

    def set_value(self, key: Key, value: Any) -> None:
        """
        Write a locally known value (e.g. an optimistic update).
        """
        entry = self._entry(key, None)
        entry.value = value
        entry.has_value = True
        entry.fetched_at = self._clock()
        entry.error = None
        self.notify_subscribers(key)

    # ------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------

    def invalidate(self, predicate: Callable[[Key], bool]) -> List[Key]:
        """
        Mark matching entries stale. A fetch already in flight may still
        store its value, but the entry stays stale afterwards.
        """
        matched: List[Key] = []
        for key, entry in self._entries.items():
            if predicate(key):
                entry.invalidated = True
                entry.generation += 1
                matched.append(key)

        if matched:
            log.debug(f"[Cache] Invalidated {matched}")
        return matched

    def invalidate_keys(self, *keys: Key) -> List[Key]:
        wanted = set(keys)
        return self.invalidate(lambda key: key in wanted)

    def discard(self, key: Key) -> bool:
        """
        Drop an entry nobody is subscribed to, so the next read fetches
        from scratch instead of serving it as stale.
        """
        entry = self._entries.get(key)
        if entry is None or entry.listeners:
            return False
        del self._entries[key]
        return True

    def forget(self, key: Key) -> None:
        """
        Drop the value held for `key`. Unsubscribed entries are removed;
        subscribed ones stay but read as empty until the next fetch.
        """
        entry = self._entries.get(key)
        if entry is None:
            return
        if self.discard(key):
            return

        entry.value = None
        entry.has_value = False
        entry.generation += 1
        self.notify_subscribers(key)

    def prune(self) -> List[Key]:
        """
        Remove entries nobody subscribes to that have been stale for at
        least `retain_after` seconds. Entries cached forever are kept.
        """
        now = self._clock()
        self._last_prune = now

        expired: List[Key] = []
        for key, entry in self._entries.items():
            if entry.listeners or entry.in_flight is not None:
                continue
            if entry.has_value and (now - entry.fetched_at) < entry.stale_after + self._retain_after:
                continue
            expired.append(key)

        for key in expired:
            del self._entries[key]

        if expired:
            self._metrics["pruned"] += len(expired)
            log.debug(f"[Cache] Pruned {len(expired)} unused entries")
        return expired

    # ------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------

    def subscribe(
        self,
        key: Key,
        listener: Listener,
        options: Optional[QueryOptions] = None,
    ) -> Subscription:
        entry = self._entry(key, options)
        entry.listeners.append(listener)
        return Subscription(self, key, listener)

    def on_idle(self, callback: Callable[[Key], None]) -> None:
        """
        Register a callback fired when a key loses its last subscriber.
        """
        self._idle_callbacks.append(callback)

    def notify_subscribers(self, key: Key) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return

        for listener in list(entry.listeners):
            try:
                listener(entry)
            except Exception:
                log.exception(f"[Cache] Subscriber for {key} failed")

    def _release(self, key: Key, listener: Listener) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return

        try:
            entry.listeners.remove(listener)
        except ValueError:
            return

        if entry.listeners:
            return

        # Last subscriber gone: tear down. An in-flight fetch keeps
        # running for anyone awaiting it but can no longer write here.
        del self._entries[key]
        log.debug(f"[Cache] Released {key}")

        for callback in list(self._idle_callbacks):
            callback(key)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _entry(self, key: Key, options: Optional[QueryOptions]) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            if self._clock() - self._last_prune >= self._retain_after:
                self.prune()
            entry = CacheEntry(
                key=key,
                stale_after=options.stale_after if options else 0.0,
            )
            self._entries[key] = entry
        elif options is not None:
            entry.stale_after = options.stale_after
        return entry

    def _start_fetch(
        self,
        entry: CacheEntry,
        fetcher: Fetcher,
        options: QueryOptions,
    ) -> asyncio.Task:
        if entry.in_flight is None:
            entry.in_flight = asyncio.create_task(self._run_fetch(entry, fetcher, options))
        return entry.in_flight

    async def _run_fetch(
        self,
        entry: CacheEntry,
        fetcher: Fetcher,
        options: QueryOptions,
    ) -> Tuple[bool, Any]:
        key = entry.key
        generation = entry.generation
        self._metrics["fetches"] += 1

        try:
            value = await run_with_retry(fetcher, options.retry, label=f"Cache {key}")
        except ChatError as error:
            self._metrics["failures"] += 1
            if self._entries.get(key) is not entry:
                self._metrics["dropped"] += 1
                return False, error

            entry.error = error
            log.warning(f"[Cache] Fetch for {key} failed: {error}")
            self.notify_subscribers(key)
            return False, error
        finally:
            entry.in_flight = None

        if self._entries.get(key) is not entry:
            self._metrics["dropped"] += 1
            log.debug(f"[Cache] Dropped result for released key {key}")
            return True, value

        entry.value = value
        entry.has_value = True
        entry.fetched_at = self._clock()
        entry.error = None
        entry.invalidated = entry.generation != generation

        self.notify_subscribers(key)
        return True, value
