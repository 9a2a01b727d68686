import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from core.query_cache import Fetcher, Key, Listener, QueryCache, QueryOptions, Subscription
from core.retry import RetryPolicy
from shared.logging.logger import get_logger

log = get_logger("core.polling")


class PollState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FETCHING = "fetching"
    BACKOFF = "backoff"
    FAILED = "failed"


@dataclass
class PolledQuery:
    key: Key
    fetcher: Fetcher
    interval: float
    policy: RetryPolicy
    options: QueryOptions
    state: PollState = PollState.IDLE
    attempt: int = 0
    ticks: int = 0
    failed: bool = False
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class PollHandle:
    """
    A watcher's interest in a polled query. close() deregisters at once;
    the last close stops the poll loop.
    """

    def __init__(self, scheduler: "PollingScheduler", key: Key, subscription: Subscription):
        self.key = key
        self._scheduler = scheduler
        self._subscription = subscription

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    @property
    def state(self) -> PollState:
        return self._scheduler.state(self.key)

    def refetch(self) -> None:
        self._scheduler.refetch(self.key)

    def close(self) -> None:
        self._subscription.close()


class PollingScheduler:
    """
    Drives periodic re-fetch of volatile queries.

    Per query: IDLE -> SCHEDULED -> FETCHING -> (IDLE | BACKOFF).
    Failures back off as min(base * 2**attempt, cap) up to the policy's
    attempt cap; past it the query is FAILED and keeps polling at its
    base interval, with the error left on the cache entry, until a fetch
    succeeds again.

    Loops live exactly as long as the cache entry has subscribers.
    """

    def __init__(self, cache: QueryCache):
        self._cache = cache
        self._queries: Dict[Key, PolledQuery] = {}
        cache.on_idle(self._stop)

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def watch(
        self,
        key: Key,
        fetcher: Fetcher,
        *,
        interval: float,
        policy: RetryPolicy,
        listener: Listener,
        stale_after: float = 0.0,
    ) -> PollHandle:
        options = QueryOptions(stale_after=stale_after)
        subscription = self._cache.subscribe(key, listener, options)

        query = self._queries.get(key)
        if query is None:
            query = PolledQuery(
                key=key,
                fetcher=fetcher,
                interval=interval,
                policy=policy,
                options=options,
            )
            self._queries[key] = query
            query.task = asyncio.create_task(self._run(query))
            log.debug(f"[Poll] Started {key} (interval={interval}s)")

        return PollHandle(self, key, subscription)

    def refetch(self, key: Key) -> bool:
        """
        Wake a polled query for an immediate tick. Returns False when the
        key is not being polled.
        """
        query = self._queries.get(key)
        if query is None:
            return False
        query.wake.set()
        return True

    def state(self, key: Key) -> PollState:
        query = self._queries.get(key)
        return query.state if query else PollState.IDLE

    def ticks(self, key: Key) -> int:
        query = self._queries.get(key)
        return query.ticks if query else 0

    def active_keys(self) -> List[Key]:
        return list(self._queries.keys())

    async def shutdown(self) -> None:
        queries = list(self._queries.values())
        self._queries.clear()

        tasks = []
        for query in queries:
            query.state = PollState.IDLE
            if query.task is not None:
                query.task.cancel()
                tasks.append(query.task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.debug(f"[Poll] Shutdown ({len(tasks)} loop(s) cancelled)")

    # ------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------

    async def _run(self, query: PolledQuery) -> None:
        delay = query.interval if self._cache.is_fresh(query.key) else 0.0

        while True:
            if not query.failed:
                query.state = PollState.SCHEDULED
            await self._wait(query, delay)

            query.state = PollState.FETCHING
            query.ticks += 1
            ok = await self._cache.refresh(query.key, query.fetcher, query.options)

            if ok:
                if query.attempt or query.failed:
                    log.info(f"[Poll] {query.key} recovered")
                query.attempt = 0
                query.failed = False
                query.state = PollState.IDLE
                delay = query.interval
            elif not query.failed and query.attempt < query.policy.max_attempts:
                delay = query.policy.delay(query.attempt)
                query.attempt += 1
                query.state = PollState.BACKOFF
                log.warning(
                    f"[Poll] {query.key} failed "
                    f"(attempt {query.attempt}/{query.policy.max_attempts}); "
                    f"retrying in {delay:.1f}s"
                )
            else:
                if not query.failed:
                    log.error(
                        f"[Poll] {query.key} still failing after "
                        f"{query.policy.max_attempts} retries; polling at base interval"
                    )
                query.failed = True
                query.attempt = 0
                query.state = PollState.FAILED
                delay = query.interval

    @staticmethod
    async def _wait(query: PolledQuery, delay: float) -> None:
        if query.wake.is_set():
            query.wake.clear()
            return
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(query.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        query.wake.clear()

    def _stop(self, key: Key) -> None:
        query = self._queries.pop(key, None)
        if query is None:
            return

        if query.task is not None:
            query.task.cancel()
        query.state = PollState.IDLE
        log.debug(f"[Poll] Stopped {key} (no subscribers)")
