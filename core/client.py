from __future__ import annotations

from typing import Callable, List, Optional, Sequence

import httpx

from core.keys import EMOJIS_KEY, MESSAGE_COUNT_KEY, MESSAGES_KEY, profile_key
from core.mutations import MutationPipeline
from core.polling import PollHandle, PollingScheduler
from core.query_cache import CacheEntry, Key, QueryCache, QueryOptions
from core.resources import ResourceResolver
from core.retry import RetryPolicy, run_with_retry
from services.actor.api import ChatActorAPI
from services.actor.errors import ChatError
from services.actor.gateway import ActorGateway
from services.actor.models import Emoji, Message, UserProfile
from shared.config.client import ClientConfig
from shared.logging.logger import get_logger

log = get_logger("core.client")

ALL_MESSAGES_KEY = ("allMessages",)


def merge_messages(existing: Sequence[Message], newer: Sequence[Message], limit: int) -> List[Message]:
    """
    Merge two slices of the log by id and keep the newest `limit`.
    """
    by_id = {m.id: m for m in existing}
    for message in newer:
        by_id[message.id] = message

    merged = [by_id[i] for i in sorted(by_id)]
    if limit > 0:
        merged = merged[-limit:]
    return merged


class ChatClient:
    """
    Wires gateway, cache, scheduler, resolver and mutation pipeline
    together and defines every read the client performs.

    Message log and message count are polled; everything else is read on
    demand through the cache with its own freshness window.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        gateway: Optional[ActorGateway] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[QueryCache] = None,
    ):
        self.config = config
        self.gateway = gateway or ActorGateway(
            base_url=config.actor.url,
            timeout=config.actor.request_timeout,
            transport=transport,
        )
        self.api = ChatActorAPI(self.gateway)
        self.cache = cache or QueryCache(retain_after=config.cache.retain_seconds)
        self.scheduler = PollingScheduler(self.cache)

        self._read_retry = RetryPolicy.from_config(config.cache.read_retry)
        self._messages_policy = RetryPolicy.from_config(config.polling.messages_retry)
        self._count_policy = RetryPolicy.from_config(config.polling.count_retry)

        self.resources = ResourceResolver(
            self.api,
            self.cache,
            assets=config.assets,
            retry=self._read_retry,
        )
        self.mutations = MutationPipeline(
            self.api,
            self.cache,
            limits=config.uploads,
            write_retry=RetryPolicy(
                max_attempts=max(0, config.cache.write_retries),
                base_delay=self._read_retry.base_delay,
                cap_delay=self._read_retry.cap_delay,
            ),
            on_invalidate=self._refetch_polled,
        )

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.gateway.close()

    # ------------------------------------------------------------
    # Message log (polled)
    # ------------------------------------------------------------

    async def _fetch_messages(self) -> List[Message]:
        limit = self.config.polling.recent_limit
        entry = self.cache.peek(MESSAGES_KEY)

        if entry is None or not entry.has_value or entry.invalidated or not entry.value:
            return await self.api.get_recent_messages(limit)

        newer = await self.api.get_messages_since(entry.value[-1].id)
        if not newer:
            return entry.value
        return merge_messages(entry.value, newer, limit)

    def watch_messages(self, listener: Callable[[CacheEntry], None]) -> PollHandle:
        interval = self.config.polling.messages_interval
        return self.scheduler.watch(
            MESSAGES_KEY,
            self._fetch_messages,
            interval=interval,
            policy=self._messages_policy,
            listener=listener,
            stale_after=interval,
        )

    async def messages(self) -> List[Message]:
        options = QueryOptions(
            stale_after=self.config.polling.messages_interval,
            retry=self._messages_policy,
        )
        return await self.cache.get(MESSAGES_KEY, self._fetch_messages, options)

    async def all_messages(self) -> List[Message]:
        options = QueryOptions(stale_after=0.0, retry=self._read_retry)
        return await self.cache.get(ALL_MESSAGES_KEY, self.api.get_all_messages, options)

    async def messages_since(self, message_id: int) -> List[Message]:
        return await run_with_retry(
            lambda: self.api.get_messages_since(message_id),
            self._read_retry,
            label="getMessagesSince",
        )

    # ------------------------------------------------------------
    # Message count (polled)
    # ------------------------------------------------------------

    def watch_message_count(self, listener: Callable[[CacheEntry], None]) -> PollHandle:
        interval = self.config.polling.count_interval
        return self.scheduler.watch(
            MESSAGE_COUNT_KEY,
            self.api.get_message_count,
            interval=interval,
            policy=self._count_policy,
            listener=listener,
            stale_after=interval,
        )

    async def message_count(self) -> int:
        options = QueryOptions(
            stale_after=self.config.polling.count_interval,
            retry=self._count_policy,
        )
        return await self.cache.get(MESSAGE_COUNT_KEY, self.api.get_message_count, options)

    # ------------------------------------------------------------
    # Profiles and emojis (on demand)
    # ------------------------------------------------------------

    async def user_profile(self, user_id: str) -> Optional[UserProfile]:
        if not user_id:
            return None
        options = QueryOptions(
            stale_after=self.config.cache.profile_stale_seconds,
            retry=self._read_retry,
        )
        return await self.cache.get(
            profile_key(user_id),
            lambda: self.api.get_user_profile(user_id),
            options,
        )

    async def all_emojis(self) -> List[Emoji]:
        options = QueryOptions(
            stale_after=self.config.cache.emojis_stale_seconds,
            retry=self._read_retry,
        )
        return await self.cache.get(EMOJIS_KEY, self.api.get_all_emojis, options)

    def last_error(self, key: Key) -> Optional[ChatError]:
        entry = self.cache.peek(key)
        return entry.error if entry else None

    # ------------------------------------------------------------

    def _refetch_polled(self, keys: List[Key]) -> None:
        for key in keys:
            if self.scheduler.refetch(key):
                log.debug(f"[Client] Immediate refetch of {key}")
