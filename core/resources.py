"""
Picture and emoji resolution.

Precedence for an identifier, each tier tried only if the previous one
yields nothing:
  1. default asset naming pattern -> static path, no remote call
  2. empty identifier             -> None ("no resource", not an error)
  3. remote lookup                -> cached forever (custom resources are
                                     immutable once uploaded)

A lookup miss is not pinned in the cache, so a picture uploaded later
still resolves.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from core.query_cache import FOREVER, QueryCache, QueryOptions
from core.retry import NO_RETRY, RetryPolicy
from services.actor.api import ChatActorAPI
from services.actor.errors import ChatError
from services.actor.models import Blob, Emoji, Message, PictureReference
from shared.config.client import AssetConfig
from shared.logging.logger import get_logger

log = get_logger("core.resources")

DEFAULT_PICTURE_PATTERN = re.compile(r"^avatar-\d+$")
DEFAULT_EMOJI_PATTERN = re.compile(r"^default-emoji-[a-z0-9_-]+$")

DEFAULT_PICTURES_KEY = ("defaultPictures",)


@dataclass(frozen=True)
class Placeholder:
    """First letter of a name on a fixed background."""

    letter: str
    background: str
    foreground: str


class ResourceResolver:
    def __init__(
        self,
        api: ChatActorAPI,
        cache: QueryCache,
        *,
        assets: Optional[AssetConfig] = None,
        retry: RetryPolicy = NO_RETRY,
    ):
        self._api = api
        self._cache = cache
        self._assets = assets or AssetConfig()
        self._options = QueryOptions(stale_after=FOREVER, retry=retry)

    # ------------------------------------------------------------
    # Default catalogue
    # ------------------------------------------------------------

    def default_picture_ids(self) -> List[str]:
        return [f"avatar-{i}" for i in range(1, self._assets.default_picture_count + 1)]

    def default_asset_url(self, picture_id: str) -> str:
        return f"{self._assets.base_path}/{picture_id}-transparent.dim_64x64.png"

    def default_emoji_url(self, emoji_id: str) -> str:
        return f"{self._assets.base_path}/emoji/{emoji_id}.png"

    def default_set(self) -> List[PictureReference]:
        return [
            PictureReference(id=picture_id, blob=Blob.from_url(self.default_asset_url(picture_id)))
            for picture_id in self.default_picture_ids()
        ]

    async def default_pictures(self) -> List[PictureReference]:
        """
        The shared picture catalogue, seeded on first use when empty.
        """
        return await self._cache.get(DEFAULT_PICTURES_KEY, self._load_default_pictures, self._options)

    async def _load_default_pictures(self) -> List[PictureReference]:
        existing = await self._api.list_default_pictures()
        if existing:
            return existing

        # Two clients may seed at once; the actor upserts by id.
        defaults = self.default_set()
        log.info(f"[Resources] Default catalogue empty; seeding {len(defaults)} pictures")
        try:
            await self._api.initialize_defaults(defaults)
        except ChatError as e:
            if e.transient:
                raise
            log.warning(
                f"[Resources] Seeding refused ({e.kind.value}); "
                "serving the built-in set without storing it"
            )
        return defaults

    # ------------------------------------------------------------
    # Pictures
    # ------------------------------------------------------------

    async def picture_url(self, picture_id: Optional[str]) -> Optional[str]:
        if picture_id and DEFAULT_PICTURE_PATTERN.match(picture_id):
            return self.default_asset_url(picture_id)
        if not picture_id:
            return None

        key = ("pictureUrl", picture_id)
        url = await self._cache.get(key, lambda: self._lookup_picture(picture_id), self._options)
        if url is None:
            self._cache.discard(key)
        return url

    async def _lookup_picture(self, picture_id: str) -> Optional[str]:
        blob = await self._api.get_default_picture(picture_id)
        if blob is None:
            log.debug(f"[Resources] No picture stored for {picture_id}")
            return None
        return blob.direct_url("image/png") or None

    # ------------------------------------------------------------
    # Emojis
    # ------------------------------------------------------------

    async def emoji(self, emoji_id: str) -> Optional[Emoji]:
        if not emoji_id:
            return None

        key = ("emoji", emoji_id)
        found = await self._cache.get(key, lambda: self._api.get_emoji_by_id(emoji_id), self._options)
        if found is None:
            self._cache.discard(key)
        return found

    async def emoji_url(self, emoji_id: Optional[str]) -> Optional[str]:
        if emoji_id and DEFAULT_EMOJI_PATTERN.match(emoji_id):
            return self.default_emoji_url(emoji_id)
        if not emoji_id:
            return None

        found = await self.emoji(emoji_id)
        if found is None:
            return None
        return found.blob.direct_url("image/png") or None

    async def resolve_emojis(self, messages: Iterable[Message]) -> Dict[str, Optional[str]]:
        """
        Resolve every distinct emoji referenced by `messages`.

        Failures resolve to None for that id; they are logged, not raised,
        so one broken emoji never hides the rest.
        """
        ids: List[str] = []
        for message in messages:
            for emoji_id in message.emoji_ids:
                if emoji_id not in ids:
                    ids.append(emoji_id)

        results = await asyncio.gather(
            *(self.emoji_url(emoji_id) for emoji_id in ids),
            return_exceptions=True,
        )

        resolved: Dict[str, Optional[str]] = {}
        for emoji_id, result in zip(ids, results):
            if isinstance(result, ChatError):
                log.warning(f"[Resources] Emoji {emoji_id} unresolved: {result}")
                resolved[emoji_id] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                resolved[emoji_id] = result
        return resolved

    # ------------------------------------------------------------
    # Placeholder
    # ------------------------------------------------------------

    def letter_placeholder(self, name: str) -> Optional[Placeholder]:
        name = (name or "").strip()
        if not name:
            return None
        return Placeholder(
            letter=name[0].upper(),
            background=self._assets.placeholder_background,
            foreground=self._assets.placeholder_foreground,
        )
