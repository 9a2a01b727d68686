"""
Write-side pipeline.

Composite mutations run their remote steps strictly in order; step N+1
only starts once step N produced the identifier it needs. The actor has
no transactions, so when a later step fails the resources created by
earlier steps stay where they are, unreferenced. Nothing here attempts a
compensating delete.

On success only the cache keys the mutation can have made stale are
invalidated.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from core.keys import EMOJIS_KEY, MESSAGE_COUNT_KEY, MESSAGES_KEY, profile_key
from core.query_cache import Key, QueryCache
from core.retry import NO_RETRY, RetryPolicy, run_with_retry
from services.actor.api import ChatActorAPI
from services.actor.errors import ChatError
from services.actor.models import MediaType, MediaUpload, UserProfile
from shared.config.client import UploadLimits
from shared.logging.logger import get_logger
from shared.storage.session_store import Session

log = get_logger("core.mutations")

T = TypeVar("T")


class UploadRejected(ValueError):
    """A local file failed validation; nothing was sent."""


@dataclass
class PictureUpload:
    data: bytes
    mime_type: str
    file_name: str = "picture"


def make_custom_id(owner: str, created_ms: Optional[int] = None) -> str:
    """
    Identifier for a user-uploaded resource. Owner plus creation time
    keeps ids unique without a central allocator.
    """
    if created_ms is None:
        created_ms = int(time.time() * 1000)
    return f"custom_{owner}_{created_ms}"


class MutationPipeline:
    def __init__(
        self,
        api: ChatActorAPI,
        cache: QueryCache,
        *,
        limits: Optional[UploadLimits] = None,
        write_retry: RetryPolicy = RetryPolicy(max_attempts=2),
        on_invalidate: Optional[Callable[[List[Key]], None]] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ):
        self._api = api
        self._cache = cache
        self._limits = limits or UploadLimits()
        self._write_retry = write_retry
        self._on_invalidate = on_invalidate
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    # ------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------

    async def send_message(
        self,
        session: Session,
        content: str,
        media: Sequence[MediaUpload] = (),
        emoji_ids: Sequence[str] = (),
    ) -> int:
        """
        Upload `media` in input order, then append the message.

        Returns the new message id. If an upload fails the message is not
        sent; media already uploaded is left orphaned.
        """
        content = (content or "").strip()
        if not content and not media and not emoji_ids:
            raise ValueError("Nothing to send: message has no text, media or emoji")

        media_types = [self._check_media(upload) for upload in media]

        media_ids: List[int] = []
        try:
            for upload, media_type in zip(media, media_types):
                media_ids.append(await self._upload_media(upload, media_type))
        except ChatError as e:
            if media_ids:
                log.warning(
                    f"[Send][{session.user_id}] Upload failed after {len(media_ids)} "
                    f"file(s); leaving media {media_ids} unreferenced"
                )
            log.error(f"[Send][{session.user_id}] Message not sent: {e}")
            raise

        message_id = await self._write(
            "sendMessage",
            lambda: self._api.send_message(content, session.user_id, media_ids, list(emoji_ids)),
        )

        log.info(
            f"[Send][{session.user_id}] Message {message_id} sent "
            f"(media={len(media_ids)}, emojis={len(emoji_ids)})"
        )
        self._invalidate(MESSAGES_KEY, MESSAGE_COUNT_KEY)
        return message_id

    async def _upload_media(self, upload: MediaUpload, media_type: MediaType) -> int:
        media_id = await self._write(
            "uploadMedia",
            lambda: self._api.upload_media(upload.data, media_type, upload.file_name),
        )
        log.debug(f"[Send] Uploaded {upload.file_name} as media {media_id}")
        return media_id

    # ------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------

    async def join(
        self,
        username: str,
        color: str,
        *,
        picture_id: str = "",
        picture: Optional[PictureUpload] = None,
    ) -> Session:
        """
        Register a new identity, uploading a custom picture first if given.

        The join call itself is never retried.
        """
        username = self._check_username(username)

        if picture is not None:
            self._check_picture(picture)
            picture_id = make_custom_id(username, self._clock_ms())
            await self._write(
                "uploadProfilePicture",
                lambda: self._api.upload_profile_picture(picture.data, picture_id),
            )

        user_id = await self._write(
            "join",
            lambda: self._api.join(username, picture_id, color),
            policy=NO_RETRY,
        )

        log.info(f"[Join] {username} joined as {user_id}")
        return Session(
            user_id=user_id,
            username=username,
            picture_id=picture_id,
            username_color=color,
        )

    async def update_profile(
        self,
        session: Session,
        *,
        username: Optional[str] = None,
        color: Optional[str] = None,
        picture_id: Optional[str] = None,
        picture: Optional[PictureUpload] = None,
        optimistic: bool = False,
    ) -> Session:
        """
        Update the caller's profile and return the updated Session.

        With `optimistic` the cached profile is replaced before the remote
        call. If the call fails the previous value is put back (or the
        entry forgotten when there was none) and invalidated. Either way
        the caller decides when to adopt the returned Session.
        """
        username = self._check_username(username if username is not None else session.username)
        color = color if color is not None else session.username_color
        target_picture = picture_id if picture_id is not None else session.picture_id

        if picture is not None:
            self._check_picture(picture)
            target_picture = make_custom_id(username, self._clock_ms())
            await self._write(
                "uploadProfilePicture",
                lambda: self._api.upload_profile_picture(picture.data, target_picture),
            )

        key = profile_key(session.user_id)
        previous = self._cache.peek(key)
        had_value = previous is not None and previous.has_value
        previous_value = previous.value if had_value else None

        if optimistic:
            self._cache.set_value(
                key,
                UserProfile(username=username, username_color=color, picture_id=target_picture),
            )

        try:
            await self._write(
                "updateUserProfile",
                lambda: self._api.update_user_profile(session.user_id, username, target_picture, color),
            )
        except ChatError as e:
            log.error(f"[Profile][{session.user_id}] Update failed: {e}")
            if optimistic:
                if had_value:
                    self._cache.set_value(key, previous_value)
                else:
                    self._cache.forget(key)
                self._invalidate(key)
            raise

        log.info(f"[Profile][{session.user_id}] Profile updated ({username})")
        self._invalidate(key)
        return session.with_profile(
            username=username,
            picture_id=target_picture,
            username_color=color,
        )

    # ------------------------------------------------------------
    # Emojis
    # ------------------------------------------------------------

    async def upload_emoji(self, data: bytes, name: str, mime_type: str = "image/png") -> str:
        name = (name or "").strip()
        if not name:
            raise UploadRejected("Emoji name is required")
        if not mime_type.lower().startswith("image/"):
            raise UploadRejected(f"Emoji {name} must be an image (got {mime_type})")
        if len(data) > self._limits.emoji_max_bytes:
            raise UploadRejected(
                f"Emoji {name} is too large ({len(data)} > {self._limits.emoji_max_bytes} bytes)"
            )

        emoji_id = await self._write("uploadEmoji", lambda: self._api.upload_emoji(data, name))
        log.info(f"[Emoji] Uploaded {name} as {emoji_id}")
        self._invalidate(EMOJIS_KEY)
        return emoji_id

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    async def _write(
        self,
        label: str,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        return await run_with_retry(
            operation,
            self._write_retry if policy is None else policy,
            label=label,
        )

    def _invalidate(self, *keys: Key) -> None:
        self._cache.invalidate_keys(*keys)
        if self._on_invalidate is not None:
            self._on_invalidate(list(keys))

    def _check_media(self, upload: MediaUpload) -> MediaType:
        media_type = upload.resolved_type()
        if media_type is None:
            raise UploadRejected(f"{upload.file_name} is not a valid image or video file")
        if len(upload.data) > self._limits.media_max_bytes:
            raise UploadRejected(
                f"{upload.file_name} is too large "
                f"({len(upload.data)} > {self._limits.media_max_bytes} bytes)"
            )
        return media_type

    def _check_picture(self, picture: PictureUpload) -> None:
        if not picture.mime_type.lower().startswith("image/"):
            raise UploadRejected(f"{picture.file_name} must be an image file")
        if len(picture.data) > self._limits.picture_max_bytes:
            raise UploadRejected(
                f"{picture.file_name} is too large "
                f"({len(picture.data)} > {self._limits.picture_max_bytes} bytes)"
            )

    @staticmethod
    def _check_username(username: str) -> str:
        username = (username or "").strip()
        if not username:
            raise ValueError("Username cannot be empty")
        return username
