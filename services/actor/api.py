from __future__ import annotations

from typing import List, Optional, Sequence

from services.actor.gateway import ActorGateway
from services.actor.models import (
    Blob,
    Emoji,
    MediaType,
    Message,
    PictureReference,
    UserProfile,
    decode_messages,
    decode_optional,
)


class ChatActorAPI:
    """
    Typed surface over the actor's methods.

    Reads go through `gateway.query` (fail fast while not ready), writes
    through `gateway.call` (connect on demand). Payloads are decoded into
    the models in services.actor.models; nothing here retries or caches.
    """

    def __init__(self, gateway: ActorGateway):
        self.gateway = gateway

    # --------------------------------------------------
    # Identity
    # --------------------------------------------------

    async def join(self, username: str, picture_id: str, color: str) -> str:
        return str(await self.gateway.call("join", [username, picture_id, color]))

    async def update_user_profile(
        self,
        user_id: str,
        username: str,
        picture_id: str,
        color: str,
    ) -> None:
        await self.gateway.call("updateUserProfile", [user_id, username, picture_id, color])

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        raw = await self.gateway.query("getUserProfile", [user_id])
        return decode_optional(raw, UserProfile.from_wire)

    # --------------------------------------------------
    # Message log
    # --------------------------------------------------

    async def get_all_messages(self) -> List[Message]:
        return decode_messages(await self.gateway.query("getAllMessages"))

    async def get_recent_messages(self, limit: int) -> List[Message]:
        return decode_messages(await self.gateway.query("getRecentMessages", [int(limit)]))

    async def get_messages_since(self, message_id: int) -> List[Message]:
        return decode_messages(await self.gateway.query("getMessagesSince", [int(message_id)]))

    async def get_message_count(self) -> int:
        return int(await self.gateway.query("getMessageCount"))

    async def send_message(
        self,
        content: str,
        user_id: str,
        media_ids: Sequence[int],
        emoji_ids: Sequence[str],
    ) -> int:
        raw = await self.gateway.call(
            "sendMessage",
            [content, user_id, [int(m) for m in media_ids], list(emoji_ids)],
        )
        return int(raw)

    # --------------------------------------------------
    # Binary resources
    # --------------------------------------------------

    async def upload_media(self, data: bytes, media_type: MediaType, file_name: str) -> int:
        raw = await self.gateway.call(
            "uploadMedia",
            [Blob.from_bytes(data).to_wire(), media_type.value, file_name],
        )
        return int(raw)

    async def upload_emoji(self, data: bytes, name: str) -> str:
        raw = await self.gateway.call("uploadEmoji", [Blob.from_bytes(data).to_wire(), name])
        return str(raw)

    async def upload_profile_picture(self, data: bytes, picture_id: str) -> None:
        await self.gateway.call(
            "uploadProfilePicture",
            [Blob.from_bytes(data).to_wire(), picture_id],
        )

    # --------------------------------------------------
    # Catalogues
    # --------------------------------------------------

    async def list_default_pictures(self) -> List[PictureReference]:
        raw = await self.gateway.query("listDefaultPictures")
        return [PictureReference.from_wire(item) for item in raw or []]

    async def initialize_defaults(self, pictures: Sequence[PictureReference]) -> None:
        await self.gateway.call("initializeDefaults", [[p.to_wire() for p in pictures]])

    async def get_default_picture(self, picture_id: str) -> Optional[Blob]:
        raw = await self.gateway.query("getDefaultPicture", [picture_id])
        return decode_optional(raw, Blob.from_wire)

    async def get_all_emojis(self) -> List[Emoji]:
        raw = await self.gateway.query("getAllEmojis")
        return [Emoji.from_wire(item) for item in raw or []]

    async def get_emoji_by_id(self, emoji_id: str) -> Optional[Emoji]:
        raw = await self.gateway.query("getEmojiById", [emoji_id])
        return decode_optional(raw, Emoji.from_wire)
