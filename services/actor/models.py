from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class MediaType(str, Enum):
    GIF = "gif"
    VIDEO = "video"
    IMAGE = "image"

    @classmethod
    def from_mime(cls, mime_type: str) -> Optional["MediaType"]:
        mime = (mime_type or "").lower().strip()
        if mime == "image/gif":
            return cls.GIF
        if mime.startswith("image/"):
            return cls.IMAGE
        if mime.startswith("video/"):
            return cls.VIDEO
        return None


@dataclass(frozen=True)
class Blob:
    """
    Either a resolvable URL or raw bytes. Bytes travel base64-encoded.
    """

    url: Optional[str] = None
    data: Optional[bytes] = None

    @classmethod
    def from_url(cls, url: str) -> "Blob":
        return cls(url=url)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Blob":
        return cls(data=bytes(data))

    def direct_url(self, mime_type: str = "application/octet-stream") -> str:
        if self.url:
            return self.url
        if self.data is not None:
            encoded = base64.b64encode(self.data).decode("ascii")
            return f"data:{mime_type};base64,{encoded}"
        return ""

    def to_wire(self) -> Dict[str, Any]:
        if self.url is not None:
            return {"url": self.url}
        return {"bytes": base64.b64encode(self.data or b"").decode("ascii")}

    @classmethod
    def from_wire(cls, raw: Any) -> "Blob":
        if not isinstance(raw, dict):
            return cls()
        if raw.get("url"):
            return cls(url=str(raw["url"]))
        encoded = raw.get("bytes")
        if isinstance(encoded, str):
            return cls(data=base64.b64decode(encoded))
        return cls()


@dataclass(frozen=True)
class MediaFile:
    id: int
    blob: Blob
    file_name: str
    media_type: MediaType

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "MediaFile":
        return cls(
            id=int(raw["id"]),
            blob=Blob.from_wire(raw.get("blob")),
            file_name=str(raw.get("fileName", "")),
            media_type=MediaType(raw.get("mediaType", MediaType.IMAGE.value)),
        )


@dataclass(frozen=True)
class Message:
    """
    One entry of the append-only log. Identity and ordering are `id`.
    """

    id: int
    content: str
    author_id: str
    timestamp: int
    media: Tuple[MediaFile, ...] = ()
    emoji_ids: Tuple[str, ...] = ()

    @property
    def media_ids(self) -> List[int]:
        return [m.id for m in self.media]

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "Message":
        return cls(
            id=int(raw["id"]),
            content=str(raw.get("content", "")),
            author_id=str(raw.get("userId", "")),
            timestamp=int(raw.get("timestamp", 0)),
            media=tuple(MediaFile.from_wire(m) for m in raw.get("mediaFiles") or []),
            emoji_ids=tuple(str(e) for e in raw.get("customEmojis") or []),
        )


@dataclass(frozen=True)
class UserProfile:
    username: str
    username_color: str
    picture_id: str = ""

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "UserProfile":
        return cls(
            username=str(raw.get("username", "")),
            username_color=str(raw.get("usernameColor", "")),
            picture_id=str(raw.get("profilePictureId", "") or ""),
        )


@dataclass(frozen=True)
class PictureReference:
    id: str
    blob: Blob

    @classmethod
    def from_wire(cls, raw: Any) -> "PictureReference":
        # listDefaultPictures answers [[id, blob], ...]
        if isinstance(raw, (list, tuple)):
            picture_id, blob = raw[0], raw[1]
            return cls(id=str(picture_id), blob=Blob.from_wire(blob))
        return cls(id=str(raw["id"]), blob=Blob.from_wire(raw.get("blob")))

    def to_wire(self) -> List[Any]:
        return [self.id, self.blob.to_wire()]


@dataclass(frozen=True)
class Emoji:
    id: str
    name: str
    blob: Blob

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "Emoji":
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            blob=Blob.from_wire(raw.get("blob")),
        )


@dataclass
class MediaUpload:
    """
    A local file queued for upload ahead of a message.
    """

    data: bytes
    file_name: str
    mime_type: str
    media_type: Optional[MediaType] = None

    def resolved_type(self) -> Optional[MediaType]:
        return self.media_type or MediaType.from_mime(self.mime_type)


def decode_messages(raw: Any) -> List[Message]:
    return [Message.from_wire(item) for item in raw or []]


def decode_optional(raw: Any, decoder) -> Any:
    if raw is None:
        return None
    return decoder(raw)

