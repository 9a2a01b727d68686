"""
Remote error classification.

The actor answers failures with free text, not codes. Everything that
crosses the gateway boundary goes through classify() exactly once and
comes out as a ChatError with a stable ErrorKind; the original text is
kept on the exception for diagnostics only.
"""

from __future__ import annotations

from enum import Enum
from typing import Tuple, Union

import httpx


class ErrorKind(str, Enum):
    USERNAME_TAKEN = "username_taken"
    IDENTITY_CONFLICT = "identity_conflict"
    UNAUTHORIZED = "unauthorized"
    NETWORK_UNAVAILABLE = "network_unavailable"
    BACKEND_NOT_READY = "backend_not_ready"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in (ErrorKind.NETWORK_UNAVAILABLE, ErrorKind.BACKEND_NOT_READY)


class ChatError(RuntimeError):
    """A classified remote failure."""

    def __init__(self, kind: ErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def transient(self) -> bool:
        return self.kind.transient


# Order matters: the principal variant also contains "sername already exists".
_CASE_SENSITIVE_RULES: Tuple[Tuple[str, ErrorKind], ...] = (
    ("Username already exists for this principal", ErrorKind.IDENTITY_CONFLICT),
    ("username already exists", ErrorKind.USERNAME_TAKEN),
    ("Unauthorized", ErrorKind.UNAUTHORIZED),
    ("Backend not initialized", ErrorKind.BACKEND_NOT_READY),
)

_CASE_INSENSITIVE_RULES: Tuple[Tuple[str, ErrorKind], ...] = (
    ("not ready", ErrorKind.BACKEND_NOT_READY),
    ("network", ErrorKind.NETWORK_UNAVAILABLE),
    ("fetch", ErrorKind.NETWORK_UNAVAILABLE),
)


def classify_text(text: str) -> ErrorKind:
    for needle, kind in _CASE_SENSITIVE_RULES:
        if needle in text:
            return kind

    lowered = text.lower()
    for needle, kind in _CASE_INSENSITIVE_RULES:
        if needle in lowered:
            return kind

    return ErrorKind.UNKNOWN


def classify(error: Union[BaseException, str]) -> ChatError:
    if isinstance(error, ChatError):
        return error

    if isinstance(error, httpx.TransportError):
        return ChatError(ErrorKind.NETWORK_UNAVAILABLE, f"network error: {error}")

    text = error if isinstance(error, str) else (str(error) or type(error).__name__)
    return ChatError(classify_text(text), text)
