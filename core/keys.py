"""Cache keys shared by queries and mutations."""

from __future__ import annotations

MESSAGES_KEY = ("messages",)
MESSAGE_COUNT_KEY = ("messageCount",)
EMOJIS_KEY = ("emojis",)


def profile_key(user_id: str) -> tuple:
    return ("userProfile", user_id)
