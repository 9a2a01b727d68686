"""
Client session persistence.

One record per client: the identity returned by `join`, plus the profile
fields the client displays for itself. The record is read once at startup
and rewritten on join / profile update. Absence or any parse or schema
failure means "not joined".
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

from shared.logging.logger import get_logger

log = get_logger("shared.session_store")

SESSION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["userId", "username", "pictureId", "usernameColor"],
    "properties": {
        "userId": {"type": "string", "minLength": 1},
        "username": {"type": "string", "minLength": 1},
        "pictureId": {"type": "string"},
        "usernameColor": {"type": "string"},
    },
}

_VALIDATOR = Draft7Validator(SESSION_SCHEMA)


@dataclass(frozen=True)
class Session:
    user_id: str
    username: str
    picture_id: str
    username_color: str

    def with_profile(
        self,
        *,
        username: Optional[str] = None,
        picture_id: Optional[str] = None,
        username_color: Optional[str] = None,
    ) -> "Session":
        return replace(
            self,
            username=self.username if username is None else username,
            picture_id=self.picture_id if picture_id is None else picture_id,
            username_color=self.username_color if username_color is None else username_color,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "pictureId": self.picture_id,
            "usernameColor": self.username_color,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Session":
        return cls(
            user_id=raw["userId"],
            username=raw["username"],
            picture_id=raw["pictureId"],
            username_color=raw["usernameColor"],
        )


class SessionStore:
    """
    JSON file holding the current Session. Writes are atomic.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Optional[Session]:
        if not self.path.exists():
            return None

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"Session record unreadable ({e}); clearing")
            self.clear()
            return None

        errors = sorted(_VALIDATOR.iter_errors(raw), key=lambda err: list(err.path))
        if errors:
            log.warning(f"Session record invalid ({errors[0].message}); clearing")
            self.clear()
            return None

        session = Session.from_dict(raw)
        log.debug(f"Session loaded for {session.username} ({session.user_id})")
        return session

    def save(self, session: Session) -> None:
        self._write_atomic(session.to_dict())
        log.debug(f"Session saved for {session.username} ({session.user_id})")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        log.debug("Session cleared")

    # ------------------------------------------------------------------

    def _write_atomic(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w", dir=self.path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            tmp.write(json.dumps(payload, indent=2))
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)

        temp_path.replace(self.path)
