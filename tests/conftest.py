import os

# No per-run log files from the test session.
os.environ["DINICHAT_LOG_DIR"] = ""

import asyncio
import itertools
import json
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from core.client import ChatClient
from services.actor.api import ChatActorAPI
from services.actor.gateway import ActorGateway
from shared.config.client import load_client_config

ACTOR_URL = "http://actor.test"

Failure = Union[str, Exception]


class ActorReject(Exception):
    """Raised by a fake method to answer {"err": text}."""


class FakeActor:
    """
    In-memory stand-in for the chat actor, served over httpx.MockTransport.

    Every method call is recorded in `calls` (including failed ones).
    `fail()` queues failures per method: a string is answered as
    {"err": text}, an exception is raised from the transport.
    """

    def __init__(self):
        self.up = True
        self.status_hits = 0
        self.calls: List[Tuple[str, List[Any]]] = []

        self.users: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.media: Dict[int, Dict[str, Any]] = {}
        self.emojis: Dict[str, Dict[str, Any]] = {}
        self.pictures: Dict[str, Dict[str, Any]] = {}
        self.default_pictures: Dict[str, Dict[str, Any]] = {}

        self._user_ids = itertools.count(1)
        self._message_ids = itertools.count(0)
        self._media_ids = itertools.count(0)
        self._emoji_ids = itertools.count(1)
        self._failures: Dict[str, Deque[Tuple[int, Failure]]] = {}
        self._seen: Dict[str, int] = {}

        self._methods = {
            "join": self.join,
            "updateUserProfile": self.update_user_profile,
            "getUserProfile": self.get_user_profile,
            "getAllMessages": self.get_all_messages,
            "getRecentMessages": self.get_recent_messages,
            "getMessagesSince": self.get_messages_since,
            "getMessageCount": self.get_message_count,
            "sendMessage": self.send_message,
            "uploadMedia": self.upload_media,
            "uploadEmoji": self.upload_emoji,
            "uploadProfilePicture": self.upload_profile_picture,
            "listDefaultPictures": self.list_default_pictures,
            "initializeDefaults": self.initialize_defaults,
            "getDefaultPicture": self.get_default_picture,
            "getAllEmojis": self.get_all_emojis,
            "getEmojiById": self.get_emoji_by_id,
        }

    # ------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------

    def fail(self, method: str, error: Failure, *, times: int = 1, after: int = 0) -> None:
        """Fail the next `times` calls of `method`, after letting `after` through."""
        queue = self._failures.setdefault(method, deque())
        start = self._seen.get(method, 0) + after
        for i in range(times):
            queue.append((start + i, error))

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def methods_called(self) -> List[str]:
        return [name for name, _ in self.calls]

    def post(self, user_id: str, content: str) -> int:
        """Append a message as another client would."""
        return self.send_message(content, user_id, [], [])

    # ------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/status":
            self.status_hits += 1
            if not self.up:
                return httpx.Response(503, json={"status": "starting"})
            return httpx.Response(200, json={"status": "ok"})

        method = request.url.path.rsplit("/", 1)[-1]
        args = json.loads(request.content or b"{}").get("args", [])
        self.calls.append((method, args))

        index = self._seen.get(method, 0)
        self._seen[method] = index + 1

        failure = self._take_failure(method, index)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return httpx.Response(200, json={"err": failure})

        handler = self._methods.get(method)
        if handler is None:
            return httpx.Response(404, text=f"no such method: {method}")

        try:
            result = handler(*args)
        except ActorReject as e:
            return httpx.Response(200, json={"err": str(e)})
        return httpx.Response(200, json={"ok": result})

    def _take_failure(self, method: str, index: int) -> Optional[Failure]:
        queue = self._failures.get(method)
        if not queue or queue[0][0] != index:
            return None
        return queue.popleft()[1]

    # ------------------------------------------------------------
    # Actor methods
    # ------------------------------------------------------------

    def join(self, username, picture_id, color):
        if any(u["username"] == username for u in self.users.values()):
            raise ActorReject("Error: username already exists")
        user_id = f"user-{next(self._user_ids)}"
        self.users[user_id] = {
            "username": username,
            "profilePictureId": picture_id,
            "usernameColor": color,
        }
        return user_id

    def update_user_profile(self, user_id, username, picture_id, color):
        if user_id not in self.users:
            raise ActorReject("Unauthorized: unknown user")
        if any(u["username"] == username for uid, u in self.users.items() if uid != user_id):
            raise ActorReject("Error: username already exists")
        self.users[user_id] = {
            "username": username,
            "profilePictureId": picture_id,
            "usernameColor": color,
        }
        return None

    def get_user_profile(self, user_id):
        return self.users.get(user_id)

    def get_all_messages(self):
        return list(self.messages)

    def get_recent_messages(self, limit):
        return self.messages[-limit:] if limit > 0 else []

    def get_messages_since(self, message_id):
        return [m for m in self.messages if m["id"] > message_id]

    def get_message_count(self):
        return len(self.messages)

    def send_message(self, content, user_id, media_ids, emoji_ids):
        if user_id not in self.users:
            raise ActorReject("Unauthorized: unknown user")
        message_id = next(self._message_ids)
        self.messages.append({
            "id": message_id,
            "content": content,
            "userId": user_id,
            "timestamp": time.time_ns(),
            "mediaFiles": [self.media[m] for m in media_ids],
            "customEmojis": list(emoji_ids),
        })
        return message_id

    def upload_media(self, blob, media_type, file_name):
        media_id = next(self._media_ids)
        self.media[media_id] = {
            "id": media_id,
            "blob": blob,
            "fileName": file_name,
            "mediaType": media_type,
        }
        return media_id

    def upload_emoji(self, blob, name):
        emoji_id = f"emoji-{next(self._emoji_ids)}"
        self.emojis[emoji_id] = {"id": emoji_id, "name": name, "blob": blob}
        return emoji_id

    def upload_profile_picture(self, blob, picture_id):
        self.pictures[picture_id] = blob
        return None

    def list_default_pictures(self):
        return [[picture_id, blob] for picture_id, blob in self.default_pictures.items()]

    def initialize_defaults(self, pictures):
        for picture_id, blob in pictures:
            self.default_pictures[picture_id] = blob
        return None

    def get_default_picture(self, picture_id):
        return self.pictures.get(picture_id) or self.default_pictures.get(picture_id)

    def get_all_emojis(self):
        return list(self.emojis.values())

    def get_emoji_by_id(self, emoji_id):
        return self.emojis.get(emoji_id)


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# ------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------

@pytest.fixture
def wait_until():
    return _wait_until


FAST_RETRY = {"max_attempts": 2, "base_delay": 0.01, "cap_delay": 0.02}


@pytest.fixture
def actor():
    return FakeActor()


@pytest.fixture
def transport(actor):
    return httpx.MockTransport(actor.handle)


@pytest.fixture
def config(tmp_path):
    return load_client_config(
        {
            "actor": {"url": ACTOR_URL, "request_timeout": 5},
            "polling": {
                "messages_interval": 0.02,
                "count_interval": 0.02,
                "recent_limit": 100,
                "messages_retry": FAST_RETRY,
                "count_retry": FAST_RETRY,
            },
            "cache": {
                "profile_stale_seconds": 30,
                "emojis_stale_seconds": 30,
                "read_retry": FAST_RETRY,
                "write_retries": 2,
            },
            "session_path": str(tmp_path / "session.json"),
        },
        use_env=False,
    )


@pytest_asyncio.fixture
async def gateway(transport):
    gw = ActorGateway(base_url=ACTOR_URL, transport=transport)
    yield gw
    await gw.close()


@pytest.fixture
def api(gateway):
    return ChatActorAPI(gateway)


@pytest_asyncio.fixture
async def client(config, transport):
    chat = ChatClient(config, transport=transport)
    await chat.gateway.connect()
    yield chat
    await chat.close()
