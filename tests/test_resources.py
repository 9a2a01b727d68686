import pytest

from services.actor.errors import ChatError
from services.actor.models import Blob, Message

PNG = b"\x89PNG"


def avatar_path(n):
    return f"/assets/generated/avatar-{n}-transparent.dim_64x64.png"


@pytest.fixture
def resources(client):
    return client.resources


@pytest.mark.asyncio
async def test_empty_catalogue_is_seeded_once(resources, actor):
    pictures = await resources.default_pictures()

    assert [p.id for p in pictures] == [f"avatar-{n}" for n in range(1, 9)]
    assert pictures[0].blob.url == avatar_path(1)
    assert actor.count("initializeDefaults") == 1
    assert sorted(actor.default_pictures) == sorted(p.id for p in pictures)

    again = await resources.default_pictures()
    assert again == pictures
    assert actor.count("listDefaultPictures") == 1
    assert actor.count("initializeDefaults") == 1


@pytest.mark.asyncio
async def test_populated_catalogue_is_not_reseeded(resources, actor):
    actor.default_pictures["avatar-1"] = {"url": avatar_path(1)}

    pictures = await resources.default_pictures()

    assert [p.id for p in pictures] == ["avatar-1"]
    assert actor.count("initializeDefaults") == 0


@pytest.mark.asyncio
async def test_refused_seeding_still_serves_builtin_set(resources, actor):
    actor.fail("initializeDefaults", "Unauthorized: controllers only")

    pictures = await resources.default_pictures()

    assert len(pictures) == 8
    assert actor.default_pictures == {}


@pytest.mark.asyncio
async def test_default_picture_resolves_without_remote_call(resources, actor):
    assert await resources.picture_url("avatar-3") == avatar_path(3)
    assert actor.calls == []


@pytest.mark.asyncio
async def test_empty_picture_id_is_no_resource(resources, actor):
    assert await resources.picture_url("") is None
    assert await resources.picture_url(None) is None
    assert actor.calls == []


@pytest.mark.asyncio
async def test_custom_picture_lookup_is_cached(resources, api, actor):
    await api.upload_profile_picture(PNG, "custom_alice_1")

    url = await resources.picture_url("custom_alice_1")
    assert url == "data:image/png;base64,iVBORw=="

    assert await resources.picture_url("custom_alice_1") == url
    assert actor.count("getDefaultPicture") == 1


@pytest.mark.asyncio
async def test_missing_picture_is_not_pinned(resources, api, actor):
    assert await resources.picture_url("custom_bob_1") is None

    await api.upload_profile_picture(PNG, "custom_bob_1")
    assert await resources.picture_url("custom_bob_1") is not None
    assert actor.count("getDefaultPicture") == 2


@pytest.mark.asyncio
async def test_default_emoji_uses_static_path(resources, actor):
    assert await resources.emoji_url("default-emoji-smile") == "/assets/generated/emoji/default-emoji-smile.png"
    assert actor.calls == []


@pytest.mark.asyncio
async def test_custom_emoji_resolves_through_lookup(resources, api):
    emoji_id = await api.upload_emoji(PNG, "party")

    emoji = await resources.emoji(emoji_id)
    assert emoji.name == "party"
    assert (await resources.emoji_url(emoji_id)).startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_resolve_emojis_collects_distinct_ids(resources, api):
    good = await api.upload_emoji(PNG, "party")
    messages = [
        Message(id=1, content="a", author_id="u", timestamp=0, emoji_ids=(good, "emoji-404")),
        Message(id=2, content="b", author_id="u", timestamp=0, emoji_ids=(good, "default-emoji-smile")),
    ]

    resolved = await resources.resolve_emojis(messages)

    assert list(resolved) == [good, "emoji-404", "default-emoji-smile"]
    assert resolved[good].startswith("data:image/png;base64,")
    assert resolved["emoji-404"] is None
    assert resolved["default-emoji-smile"].endswith("/emoji/default-emoji-smile.png")


@pytest.mark.asyncio
async def test_resolve_emojis_tolerates_lookup_failures(resources, actor):
    actor.fail("getEmojiById", "Unauthorized", times=2)
    messages = [Message(id=1, content="a", author_id="u", timestamp=0, emoji_ids=("emoji-1", "emoji-2"))]

    resolved = await resources.resolve_emojis(messages)

    assert resolved == {"emoji-1": None, "emoji-2": None}


@pytest.mark.asyncio
async def test_lookup_failure_surfaces_as_chat_error(resources, actor):
    actor.fail("getDefaultPicture", "Unauthorized")

    with pytest.raises(ChatError):
        await resources.picture_url("custom_carol_1")


def test_letter_placeholder(resources):
    placeholder = resources.letter_placeholder(" alice")
    assert placeholder.letter == "A"
    assert placeholder.background == "#cde5aa"
    assert resources.letter_placeholder("") is None


def test_default_set_uses_static_blobs(resources):
    pictures = resources.default_set()
    assert pictures[7].id == "avatar-8"
    assert pictures[7].blob == Blob.from_url(avatar_path(8))
