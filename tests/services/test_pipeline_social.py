from dataclasses import replace

import pytest

from aura_sync.core.settings import settings
from aura_sync.schemas.actions import MessagePayload, Outcome, ProfilePatch
from aura_sync.schemas.entities import (
    AppView,
    Follow,
    Message,
    MessageMediaType,
    Notification,
    NotificationType,
)
from aura_sync.services.mutations.base import ADMIN_REQUIRED, CONFLICT_MESSAGE, NETWORK_FAILED
from aura_sync.services.transport import ApiError, ConflictError
from tests.conftest import iso, ts


@pytest.fixture
def inbox(store):
    messages = (
        Message(id="m1", from_id="bob", to_id="alice", text="hi", read_by=("bob",), created_at=ts(-3)),
        Message(id="m2", from_id="bob", to_id="alice", text="there", read_by=("bob",), created_at=ts(-2)),
        Message(id="m3", from_id="alice", to_id="bob", text="yo", read_by=("alice",), created_at=ts(-1)),
    )
    store.install(replace(store.snapshot, messages=messages))
    return store


def test_cannot_follow_yourself_or_unknown_users(pipeline):
    assert pipeline.follow_user("alice").message == "You cannot follow yourself."
    assert pipeline.follow_user("ghost").message == "User not found."


@pytest.mark.asyncio
async def test_follow_then_confirm(pipeline, store, api):
    api.post.return_value = {
        "follow": {"id": "f-1", "followerId": "alice", "followingId": "bob", "createdAt": iso()}
    }

    result = pipeline.follow_user("bob")
    assert result.message == "Followed user."
    assert store.snapshot.follows[0].provisional

    await pipeline.drain()

    assert [follow.id for follow in store.snapshot.follows] == ["f-1"]
    api.post.assert_awaited_once_with(
        "/api/users/bob/follow", {"following": True, "correlationId": "temp-1"}
    )


@pytest.mark.asyncio
async def test_failed_unfollow_restores_the_follow(pipeline, store, api, outcomes):
    follow = Follow(id="f-1", follower_id="alice", following_id="bob", created_at=ts(-10))
    store.install(replace(store.snapshot, follows=(follow,)))
    api.post.side_effect = ApiError("down")
    before = store.snapshot

    result = pipeline.follow_user("bob")
    assert result.message == "Unfollowed."
    assert store.snapshot.follows == ()

    await pipeline.drain()

    assert store.snapshot == before
    assert outcomes[0].message == NETWORK_FAILED


@pytest.mark.asyncio
async def test_failed_follow_restores_the_whole_snapshot(pipeline, store, api):
    api.post.side_effect = ApiError("down")
    before = store.snapshot

    pipeline.follow_user("bob")
    assert store.snapshot.follows[0].provisional

    await pipeline.drain()

    assert store.snapshot == before


@pytest.mark.asyncio
async def test_send_message_switches_to_the_chat(pipeline, store, api):
    api.post.return_value = {"message": {"id": "m-1", "fromId": "alice", "toId": "bob", "text": "hey"}}

    result = pipeline.send_message("bob", MessagePayload(text="hey"))
    assert result.ok
    assert store.snapshot.session.active_chat_user_id == "bob"
    assert store.snapshot.messages[0].read_by == ("alice",)

    await pipeline.drain()

    assert [message.id for message in store.snapshot.messages] == ["m-1"]


def test_send_message_validation(pipeline):
    assert pipeline.send_message("alice", MessagePayload(text="x")).message == "Choose another user."
    assert pipeline.send_message("ghost", MessagePayload(text="x")).message == "Recipient not found."
    assert pipeline.send_message("bob", MessagePayload(text=" ")).message == "Message is empty."

    huge = "data:image/png;base64," + "A" * settings.max_inline_media_bytes
    result = pipeline.send_message(
        "bob", MessagePayload(media_type=MessageMediaType.IMAGE, media_url=huge)
    )
    assert result.message == "Media file is too large. Please send a smaller file."


@pytest.mark.asyncio
async def test_voice_messages_keep_their_expiry(pipeline, store, api):
    api.post.return_value = None

    pipeline.send_message(
        "bob",
        MessagePayload(media_type=MessageMediaType.VOICE, media_url="https://a/v.ogg", expires_at=iso(60)),
    )
    pipeline.send_message(
        "bob",
        MessagePayload(media_type=MessageMediaType.IMAGE, media_url="https://a/i.png", expires_at=iso(60)),
    )
    await pipeline.drain()

    by_type = {message.media_type: message for message in store.snapshot.messages}
    assert by_type[MessageMediaType.VOICE].expires_at == ts(60)
    assert by_type[MessageMediaType.IMAGE].expires_at is None


@pytest.mark.asyncio
async def test_edit_message_rules(pipeline, inbox, api):
    api.patch.return_value = None

    assert pipeline.edit_message("m1", "mine now").message == "You can only edit your own message."
    result = pipeline.edit_message("m3", "yo!")
    await pipeline.drain()

    assert result.ok
    edited = next(message for message in inbox.snapshot.messages if message.id == "m3")
    assert edited.text == "yo!"
    assert edited.edited_at is not None


@pytest.mark.asyncio
async def test_mark_chat_read_is_not_reverted_on_failure(pipeline, inbox, api, outcomes):
    api.post.side_effect = ApiError("down")

    result = pipeline.mark_chat_read("bob")
    await pipeline.drain()

    assert result.outcome is Outcome.APPLIED
    incoming = [message for message in inbox.snapshot.messages if message.to_id == "alice"]
    assert all("alice" in message.read_by for message in incoming)
    assert outcomes[0].outcome is Outcome.FAILED
    assert pipeline.mark_chat_read("bob").message == "Chat is already read."


@pytest.mark.asyncio
async def test_open_chat_marks_it_read(pipeline, inbox, api):
    api.post.return_value = None

    pipeline.open_chat("bob")
    await pipeline.drain()

    session = inbox.snapshot.session
    assert session.current_view is AppView.MESSAGES
    assert session.active_chat_user_id == "bob"
    api.post.assert_awaited_once_with("/api/messages/read", {"peerId": "bob"})


@pytest.mark.asyncio
async def test_mark_notifications_read(pipeline, store, api):
    store.install(
        replace(
            store.snapshot,
            notifications=(
                Notification(id="n1", user_id="alice", type=NotificationType.FOLLOW),
                Notification(id="n2", user_id="bob", type=NotificationType.FOLLOW),
            ),
        )
    )
    api.post.return_value = None

    pipeline.mark_notifications_read()
    await pipeline.drain()

    read = {item.id: item.read for item in store.snapshot.notifications}
    assert read == {"n1": True, "n2": False}
    assert pipeline.mark_notifications_read().message == "No unread notifications."


@pytest.mark.asyncio
async def test_update_profile_sends_revision(pipeline, store, api):
    api.patch.return_value = None

    assert pipeline.update_profile(ProfilePatch(display_name="A")).message == "Display name is too short."
    pipeline.update_profile(ProfilePatch(display_name="Alice A.", bio="  hi  "))
    assert store.snapshot.current_user.display_name == "Alice A."

    await pipeline.drain()

    path, body = api.patch.await_args.args
    assert path == "/api/users/alice"
    assert body["displayName"] == "Alice A."
    assert body["bio"] == "hi"
    assert body["revision"] == 0


@pytest.mark.asyncio
async def test_profile_conflict_pulls_authoritative_state(pipeline, store, api, outcomes):
    api.patch.side_effect = ConflictError(
        "conflict",
        state={
            "user": {
                "id": "alice",
                "username": "alice",
                "displayName": "Server Alice",
                "revision": 5,
                "updatedAt": iso(1),
            }
        },
        revision=5,
    )

    pipeline.update_profile(ProfilePatch(display_name="Local Alice"))
    await pipeline.drain()

    user = store.snapshot.current_user
    assert user.display_name == "Server Alice"
    assert user.revision == 5
    assert [(event.outcome, event.message) for event in outcomes] == [(Outcome.CONFLICT, CONFLICT_MESSAGE)]


def test_admin_view_is_refused_for_members(pipeline):
    result = pipeline.set_view(AppView.ADMIN)

    assert result.ok is False
    assert result.message == ADMIN_REQUIRED
    assert pipeline.set_view(AppView.EXPLORE).ok
