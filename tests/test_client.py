import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from aura_sync.client import AuraClient, _default_connector
from aura_sync.schemas.actions import LoginPayload
from aura_sync.schemas.entities import EntityKind, EntityStatus, Post, ThemeMode
from aura_sync.services.merge import replace_entity
from aura_sync.services.poller import ChatPoller
from aura_sync.services.session_file import PersistedSession, SessionFile
from aura_sync.services.snapshot import Session
from aura_sync.services.transport import ApiError, ApiUnauthorizedError
from tests.conftest import iso, make_user, ts

FETCHES = (
    "fetch_users",
    "fetch_follows",
    "fetch_feed",
    "fetch_stories",
    "fetch_groups",
    "fetch_messages",
    "fetch_notifications",
)


@pytest.fixture
def session_file(tmp_path):
    return SessionFile(tmp_path / "session.json")


@pytest.fixture
def backend(api):
    api.enabled = False
    api.token = None
    for name in FETCHES:
        getattr(api, name).return_value = {}
    api.fetch_users.return_value = {
        "users": [
            {"id": "alice", "username": "alice", "updatedAt": iso(-5)},
            {"id": "bob", "username": "bob", "updatedAt": iso(-5)},
        ]
    }
    api.fetch_feed.return_value = {
        "posts": [{"id": "p1", "authorId": "bob", "text": "server post", "createdAt": iso(-3)}]
    }
    api.login.return_value = {"token": "jwt", "user": {"id": "alice", "username": "alice"}}
    return api


@pytest.fixture
def client(backend, session_file):
    return AuraClient(backend, session_file=session_file)


def test_persisted_token_and_theme_are_restored(api, session_file):
    api.token = None
    session_file.save(PersistedSession(token="jwt", theme=ThemeMode.DARK))

    client = AuraClient(api, session_file=session_file)

    assert api.token == "jwt"
    assert client.snapshot.session.theme is ThemeMode.DARK
    assert client.snapshot.session.user_id is None


@pytest.mark.asyncio
async def test_login_hydrates_and_persists_token(client, session_file):
    result = await client.login(LoginPayload(username="alice", password="pw"))

    assert result.ok
    assert [post.id for post in client.snapshot.posts] == ["p1"]
    assert {user.id for user in client.snapshot.users} == {"alice", "bob"}
    assert client.projection.feed[0].text == "server post"
    assert session_file.load().token == "jwt"
    assert client.listener is None


@pytest.mark.asyncio
async def test_full_hydrate_drops_stale_entities_but_keeps_provisional_ones(client):
    await client.login(LoginPayload(username="alice", password="pw"))
    provisional = Post(
        id="temp-1",
        author_id="alice",
        text="pending",
        created_at=ts(),
        sync_status=EntityStatus.PROVISIONAL,
        correlation_id="temp-1",
    )
    stale = Post(id="gone", author_id="bob", created_at=ts(-50))
    client.store.install(replace(client.snapshot, posts=(provisional, stale, *client.snapshot.posts)))

    assert await client.hydrate() is True

    assert [post.id for post in client.snapshot.posts] == ["temp-1", "p1"]
    assert client.snapshot.session.user_id == "alice"


@pytest.mark.asyncio
async def test_partial_hydrate_merges_into_current_snapshot(client, backend):
    await client.login(LoginPayload(username="alice", password="pw"))
    stale = Post(id="kept", author_id="bob", created_at=ts(-50))
    client.store.install(replace(client.snapshot, posts=(*client.snapshot.posts, stale)))
    backend.fetch_stories.side_effect = ApiError("stories down", status_code=503)

    await client.hydrate()

    assert {post.id for post in client.snapshot.posts} == {"p1", "kept"}


@pytest.mark.asyncio
async def test_hydrate_is_skipped_while_signed_out(client, backend):
    assert await client.hydrate() is False
    backend.fetch_users.assert_not_awaited()


@pytest.mark.asyncio
async def test_logout_resets_everything_but_the_theme(client, backend, session_file):
    await client.login(LoginPayload(username="alice", password="pw"))
    client.set_theme(ThemeMode.DARK)

    await client.logout()

    assert client.snapshot.users == ()
    assert client.snapshot.posts == ()
    assert client.snapshot.session.user_id is None
    assert client.snapshot.session.theme is ThemeMode.DARK
    assert backend.token is None
    assert session_file.load() == PersistedSession(token=None, theme=ThemeMode.DARK)


@pytest.mark.asyncio
async def test_resume_with_rejected_token_forgets_it(client, backend, session_file):
    session_file.save(PersistedSession(token="old"))
    backend.token = "old"
    backend.me.side_effect = ApiUnauthorizedError("Session expired. Please login again.", status_code=401)

    result = await client.resume()

    assert result.ok is False
    assert session_file.load().token is None


@pytest.mark.asyncio
async def test_background_work_starts_after_login_and_stops_on_logout(backend, session_file):
    backend.enabled = True
    tokens = []

    def connector_factory(token):
        tokens.append(token)

        @asynccontextmanager
        async def connect():
            raise OSError("offline")
            yield  # pragma: no cover

        return connect

    poller = AsyncMock(spec=ChatPoller)
    client = AuraClient(
        backend, session_file=session_file, connector_factory=connector_factory, poller=poller
    )

    await client.login(LoginPayload(username="alice", password="pw"))

    assert tokens == ["jwt"]
    assert client.listener is not None
    poller.start.assert_awaited_once()

    await client.logout()

    assert client.listener is None
    poller.stop.assert_awaited_once()


def test_default_connector_authenticates_with_the_session_token(mocker):
    connector = mocker.patch("aura_sync.client.aiohttp_connector")

    _default_connector("jwt")

    connector.assert_called_once_with(token="jwt")


def _ban_current_user(snapshot):
    banned = snapshot.current_user.model_copy(update={"banned": True})
    return replace_entity(snapshot, EntityKind.USERS, banned)


@pytest.mark.asyncio
async def test_banned_user_is_signed_out_mid_session(backend, session_file):
    backend.enabled = True

    def connector_factory(token):
        @asynccontextmanager
        async def connect():
            raise OSError("offline")
            yield  # pragma: no cover

        return connect

    poller = AsyncMock(spec=ChatPoller)
    client = AuraClient(
        backend, session_file=session_file, connector_factory=connector_factory, poller=poller
    )
    await client.login(LoginPayload(username="alice", password="pw"))

    client.store.update(_ban_current_user)
    await asyncio.wait_for(_until(lambda: client.snapshot.session.user_id is None), timeout=2)

    assert client.listener is None
    assert client.snapshot.users == ()
    assert backend.token is None
    assert session_file.load().token is None
    poller.stop.assert_awaited_once()


def test_banned_user_is_signed_out_without_event_loop(api, session_file):
    session_file.save(PersistedSession(token="jwt"))
    client = AuraClient(api, session_file=session_file)

    client.store.install(
        replace(client.snapshot, users=(make_user("alice", banned=True),), session=Session(user_id="alice"))
    )

    assert client.snapshot.session.user_id is None
    assert client.snapshot.users == ()
    assert api.token is None
    assert session_file.load().token is None


async def _until(condition):
    while not condition():
        await asyncio.sleep(0.001)
