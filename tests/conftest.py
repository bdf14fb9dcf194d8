# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any
from unittest.mock import AsyncMock

import pytest

from aura_sync.schemas.entities import User, UserRole
from aura_sync.services.mutations import MutationPipeline
from aura_sync.services.snapshot import Session, Snapshot, SnapshotStore
from aura_sync.services.transport import SocialApiClient

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def ts(minutes: int = 0) -> datetime:
    """Fixed test time shifted by ``minutes``."""
    return NOW + timedelta(minutes=minutes)


def iso(minutes: int = 0) -> str:
    return ts(minutes).isoformat().replace("+00:00", "Z")


def make_user(user_id: str, **overrides: Any) -> User:
    data: dict[str, Any] = {
        "id": user_id,
        "username": user_id,
        "display_name": user_id.title(),
        "created_at": ts(-1440),
        "updated_at": ts(-60),
        "last_seen_at": ts(-60),
    }
    data.update(overrides)
    return User(**data)


@pytest.fixture
def alice() -> User:
    return make_user("alice")


@pytest.fixture
def bob() -> User:
    return make_user("bob")


@pytest.fixture
def admin() -> User:
    return make_user("root", role=UserRole.ADMIN)


@pytest.fixture
def snapshot(alice: User, bob: User, admin: User) -> Snapshot:
    return Snapshot(users=(alice, bob, admin), session=Session(user_id="alice"))


@pytest.fixture
def store(snapshot: Snapshot) -> SnapshotStore:
    return SnapshotStore(snapshot)


@pytest.fixture
def api() -> AsyncMock:
    client = AsyncMock(spec=SocialApiClient)
    client.enabled = True
    client.token = "token"
    return client


@pytest.fixture
def id_factory() -> Callable[[], str]:
    counter = count(1)
    return lambda: f"temp-{next(counter)}"


@pytest.fixture
def pipeline(store: SnapshotStore, api: AsyncMock, id_factory: Callable[[], str]) -> MutationPipeline:
    return MutationPipeline(store, api, id_factory=id_factory, clock=lambda: NOW)


@pytest.fixture
def outcomes(pipeline: MutationPipeline) -> list[Any]:
    events: list[Any] = []
    pipeline.on_outcome(events.append)
    return events
