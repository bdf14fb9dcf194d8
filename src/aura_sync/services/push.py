"""Reconnecting push channel feeding server events into the snapshot.

The listener is a small state machine::

    closed -> connecting -> open -> reconnecting -> connecting -> ...

``stop()`` moves it to ``closed`` for good. The socket itself is hidden
behind a connector so the state machine can be driven by a fake in tests.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp

from aura_sync.core.settings import settings
from aura_sync.schemas.entities import EntityKind
from aura_sync.services.merge import merge_bundle
from aura_sync.services.normalizer import normalize_bundle
from aura_sync.services.snapshot import SnapshotStore
from aura_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

Connector = Callable[[], AbstractAsyncContextManager[AsyncIterator[str]]]
ResyncCallback = Callable[[], Awaitable[None]]

# Push event types and the collection their payload belongs to.
EVENT_KINDS: dict[str, EntityKind] = {
    "message:new": EntityKind.MESSAGES,
    "message:updated": EntityKind.MESSAGES,
    "post:new": EntityKind.POSTS,
    "post:updated": EntityKind.POSTS,
    "comment:new": EntityKind.POST_COMMENTS,
    "story:new": EntityKind.STORIES,
    "notification:new": EntityKind.NOTIFICATIONS,
    "user:updated": EntityKind.USERS,
    "follow:new": EntityKind.FOLLOWS,
    "group:updated": EntityKind.GROUPS,
    "group_post:new": EntityKind.GROUP_POSTS,
}

RESYNC_EVENTS = frozenset({"hello", "db:updated"})


class ChannelState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"


@dataclass
class BackoffPolicy:
    """Bounded exponential backoff with proportional jitter."""

    base: float = 0.7
    factor: float = 2.0
    maximum: float = 10.0
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random)
    attempt: int = 0

    @classmethod
    def from_settings(cls) -> BackoffPolicy:
        return cls(
            base=settings.reconnect_base_seconds,
            factor=settings.reconnect_factor,
            maximum=settings.reconnect_max_seconds,
            jitter=settings.reconnect_jitter,
        )

    def next_delay(self) -> float:
        delay = min(self.base * (self.factor ** self.attempt), self.maximum)
        self.attempt += 1
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def reset(self) -> None:
        self.attempt = 0


async def _text_frames(ws: aiohttp.ClientWebSocketResponse) -> AsyncIterator[str]:
    async for msg in ws:
        if msg.type == aiohttp.WSMsgType.TEXT:
            yield msg.data
        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
            break


def aiohttp_connector(
    url: str | None = None,
    *,
    token: str | None = None,
    heartbeat: float | None = None,
) -> Connector:
    """Connector opening a websocket with aiohttp."""
    ws_url = url or settings.effective_ws_url
    beat = heartbeat if heartbeat is not None else settings.ws_heartbeat_seconds
    headers = {"Authorization": f"Bearer {token}"} if token else None

    @asynccontextmanager
    async def connect() -> AsyncIterator[AsyncIterator[str]]:
        async with aiohttp.ClientSession(headers=headers) as session:
            async with session.ws_connect(ws_url, heartbeat=beat) as ws:
                yield _text_frames(ws)

    return connect


class PushChannelListener:
    """Keeps a push connection alive and merges its events into the store."""

    def __init__(
        self,
        store: SnapshotStore,
        connector: Connector,
        *,
        backoff: BackoffPolicy | None = None,
        on_resync: ResyncCallback | None = None,
    ) -> None:
        self.store = store
        self.connector = connector
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.on_resync = on_resync
        self.revision = 0
        self._state = ChannelState.CLOSED
        self._state_listeners: list[Callable[[ChannelState], None]] = []
        self._task: asyncio.Task[None] | None = None
        self._resync_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._stopped = False

    @property
    def state(self) -> ChannelState:
        return self._state

    def on_state_change(self, listener: Callable[[ChannelState], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.debug("Push channel %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)

    async def start(self) -> None:
        """Start the background connection loop."""

        if self._stopped:
            logger.info("Push channel was stopped; create a new listener to reconnect")
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the channel. No reconnect is attempted afterwards."""

        self._stopped = True
        self._stopping.set()
        for task in (self._task, self._resync_task):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._resync_task = None
        self._set_state(ChannelState.CLOSED)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            self._set_state(ChannelState.CONNECTING)
            try:
                async with self.connector() as frames:
                    self._set_state(ChannelState.OPEN)
                    self.backoff.reset()
                    async for frame in frames:
                        self.handle_frame(frame)
                        if self._stopping.is_set():
                            break
            except (aiohttp.ClientError, OSError, ConnectionError, TimeoutError) as e:
                logger.warning("Push channel encountered network error: %s", e)
            except (ValueError, TypeError, KeyError, AttributeError, ArithmeticError) as e:
                logger.error("Push channel encountered data processing error: %s", e, exc_info=True)

            if self._stopping.is_set():
                break

            self._set_state(ChannelState.RECONNECTING)
            delay = self.backoff.next_delay()
            logger.info("Push channel reconnecting in %.2fs", delay)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)

        self._set_state(ChannelState.CLOSED)

    def handle_frame(self, raw: str | bytes) -> bool:
        """Apply one inbound frame. Returns True when it changed the snapshot."""
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.debug("Discarding malformed push frame")
            return False
        if not isinstance(payload, dict):
            logger.debug("Discarding non-object push frame")
            return False

        event_type = payload.get("type")
        if event_type in RESYNC_EVENTS:
            self._handle_revision(event_type, payload.get("revision"))
            return False

        kind = EVENT_KINDS.get(event_type) if isinstance(event_type, str) else None
        if kind is None:
            logger.debug("Ignoring push event of type %r", event_type)
            return False

        body: Any = {key: value for key, value in payload.items() if key != "type"}
        if "id" in body:
            body = {kind.value: [body]}
        now = utcnow()
        try:
            bundle = normalize_bundle(body, default_kind=kind, now=now)
            if bundle.is_empty():
                return False
            return self.store.update(lambda snap: merge_bundle(snap, bundle, now=now))
        except (ValueError, TypeError, KeyError, AttributeError, ArithmeticError) as e:
            logger.error("Discarding unprocessable %s event: %s", event_type, e, exc_info=True)
            return False

    def _handle_revision(self, event_type: str, revision: object) -> None:
        number = revision if isinstance(revision, int) and not isinstance(revision, bool) else None
        if event_type == "db:updated" and number is not None and number <= self.revision:
            return
        if number is not None:
            self.revision = max(self.revision, number)
        self._schedule_resync()

    def _schedule_resync(self) -> None:
        if self.on_resync is None:
            return
        if self._resync_task is not None and not self._resync_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop for push resync")
            return
        self._resync_task = loop.create_task(self._resync())

    async def _resync(self) -> None:
        try:
            await self.on_resync()  # type: ignore[misc]
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            logger.warning("Push resync failed: %s", e)


__all__ = [
    "BackoffPolicy",
    "ChannelState",
    "EVENT_KINDS",
    "PushChannelListener",
    "aiohttp_connector",
]
