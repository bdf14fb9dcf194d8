"""Background chat refresh and presence heartbeat.

The push channel carries most updates, but chats are also refreshed on a
fixed interval and the signed-in user's presence is reported periodically.
Each cycle also drops voice notes and stories that have expired.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from aura_sync.core.settings import settings
from aura_sync.schemas.entities import EntityKind
from aura_sync.services.merge import merge_bundle, prune_expired
from aura_sync.services.normalizer import normalize_bundle
from aura_sync.services.snapshot import SnapshotStore
from aura_sync.services.transport import ApiDisabledError, ApiError, SocialApiClient
from aura_sync.utils.time import isoformat, utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass
class PollState:
    """Mutable polling state.

    ``since`` is the newest message timestamp seen so far; presence is due
    again once ``presence_interval`` has elapsed since ``last_presence``.
    """

    since: str | None = None
    last_presence: float | None = None


class ChatPoller:
    """Periodically refreshes chats and reports presence."""

    def __init__(
        self,
        api: SocialApiClient,
        store: SnapshotStore,
        *,
        chat_interval: float | None = None,
        presence_interval: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.store = store
        self.chat_interval = max(
            0.1, float(chat_interval if chat_interval is not None else settings.chat_poll_interval_seconds)
        )
        self.presence_interval = float(
            presence_interval if presence_interval is not None else settings.presence_interval_seconds
        )
        self.state = PollState()
        self._monotonic = monotonic
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background polling loop."""

        if not self.api.enabled:
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background polling loop."""

        if self._task is None:
            return

        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        interval = self.chat_interval
        backoff = min(interval * 4, 30.0)

        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except ApiDisabledError:
                return
            except ApiError as e:
                logger.warning("ChatPoller encountered ApiError: %s", e)
                await asyncio.sleep(backoff)
                continue
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("ChatPoller encountered network error: %s", e)
                await asyncio.sleep(backoff)
                continue
            except (ValueError, TypeError, KeyError, AttributeError, ArithmeticError) as e:
                logger.error("ChatPoller encountered data processing error: %s", e, exc_info=True)
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(interval)

    async def poll_once(self) -> bool:
        """Run one refresh cycle. Returns True when the snapshot changed."""
        if self.store.snapshot.session.user_id is None:
            return False

        changed = self.store.update(lambda snap: prune_expired(snap, now=utcnow()))
        changed = await self._refresh_messages() or changed
        if self._presence_due():
            changed = await self._touch_presence() or changed
        return changed

    async def _refresh_messages(self) -> bool:
        response = await self.api.fetch_messages(since=self.state.since)
        now = utcnow()
        bundle = normalize_bundle(response, default_kind=EntityKind.MESSAGES, now=now)
        if bundle.messages:
            newest = max(message.created_at for message in bundle.messages)
            self.state.since = isoformat(newest)
        if bundle.is_empty():
            return False
        return self.store.update(lambda snap: merge_bundle(snap, bundle, now=now))

    def _presence_due(self) -> bool:
        last = self.state.last_presence
        return last is None or self._monotonic() - last >= self.presence_interval

    async def _touch_presence(self) -> bool:
        response = await self.api.touch_presence()
        self.state.last_presence = self._monotonic()
        now = utcnow()
        bundle = normalize_bundle(response, default_kind=EntityKind.USERS, now=now)
        if bundle.is_empty():
            return False
        return self.store.update(lambda snap: merge_bundle(snap, bundle, now=now))


__all__ = ["ChatPoller", "PollState"]
