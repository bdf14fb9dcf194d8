# src/aura_sync/client.py
"""Top-level client session.

:class:`AuraClient` owns one store and wires the API client, the mutation
pipeline, the push listener, the chat poller and the projection cache
around it. The store is (re)built at authentication and reset wholesale at
logout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from aura_sync.schemas.actions import ActionResult, LoginPayload, RegisterPayload
from aura_sync.schemas.entities import EntityKind, ThemeMode
from aura_sync.services.merge import insert_entity, merge_bundle
from aura_sync.services.mutations import MutationPipeline
from aura_sync.services.normalizer import normalize_bundle
from aura_sync.services.poller import ChatPoller, PollState
from aura_sync.services.projector import Projection, ProjectionCache
from aura_sync.services.push import Connector, PushChannelListener, aiohttp_connector
from aura_sync.services.session_file import SessionFile
from aura_sync.services.snapshot import Session, Snapshot, SnapshotStore
from aura_sync.services.transport import ApiError, SocialApiClient
from aura_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str | None], Connector]


def _default_connector(token: str | None) -> Connector:
    return aiohttp_connector(token=token)


class AuraClient:
    """One signed-in (or signed-out) client session."""

    def __init__(
        self,
        api: SocialApiClient | None = None,
        *,
        session_file: SessionFile | None = None,
        connector_factory: ConnectorFactory | None = None,
        poller: ChatPoller | None = None,
    ) -> None:
        self.api = api or SocialApiClient()
        self.session_file = session_file or SessionFile()
        persisted = self.session_file.load()
        if persisted.token and not self.api.token:
            self.api.token = persisted.token

        self.store = SnapshotStore(Snapshot.empty(Session(theme=persisted.theme)))
        self.pipeline = MutationPipeline(self.store, self.api)
        self.projections = ProjectionCache(self.store)
        self.poller = poller or ChatPoller(self.api, self.store)
        self.listener: PushChannelListener | None = None
        self._connector_factory = connector_factory or _default_connector
        self._forced_logout: asyncio.Task[None] | None = None
        self.store.subscribe(self._on_snapshot)

    @property
    def snapshot(self) -> Snapshot:
        return self.store.snapshot

    @property
    def projection(self) -> Projection:
        return self.projections.projection

    # Authentication

    async def login(self, payload: LoginPayload) -> ActionResult:
        result = await self.pipeline.login(payload)
        if result.ok:
            await self._after_auth()
        return result

    async def register(self, payload: RegisterPayload) -> ActionResult:
        result = await self.pipeline.register(payload)
        if result.ok:
            await self._after_auth()
        return result

    async def resume(self) -> ActionResult:
        """Restore the session of the persisted token, if any."""
        result = await self.pipeline.resume()
        if result.ok:
            await self._after_auth()
        elif not self.api.token:
            self.session_file.clear()
        return result

    async def _after_auth(self) -> None:
        self.session_file.update(token=self.api.token)
        await self.hydrate()
        await self._start_background()

    async def _start_background(self) -> None:
        if not self.api.enabled:
            return
        if self.listener is not None:
            await self.listener.stop()
        self.listener = PushChannelListener(
            self.store,
            self._connector_factory(self.api.token),
            on_resync=self.hydrate,
        )
        await self.listener.start()
        await self.poller.start()

    async def logout(self) -> None:
        """Stop background work and drop every entity of the session."""
        if self.listener is not None:
            await self.listener.stop()
            self.listener = None
        await self.poller.stop()
        self.poller.state = PollState()
        self.pipeline.cancel_pending()
        self._clear_session()
        logger.info("Session closed")

    def _clear_session(self) -> None:
        self.api.token = None
        self.store.reset(Session(theme=self.store.snapshot.session.theme))
        self.session_file.clear()

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        # A banned user loses the session as soon as any update says so.
        user = snapshot.current_user
        if user is None or not user.banned:
            return
        if self._forced_logout is not None and not self._forced_logout.done():
            return
        logger.warning("User %s was banned, closing the session", user.id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._clear_session()
            return
        self._forced_logout = loop.create_task(self.logout())

    # Hydration

    async def hydrate(self) -> bool:
        """Re-fetch every collection and rebuild the snapshot from it.

        Provisional entities still awaiting confirmation are carried over.
        When a fetch fails the fetched data is merged into the current
        snapshot instead. Returns True when the snapshot changed.
        """
        if self.store.snapshot.session.user_id is None:
            return False

        fetches = (
            (EntityKind.USERS, self.api.fetch_users()),
            (EntityKind.FOLLOWS, self.api.fetch_follows()),
            (EntityKind.POSTS, self.api.fetch_feed()),
            (EntityKind.STORIES, self.api.fetch_stories()),
            (EntityKind.GROUPS, self.api.fetch_groups()),
            (EntityKind.MESSAGES, self.api.fetch_messages()),
            (EntityKind.NOTIFICATIONS, self.api.fetch_notifications()),
        )
        responses = await asyncio.gather(*(call for _, call in fetches), return_exceptions=True)

        now = utcnow()
        bundles = []
        complete = True
        for (kind, _), response in zip(fetches, responses):
            if isinstance(response, ApiError | OSError):
                logger.warning("Hydration of %s failed: %s", kind.value, response)
                complete = False
                continue
            if isinstance(response, BaseException):
                raise response
            bundles.append(normalize_bundle(response, default_kind=kind, now=now))

        if not bundles:
            return False

        def rebuild(snapshot: Snapshot) -> Snapshot:
            result = self._rebuild_base(snapshot) if complete else snapshot
            for bundle in bundles:
                result = merge_bundle(result, bundle, now=now)
            if complete:
                result = self._carry_provisional(snapshot, result, now)
            return result

        return self.store.update(rebuild)

    @staticmethod
    def _rebuild_base(snapshot: Snapshot) -> Snapshot:
        base = Snapshot.empty(snapshot.session)
        user = snapshot.current_user
        if user is not None:
            base = base.with_collection(EntityKind.USERS, (user,))
        return base

    @staticmethod
    def _carry_provisional(previous: Snapshot, result: Snapshot, now: datetime) -> Snapshot:
        for kind in EntityKind:
            for entity in reversed(previous.collection(kind)):
                if entity.provisional and result.find(kind, entity.id) is None:
                    result = insert_entity(result, kind, entity, now=now)
        return result

    # Preferences

    def set_theme(self, theme: ThemeMode) -> bool:
        changed = self.store.set_theme(theme)
        self.session_file.update(theme=theme)
        return changed

    async def close(self) -> None:
        if self._forced_logout is not None:
            await self._forced_logout
        if self.listener is not None:
            await self.listener.stop()
            self.listener = None
        await self.poller.stop()
        await self.pipeline.drain()
        self.projections.close()
        await self.api.close()


__all__ = ["AuraClient"]
