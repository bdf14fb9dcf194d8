"""Dispatch machinery shared by all optimistic commands.

A command validates its input against the current snapshot, builds a
:class:`Mutation` and hands it to :meth:`MutationDispatcher._commit`. The
optimistic change is installed synchronously and the request is scheduled
on the running event loop; its outcome is reported later through
:meth:`MutationDispatcher.on_outcome` subscribers.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from aura_sync.core.settings import settings
from aura_sync.schemas.actions import ActionResult, MutationOutcome, Outcome
from aura_sync.schemas.entities import Entity, EntityKind, User
from aura_sync.services.merge import (
    confirm_provisional,
    merge_bundle,
    remove_provisional,
    replace_entity,
    restore_entities,
)
from aura_sync.services.normalizer import normalize_bundle
from aura_sync.services.snapshot import Snapshot, SnapshotStore
from aura_sync.services.transport import ApiError, ConflictError, SocialApiClient
from aura_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

LOGIN_REQUIRED = "Please login first."
ADMIN_REQUIRED = "Admin access required."
NETWORK_FAILED = "Network error. Your change was reverted."
CONFLICT_MESSAGE = "Someone changed this before you. The latest version was loaded."

OutcomeListener = Callable[[MutationOutcome], None]


def make_provisional_id() -> str:
    """Return a fresh provisional id, e.g. ``temp-1718000000000-a1b2c3``."""
    return f"{settings.provisional_id_prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass
class Mutation:
    """One optimistic change and the request that confirms it.

    ``touched`` lists the existing entities the change modifies or removes;
    their pre-mutation versions are taken from ``before`` on rollback.
    """

    action: str
    kind: EntityKind
    correlation_id: str
    before: Snapshot
    apply: Callable[[Snapshot], Snapshot]
    request: Callable[[], Awaitable[Any]]
    message: str
    touched: Mapping[EntityKind, tuple[str, ...]] = field(default_factory=dict)
    authoritative: bool = False
    rollback_on_failure: bool = True
    toggle_key: tuple[str, ...] | None = None


def wire(entity: Entity, *names: str) -> dict[str, Any]:
    """camelCase request body with the given fields and the correlation id."""
    payload = entity.model_dump(mode="json", by_alias=True, include=set(names), exclude_none=True)
    if entity.correlation_id:
        payload["correlationId"] = entity.correlation_id
    return payload


class MutationDispatcher:
    """Base class of the mutation pipeline."""

    def __init__(
        self,
        store: SnapshotStore,
        api: SocialApiClient,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.api = api
        self._id_factory = id_factory or make_provisional_id
        self._clock = clock or utcnow
        self._pending: set[asyncio.Task[None]] = set()
        self._listeners: list[OutcomeListener] = []
        self._latest_toggle: dict[tuple[str, ...], str] = {}

    @property
    def snapshot(self) -> Snapshot:
        return self.store.snapshot

    @property
    def user(self) -> User | None:
        return self.store.snapshot.current_user

    def new_id(self) -> str:
        return self._id_factory()

    def now(self) -> datetime:
        return self._clock()

    # Outcome events

    def on_outcome(self, listener: OutcomeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, mutation: Mutation, outcome: Outcome, message: str) -> None:
        event = MutationOutcome(
            correlation_id=mutation.correlation_id,
            action=mutation.action,
            outcome=outcome,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.error("Outcome listener %r failed", listener, exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every scheduled confirmation has settled."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        self._latest_toggle.clear()

    # Commit / settle

    def _commit(self, mutation: Mutation) -> ActionResult:
        self.store.update(mutation.apply)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if not mutation.rollback_on_failure:
                return ActionResult.applied(mutation.message, mutation.correlation_id)
            logger.warning("No running event loop, reverting %s", mutation.action)
            self.store.update(lambda snap: self._rollback(snap, mutation))
            return ActionResult.failed(NETWORK_FAILED)

        if mutation.toggle_key is not None:
            self._latest_toggle[mutation.toggle_key] = mutation.correlation_id
        task = loop.create_task(self._settle(mutation))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return ActionResult.applied(mutation.message, mutation.correlation_id)

    async def _settle(self, mutation: Mutation) -> None:
        try:
            response = await mutation.request()
        except ConflictError as exc:
            logger.info("Conflict on %s (revision %s)", mutation.action, exc.revision)
            self.store.update(lambda snap: self._force_state(snap, mutation, exc.state))
            self._emit(mutation, Outcome.CONFLICT, CONFLICT_MESSAGE)
        except (ApiError, OSError) as exc:
            logger.warning("Mutation %s failed: %s", mutation.action, exc)
            if not mutation.rollback_on_failure:
                self._emit(mutation, Outcome.FAILED, NETWORK_FAILED)
            elif self._superseded(mutation):
                logger.info("Skipping rollback of superseded %s", mutation.action)
                self._emit(mutation, Outcome.FAILED, NETWORK_FAILED)
            else:
                self.store.update(lambda snap: self._rollback(snap, mutation))
                self._emit(mutation, Outcome.FAILED, NETWORK_FAILED)
        else:
            try:
                self.store.update(lambda snap: self._confirm(snap, mutation, response))
            except (ValueError, TypeError, KeyError, AttributeError, ArithmeticError) as exc:
                logger.error(
                    "Could not apply confirmation of %s: %s", mutation.action, exc, exc_info=True
                )
            self._emit(mutation, Outcome.CONFIRMED, mutation.message)
        finally:
            key = mutation.toggle_key
            if key is not None and self._latest_toggle.get(key) == mutation.correlation_id:
                del self._latest_toggle[key]

    def _superseded(self, mutation: Mutation) -> bool:
        if mutation.toggle_key is None:
            return False
        return self._latest_toggle.get(mutation.toggle_key) != mutation.correlation_id

    def _confirm(self, snapshot: Snapshot, mutation: Mutation, response: Any) -> Snapshot:
        now = self.now()
        bundle = normalize_bundle(response, default_kind=mutation.kind, now=now)
        primary = bundle.get(mutation.kind)
        if primary:
            result = remove_provisional(snapshot, mutation.correlation_id, now=now)
        else:
            result = confirm_provisional(snapshot, mutation.correlation_id)

        if mutation.kind is EntityKind.GROUPS and len(primary) == 1:
            result = self._follow_confirmed_group(result, mutation.correlation_id, primary[0].id)

        if mutation.authoritative:
            for entity in primary:
                result = replace_entity(result, mutation.kind, entity, now=now)
            return merge_bundle(result, bundle.without(mutation.kind), now=now)
        return merge_bundle(result, bundle, now=now)

    @staticmethod
    def _follow_confirmed_group(snapshot: Snapshot, provisional_id: str, group_id: str) -> Snapshot:
        """Point the session at the confirmed id of a group it opened provisionally."""
        if snapshot.session.active_group_id != provisional_id:
            return snapshot
        return replace(snapshot, session=replace(snapshot.session, active_group_id=group_id))

    def _force_state(self, snapshot: Snapshot, mutation: Mutation, state: Any) -> Snapshot:
        now = self.now()
        result = self._rollback(snapshot, mutation)
        bundle = normalize_bundle(state, default_kind=mutation.kind, now=now)
        for entity in bundle.get(mutation.kind):
            result = replace_entity(result, mutation.kind, entity, now=now)
        return merge_bundle(result, bundle.without(mutation.kind), now=now)

    def _rollback(self, snapshot: Snapshot, mutation: Mutation) -> Snapshot:
        now = self.now()
        result = remove_provisional(snapshot, mutation.correlation_id, now=now)
        for kind, ids in mutation.touched.items():
            result = restore_entities(result, mutation.before, kind, ids, now=now)
        return result

    # Helpers for commands

    def _mutation(self, action: str, kind: EntityKind, **kwargs: Any) -> Mutation:
        return Mutation(
            action=action,
            kind=kind,
            correlation_id=kwargs.pop("correlation_id", None) or self.new_id(),
            before=self.store.snapshot,
            **kwargs,
        )
