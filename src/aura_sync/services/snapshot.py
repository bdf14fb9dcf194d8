"""Snapshot store holding the single source of truth of the client.

A :class:`Snapshot` is immutable; every change installs a whole new snapshot
so observers never see a partially-updated state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from aura_sync.schemas.entities import (
    AppView,
    Entity,
    EntityKind,
    Follow,
    Group,
    GroupMember,
    GroupPost,
    GroupPostComment,
    Message,
    Notification,
    Post,
    PostComment,
    Story,
    StoryComment,
    ThemeMode,
    User,
)

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Ephemeral per-session UI state."""

    user_id: str | None = None
    current_view: AppView = AppView.FEED
    active_chat_user_id: str | None = None
    active_group_id: str | None = None
    theme: ThemeMode = ThemeMode.LIGHT


@dataclass(frozen=True)
class Snapshot:
    """One ordered collection per entity kind plus the session sub-structure."""

    users: tuple[User, ...] = ()
    follows: tuple[Follow, ...] = ()
    posts: tuple[Post, ...] = ()
    post_comments: tuple[PostComment, ...] = ()
    stories: tuple[Story, ...] = ()
    story_comments: tuple[StoryComment, ...] = ()
    messages: tuple[Message, ...] = ()
    groups: tuple[Group, ...] = ()
    group_members: tuple[GroupMember, ...] = ()
    group_posts: tuple[GroupPost, ...] = ()
    group_post_comments: tuple[GroupPostComment, ...] = ()
    notifications: tuple[Notification, ...] = ()
    session: Session = field(default_factory=Session)

    @classmethod
    def empty(cls, session: Session | None = None) -> Snapshot:
        return cls(session=session or Session())

    def collection(self, kind: EntityKind) -> tuple[Entity, ...]:
        return getattr(self, kind.value)

    def with_collection(self, kind: EntityKind, items: tuple[Entity, ...]) -> Snapshot:
        return replace(self, **{kind.value: tuple(items)})

    def find(self, kind: EntityKind, entity_id: str) -> Entity | None:
        for entity in self.collection(kind):
            if entity.id == entity_id:
                return entity
        return None

    def user(self, user_id: str | None) -> User | None:
        if not user_id:
            return None
        return self.find(EntityKind.USERS, user_id)  # type: ignore[return-value]

    @property
    def current_user(self) -> User | None:
        return self.user(self.session.user_id)


Listener = Callable[[Snapshot], None]


class SnapshotStore:
    """Owner of the current :class:`Snapshot`.

    ``install`` and ``update`` are the only writers. Subscribers are called
    synchronously after each install; their exceptions are logged and never
    reach the writer.
    """

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._snapshot = snapshot or Snapshot.empty()
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def install(self, snapshot: Snapshot) -> bool:
        """Replace the current snapshot. Returns False when nothing changed."""
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        self._notify()
        return True

    def update(self, fn: Callable[[Snapshot], Snapshot]) -> bool:
        """Apply ``fn`` to the current snapshot and install the result."""
        return self.install(fn(self._snapshot))

    def reset(self, session: Session | None = None) -> None:
        self._snapshot = Snapshot.empty(session)
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.error("Snapshot listener %r failed", listener, exc_info=True)

    # Session helpers

    def _update_session(self, **changes: object) -> bool:
        return self.update(lambda snap: replace(snap, session=replace(snap.session, **changes)))

    def set_view(self, view: AppView) -> bool:
        """Switch the current view. The admin view is only reachable by admins."""
        if view is AppView.ADMIN:
            user = self._snapshot.current_user
            if user is None or not user.is_admin:
                return False
        return self._update_session(current_view=view)

    def set_theme(self, theme: ThemeMode) -> bool:
        return self._update_session(theme=theme)

    def set_active_chat(self, user_id: str | None) -> bool:
        changes: dict[str, object] = {"active_chat_user_id": user_id}
        if user_id:
            changes["current_view"] = AppView.MESSAGES
        return self._update_session(**changes)

    def set_active_group(self, group_id: str | None) -> bool:
        changes: dict[str, object] = {"active_group_id": group_id}
        if group_id:
            changes["current_view"] = AppView.GROUPS
        return self._update_session(**changes)
