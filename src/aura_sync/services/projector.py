"""Read-only views derived from the snapshot.

Nothing here writes back to the store. :func:`project` computes every view
at once; :class:`ProjectionCache` keeps the result current by recomputing
on each installed snapshot.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from aura_sync.schemas.entities import (
    Entity,
    GroupMember,
    GroupPost,
    Message,
    Notification,
    NotificationType,
    Post,
    PostComment,
    Story,
    User,
)
from aura_sync.services.snapshot import Snapshot, SnapshotStore
from aura_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

# Notification types surfaced to the user.
VISIBLE_NOTIFICATION_TYPES = frozenset(
    {
        NotificationType.FOLLOW,
        NotificationType.POST_LIKE,
        NotificationType.POST_REPOST,
        NotificationType.GROUP_POST_LIKE,
    }
)

_MENTION = re.compile(r"^@([\w.\-]+)")


def newest_first(items: Iterable[E]) -> tuple[E, ...]:
    return tuple(sorted(items, key=lambda item: item.created_at, reverse=True))


def oldest_first(items: Iterable[E]) -> tuple[E, ...]:
    return tuple(sorted(items, key=lambda item: item.created_at))


def other_users(snapshot: Snapshot) -> tuple[User, ...]:
    own_id = snapshot.session.user_id
    return tuple(user for user in snapshot.users if user.id != own_id)


def feed(snapshot: Snapshot) -> tuple[Post, ...]:
    return newest_first(snapshot.posts)


def visible_stories(snapshot: Snapshot, *, now: datetime | None = None) -> tuple[Story, ...]:
    now = now or utcnow()
    return newest_first(story for story in snapshot.stories if story.expires_at > now)


def notifications_for(snapshot: Snapshot) -> tuple[Notification, ...]:
    """Notifications addressed to the signed-in user, newest first."""
    own_id = snapshot.session.user_id
    if own_id is None:
        return ()
    return newest_first(
        item
        for item in snapshot.notifications
        if item.user_id == own_id and item.type in VISIBLE_NOTIFICATION_TYPES
    )


def unread_notification_count(snapshot: Snapshot) -> int:
    return sum(1 for item in notifications_for(snapshot) if not item.read)


def live_messages(snapshot: Snapshot, *, now: datetime | None = None) -> list[Message]:
    """Messages whose expiry, if any, is still ahead of ``now``."""
    now = now or utcnow()
    return [
        message
        for message in snapshot.messages
        if message.expires_at is None or message.expires_at > now
    ]


def _unread_messages(snapshot: Snapshot, now: datetime | None) -> list[Message]:
    own_id = snapshot.session.user_id
    if own_id is None:
        return []
    return [
        message
        for message in live_messages(snapshot, now=now)
        if message.to_id == own_id and own_id not in message.read_by
    ]


def unread_message_count(snapshot: Snapshot, *, now: datetime | None = None) -> int:
    return len(_unread_messages(snapshot, now))


def unread_by_peer(snapshot: Snapshot, *, now: datetime | None = None) -> dict[str, int]:
    """Unread incoming message count keyed by sender id."""
    counts: dict[str, int] = defaultdict(int)
    for message in _unread_messages(snapshot, now):
        counts[message.from_id] += 1
    return dict(counts)


def chat_thread(
    snapshot: Snapshot, peer_id: str | None, *, now: datetime | None = None
) -> tuple[Message, ...]:
    """Messages exchanged with ``peer_id``, oldest first."""
    own_id = snapshot.session.user_id
    if own_id is None or not peer_id:
        return ()
    return oldest_first(
        message
        for message in live_messages(snapshot, now=now)
        if (message.from_id, message.to_id) in ((own_id, peer_id), (peer_id, own_id))
    )


@dataclass(frozen=True)
class CommentNode:
    """A comment with the replies attached to it."""

    comment: PostComment
    replies: tuple[CommentNode, ...] = ()


def _thread(comments: list[PostComment], usernames: Mapping[str, str]) -> tuple[CommentNode, ...]:
    # A comment opening with @username replies to that user's latest earlier
    # comment on the same post; without one it stays top-level.
    parent_of: dict[str, str | None] = {}
    latest_by_username: dict[str, str] = {}
    for comment in comments:
        match = _MENTION.match(comment.text.strip())
        parent_of[comment.id] = latest_by_username.get(match.group(1).lower()) if match else None
        username = usernames.get(comment.author_id)
        if username:
            latest_by_username[username] = comment.id

    children: dict[str | None, list[PostComment]] = defaultdict(list)
    for comment in comments:
        children[parent_of[comment.id]].append(comment)

    def build(comment: PostComment) -> CommentNode:
        return CommentNode(comment, tuple(build(child) for child in children.get(comment.id, ())))

    return tuple(build(comment) for comment in children[None])


def comment_threads(snapshot: Snapshot) -> dict[str, tuple[CommentNode, ...]]:
    """Comment trees keyed by post id, each level oldest first."""
    usernames = {user.id: user.username.lower() for user in snapshot.users if user.username}
    by_post: dict[str, list[PostComment]] = defaultdict(list)
    for comment in oldest_first(snapshot.post_comments):
        by_post[comment.post_id].append(comment)
    return {post_id: _thread(comments, usernames) for post_id, comments in by_post.items()}


def comment_thread(snapshot: Snapshot, post_id: str) -> tuple[CommentNode, ...]:
    return comment_threads(snapshot).get(post_id, ())


def followers(snapshot: Snapshot, user_id: str | None = None) -> tuple[User, ...]:
    """Users following ``user_id`` (the signed-in user by default)."""
    target = user_id or snapshot.session.user_id
    ids = {follow.follower_id for follow in snapshot.follows if follow.following_id == target}
    return tuple(user for user in snapshot.users if user.id in ids)


def following(snapshot: Snapshot, user_id: str | None = None) -> tuple[User, ...]:
    """Users followed by ``user_id`` (the signed-in user by default)."""
    source = user_id or snapshot.session.user_id
    ids = {follow.following_id for follow in snapshot.follows if follow.follower_id == source}
    return tuple(user for user in snapshot.users if user.id in ids)


def group_members(snapshot: Snapshot, group_id: str | None) -> tuple[GroupMember, ...]:
    if not group_id:
        return ()
    return oldest_first(member for member in snapshot.group_members if member.group_id == group_id)


def group_posts(snapshot: Snapshot, group_id: str | None) -> tuple[GroupPost, ...]:
    if not group_id:
        return ()
    return newest_first(post for post in snapshot.group_posts if post.group_id == group_id)


@dataclass(frozen=True)
class Projection:
    """Every derived view of one snapshot."""

    current_user: User | None = None
    users: tuple[User, ...] = ()
    feed: tuple[Post, ...] = ()
    stories: tuple[Story, ...] = ()
    notifications: tuple[Notification, ...] = ()
    unread_notifications: int = 0
    unread_messages: int = 0
    unread_by_peer: Mapping[str, int] = field(default_factory=dict)
    chat: tuple[Message, ...] = ()
    comment_threads: Mapping[str, tuple[CommentNode, ...]] = field(default_factory=dict)
    followers: tuple[User, ...] = ()
    following: tuple[User, ...] = ()
    group_members: tuple[GroupMember, ...] = ()
    group_posts: tuple[GroupPost, ...] = ()


def project(snapshot: Snapshot, *, now: datetime | None = None) -> Projection:
    """Compute all views. Chat and group listings follow the session's active ids."""
    session = snapshot.session
    notifications = notifications_for(snapshot)
    now = now or utcnow()
    unread = unread_by_peer(snapshot, now=now)
    return Projection(
        current_user=snapshot.current_user,
        users=other_users(snapshot),
        feed=feed(snapshot),
        stories=visible_stories(snapshot, now=now),
        notifications=notifications,
        unread_notifications=sum(1 for item in notifications if not item.read),
        unread_messages=sum(unread.values()),
        unread_by_peer=unread,
        chat=chat_thread(snapshot, session.active_chat_user_id, now=now),
        comment_threads=comment_threads(snapshot),
        followers=followers(snapshot),
        following=following(snapshot),
        group_members=group_members(snapshot, session.active_group_id),
        group_posts=group_posts(snapshot, session.active_group_id),
    )


class ProjectionCache:
    """Keeps a :class:`Projection` in step with a store."""

    def __init__(self, store: SnapshotStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._listeners: list[Callable[[Projection], None]] = []
        self._projection = project(store.snapshot, now=clock())
        self._unsubscribe: Callable[[], None] | None = store.subscribe(self._on_snapshot)

    @property
    def projection(self) -> Projection:
        return self._projection

    def subscribe(self, listener: Callable[[Projection], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self._projection = project(snapshot, now=self._clock())
        for listener in list(self._listeners):
            try:
                listener(self._projection)
            except Exception:
                logger.error("Projection listener %r failed", listener, exc_info=True)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


__all__ = [
    "CommentNode",
    "Projection",
    "ProjectionCache",
    "VISIBLE_NOTIFICATION_TYPES",
    "chat_thread",
    "comment_thread",
    "comment_threads",
    "feed",
    "live_messages",
    "followers",
    "following",
    "group_members",
    "group_posts",
    "notifications_for",
    "other_users",
    "project",
    "unread_by_peer",
    "unread_message_count",
    "unread_notification_count",
    "visible_stories",
]
