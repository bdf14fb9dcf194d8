"""Entity normalization for raw server payloads.

Fetch responses, mutation responses and push events arrive with mixed
camelCase / snake_case keys and are often partial. The functions here turn
such payloads into fully-populated canonical entities. They never raise:
anything unusable degrades to a deterministic default.

The set of fields a payload actually carried is preserved as the model's
``model_fields_set``; the merge engine relies on it to backfill.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from pydantic.alias_generators import to_camel

from aura_sync.core.settings import settings
from aura_sync.schemas.entities import (
    Entity,
    EntityKind,
    Follow,
    Group,
    GroupMember,
    GroupMemberRole,
    GroupPost,
    GroupPostComment,
    MediaType,
    Message,
    MessageMediaType,
    Notification,
    NotificationType,
    Post,
    PostComment,
    Story,
    StoryComment,
    User,
    UserRole,
)
from aura_sync.utils.time import parse_timestamp, utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)
EnumT = TypeVar("EnumT", bound=Enum)

_MISSING = object()


class _Reader:
    """Collects coerced field values from a raw payload.

    Only values that were present (and usable) in the payload end up in
    ``values``; everything else is left to the model defaults.
    """

    def __init__(self, raw: object) -> None:
        self.raw: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        self.values: dict[str, Any] = {}

    def lookup(self, name: str, *aliases: str) -> Any:
        for key in (name, to_camel(name), *aliases):
            value = self.raw.get(key, _MISSING)
            if value is not _MISSING and value is not None:
                return value
        return _MISSING

    def string(self, name: str, *aliases: str) -> None:
        value = self.lookup(name, *aliases)
        if isinstance(value, str):
            self.values[name] = value
        elif isinstance(value, bool):
            self.values[name] = "true" if value else "false"
        elif isinstance(value, int | float):
            self.values[name] = str(value)

    def identifier(self, name: str, *aliases: str) -> None:
        value = self.lookup(name, *aliases)
        if isinstance(value, Mapping):
            value = value.get("id", _MISSING)
        if isinstance(value, str) and value.strip():
            self.values[name] = value.strip()
        elif isinstance(value, int) and not isinstance(value, bool):
            self.values[name] = str(value)

    def boolean(self, name: str, *aliases: str) -> None:
        value = self.lookup(name, *aliases)
        if isinstance(value, bool):
            self.values[name] = value
        elif isinstance(value, int | float):
            self.values[name] = bool(value)
        elif isinstance(value, str):
            self.values[name] = value.strip().lower() in {"1", "true", "yes", "on"}

    def integer(self, name: str, *aliases: str) -> None:
        value = self.lookup(name, *aliases)
        if isinstance(value, bool):
            return
        try:
            self.values[name] = int(value)
        except (TypeError, ValueError, OverflowError):
            return

    def ids(self, name: str, *aliases: str) -> None:
        value = self.lookup(name, *aliases)
        if isinstance(value, list | tuple | set | frozenset):
            self.values[name] = unique_ids(value)

    def timestamp(self, name: str, *aliases: str) -> None:
        parsed = parse_timestamp(self.lookup(name, *aliases))
        if parsed is not None:
            self.values[name] = parsed

    def choice(self, name: str, enum: type[EnumT], *aliases: str, default: EnumT | None = None) -> None:
        value = self.lookup(name, *aliases)
        if value is _MISSING:
            return
        coerced = coerce_enum(enum, value)
        if coerced is not None:
            self.values[name] = coerced
        elif default is not None:
            self.values[name] = default

    def first_time(self, *names: str) -> datetime | None:
        for name in names:
            if name in self.values:
                return self.values[name]
        return None


def unique_ids(values: Iterable[object]) -> tuple[str, ...]:
    """Return string ids in first-seen order without duplicates."""
    seen: dict[str, None] = {}
    for value in values:
        if isinstance(value, Mapping):
            value = value.get("id")
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            seen.setdefault(value.strip(), None)
    return tuple(seen)


def coerce_enum(enum: type[EnumT], value: object) -> EnumT | None:
    if isinstance(value, enum):
        return value
    if not isinstance(value, str):
        return None
    try:
        return enum(value.strip().lower())
    except ValueError:
        return None


def _build(model: type[E], reader: _Reader, defaults: Mapping[str, Any]) -> E:
    """Construct ``model`` without validation; ``defaults`` stay out of the fields set."""
    fields_set = set(reader.values)
    data = {**defaults, **reader.values}
    return model.model_construct(_fields_set=fields_set, **data)


def _entity_reader(raw: object) -> _Reader:
    reader = _Reader(raw)
    reader.identifier("id", "_id")
    reader.timestamp("created_at", "timestamp", "date")
    return reader


def _created_default(reader: _Reader, now: datetime, *fallbacks: str) -> dict[str, Any]:
    """Defaults for ``created_at`` when the payload carried none."""
    if "created_at" in reader.values:
        return {}
    return {"created_at": reader.first_time(*fallbacks) or now}


def normalize_user(raw: object, *, now: datetime | None = None) -> User:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.string("username", "handle", "login")
    reader.string("display_name", "name")
    reader.string("bio")
    reader.string("status", "status_text")
    reader.string("avatar", "avatar_url")
    reader.string("cover_image", "cover", "cover_url")
    reader.choice("role", UserRole, default=UserRole.USER)
    reader.boolean("banned", "is_banned")
    reader.boolean("restricted", "is_restricted")
    reader.boolean("verified", "is_verified")
    reader.boolean("hidden_from_friends")
    reader.timestamp("updated_at")
    reader.timestamp("last_seen_at", "last_seen")
    reader.integer("revision")

    # updated_at falls back to the nearest timestamp the payload did carry.
    if "updated_at" not in reader.values:
        fallback = reader.first_time("created_at", "last_seen_at")
        if fallback is not None:
            reader.values["updated_at"] = fallback

    defaults: dict[str, Any] = {"id": ""}
    defaults.update(_created_default(reader, now, "updated_at", "last_seen_at"))
    defaults.setdefault("updated_at", now)
    defaults.setdefault("last_seen_at", reader.first_time("updated_at", "created_at") or now)
    return _build(User, reader, defaults)


def normalize_follow(raw: object, *, now: datetime | None = None) -> Follow:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("follower_id", "follower", "from_id")
    reader.identifier("following_id", "following", "followee_id", "to_id")
    defaults = {"id": "", **_created_default(reader, now)}
    return _build(Follow, reader, defaults)


def _read_media(reader: _Reader, enum: type[EnumT], default: EnumT) -> None:
    reader.string("media_url", "media", "image_url")
    reader.choice("media_type", enum)
    media_url = reader.values.get("media_url", "").strip()
    if not media_url:
        reader.values.pop("media_url", None)
        reader.values.pop("media_type", None)
    elif "media_type" not in reader.values:
        reader.values["media_type"] = default


def normalize_post(raw: object, *, now: datetime | None = None) -> Post:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("author_id", "user_id", "author")
    reader.string("text", "content", "body")
    _read_media(reader, MediaType, MediaType.IMAGE)
    reader.ids("liked_by", "likes")
    reader.ids("reposted_by", "reposts")
    reader.identifier("repost_of_post_id", "repost_of")
    reader.identifier("repost_of_group_post_id")
    reader.identifier("repost_source_group_id")
    reader.timestamp("updated_at")
    defaults = {"id": "", **_created_default(reader, now, "updated_at")}
    defaults.setdefault("updated_at", reader.first_time("created_at") or defaults.get("created_at", now))
    return _build(Post, reader, defaults)


def normalize_post_comment(raw: object, *, now: datetime | None = None) -> PostComment:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("post_id", "post")
    reader.identifier("author_id", "user_id", "author")
    reader.string("text", "content", "body")
    reader.ids("liked_by", "likes")
    reader.timestamp("updated_at", "edited_at")
    defaults = {"id": "", **_created_default(reader, now, "updated_at")}
    defaults.setdefault("updated_at", reader.first_time("created_at") or defaults.get("created_at", now))
    return _build(PostComment, reader, defaults)


def normalize_story(raw: object, *, now: datetime | None = None) -> Story:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("author_id", "user_id", "author")
    reader.string("caption", "text")
    reader.string("media_url", "media")
    reader.choice("media_type", MediaType, default=MediaType.IMAGE)
    reader.timestamp("expires_at")
    defaults: dict[str, Any] = {"id": "", **_created_default(reader, now)}
    created = reader.values.get("created_at", defaults.get("created_at", now))
    defaults["expires_at"] = created + timedelta(hours=settings.story_ttl_hours)
    return _build(Story, reader, defaults)


def normalize_story_comment(raw: object, *, now: datetime | None = None) -> StoryComment:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("story_id", "story")
    reader.identifier("author_id", "user_id", "author")
    reader.string("text", "content")
    defaults = {"id": "", **_created_default(reader, now)}
    return _build(StoryComment, reader, defaults)


def normalize_message(raw: object, *, now: datetime | None = None) -> Message:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("from_id", "sender_id", "sender", "from")
    reader.identifier("to_id", "recipient_id", "recipient", "to")
    reader.string("text", "content", "body")
    _read_media(reader, MessageMediaType, MessageMediaType.IMAGE)
    reader.timestamp("expires_at")
    reader.timestamp("edited_at")
    reader.ids("read_by")

    # The sender has always seen their own message.
    sender = reader.values.get("from_id")
    read_by = reader.values.get("read_by", ())
    if sender and sender not in read_by:
        reader.values["read_by"] = (sender, *read_by)

    defaults = {"id": "", **_created_default(reader, now)}
    return _build(Message, reader, defaults)


def normalize_group(raw: object, *, now: datetime | None = None) -> Group:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.string("name")
    reader.string("description")
    reader.identifier("admin_id", "owner_id", "admin")
    reader.boolean("allow_member_posts")
    reader.string("avatar")
    reader.string("cover_image", "cover")
    reader.boolean("verified")
    reader.timestamp("updated_at")
    reader.integer("revision")
    defaults: dict[str, Any] = {"id": "", **_created_default(reader, now, "updated_at")}
    defaults.setdefault("updated_at", reader.first_time("created_at") or defaults.get("created_at", now))

    # Placeholder artwork seeded by the group id, as the backend does.
    group_id = reader.values.get("id", "")
    if group_id:
        defaults["avatar"] = f"https://picsum.photos/seed/{group_id}-avatar/200/200"
        defaults["cover_image"] = f"https://picsum.photos/seed/{group_id}-cover/1400/420"
    return _build(Group, reader, defaults)


def normalize_group_member(raw: object, *, now: datetime | None = None) -> GroupMember:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("group_id", "group")
    reader.identifier("user_id", "user", "member_id")
    reader.choice("role", GroupMemberRole, default=GroupMemberRole.MEMBER)
    defaults = {"id": "", **_created_default(reader, now)}
    return _build(GroupMember, reader, defaults)


def normalize_group_post(raw: object, *, now: datetime | None = None) -> GroupPost:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("group_id", "group")
    reader.identifier("author_id", "user_id", "author")
    reader.string("text", "content", "body")
    _read_media(reader, MediaType, MediaType.IMAGE)
    reader.ids("liked_by", "likes")
    reader.ids("reposted_by", "reposts")
    reader.identifier("repost_of_post_id", "repost_of")
    reader.timestamp("updated_at")
    defaults = {"id": "", **_created_default(reader, now, "updated_at")}
    defaults.setdefault("updated_at", reader.first_time("created_at") or defaults.get("created_at", now))
    return _build(GroupPost, reader, defaults)


def normalize_group_post_comment(raw: object, *, now: datetime | None = None) -> GroupPostComment:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("group_post_id", "post_id", "group_post")
    reader.identifier("author_id", "user_id", "author")
    reader.string("text", "content")
    reader.ids("liked_by", "likes")
    defaults = {"id": "", **_created_default(reader, now)}
    return _build(GroupPostComment, reader, defaults)


def normalize_notification(raw: object, *, now: datetime | None = None) -> Notification:
    now = now or utcnow()
    reader = _entity_reader(raw)
    reader.identifier("user_id", "recipient_id", "user")
    reader.identifier("actor_id", "actor")
    reader.choice("type", NotificationType, "kind", default=NotificationType.SYSTEM)
    reader.string("text", "message")
    reader.identifier("post_id")
    reader.identifier("group_post_id")
    reader.identifier("group_id")
    reader.identifier("comment_id")
    reader.boolean("read", "is_read")
    defaults = {"id": "", **_created_default(reader, now)}
    return _build(Notification, reader, defaults)


NORMALIZERS: dict[EntityKind, Callable[..., Entity]] = {
    EntityKind.USERS: normalize_user,
    EntityKind.FOLLOWS: normalize_follow,
    EntityKind.POSTS: normalize_post,
    EntityKind.POST_COMMENTS: normalize_post_comment,
    EntityKind.STORIES: normalize_story,
    EntityKind.STORY_COMMENTS: normalize_story_comment,
    EntityKind.MESSAGES: normalize_message,
    EntityKind.GROUPS: normalize_group,
    EntityKind.GROUP_MEMBERS: normalize_group_member,
    EntityKind.GROUP_POSTS: normalize_group_post,
    EntityKind.GROUP_POST_COMMENTS: normalize_group_post_comment,
    EntityKind.NOTIFICATIONS: normalize_notification,
}


def normalize(kind: EntityKind, raw: object, *, now: datetime | None = None) -> Entity:
    """Normalize one raw payload into the canonical entity for ``kind``."""
    return NORMALIZERS[kind](raw, now=now)


@dataclass(frozen=True)
class EntityBundle:
    """Normalized entity collections carried by one payload."""

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

    def get(self, kind: EntityKind) -> tuple[Entity, ...]:
        return getattr(self, kind.value)

    def items(self) -> Iterator[tuple[EntityKind, tuple[Entity, ...]]]:
        for kind in EntityKind:
            collection = self.get(kind)
            if collection:
                yield kind, collection

    def without(self, kind: EntityKind) -> EntityBundle:
        return replace(self, **{kind.value: ()})

    def is_empty(self) -> bool:
        return not any(getattr(self, item.name) for item in fields(self))


# Response keys (plural and singular) that carry each collection.
BUNDLE_KEYS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.USERS: ("users", "user", "authors", "profile"),
    EntityKind.FOLLOWS: ("follows", "follow"),
    EntityKind.POSTS: ("posts", "post", "feed"),
    EntityKind.POST_COMMENTS: ("postComments", "post_comments", "comments", "comment"),
    EntityKind.STORIES: ("stories", "story"),
    EntityKind.STORY_COMMENTS: ("storyComments", "story_comments"),
    EntityKind.MESSAGES: ("messages", "message"),
    EntityKind.GROUPS: ("groups", "group"),
    EntityKind.GROUP_MEMBERS: ("groupMembers", "group_members", "members", "member"),
    EntityKind.GROUP_POSTS: ("groupPosts", "group_posts", "groupPost", "group_post"),
    EntityKind.GROUP_POST_COMMENTS: (
        "groupPostComments",
        "group_post_comments",
        "groupPostComment",
        "group_post_comment",
    ),
    EntityKind.NOTIFICATIONS: ("notifications", "notification"),
}

# Keys under which entities embed a snapshot of a related user.
_EMBEDDED_USER_KEYS = ("author", "sender", "actor", "user")

_WRAPPER_KEYS = ("data", "state")


def _as_items(value: object) -> list[object]:
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, list | tuple):
        return list(value)
    return []


def _embedded_users(item: object, now: datetime) -> list[User]:
    if not isinstance(item, Mapping):
        return []
    return [
        normalize_user(item[key], now=now)
        for key in _EMBEDDED_USER_KEYS
        if isinstance(item.get(key), Mapping) and item[key].get("username") is not None
    ]


def normalize_bundle(
    payload: object,
    *,
    default_kind: EntityKind | None = None,
    now: datetime | None = None,
) -> EntityBundle:
    """Normalize a fetch/mutation response into an :class:`EntityBundle`.

    Args:
        payload: Decoded JSON response.
        default_kind: Kind to assume when the payload is a bare entity
            (an object with an ``id`` and no collection keys).
        now: Reference time for timestamp defaults.

    Returns:
        Bundle with every recognised collection normalized; embedded author
        snapshots are folded into ``users``.
    """
    now = now or utcnow()
    collected: dict[EntityKind, list[Entity]] = {kind: [] for kind in EntityKind}
    _collect(payload, collected, default_kind, now, depth=0)
    return EntityBundle(**{kind.value: tuple(items) for kind, items in collected.items()})


def _collect(
    payload: object,
    collected: dict[EntityKind, list[Entity]],
    default_kind: EntityKind | None,
    now: datetime,
    *,
    depth: int,
) -> None:
    if depth > 2:
        return
    if isinstance(payload, list | tuple):
        if default_kind is not None:
            for item in payload:
                _add(default_kind, item, collected, now)
        return
    if not isinstance(payload, Mapping):
        return

    matched = False
    for kind, keys in BUNDLE_KEYS.items():
        for key in keys:
            if key in payload:
                matched = True
                for item in _as_items(payload[key]):
                    _add(kind, item, collected, now)
    for key in _WRAPPER_KEYS:
        if isinstance(payload.get(key), Mapping | list):
            matched = True
            _collect(payload[key], collected, default_kind, now, depth=depth + 1)

    if not matched and default_kind is not None and "id" in payload:
        _add(default_kind, payload, collected, now)


def _add(
    kind: EntityKind,
    item: object,
    collected: dict[EntityKind, list[Entity]],
    now: datetime,
) -> None:
    if not isinstance(item, Mapping):
        logger.debug("Skipping non-object %s entry: %r", kind.value, type(item).__name__)
        return
    entity = normalize(kind, item, now=now)
    if not entity.id:
        logger.debug("Skipping %s entry without id", kind.value)
        return
    collected[kind].append(entity)
    if kind is not EntityKind.USERS:
        collected[EntityKind.USERS].extend(_embedded_users(item, now))
