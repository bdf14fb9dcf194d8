# src/aura_sync/schemas/entities.py
"""Canonical entity schemas held in the client snapshot.

Every entity is an immutable Pydantic model. Attribute names are snake_case;
the camelCase aliases match the backend wire format, so
``model_dump(by_alias=True)`` yields a payload the server understands.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aura_sync.utils.time import utcnow


class EntityStatus(str, Enum):
    """Whether an entity was synthesized locally or issued by the server."""

    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"


class EntityKind(str, Enum):
    """Entity collections of the snapshot. Values are the snapshot attribute names."""

    USERS = "users"
    FOLLOWS = "follows"
    POSTS = "posts"
    POST_COMMENTS = "post_comments"
    STORIES = "stories"
    STORY_COMMENTS = "story_comments"
    MESSAGES = "messages"
    GROUPS = "groups"
    GROUP_MEMBERS = "group_members"
    GROUP_POSTS = "group_posts"
    GROUP_POST_COMMENTS = "group_post_comments"
    NOTIFICATIONS = "notifications"


class UserRole(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    CURATOR = "curator"
    ADMIN = "admin"


class GroupMemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class MessageMediaType(str, Enum):
    IMAGE = "image"
    VOICE = "voice"


class NotificationType(str, Enum):
    SYSTEM = "system"
    FOLLOW = "follow"
    POST_LIKE = "post_like"
    POST_REPOST = "post_repost"
    POST_COMMENT = "post_comment"
    COMMENT_MENTION = "comment_mention"
    GROUP_POST_LIKE = "group_post_like"
    MODERATION = "moderation"


class AppView(str, Enum):
    FEED = "feed"
    EXPLORE = "explore"
    NOTIFICATIONS = "notifications"
    MESSAGES = "messages"
    PROFILE = "profile"
    GROUPS = "groups"
    ADMIN = "admin"


class ThemeMode(str, Enum):
    LIGHT = "light"
    DARK = "dark"


class Entity(BaseModel):
    """Fields shared by every snapshot entity.

    ``sync_status`` and ``correlation_id`` tag provisional entities so that a
    server confirmation can replace them structurally instead of by id prefix.
    """

    id: str
    sync_status: EntityStatus = EntityStatus.CONFIRMED
    correlation_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @property
    def provisional(self) -> bool:
        return self.sync_status is EntityStatus.PROVISIONAL


class User(Entity):
    """A member of the network."""

    username: str = ""
    display_name: str = ""
    bio: str = ""
    status: str = Field(default="", description="Free-form status line")
    avatar: str = ""
    cover_image: str = ""
    role: UserRole = UserRole.USER
    banned: bool = False
    restricted: bool = False
    verified: bool = False
    hidden_from_friends: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    revision: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


class Follow(Entity):
    """Directed follow edge."""

    follower_id: str = ""
    following_id: str = ""


class Post(Entity):
    """Wall post. ``repost_of_post_id`` references the root post of a repost."""

    author_id: str = ""
    text: str = ""
    media_type: MediaType | None = None
    media_url: str | None = None
    liked_by: tuple[str, ...] = ()
    reposted_by: tuple[str, ...] = ()
    repost_of_post_id: str | None = None
    repost_of_group_post_id: str | None = None
    repost_source_group_id: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class PostComment(Entity):
    post_id: str = ""
    author_id: str = ""
    text: str = ""
    liked_by: tuple[str, ...] = ()
    updated_at: datetime = Field(default_factory=utcnow)


class Story(Entity):
    author_id: str = ""
    caption: str = ""
    media_type: MediaType = MediaType.IMAGE
    media_url: str = ""
    expires_at: datetime = Field(default_factory=utcnow)


class StoryComment(Entity):
    story_id: str = ""
    author_id: str = ""
    text: str = ""


class Message(Entity):
    """Direct message between two users. ``read_by`` always includes the sender."""

    from_id: str = ""
    to_id: str = ""
    text: str = ""
    media_type: MessageMediaType | None = None
    media_url: str | None = None
    expires_at: datetime | None = None
    edited_at: datetime | None = None
    read_by: tuple[str, ...] = ()


class Group(Entity):
    name: str = ""
    description: str = ""
    admin_id: str = ""
    allow_member_posts: bool = False
    avatar: str = ""
    cover_image: str = ""
    verified: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0


class GroupMember(Entity):
    group_id: str = ""
    user_id: str = ""
    role: GroupMemberRole = GroupMemberRole.MEMBER


class GroupPost(Entity):
    group_id: str = ""
    author_id: str = ""
    text: str = ""
    media_type: MediaType | None = None
    media_url: str | None = None
    liked_by: tuple[str, ...] = ()
    reposted_by: tuple[str, ...] = ()
    repost_of_post_id: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class GroupPostComment(Entity):
    group_post_id: str = ""
    author_id: str = ""
    text: str = ""
    liked_by: tuple[str, ...] = ()


class Notification(Entity):
    user_id: str = ""
    actor_id: str | None = None
    type: NotificationType = NotificationType.SYSTEM
    text: str = ""
    post_id: str | None = None
    group_post_id: str | None = None
    group_id: str | None = None
    comment_id: str | None = None
    read: bool = False


MODEL_BY_KIND: dict[EntityKind, type[Entity]] = {
    EntityKind.USERS: User,
    EntityKind.FOLLOWS: Follow,
    EntityKind.POSTS: Post,
    EntityKind.POST_COMMENTS: PostComment,
    EntityKind.STORIES: Story,
    EntityKind.STORY_COMMENTS: StoryComment,
    EntityKind.MESSAGES: Message,
    EntityKind.GROUPS: Group,
    EntityKind.GROUP_MEMBERS: GroupMember,
    EntityKind.GROUP_POSTS: GroupPost,
    EntityKind.GROUP_POST_COMMENTS: GroupPostComment,
    EntityKind.NOTIFICATIONS: Notification,
}
