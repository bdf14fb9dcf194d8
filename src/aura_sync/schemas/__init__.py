# src/aura_sync/schemas/__init__.py
"""
Pydantic schemas for snapshot entities and command payloads.

Entities are immutable and carry camelCase aliases matching the backend wire format.
"""

from .actions import (
    ActionResult,
    GroupPatch,
    GroupPayload,
    LoginPayload,
    MessagePayload,
    MutationOutcome,
    Outcome,
    PostPayload,
    ProfilePatch,
    RegisterPayload,
    StoryPayload,
)
from .entities import (
    AppView,
    Entity,
    EntityKind,
    EntityStatus,
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

__all__ = [
    "ActionResult", "MutationOutcome", "Outcome",
    "GroupPatch", "GroupPayload", "LoginPayload", "MessagePayload",
    "PostPayload", "ProfilePatch", "RegisterPayload", "StoryPayload",
    "AppView", "Entity", "EntityKind", "EntityStatus", "ThemeMode",
    "Follow", "Group", "GroupMember", "GroupPost", "GroupPostComment",
    "Message", "Notification", "Post", "PostComment", "Story", "StoryComment", "User",
]
