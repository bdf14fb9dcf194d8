"""Command payloads and typed results of the mutation pipeline."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from aura_sync.schemas.entities import MediaType, MessageMediaType


class Outcome(str, Enum):
    """How far a command got.

    ``applied`` means the optimistic change is in the snapshot and the
    request is in flight; the remaining values are terminal.
    """

    APPLIED = "applied"
    INVALID = "invalid"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CONFLICT = "conflict"


class ActionResult(BaseModel):
    """UI-facing result of a command: a success flag and a short message."""

    ok: bool
    message: str
    outcome: Outcome
    correlation_id: str | None = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def applied(cls, message: str, correlation_id: str | None = None) -> ActionResult:
        return cls(ok=True, message=message, outcome=Outcome.APPLIED, correlation_id=correlation_id)

    @classmethod
    def confirmed(cls, message: str) -> ActionResult:
        return cls(ok=True, message=message, outcome=Outcome.CONFIRMED)

    @classmethod
    def invalid(cls, message: str) -> ActionResult:
        return cls(ok=False, message=message, outcome=Outcome.INVALID)

    @classmethod
    def failed(cls, message: str) -> ActionResult:
        return cls(ok=False, message=message, outcome=Outcome.FAILED)

    @classmethod
    def conflict(cls, message: str) -> ActionResult:
        return cls(ok=False, message=message, outcome=Outcome.CONFLICT)


class MutationOutcome(BaseModel):
    """Asynchronous confirmation event for a previously applied command."""

    correlation_id: str
    action: str
    outcome: Outcome
    message: str

    model_config = ConfigDict(frozen=True)


class RegisterPayload(BaseModel):
    username: str
    display_name: str
    password: str
    email: str | None = Field(None, description="Address used for email verification")


class LoginPayload(BaseModel):
    username: str
    password: str


class PostPayload(BaseModel):
    text: str = ""
    media_type: MediaType | None = None
    media_url: str | None = None


class StoryPayload(BaseModel):
    caption: str = ""
    media_type: MediaType = MediaType.IMAGE
    media_url: str


class MessagePayload(BaseModel):
    text: str = ""
    media_type: MessageMediaType | None = None
    media_url: str | None = None
    expires_at: str | None = Field(None, description="ISO timestamp, voice notes only")


class GroupPayload(BaseModel):
    name: str
    description: str = ""
    allow_member_posts: bool = True


class GroupPatch(BaseModel):
    name: str
    description: str = ""
    avatar: str = ""
    cover_image: str = ""
    verified: bool = False
    allow_member_posts: bool = True


class ProfilePatch(BaseModel):
    display_name: str
    bio: str = ""
    status: str = ""
    avatar: str = ""
    cover_image: str = ""
    hidden_from_friends: bool = False
