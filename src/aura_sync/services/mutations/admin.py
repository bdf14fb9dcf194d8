"""Admin-only moderation patches on user accounts."""

from __future__ import annotations

from typing import Any

from aura_sync.schemas.actions import ActionResult
from aura_sync.schemas.entities import EntityKind, UserRole
from aura_sync.services.merge import replace_entity
from aura_sync.services.mutations.base import ADMIN_REQUIRED, MutationDispatcher
from aura_sync.services.normalizer import coerce_enum


class AdminCommands(MutationDispatcher):
    """Moderation commands. Every patch is revision-guarded on the server."""

    def _moderate(self, action: str, user_id: str, changes: dict[str, Any], message: str) -> ActionResult:
        actor = self.user
        if actor is None or not actor.is_admin:
            return ActionResult.invalid(ADMIN_REQUIRED)
        target = self.snapshot.user(user_id)
        if target is None:
            return ActionResult.invalid("User not found.")

        now = self.now()
        updated = target.model_copy(update={**changes, "updated_at": now})
        body = updated.model_dump(mode="json", by_alias=True, include=set(changes))
        body["revision"] = target.revision
        return self._commit(
            self._mutation(
                action,
                EntityKind.USERS,
                apply=lambda snap: replace_entity(snap, EntityKind.USERS, updated, now=now),
                request=lambda: self.api.patch(f"/api/admin/users/{user_id}", body),
                message=message,
                touched={EntityKind.USERS: (user_id,)},
                authoritative=True,
            )
        )

    def set_user_role(self, user_id: str, role: UserRole) -> ActionResult:
        coerced = coerce_enum(UserRole, role)
        if coerced is None:
            return ActionResult.invalid("Unknown role.")
        return self._moderate("set_user_role", user_id, {"role": coerced}, "Role updated.")

    def set_user_ban(self, user_id: str, banned: bool) -> ActionResult:
        return self._moderate(
            "set_user_ban",
            user_id,
            {"banned": banned},
            "User banned." if banned else "User unbanned.",
        )

    def set_user_restricted(self, user_id: str, restricted: bool) -> ActionResult:
        return self._moderate(
            "set_user_restricted",
            user_id,
            {"restricted": restricted},
            "User restricted." if restricted else "Restriction removed.",
        )

    def set_user_verified(self, user_id: str, verified: bool) -> ActionResult:
        return self._moderate(
            "set_user_verified",
            user_id,
            {"verified": verified},
            "Verified badge granted." if verified else "Verified badge removed.",
        )


__all__ = ["AdminCommands"]
