"""Follows, direct messages, read receipts and the own profile."""

from __future__ import annotations

from dataclasses import replace

from aura_sync.core.settings import settings
from aura_sync.schemas.actions import ActionResult, MessagePayload, ProfilePatch
from aura_sync.schemas.entities import (
    AppView,
    EntityKind,
    EntityStatus,
    Follow,
    Message,
    MessageMediaType,
)
from aura_sync.services.merge import insert_entity, remove_entities, replace_entity
from aura_sync.services.mutations.base import (
    ADMIN_REQUIRED,
    LOGIN_REQUIRED,
    MutationDispatcher,
    wire,
)
from aura_sync.services.snapshot import Snapshot
from aura_sync.utils.time import isoformat, parse_timestamp


class SocialCommands(MutationDispatcher):
    """Commands on the social graph and private messaging."""

    def follow_user(self, target_user_id: str) -> ActionResult:
        """Follow ``target_user_id``, or unfollow when already following."""
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if target_user_id == user.id:
            return ActionResult.invalid("You cannot follow yourself.")
        if self.snapshot.user(target_user_id) is None:
            return ActionResult.invalid("User not found.")

        existing = next(
            (
                relation
                for relation in self.snapshot.follows
                if relation.follower_id == user.id and relation.following_id == target_user_id
            ),
            None,
        )
        cid = self.new_id()
        now = self.now()

        if existing is not None:
            def apply(snap: Snapshot) -> Snapshot:
                return remove_entities(snap, EntityKind.FOLLOWS, (existing.id,), now=now)

            touched = {EntityKind.FOLLOWS: (existing.id,)}
        else:
            follow = Follow(
                id=cid,
                follower_id=user.id,
                following_id=target_user_id,
                created_at=now,
                sync_status=EntityStatus.PROVISIONAL,
                correlation_id=cid,
            )

            def apply(snap: Snapshot) -> Snapshot:
                return insert_entity(snap, EntityKind.FOLLOWS, follow, now=now)

            touched = {}

        following = existing is None
        return self._commit(
            self._mutation(
                "follow_user",
                EntityKind.FOLLOWS,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    f"/api/users/{target_user_id}/follow",
                    {"following": following, "correlationId": cid},
                ),
                message="Followed user." if following else "Unfollowed.",
                touched=touched,
                authoritative=True,
                toggle_key=("follow", target_user_id, user.id),
            )
        )

    def send_message(self, to_user_id: str, payload: MessagePayload) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot send messages.")
        if to_user_id == user.id:
            return ActionResult.invalid("Choose another user.")
        if self.snapshot.user(to_user_id) is None:
            return ActionResult.invalid("Recipient not found.")

        text = payload.text.strip()
        media_url = (payload.media_url or "").strip()
        if not text and not media_url:
            return ActionResult.invalid("Message is empty.")
        if media_url.startswith("data:") and len(media_url) > settings.max_inline_media_bytes:
            return ActionResult.invalid("Media file is too large. Please send a smaller file.")

        media_type = payload.media_type if media_url else None
        expires_at = (
            parse_timestamp(payload.expires_at) if media_type is MessageMediaType.VOICE else None
        )
        cid = self.new_id()
        now = self.now()
        message = Message(
            id=cid,
            from_id=user.id,
            to_id=to_user_id,
            text=text,
            media_type=media_type,
            media_url=media_url or None,
            expires_at=expires_at,
            read_by=(user.id,),
            created_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )

        def apply(snap: Snapshot) -> Snapshot:
            snap = insert_entity(snap, EntityKind.MESSAGES, message, now=now)
            return replace(snap, session=replace(snap.session, active_chat_user_id=to_user_id))

        return self._commit(
            self._mutation(
                "send_message",
                EntityKind.MESSAGES,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    "/api/messages",
                    wire(message, "from_id", "to_id", "text", "media_type", "media_url", "expires_at"),
                ),
                message="Message sent.",
            )
        )

    def edit_message(self, message_id: str, text: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        clean_text = text.strip()
        if not clean_text:
            return ActionResult.invalid("Message is empty.")
        target = self.snapshot.find(EntityKind.MESSAGES, message_id)
        if target is None:
            return ActionResult.invalid("Message not found.")
        if target.from_id != user.id:  # type: ignore[attr-defined]
            return ActionResult.invalid("You can only edit your own message.")
        if target.media_type not in (None, MessageMediaType.IMAGE):  # type: ignore[attr-defined]
            return ActionResult.invalid("Only text/image messages can be edited.")

        now = self.now()
        updated = target.model_copy(update={"text": clean_text, "edited_at": now})
        return self._commit(
            self._mutation(
                "edit_message",
                EntityKind.MESSAGES,
                apply=lambda snap: replace_entity(snap, EntityKind.MESSAGES, updated, now=now),
                request=lambda: self.api.patch(
                    f"/api/messages/{message_id}",
                    {"text": clean_text, "editedAt": isoformat(now)},
                ),
                message="Message edited.",
                touched={EntityKind.MESSAGES: (message_id,)},
                authoritative=True,
            )
        )

    def mark_chat_read(self, chat_user_id: str) -> ActionResult:
        """Add the local user to ``read_by`` of every message received from ``chat_user_id``."""
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        unread = [
            message
            for message in self.snapshot.messages
            if message.to_id == user.id
            and message.from_id == chat_user_id
            and user.id not in message.read_by
        ]
        if not unread:
            return ActionResult.confirmed("Chat is already read.")

        now = self.now()
        updated = [
            message.model_copy(update={"read_by": (*message.read_by, user.id)}) for message in unread
        ]

        def apply(snap: Snapshot) -> Snapshot:
            for message in updated:
                snap = replace_entity(snap, EntityKind.MESSAGES, message, now=now)
            return snap

        return self._commit(
            self._mutation(
                "mark_chat_read",
                EntityKind.MESSAGES,
                apply=apply,
                request=lambda: self.api.post("/api/messages/read", {"peerId": chat_user_id}),
                message="Chat marked as read.",
                rollback_on_failure=False,
            )
        )

    def open_chat(self, chat_user_id: str | None) -> ActionResult:
        """Make ``chat_user_id`` the active chat and mark it read."""
        self.store.set_active_chat(chat_user_id)
        if not chat_user_id:
            return ActionResult.confirmed("Chat closed.")
        return self.mark_chat_read(chat_user_id)

    def mark_notifications_read(self) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        unread = [
            item for item in self.snapshot.notifications if item.user_id == user.id and not item.read
        ]
        if not unread:
            return ActionResult.confirmed("No unread notifications.")

        now = self.now()
        updated = [item.model_copy(update={"read": True}) for item in unread]

        def apply(snap: Snapshot) -> Snapshot:
            for item in updated:
                snap = replace_entity(snap, EntityKind.NOTIFICATIONS, item, now=now)
            return snap

        return self._commit(
            self._mutation(
                "mark_notifications_read",
                EntityKind.NOTIFICATIONS,
                apply=apply,
                request=lambda: self.api.post("/api/notifications/read"),
                message="Notifications marked as read.",
                rollback_on_failure=False,
            )
        )

    def update_profile(self, patch: ProfilePatch) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        display_name = patch.display_name.strip()
        if len(display_name) < 2:
            return ActionResult.invalid("Display name is too short.")

        now = self.now()
        updated = user.model_copy(
            update={
                "display_name": display_name,
                "bio": patch.bio.strip(),
                "status": patch.status.strip(),
                "avatar": patch.avatar.strip(),
                "cover_image": patch.cover_image.strip(),
                "hidden_from_friends": patch.hidden_from_friends,
                "updated_at": now,
                "last_seen_at": now,
            }
        )
        body = wire(
            updated,
            "display_name",
            "bio",
            "status",
            "avatar",
            "cover_image",
            "hidden_from_friends",
        )
        body["revision"] = user.revision
        return self._commit(
            self._mutation(
                "update_profile",
                EntityKind.USERS,
                apply=lambda snap: replace_entity(snap, EntityKind.USERS, updated, now=now),
                request=lambda: self.api.patch(f"/api/users/{user.id}", body),
                message="Profile updated.",
                touched={EntityKind.USERS: (user.id,)},
                authoritative=True,
            )
        )

    def set_view(self, view: AppView) -> ActionResult:
        if not self.store.set_view(view) and self.snapshot.session.current_view is not view:
            return ActionResult.invalid(LOGIN_REQUIRED if self.user is None else ADMIN_REQUIRED)
        return ActionResult.confirmed("View changed.")


__all__ = ["SocialCommands"]
