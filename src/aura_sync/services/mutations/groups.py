"""Groups, memberships and group posts."""

from __future__ import annotations

from dataclasses import replace

from aura_sync.schemas.actions import ActionResult, GroupPatch, GroupPayload
from aura_sync.schemas.entities import (
    AppView,
    EntityKind,
    EntityStatus,
    Group,
    GroupMember,
    GroupMemberRole,
    GroupPost,
    GroupPostComment,
    MediaType,
    Post,
    User,
)
from aura_sync.services.merge import insert_entity, remove_entities, replace_entity
from aura_sync.services.mutations.base import LOGIN_REQUIRED, MutationDispatcher, wire
from aura_sync.services.snapshot import Snapshot


def _seeded_artwork(group_id: str) -> tuple[str, str]:
    return (
        f"https://picsum.photos/seed/{group_id}-avatar/200/200",
        f"https://picsum.photos/seed/{group_id}-cover/1400/420",
    )


class GroupCommands(MutationDispatcher):
    """Commands on groups and their walls."""

    def _find_group(self, group_id: str) -> Group | None:
        return self.snapshot.find(EntityKind.GROUPS, group_id)  # type: ignore[return-value]

    def _find_group_post(self, group_post_id: str) -> GroupPost | None:
        return self.snapshot.find(EntityKind.GROUP_POSTS, group_post_id)  # type: ignore[return-value]

    def _membership(self, group_id: str, user_id: str) -> GroupMember | None:
        for member in self.snapshot.group_members:
            if member.group_id == group_id and member.user_id == user_id:
                return member
        return None

    @staticmethod
    def _can_manage(group: Group, user: User) -> bool:
        return group.admin_id == user.id or user.is_admin

    def _can_publish(self, group: Group, user: User) -> str | None:
        """Return a refusal message, or None when ``user`` may post in ``group``."""
        member = self._membership(group.id, user.id)
        if member is None:
            return "Subscribe to the group first."
        if member.role is not GroupMemberRole.ADMIN and not group.allow_member_posts and not user.is_admin:
            return "Only group admin can post right now."
        return None

    def _name_taken(self, name: str, *, exclude: str | None = None) -> bool:
        lowered = name.lower()
        return any(
            group.name.lower() == lowered and group.id != exclude for group in self.snapshot.groups
        )

    def create_group(self, payload: GroupPayload) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot create groups.")
        name = payload.name.strip()
        if len(name) < 3:
            return ActionResult.invalid("Group name must contain at least 3 characters.")
        if self._name_taken(name):
            return ActionResult.invalid("Group with this name already exists.")

        cid = self.new_id()
        now = self.now()
        avatar, cover_image = _seeded_artwork(cid)
        group = Group(
            id=cid,
            name=name,
            description=payload.description.strip(),
            admin_id=user.id,
            allow_member_posts=payload.allow_member_posts,
            avatar=avatar,
            cover_image=cover_image,
            created_at=now,
            updated_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        member = GroupMember(
            id=f"{cid}-admin",
            group_id=cid,
            user_id=user.id,
            role=GroupMemberRole.ADMIN,
            created_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )

        def apply(snap: Snapshot) -> Snapshot:
            snap = insert_entity(snap, EntityKind.GROUPS, group, now=now)
            snap = insert_entity(snap, EntityKind.GROUP_MEMBERS, member, now=now)
            return replace(
                snap,
                session=replace(snap.session, current_view=AppView.GROUPS, active_group_id=cid),
            )

        return self._commit(
            self._mutation(
                "create_group",
                EntityKind.GROUPS,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    "/api/groups", wire(group, "name", "description", "allow_member_posts")
                ),
                message="Group created.",
            )
        )

    def update_group(self, group_id: str, patch: GroupPatch) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        group = self._find_group(group_id)
        if group is None:
            return ActionResult.invalid("Group not found.")
        if not self._can_manage(group, user):
            return ActionResult.invalid("Only group admin can edit group.")
        name = patch.name.strip()
        if len(name) < 3:
            return ActionResult.invalid("Group name must contain at least 3 characters.")
        if self._name_taken(name, exclude=group_id):
            return ActionResult.invalid("Group with this name already exists.")

        now = self.now()
        updated = group.model_copy(
            update={
                "name": name,
                "description": patch.description.strip(),
                "avatar": patch.avatar.strip(),
                "cover_image": patch.cover_image.strip(),
                "allow_member_posts": patch.allow_member_posts,
                "verified": patch.verified,
                "updated_at": now,
            }
        )
        body = wire(
            updated, "name", "description", "avatar", "cover_image", "allow_member_posts", "verified"
        )
        body["revision"] = group.revision
        return self._commit(
            self._mutation(
                "update_group",
                EntityKind.GROUPS,
                apply=lambda snap: replace_entity(snap, EntityKind.GROUPS, updated, now=now),
                request=lambda: self.api.patch(f"/api/groups/{group_id}", body),
                message="Group updated.",
                touched={EntityKind.GROUPS: (group_id,)},
                authoritative=True,
            )
        )

    def toggle_group_subscription(self, group_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        group = self._find_group(group_id)
        if group is None:
            return ActionResult.invalid("Group not found.")
        existing = self._membership(group_id, user.id)
        if existing is not None and existing.role is GroupMemberRole.ADMIN and group.admin_id == user.id:
            return ActionResult.invalid("Group admin cannot leave own group.")

        cid = self.new_id()
        now = self.now()
        if existing is not None:
            def apply(snap: Snapshot) -> Snapshot:
                return remove_entities(snap, EntityKind.GROUP_MEMBERS, (existing.id,), now=now)

            touched = {EntityKind.GROUP_MEMBERS: (existing.id,)}
        else:
            member = GroupMember(
                id=cid,
                group_id=group_id,
                user_id=user.id,
                role=GroupMemberRole.MEMBER,
                created_at=now,
                sync_status=EntityStatus.PROVISIONAL,
                correlation_id=cid,
            )

            def apply(snap: Snapshot) -> Snapshot:
                return insert_entity(snap, EntityKind.GROUP_MEMBERS, member, now=now)

            touched = {}

        subscribed = existing is None
        return self._commit(
            self._mutation(
                "toggle_group_subscription",
                EntityKind.GROUP_MEMBERS,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    f"/api/groups/{group_id}/subscription",
                    {"subscribed": subscribed, "correlationId": cid},
                ),
                message="Subscribed to group." if subscribed else "Unsubscribed from group.",
                touched=touched,
                authoritative=True,
                toggle_key=("group_subscription", group_id, user.id),
            )
        )

    def set_group_allow_member_posts(self, group_id: str, allow: bool) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        group = self._find_group(group_id)
        if group is None:
            return ActionResult.invalid("Group not found.")
        if not self._can_manage(group, user):
            return ActionResult.invalid("Only group admin can change this setting.")

        now = self.now()
        updated = group.model_copy(update={"allow_member_posts": allow, "updated_at": now})
        return self._commit(
            self._mutation(
                "set_group_allow_member_posts",
                EntityKind.GROUPS,
                apply=lambda snap: replace_entity(snap, EntityKind.GROUPS, updated, now=now),
                request=lambda: self.api.patch(
                    f"/api/groups/{group_id}",
                    {"allowMemberPosts": allow, "revision": group.revision},
                ),
                message=(
                    "Members can publish in this group."
                    if allow
                    else "Only admin can publish in this group."
                ),
                touched={EntityKind.GROUPS: (group_id,)},
                authoritative=True,
            )
        )

    def create_group_post(
        self,
        group_id: str,
        text: str,
        media_type: MediaType | None = None,
        media_url: str | None = None,
    ) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        group = self._find_group(group_id)
        if group is None:
            return ActionResult.invalid("Group not found.")
        refusal = self._can_publish(group, user)
        if refusal:
            return ActionResult.invalid(refusal)
        clean_text = text.strip()
        clean_media = (media_url or "").strip()
        if not clean_text and not clean_media:
            return ActionResult.invalid("Post text is empty.")

        cid = self.new_id()
        now = self.now()
        post = GroupPost(
            id=cid,
            group_id=group_id,
            author_id=user.id,
            text=clean_text,
            media_type=(media_type or MediaType.IMAGE) if clean_media else None,
            media_url=clean_media or None,
            created_at=now,
            updated_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "create_group_post",
                EntityKind.GROUP_POSTS,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.GROUP_POSTS, post, now=now),
                request=lambda: self.api.post(
                    f"/api/groups/{group_id}/posts",
                    wire(post, "author_id", "text", "media_type", "media_url"),
                ),
                message="Group post published.",
            )
        )

    def toggle_group_post_like(self, group_post_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        target = self._find_group_post(group_post_id)
        if target is None:
            return ActionResult.invalid("Group post not found.")

        liked = user.id in target.liked_by
        liked_by = (
            tuple(item for item in target.liked_by if item != user.id)
            if liked
            else (*target.liked_by, user.id)
        )
        updated = target.model_copy(update={"liked_by": liked_by})
        now = self.now()
        return self._commit(
            self._mutation(
                "toggle_group_post_like",
                EntityKind.GROUP_POSTS,
                apply=lambda snap: replace_entity(snap, EntityKind.GROUP_POSTS, updated, now=now),
                request=lambda: self.api.post(
                    f"/api/group-posts/{group_post_id}/like", {"liked": not liked}
                ),
                message="Like removed." if liked else "Group post liked.",
                touched={EntityKind.GROUP_POSTS: (group_post_id,)},
                authoritative=True,
                toggle_key=("group_post_like", group_post_id, user.id),
            )
        )

    def repost_group_post(self, group_post_id: str, target_group_id: str) -> ActionResult:
        """Repost a group post into ``target_group_id``, or undo an existing repost there."""
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot repost.")
        source = self._find_group_post(group_post_id)
        if source is None:
            return ActionResult.invalid("Original post not found.")
        group = self._find_group(target_group_id)
        if group is None:
            return ActionResult.invalid("Target group not found.")
        member = self._membership(target_group_id, user.id)
        if member is None:
            return ActionResult.invalid("Subscribe to target group first.")
        if member.role is not GroupMemberRole.ADMIN and not group.allow_member_posts and not user.is_admin:
            return ActionResult.invalid("Only group admin can publish in target group.")
        root_id = source.repost_of_post_id or source.id
        root = self._find_group_post(root_id)
        if root is None:
            return ActionResult.invalid("Original post not found.")

        snapshot = self.snapshot
        existing = next(
            (
                post
                for post in snapshot.group_posts
                if post.group_id == target_group_id
                and post.author_id == user.id
                and post.repost_of_post_id == root_id
            ),
            None,
        )
        cid = self.new_id()
        now = self.now()

        if existing is not None:
            comment_ids = tuple(
                item.id
                for item in snapshot.group_post_comments
                if item.group_post_id == existing.id
            )

            def apply(snap: Snapshot) -> Snapshot:
                snap = remove_entities(snap, EntityKind.GROUP_POSTS, (existing.id,), now=now)
                return remove_entities(snap, EntityKind.GROUP_POST_COMMENTS, comment_ids, now=now)

            touched = {
                EntityKind.GROUP_POSTS: (existing.id, root_id),
                EntityKind.GROUP_POST_COMMENTS: comment_ids,
            }
        else:
            repost = GroupPost(
                id=cid,
                group_id=target_group_id,
                author_id=user.id,
                text=root.text,
                media_type=root.media_type,
                media_url=root.media_url,
                repost_of_post_id=root_id,
                created_at=now,
                updated_at=now,
                sync_status=EntityStatus.PROVISIONAL,
                correlation_id=cid,
            )

            def apply(snap: Snapshot) -> Snapshot:
                return insert_entity(snap, EntityKind.GROUP_POSTS, repost, now=now)

            touched = {EntityKind.GROUP_POSTS: (root_id,)}

        reposted = existing is None
        return self._commit(
            self._mutation(
                "repost_group_post",
                EntityKind.GROUP_POSTS,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    f"/api/group-posts/{root_id}/repost",
                    {"groupId": target_group_id, "reposted": reposted, "correlationId": cid},
                ),
                message="Group repost published." if reposted else "Group repost removed.",
                touched=touched,
                authoritative=True,
                toggle_key=("group_post_repost", target_group_id, root_id, user.id),
            )
        )

    def publish_group_post_to_feed(self, group_post_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        source = self._find_group_post(group_post_id)
        if source is None:
            return ActionResult.invalid("Group post not found.")
        group = self._find_group(source.group_id)
        if group is None:
            return ActionResult.invalid("Group not found.")
        if not self._can_manage(group, user):
            return ActionResult.invalid("Only group admin can publish this post to main wall.")

        author = self.snapshot.user(source.author_id)
        author_name = (author.display_name if author else "") or "User"
        cid = self.new_id()
        now = self.now()
        post = Post(
            id=cid,
            author_id=user.id,
            text=f"[{group.name}] {author_name}: {source.text}".strip(),
            media_type=source.media_type,
            media_url=source.media_url,
            repost_of_group_post_id=source.id,
            repost_source_group_id=group.id,
            created_at=now,
            updated_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "publish_group_post_to_feed",
                EntityKind.POSTS,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.POSTS, post, now=now),
                request=lambda: self.api.post(
                    f"/api/group-posts/{group_post_id}/publish", {"correlationId": cid}
                ),
                message="Group post published to main wall.",
            )
        )

    def add_group_post_comment(self, group_post_id: str, text: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if self._find_group_post(group_post_id) is None:
            return ActionResult.invalid("Group post not found.")
        clean_text = text.strip()
        if not clean_text:
            return ActionResult.invalid("Comment is empty.")

        cid = self.new_id()
        now = self.now()
        comment = GroupPostComment(
            id=cid,
            group_post_id=group_post_id,
            author_id=user.id,
            text=clean_text,
            created_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "add_group_post_comment",
                EntityKind.GROUP_POST_COMMENTS,
                correlation_id=cid,
                apply=lambda snap: insert_entity(
                    snap, EntityKind.GROUP_POST_COMMENTS, comment, now=now
                ),
                request=lambda: self.api.post(
                    f"/api/group-posts/{group_post_id}/comments", wire(comment, "author_id", "text")
                ),
                message="Comment added to group post.",
            )
        )

    def open_group(self, group_id: str | None) -> ActionResult:
        if group_id and self._find_group(group_id) is None:
            return ActionResult.invalid("Group not found.")
        self.store.set_active_group(group_id)
        return ActionResult.confirmed("Group opened." if group_id else "Group closed.")


__all__ = ["GroupCommands"]
