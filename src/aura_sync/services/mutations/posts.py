"""Wall posts, post comments and stories."""

from __future__ import annotations

from datetime import timedelta

from aura_sync.core.settings import settings
from aura_sync.schemas.actions import ActionResult, PostPayload, StoryPayload
from aura_sync.schemas.entities import (
    EntityKind,
    EntityStatus,
    Message,
    Post,
    PostComment,
    Story,
)
from aura_sync.services.merge import insert_entity, remove_entities, replace_entity
from aura_sync.services.mutations.base import LOGIN_REQUIRED, MutationDispatcher, wire
from aura_sync.services.snapshot import Snapshot


class PostCommands(MutationDispatcher):
    """Commands on the main wall."""

    def _find_post(self, post_id: str) -> Post | None:
        return self.snapshot.find(EntityKind.POSTS, post_id)  # type: ignore[return-value]

    def create_post(self, payload: PostPayload) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot create posts.")

        text = payload.text.strip()
        media_url = (payload.media_url or "").strip()
        if not text and not media_url:
            return ActionResult.invalid("Add text or media to create post.")

        cid = self.new_id()
        now = self.now()
        post = Post(
            id=cid,
            author_id=user.id,
            text=text,
            media_type=(payload.media_type or "image") if media_url else None,
            media_url=media_url or None,
            created_at=now,
            updated_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "create_post",
                EntityKind.POSTS,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.POSTS, post, now=now),
                request=lambda: self.api.post(
                    "/api/posts", wire(post, "author_id", "text", "media_type", "media_url")
                ),
                message="Post published.",
            )
        )

    def delete_post(self, post_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        post = self._find_post(post_id)
        if post is None:
            return ActionResult.invalid("Post not found.")
        if post.author_id != user.id and not user.is_admin:
            return ActionResult.invalid("No access to delete this post.")

        snapshot = self.snapshot
        doomed = {post.id}
        if not post.repost_of_post_id:
            doomed.update(item.id for item in snapshot.posts if item.repost_of_post_id == post.id)
        comment_ids = tuple(item.id for item in snapshot.post_comments if item.post_id in doomed)
        touched_posts = tuple(doomed | ({post.repost_of_post_id} if post.repost_of_post_id else set()))
        now = self.now()

        def apply(snap: Snapshot) -> Snapshot:
            snap = remove_entities(snap, EntityKind.POSTS, doomed, now=now)
            return remove_entities(snap, EntityKind.POST_COMMENTS, comment_ids, now=now)

        return self._commit(
            self._mutation(
                "delete_post",
                EntityKind.POSTS,
                apply=apply,
                request=lambda: self.api.delete(f"/api/posts/{post_id}"),
                message="Post deleted.",
                touched={EntityKind.POSTS: touched_posts, EntityKind.POST_COMMENTS: comment_ids},
            )
        )

    def toggle_post_like(self, post_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        post = self._find_post(post_id)
        if post is None:
            return ActionResult.invalid("Post not found.")

        was_liked = user.id in post.liked_by
        liked_by = (
            tuple(item for item in post.liked_by if item != user.id)
            if was_liked
            else (*post.liked_by, user.id)
        )
        updated = post.model_copy(update={"liked_by": liked_by})
        now = self.now()
        return self._commit(
            self._mutation(
                "toggle_post_like",
                EntityKind.POSTS,
                apply=lambda snap: replace_entity(snap, EntityKind.POSTS, updated, now=now),
                request=lambda: self.api.post(f"/api/posts/{post_id}/like", {"liked": not was_liked}),
                message="Like removed." if was_liked else "Post liked.",
                touched={EntityKind.POSTS: (post_id,)},
                authoritative=True,
                toggle_key=("post_like", post_id, user.id),
            )
        )

    def toggle_post_repost(self, post_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot repost.")
        source = self._find_post(post_id)
        if source is None:
            return ActionResult.invalid("Post not found.")
        root_id = source.repost_of_post_id or source.id
        root = self._find_post(root_id)
        if root is None:
            return ActionResult.invalid("Original post not found.")

        snapshot = self.snapshot
        existing = next(
            (
                item
                for item in snapshot.posts
                if item.author_id == user.id and item.repost_of_post_id == root_id
            ),
            None,
        )
        cid = self.new_id()
        now = self.now()

        if existing is not None:
            comment_ids = tuple(
                item.id for item in snapshot.post_comments if item.post_id == existing.id
            )

            def apply(snap: Snapshot) -> Snapshot:
                snap = remove_entities(snap, EntityKind.POSTS, (existing.id,), now=now)
                return remove_entities(snap, EntityKind.POST_COMMENTS, comment_ids, now=now)

            touched = {
                EntityKind.POSTS: (existing.id, root_id),
                EntityKind.POST_COMMENTS: comment_ids,
            }
        else:
            repost = Post(
                id=cid,
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
                return insert_entity(snap, EntityKind.POSTS, repost, now=now)

            touched = {EntityKind.POSTS: (root_id,)}

        reposted = existing is None
        return self._commit(
            self._mutation(
                "toggle_post_repost",
                EntityKind.POSTS,
                correlation_id=cid,
                apply=apply,
                request=lambda: self.api.post(
                    f"/api/posts/{root_id}/repost",
                    {"reposted": reposted, "correlationId": cid},
                ),
                message="Reposted to your wall." if reposted else "Repost removed.",
                touched=touched,
                authoritative=True,
                toggle_key=("post_repost", root_id, user.id),
            )
        )

    def add_post_comment(self, post_id: str, text: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot comment.")
        if self._find_post(post_id) is None:
            return ActionResult.invalid("Post not found.")
        clean_text = text.strip()
        if not clean_text:
            return ActionResult.invalid("Comment is empty.")

        cid = self.new_id()
        now = self.now()
        comment = PostComment(
            id=cid,
            post_id=post_id,
            author_id=user.id,
            text=clean_text,
            created_at=now,
            updated_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "add_post_comment",
                EntityKind.POST_COMMENTS,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.POST_COMMENTS, comment, now=now),
                request=lambda: self.api.post(
                    f"/api/posts/{post_id}/comments", wire(comment, "author_id", "text")
                ),
                message="Comment added.",
            )
        )

    def edit_post_comment(self, comment_id: str, text: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        comment = self.snapshot.find(EntityKind.POST_COMMENTS, comment_id)
        if comment is None:
            return ActionResult.invalid("Comment not found.")
        if comment.author_id != user.id:  # type: ignore[attr-defined]
            return ActionResult.invalid("You can only edit your own comment.")
        clean_text = text.strip()
        if not clean_text:
            return ActionResult.invalid("Comment is empty.")

        now = self.now()
        updated = comment.model_copy(update={"text": clean_text, "updated_at": now})
        return self._commit(
            self._mutation(
                "edit_post_comment",
                EntityKind.POST_COMMENTS,
                apply=lambda snap: replace_entity(snap, EntityKind.POST_COMMENTS, updated, now=now),
                request=lambda: self.api.patch(f"/api/comments/{comment_id}", {"text": clean_text}),
                message="Comment updated.",
                touched={EntityKind.POST_COMMENTS: (comment_id,)},
                authoritative=True,
            )
        )

    def delete_post_comment(self, comment_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        comment = self.snapshot.find(EntityKind.POST_COMMENTS, comment_id)
        if comment is None:
            return ActionResult.invalid("Comment not found.")
        if comment.author_id != user.id and not user.is_admin:  # type: ignore[attr-defined]
            return ActionResult.invalid("No access to delete this comment.")

        now = self.now()
        return self._commit(
            self._mutation(
                "delete_post_comment",
                EntityKind.POST_COMMENTS,
                apply=lambda snap: remove_entities(snap, EntityKind.POST_COMMENTS, (comment_id,), now=now),
                request=lambda: self.api.delete(f"/api/comments/{comment_id}"),
                message="Comment deleted.",
                touched={EntityKind.POST_COMMENTS: (comment_id,)},
            )
        )

    # Stories

    def create_story(self, payload: StoryPayload) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot add stories.")
        media_url = payload.media_url.strip()
        if not media_url:
            return ActionResult.invalid("Story media URL is required.")

        cid = self.new_id()
        now = self.now()
        story = Story(
            id=cid,
            author_id=user.id,
            caption=payload.caption.strip(),
            media_type=payload.media_type,
            media_url=media_url,
            created_at=now,
            expires_at=now + timedelta(hours=settings.story_ttl_hours),
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "create_story",
                EntityKind.STORIES,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.STORIES, story, now=now),
                request=lambda: self.api.post(
                    "/api/stories",
                    wire(story, "author_id", "caption", "media_type", "media_url", "expires_at"),
                ),
                message="Story published.",
            )
        )

    def delete_story(self, story_id: str) -> ActionResult:
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        story = self.snapshot.find(EntityKind.STORIES, story_id)
        if story is None:
            return ActionResult.invalid("Story not found.")
        if story.author_id != user.id and not user.is_admin:  # type: ignore[attr-defined]
            return ActionResult.invalid("No access to delete this story.")

        comment_ids = tuple(
            item.id for item in self.snapshot.story_comments if item.story_id == story_id
        )
        now = self.now()

        def apply(snap: Snapshot) -> Snapshot:
            snap = remove_entities(snap, EntityKind.STORIES, (story_id,), now=now)
            return remove_entities(snap, EntityKind.STORY_COMMENTS, comment_ids, now=now)

        return self._commit(
            self._mutation(
                "delete_story",
                EntityKind.STORIES,
                apply=apply,
                request=lambda: self.api.delete(f"/api/stories/{story_id}"),
                message="Story deleted.",
                touched={EntityKind.STORIES: (story_id,), EntityKind.STORY_COMMENTS: comment_ids},
            )
        )

    def add_story_comment(self, story_id: str, text: str) -> ActionResult:
        """Reply to a story. Replies are delivered as a private message to its author."""
        user = self.user
        if user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        if user.restricted:
            return ActionResult.invalid("Your account is restricted and cannot reply to stories.")
        story = self.snapshot.find(EntityKind.STORIES, story_id)
        if story is None:
            return ActionResult.invalid("Story not found.")
        clean_text = text.strip()
        if not clean_text:
            return ActionResult.invalid("Comment is empty.")

        cid = self.new_id()
        now = self.now()
        reply = Message(
            id=cid,
            from_id=user.id,
            to_id=story.author_id,  # type: ignore[attr-defined]
            text=f"Story reply: {clean_text}",
            read_by=(user.id,),
            created_at=now,
            sync_status=EntityStatus.PROVISIONAL,
            correlation_id=cid,
        )
        return self._commit(
            self._mutation(
                "add_story_comment",
                EntityKind.MESSAGES,
                correlation_id=cid,
                apply=lambda snap: insert_entity(snap, EntityKind.MESSAGES, reply, now=now),
                request=lambda: self.api.post("/api/messages", wire(reply, "from_id", "to_id", "text")),
                message="Story reply sent to private messages.",
            )
        )


__all__ = ["PostCommands"]
