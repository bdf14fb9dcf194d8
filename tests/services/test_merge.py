from dataclasses import replace

from aura_sync.schemas.entities import (
    EntityKind,
    EntityStatus,
    Follow,
    Group,
    GroupMember,
    Message,
    Notification,
    Post,
    Story,
)
from aura_sync.services.merge import (
    confirm_provisional,
    finalize,
    insert_entity,
    merge_bundle,
    merge_collection,
    merge_group,
    merge_user,
    prune_expired,
    remove_provisional,
    restore_entities,
)
from aura_sync.services.normalizer import normalize_bundle, normalize_post, normalize_user
from aura_sync.services.snapshot import Snapshot, SnapshotStore
from tests.conftest import NOW, iso, make_user, ts


def _post(post_id: str, **overrides) -> Post:
    data = {"id": post_id, "author_id": "alice", "created_at": ts(-5), "updated_at": ts(-5)}
    data.update(overrides)
    return Post(**data)


def test_confirmation_replaces_provisional_entity_without_duplicates():
    provisional = _post(
        "temp-1000",
        text="hi",
        sync_status=EntityStatus.PROVISIONAL,
        correlation_id="temp-1000",
    )
    snapshot = insert_entity(Snapshot.empty(), EntityKind.POSTS, provisional, now=NOW)
    response = {"post": {"id": "p-1", "authorId": "alice", "text": "hi", "correlationId": "temp-1000"}}

    confirmed = merge_bundle(
        remove_provisional(snapshot, "temp-1000", now=NOW),
        normalize_bundle(response, now=NOW),
        now=NOW,
    )

    assert [post.id for post in confirmed.posts] == ["p-1"]
    assert not confirmed.posts[0].provisional


def test_liked_by_is_a_union_of_both_sides():
    existing = (_post("p1", liked_by=("A",)),)
    incoming = [normalize_post({"id": "p1", "likedBy": ["B"], "updatedAt": iso(-4)}, now=NOW)]

    merged = merge_collection(EntityKind.POSTS, existing, incoming, now=NOW)

    assert merged[0].liked_by == ("A", "B")


def test_scalars_follow_recency():
    existing = (_post("p1", text="new", updated_at=ts(-1)),)
    incoming = [normalize_post({"id": "p1", "text": "old", "updatedAt": iso(-10)}, now=NOW)]

    merged = merge_collection(EntityKind.POSTS, existing, incoming, now=NOW)

    assert merged[0].text == "new"


def test_merge_is_idempotent():
    payload = {
        "users": [{"id": "bob", "username": "bob", "updatedAt": iso(-3)}],
        "posts": [{"id": "p1", "authorId": "bob", "text": "hello", "likedBy": ["alice"]}],
        "follows": [{"id": "f1", "followerId": "alice", "followingId": "bob", "createdAt": iso(-2)}],
    }
    bundle = normalize_bundle(payload, now=NOW)
    store = SnapshotStore()

    assert store.update(lambda snap: merge_bundle(snap, bundle, now=NOW)) is True
    first = store.snapshot
    assert store.update(lambda snap: merge_bundle(snap, bundle, now=NOW)) is False
    assert store.snapshot is first


def test_new_entities_are_prepended_in_arrival_order():
    existing = (_post("old"),)
    incoming = [_post("a"), _post("b"), _post("a", text="again")]

    merged = merge_collection(EntityKind.POSTS, existing, incoming, now=NOW)

    assert [post.id for post in merged] == ["a", "b", "old"]
    assert merged[0].text == "again"


def test_user_merge_is_directional_on_updated_at():
    existing = make_user("bob", display_name="Bobby", updated_at=ts(-1))
    stale = normalize_user({"id": "bob", "displayName": "Robert", "updatedAt": iso(-30)}, now=NOW)
    fresh = normalize_user({"id": "bob", "displayName": "Rob", "updatedAt": iso(0)}, now=NOW)

    assert merge_user(existing, stale).display_name == "Bobby"
    assert merge_user(existing, fresh).display_name == "Rob"


def test_user_merge_keeps_fields_carried_by_one_side():
    existing = make_user("bob", bio="likes cats", updated_at=ts(-10))
    incoming = normalize_user({"id": "bob", "displayName": "Rob", "updatedAt": iso(0)}, now=NOW)

    merged = merge_user(existing, incoming)

    assert merged.display_name == "Rob"
    assert merged.bio == "likes cats"


def test_user_merge_never_regresses_timestamps():
    existing = make_user("bob", updated_at=ts(-1), last_seen_at=ts(0))
    incoming = normalize_user(
        {"id": "bob", "updatedAt": iso(-1), "lastSeenAt": iso(-50), "bio": "x"},
        now=NOW,
    )

    merged = merge_user(existing, incoming)

    assert merged.last_seen_at == ts(0)
    assert merged.updated_at == ts(-1)
    assert merged.bio == "x"


def test_user_payload_without_timestamps_compares_as_oldest():
    existing = make_user("bob", display_name="Bobby")
    partial = normalize_user({"id": "bob", "displayName": "Intruder", "status": "busy"}, now=NOW)

    merged = merge_user(existing, partial)

    assert merged.display_name == "Bobby"
    assert merged.status == "busy"
    assert merged.updated_at == existing.updated_at


def test_group_merge_takes_the_more_recent_record():
    older = Group(id="g1", name="Old", updated_at=ts(-10))
    newer = Group(id="g1", name="New", updated_at=ts(-1))

    assert merge_group(older, newer).name == "New"
    assert merge_group(newer, older).name == "New"


def test_self_follows_are_dropped_and_pairs_deduplicated():
    follows = [
        Follow(id="f1", follower_id="a", following_id="b", created_at=ts(-10)),
        Follow(id="f2", follower_id="a", following_id="b", created_at=ts(-1)),
        Follow(id="f3", follower_id="a", following_id="a", created_at=ts(-1)),
    ]

    result = finalize(EntityKind.FOLLOWS, follows, now=NOW)

    assert [follow.id for follow in result] == ["f2"]


def test_group_members_are_unique_per_group_and_user():
    members = [
        GroupMember(id="m1", group_id="g", user_id="u", created_at=ts(-1)),
        GroupMember(id="m2", group_id="g", user_id="u", created_at=ts(-5)),
        GroupMember(id="m3", group_id="h", user_id="u", created_at=ts(-5)),
    ]

    result = finalize(EntityKind.GROUP_MEMBERS, members, now=NOW)

    assert [member.id for member in result] == ["m1", "m3"]


def test_expired_messages_and_stories_are_pruned_on_merge():
    existing = (
        Message(id="m1", from_id="a", to_id="b", expires_at=ts(-1)),
        Message(id="m2", from_id="a", to_id="b"),
    )
    merged = merge_collection(EntityKind.MESSAGES, existing, [], now=NOW)
    stories = merge_collection(
        EntityKind.STORIES,
        (),
        [Story(id="s1", expires_at=ts(-1)), Story(id="s2", expires_at=ts(60))],
        now=NOW,
    )

    assert [message.id for message in merged] == ["m2"]
    assert [story.id for story in stories] == ["s2"]


def test_prune_expired_drops_only_entities_past_their_expiry():
    snap = Snapshot(
        messages=(
            Message(id="m1", from_id="a", to_id="b", expires_at=ts(-1)),
            Message(id="m2", from_id="a", to_id="b", expires_at=ts(1)),
            Message(id="m3", from_id="a", to_id="b"),
        ),
        stories=(Story(id="s1", expires_at=NOW), Story(id="s2", expires_at=ts(60))),
    )

    result = prune_expired(snap, now=NOW)

    assert [message.id for message in result.messages] == ["m2", "m3"]
    assert [story.id for story in result.stories] == ["s2"]
    assert prune_expired(result, now=NOW) is result


def test_reposts_are_deduplicated_and_roots_recounted():
    posts = [
        _post("r2", author_id="bob", repost_of_post_id="root", created_at=ts(-1)),
        _post("r1", author_id="bob", repost_of_post_id="root", created_at=ts(-3)),
        _post("r3", author_id="carol", repost_of_post_id="root", created_at=ts(-2)),
        _post("root", reposted_by=("zed",)),
    ]

    result = finalize(EntityKind.POSTS, posts, now=NOW)

    assert [post.id for post in result] == ["r2", "r3", "root"]
    assert result[-1].reposted_by == ("carol", "bob")
    assert all(post.reposted_by == () for post in result[:-1])


def test_notification_read_flag_is_sticky():
    existing = (Notification(id="n1", user_id="alice", read=True, created_at=ts(-5)),)
    incoming = [Notification(id="n1", user_id="alice", read=False, created_at=ts(0))]

    merged = merge_collection(EntityKind.NOTIFICATIONS, existing, incoming, now=NOW)

    assert merged[0].read is True


def test_read_by_only_grows():
    existing = (Message(id="m1", from_id="a", to_id="b", read_by=("a", "b")),)
    incoming = [Message(id="m1", from_id="a", to_id="b", read_by=("a",), edited_at=ts(0), text="edited")]

    merged = merge_collection(EntityKind.MESSAGES, existing, incoming, now=NOW)

    assert merged[0].read_by == ("a", "b")
    assert merged[0].text == "edited"


def test_confirm_provisional_keeps_ids():
    follow = Follow(
        id="temp-1",
        follower_id="a",
        following_id="b",
        sync_status=EntityStatus.PROVISIONAL,
        correlation_id="temp-1",
    )
    snapshot = insert_entity(Snapshot.empty(), EntityKind.FOLLOWS, follow, now=NOW)

    confirmed = confirm_provisional(snapshot, "temp-1")

    assert confirmed.follows[0].id == "temp-1"
    assert confirmed.follows[0].sync_status is EntityStatus.CONFIRMED


def test_restore_entities_puts_originals_back_in_place():
    before = Snapshot(posts=(_post("a"), _post("b", text="original"), _post("c")))
    changed = replace(before, posts=(_post("a"), _post("c"), _post("new")))

    restored = restore_entities(changed, before, EntityKind.POSTS, ("b", "new"), now=NOW)

    assert [post.id for post in restored.posts] == ["a", "b", "c"]
    assert restored.posts[1].text == "original"


def test_restored_entities_stay_beside_their_neighbours_after_concurrent_inserts():
    before = Snapshot(posts=(_post("a"), _post("b"), _post("c")))
    changed = replace(before, posts=(_post("x"), _post("a"), _post("c")))

    restored = restore_entities(changed, before, EntityKind.POSTS, ("b",), now=NOW)
    first = restore_entities(
        replace(before, posts=(_post("x"), _post("b"), _post("c"))), before, EntityKind.POSTS, ("a",), now=NOW
    )

    assert [post.id for post in restored.posts] == ["x", "a", "b", "c"]
    assert [post.id for post in first.posts] == ["x", "a", "b", "c"]
