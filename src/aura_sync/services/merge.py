"""Merge engine folding normalized entities into a snapshot.

All functions here are pure: they take a snapshot (or a collection) and
return a new one. They cannot fail; entities without an id are skipped.

Conflict rules:

* users merge directionally on ``updated_at``; fields carried by only one
  side survive, ``last_seen_at`` and ``updated_at`` never regress;
* groups are resolved as whole records by recency;
* everything else takes scalars from the more recent record and unions
  set-membership fields (``liked_by``, ``reposted_by``, ``read_by``);
* follows and group members are unique per pair, self-follows are dropped;
* expired messages and stories are pruned;
* posts and group posts get repost bookkeeping over the whole collection.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import TypeVar

from aura_sync.schemas.entities import (
    Entity,
    EntityKind,
    EntityStatus,
    Group,
    Message,
    Notification,
    Story,
    User,
)
from aura_sync.services.normalizer import EntityBundle
from aura_sync.services.snapshot import Snapshot
from aura_sync.utils.time import EPOCH, utcnow

E = TypeVar("E", bound=Entity)

SET_FIELDS = ("liked_by", "reposted_by", "read_by")
RECENCY_FIELDS = ("updated_at", "edited_at", "created_at")


def _stamp(entity: Entity, name: str) -> datetime:
    """Timestamp ``name`` if the entity actually carried it, else the epoch."""
    if name in entity.model_fields_set:
        value = getattr(entity, name, None)
        if isinstance(value, datetime):
            return value
    return EPOCH


def _recency(entity: Entity) -> datetime:
    stamps = [_stamp(entity, name) for name in RECENCY_FIELDS if name in type(entity).model_fields]
    return max(stamps, default=EPOCH)


def _values(entity: Entity) -> dict[str, object]:
    return {name: getattr(entity, name) for name in type(entity).model_fields}


def _overlay(winner: E, loser: E, **overrides: object) -> E:
    """``winner`` with fields only ``loser`` carried backfilled from ``loser``."""
    data = _values(winner)
    for name in loser.model_fields_set - winner.model_fields_set:
        data[name] = getattr(loser, name)
    data.update(overrides)
    fields_set = winner.model_fields_set | loser.model_fields_set | set(overrides)
    return type(winner).model_construct(_fields_set=fields_set, **data)


def union_ids(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for group in groups:
        for value in group:
            seen.setdefault(value, None)
    return tuple(seen)


def merge_user(existing: User, incoming: User) -> User:
    """Directional merge of two records for the same user."""
    incoming_wins = _stamp(incoming, "updated_at") >= _stamp(existing, "updated_at")
    winner, loser = (incoming, existing) if incoming_wins else (existing, incoming)
    merged = _overlay(winner, loser)
    overrides: dict[str, object] = {}
    for name in ("last_seen_at", "updated_at"):
        if _stamp(loser, name) > _stamp(merged, name):
            overrides[name] = getattr(loser, name)
    if not overrides:
        return merged
    return merged.model_copy(update=overrides)


def merge_group(existing: Group, incoming: Group) -> Group:
    return incoming if _recency(incoming) >= _recency(existing) else existing


def merge_record(existing: E, incoming: E) -> E:
    """Recency merge for scalars with set-membership union."""
    if _recency(incoming) >= _recency(existing):
        winner, loser = incoming, existing
    else:
        winner, loser = existing, incoming

    overrides: dict[str, object] = {}
    for name in SET_FIELDS:
        if name in type(winner).model_fields:
            overrides[name] = union_ids(getattr(existing, name), getattr(incoming, name))
    if isinstance(winner, Notification):
        overrides["read"] = existing.read or incoming.read  # type: ignore[attr-defined]
    return _overlay(winner, loser, **overrides)


def merge_entity(kind: EntityKind, existing: Entity, incoming: Entity) -> Entity:
    if kind is EntityKind.USERS:
        return merge_user(existing, incoming)  # type: ignore[arg-type]
    if kind is EntityKind.GROUPS:
        return merge_group(existing, incoming)  # type: ignore[arg-type]
    return merge_record(existing, incoming)


def _dedupe_pairs(items: Sequence[E], key) -> list[E]:
    """Keep the most recently created entity per key, preserving order."""
    keep: dict[object, E] = {}
    for item in items:
        pair = key(item)
        current = keep.get(pair)
        if current is None or item.created_at > current.created_at:
            keep[pair] = item
    survivors = {id(item) for item in keep.values()}
    return [item for item in items if id(item) in survivors]


def _reconcile_reposts(items: Sequence[E], key) -> list[E]:
    """Dedupe reposts per ``key`` and recompute each root's ``reposted_by``."""
    kept = _dedupe_pairs(
        [item for item in items if item.repost_of_post_id],  # type: ignore[attr-defined]
        key,
    )
    kept_ids = {id(item) for item in kept}

    authors_by_root: dict[str, list[str]] = {}
    # Oldest repost first so reposted_by lists authors in repost order.
    for item in sorted(kept, key=lambda entity: entity.created_at):
        authors = authors_by_root.setdefault(item.repost_of_post_id, [])  # type: ignore[attr-defined]
        if item.author_id not in authors:  # type: ignore[attr-defined]
            authors.append(item.author_id)  # type: ignore[attr-defined]

    result: list[E] = []
    for item in items:
        if item.repost_of_post_id:  # type: ignore[attr-defined]
            if id(item) not in kept_ids:
                continue
            expected: tuple[str, ...] = ()
        else:
            expected = tuple(authors_by_root.get(item.id, ()))
        if item.reposted_by != expected:  # type: ignore[attr-defined]
            item = item.model_copy(update={"reposted_by": expected})
        result.append(item)
    return result


def finalize(kind: EntityKind, items: Sequence[Entity], *, now: datetime | None = None) -> tuple[Entity, ...]:
    """Apply the collection-wide rules of ``kind`` to an already merged collection."""
    now = now or utcnow()
    result = list(items)
    if kind is EntityKind.FOLLOWS:
        result = [item for item in result if item.follower_id != item.following_id]  # type: ignore[attr-defined]
        result = _dedupe_pairs(result, lambda item: (item.follower_id, item.following_id))
    elif kind is EntityKind.GROUP_MEMBERS:
        result = _dedupe_pairs(result, lambda item: (item.group_id, item.user_id))
    elif kind is EntityKind.MESSAGES:
        result = [item for item in result if not _expired(item, now)]
    elif kind is EntityKind.STORIES:
        result = [item for item in result if not _expired(item, now)]
    elif kind is EntityKind.POSTS:
        result = _reconcile_reposts(result, lambda item: (item.author_id, item.repost_of_post_id))
    elif kind is EntityKind.GROUP_POSTS:
        result = _reconcile_reposts(
            result,
            lambda item: (item.group_id, item.author_id, item.repost_of_post_id),
        )
    return tuple(result)


def _expired(entity: Message | Story, now: datetime) -> bool:
    # Expiring exactly at ``now`` already counts as expired.
    return entity.expires_at is not None and entity.expires_at <= now


def prune_expired(snapshot: Snapshot, *, now: datetime | None = None) -> Snapshot:
    """Drop expired messages and stories without merging anything."""
    now = now or utcnow()
    result = snapshot
    for kind in (EntityKind.MESSAGES, EntityKind.STORIES):
        items = result.collection(kind)
        kept = tuple(item for item in items if not _expired(item, now))
        if len(kept) != len(items):
            result = result.with_collection(kind, kept)
    return result


def merge_collection(
    kind: EntityKind,
    existing: Sequence[Entity],
    incoming: Iterable[Entity],
    *,
    now: datetime | None = None,
) -> tuple[Entity, ...]:
    """Fold ``incoming`` into ``existing``.

    Known ids are merged in place; new entities are prepended in the order
    they arrived.
    """
    merged = list(existing)
    position = {entity.id: index for index, entity in enumerate(merged)}
    added: list[Entity] = []
    added_position: dict[str, int] = {}

    for entity in incoming:
        if not entity.id:
            continue
        if entity.id in position:
            index = position[entity.id]
            merged[index] = merge_entity(kind, merged[index], entity)
        elif entity.id in added_position:
            index = added_position[entity.id]
            added[index] = merge_entity(kind, added[index], entity)
        else:
            added_position[entity.id] = len(added)
            added.append(entity)

    return finalize(kind, [*added, *merged], now=now)


def merge_bundle(snapshot: Snapshot, bundle: EntityBundle, *, now: datetime | None = None) -> Snapshot:
    """Fold every collection of ``bundle`` into ``snapshot``."""
    now = now or utcnow()
    result = snapshot
    for kind, items in bundle.items():
        result = result.with_collection(
            kind,
            merge_collection(kind, result.collection(kind), items, now=now),
        )
    return result


def insert_entity(snapshot: Snapshot, kind: EntityKind, entity: Entity, *, now: datetime | None = None) -> Snapshot:
    """Prepend a freshly synthesized entity."""
    items = [item for item in snapshot.collection(kind) if item.id != entity.id]
    return snapshot.with_collection(kind, finalize(kind, [entity, *items], now=now))


def replace_entity(snapshot: Snapshot, kind: EntityKind, entity: Entity, *, now: datetime | None = None) -> Snapshot:
    """Authoritatively replace the entity with the same id (or prepend it)."""
    items = list(snapshot.collection(kind))
    for index, item in enumerate(items):
        if item.id == entity.id:
            items[index] = entity
            break
    else:
        items.insert(0, entity)
    return snapshot.with_collection(kind, finalize(kind, items, now=now))


def remove_entities(
    snapshot: Snapshot,
    kind: EntityKind,
    ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> Snapshot:
    doomed = set(ids)
    items = [item for item in snapshot.collection(kind) if item.id not in doomed]
    return snapshot.with_collection(kind, finalize(kind, items, now=now))


def remove_provisional(snapshot: Snapshot, correlation_id: str, *, now: datetime | None = None) -> Snapshot:
    """Remove every provisional entity created under ``correlation_id``."""
    result = snapshot
    for kind in EntityKind:
        items = result.collection(kind)
        kept = [
            item for item in items if not (item.provisional and item.correlation_id == correlation_id)
        ]
        if len(kept) != len(items):
            result = result.with_collection(kind, finalize(kind, kept, now=now))
    return result


def confirm_provisional(snapshot: Snapshot, correlation_id: str) -> Snapshot:
    """Mark provisional entities of ``correlation_id`` as confirmed, keeping their ids."""
    result = snapshot
    for kind in EntityKind:
        items = result.collection(kind)
        if not any(item.provisional and item.correlation_id == correlation_id for item in items):
            continue
        promoted = tuple(
            item.model_copy(update={"sync_status": EntityStatus.CONFIRMED})
            if item.provisional and item.correlation_id == correlation_id
            else item
            for item in items
        )
        result = result.with_collection(kind, promoted)
    return result


def restore_entities(
    snapshot: Snapshot,
    before: Snapshot,
    kind: EntityKind,
    ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> Snapshot:
    """Put the pre-mutation versions of ``ids`` back where they were.

    Each entity goes back next to its closest former neighbour that is still
    present, so entities added in the meantime keep their place. Entities
    with those ids that did not exist in ``before`` are removed.
    """
    targets = set(ids)
    items = [item for item in snapshot.collection(kind) if item.id not in targets]
    previous = before.collection(kind)
    for index, item in enumerate(previous):
        if item.id in targets:
            items.insert(_anchor_index(items, previous, index), item)
    return snapshot.with_collection(kind, finalize(kind, items, now=now))


def _anchor_index(items: list[Entity], previous: Sequence[Entity], index: int) -> int:
    positions = {item.id: position for position, item in enumerate(items)}
    for neighbour in reversed(previous[:index]):
        if neighbour.id in positions:
            return positions[neighbour.id] + 1
    for neighbour in previous[index + 1 :]:
        if neighbour.id in positions:
            return positions[neighbour.id]
    return min(index, len(items))


__all__ = [
    "confirm_provisional",
    "finalize",
    "insert_entity",
    "merge_bundle",
    "merge_collection",
    "merge_entity",
    "merge_group",
    "merge_record",
    "merge_user",
    "prune_expired",
    "remove_entities",
    "remove_provisional",
    "replace_entity",
    "restore_entities",
    "union_ids",
]
