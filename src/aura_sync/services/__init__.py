# src/aura_sync/services/__init__.py
"""Reconciliation services: normalizer, merge engine, store, pipeline and background sync."""

from .normalizer import EntityBundle, normalize, normalize_bundle
from .poller import ChatPoller
from .projector import Projection, ProjectionCache, project
from .push import BackoffPolicy, ChannelState, PushChannelListener
from .snapshot import Session, Snapshot, SnapshotStore
from .transport import SocialApiClient

__all__ = [
    "BackoffPolicy",
    "ChannelState",
    "ChatPoller",
    "EntityBundle",
    "Projection",
    "ProjectionCache",
    "PushChannelListener",
    "Session",
    "Snapshot",
    "SnapshotStore",
    "SocialApiClient",
    "normalize",
    "normalize_bundle",
    "project",
]
