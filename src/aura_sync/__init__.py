"""Client-side state reconciliation core for the Aura social network."""

from .client import AuraClient
from .services.mutations import MutationPipeline
from .services.snapshot import Snapshot, SnapshotStore

__all__ = ["AuraClient", "MutationPipeline", "Snapshot", "SnapshotStore"]
