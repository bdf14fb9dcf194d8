"""Optimistic mutation pipeline."""

from aura_sync.services.mutations.admin import AdminCommands
from aura_sync.services.mutations.auth import AuthCommands
from aura_sync.services.mutations.base import Mutation, MutationDispatcher, make_provisional_id
from aura_sync.services.mutations.groups import GroupCommands
from aura_sync.services.mutations.posts import PostCommands
from aura_sync.services.mutations.social import SocialCommands


class MutationPipeline(
    PostCommands,
    SocialCommands,
    GroupCommands,
    AdminCommands,
    AuthCommands,
):
    """Every command of the client, sharing one store and one API client."""


__all__ = [
    "Mutation",
    "MutationDispatcher",
    "MutationPipeline",
    "make_provisional_id",
]
