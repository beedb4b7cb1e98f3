"""Error taxonomy for the lifecycle core."""

from __future__ import annotations


class AtlasError(Exception):
    """Base class for every error raised by the core."""


class EntityNotFoundError(AtlasError):
    """A requested entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} does not exist")
        self.entity = entity
        self.entity_id = entity_id


class PreconditionError(AtlasError):
    """A transition was requested from a state that does not allow it.

    Raised before anything is mutated or emitted.
    """


class ConcurrencyError(AtlasError):
    """Another writer committed a newer version of the entity first."""


class ReferentialInconsistencyError(AtlasError):
    """A message refers to an entity that no longer exists."""
