"""
Data collaborator abstraction.
Every entity store (live backend or demo data) implements this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crm_core.query.composer import QueryDescriptor


class EntityKind(str, Enum):
    """Entity types the coordinators serve."""
    ORGANIZATIONS = "organizations"
    PRINCIPALS = "principals"
    PRODUCTS = "products"
    OPPORTUNITIES = "opportunities"
    INTERACTIONS = "interactions"

    @property
    def id_field(self) -> str:
        """Primary key column of the rows this kind returns."""
        if self is EntityKind.PRINCIPALS:
            return "principal_id"
        return "id"

    @property
    def name_field(self) -> str:
        """Column used for free-text search."""
        if self is EntityKind.PRINCIPALS:
            return "principal_name"
        if self is EntityKind.INTERACTIONS:
            return "subject"
        return "name"


@dataclass(frozen=True)
class QueryResult:
    """One page of rows plus the total matching count."""
    items: tuple[dict, ...] = field(default_factory=tuple)
    total_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "items", tuple(self.items))


class DataCollaborator(ABC):
    """Abstract base class for entity data access.

    Implementations raise ``CollaboratorUnavailable`` for any failure the
    coordinators should absorb.
    """

    kind: EntityKind

    @abstractmethod
    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        """Fetch one page of rows matching the descriptor."""
        pass

    @abstractmethod
    async def get_by_id(self, entity_id: str) -> dict:
        """Fetch a single row."""
        pass

    @abstractmethod
    async def mutate(self, operation_kind: str, entity_id: str, payload: Any) -> dict:
        """Apply a change to one row and return the authoritative row."""
        pass

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
