"""
Canonical query descriptors and cache keys.

Equivalent filter/sort/pagination/search inputs collapse to one descriptor and
one key: empty values are dropped, mapping keys are sorted, and sequence
values are treated as sets unless the field is declared order-sensitive.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from crm_core.errors import QueryDescriptorError

SORT_ORDERS = ("asc", "desc")
_SEQUENCE_TYPES = (list, tuple, set, frozenset)


@dataclass(frozen=True)
class SortSpec:
    """Sort field and direction."""
    field: str
    order: str = "asc"

    def __post_init__(self) -> None:
        if not isinstance(self.field, str) or not self.field.strip():
            raise QueryDescriptorError("Sort field must be a non-empty string", code="invalid_sort")
        order = str(self.order).lower()
        if order not in SORT_ORDERS:
            raise QueryDescriptorError(f"Sort order must be one of {SORT_ORDERS}, got {self.order!r}", code="invalid_sort")
        object.__setattr__(self, "field", self.field.strip())
        object.__setattr__(self, "order", order)

    @property
    def descending(self) -> bool:
        return self.order == "desc"


@dataclass(frozen=True)
class Pagination:
    """1-based page number and page size."""
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if isinstance(self.page, bool) or not isinstance(self.page, int) or self.page < 1:
            raise QueryDescriptorError(f"Page must be an integer >= 1, got {self.page!r}", code="invalid_page")
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise QueryDescriptorError(f"Limit must be an integer >= 1, got {self.limit!r}", code="invalid_page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class QueryDescriptor:
    """Canonical request sent to a collaborator and used to seed the cache key."""
    scope: str
    filters: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    sort: Optional[SortSpec] = None
    pagination: Pagination = field(default_factory=Pagination)
    search: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "filters": _thaw(self.filters),
            "sort": {"field": self.sort.field, "order": self.sort.order} if self.sort else None,
            "pagination": {"page": self.pagination.page, "limit": self.pagination.limit},
            "search": self.search,
        }

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def __hash__(self) -> int:
        return hash(self.canonical_json())


@dataclass(frozen=True)
class CanonicalQuery:
    """Cache key plus the descriptor it was derived from."""
    key: str
    descriptor: QueryDescriptor


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (*_SEQUENCE_TYPES, Mapping)):
        return len(value) == 0
    return False


def _normalize_scalar(name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise QueryDescriptorError(
        f"Unsupported value for filter {name!r}: {type(value).__name__}",
        code="invalid_filter",
    )


def _sort_token(value: Any) -> str:
    return json.dumps(_thaw(value), sort_keys=True)


class FilterQueryComposer:
    """
    Turns raw query parameters into a canonical descriptor and cache key.

    Sequence-valued filters are order-independent by default; fields listed in
    ``ordered_fields`` keep their order and duplicates.
    """

    def __init__(self, scope: str, ordered_fields: Iterable[str] = ()):
        if not scope:
            raise ValueError("scope is required")
        self.scope = scope
        self.ordered_fields = frozenset(ordered_fields)

    def canonicalize(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        pagination: Optional[Pagination] = None,
        search: Optional[str] = None,
    ) -> CanonicalQuery:
        if filters is not None and not isinstance(filters, Mapping):
            raise QueryDescriptorError("Filters must be a mapping", code="invalid_filter")
        if sort is not None and not isinstance(sort, SortSpec):
            raise QueryDescriptorError("Sort must be a SortSpec", code="invalid_sort")
        if pagination is not None and not isinstance(pagination, Pagination):
            raise QueryDescriptorError("Pagination must be a Pagination", code="invalid_page")

        descriptor = QueryDescriptor(
            scope=self.scope,
            filters=self.normalize_filters(filters or {}),
            sort=sort,
            pagination=pagination or Pagination(),
            search=self.normalize_search(search),
        )
        digest = hashlib.md5(descriptor.canonical_json().encode()).hexdigest()[:16]
        return CanonicalQuery(key=f"{self.scope}:{digest}", descriptor=descriptor)

    def normalize_filters(self, filters: Mapping[str, Any]) -> Mapping[str, Any]:
        """Drop empty fields and sort keys (and set-like values)."""
        normalized: dict[str, Any] = {}
        for name in sorted(filters, key=str):
            if not isinstance(name, str):
                raise QueryDescriptorError(f"Filter names must be strings, got {name!r}", code="invalid_filter")
            value = self._normalize_value(name, filters[name])
            if not _is_empty(value):
                normalized[name] = value
        return MappingProxyType(normalized)

    @staticmethod
    def normalize_search(search: Optional[str]) -> Optional[str]:
        if search is None:
            return None
        if not isinstance(search, str):
            raise QueryDescriptorError("Search term must be a string", code="invalid_search")
        term = " ".join(search.split()).lower()
        return term or None

    def _normalize_value(self, name: str, value: Any) -> Any:
        if _is_empty(value):
            return None

        if isinstance(value, Mapping):
            nested = {}
            for key in sorted(value, key=str):
                if not isinstance(key, str):
                    raise QueryDescriptorError(f"Nested keys in {name!r} must be strings", code="invalid_filter")
                inner = value[key]
                if _is_empty(inner):
                    continue
                nested[key] = _normalize_scalar(name, inner)
            return MappingProxyType(nested) if nested else None

        if isinstance(value, _SEQUENCE_TYPES):
            items = [_normalize_scalar(name, v) for v in value if not _is_empty(v)]
            if name in self.ordered_fields:
                return tuple(items)
            unique = {_sort_token(v): v for v in items}
            return tuple(unique[token] for token in sorted(unique))

        return _normalize_scalar(name, value)
