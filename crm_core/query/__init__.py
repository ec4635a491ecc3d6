"""
Query canonicalization.
"""
from .composer import (
    CanonicalQuery,
    FilterQueryComposer,
    Pagination,
    QueryDescriptor,
    SortSpec,
)

__all__ = [
    "CanonicalQuery",
    "FilterQueryComposer",
    "Pagination",
    "QueryDescriptor",
    "SortSpec",
]
