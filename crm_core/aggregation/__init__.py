"""
View composition and freshness tracking.
"""
from .aggregator import (
    UNAVAILABLE,
    AggregatedView,
    AggregationContext,
    Aggregator,
    FieldSpec,
    safe_rate,
)
from .staleness import StalenessTracker

__all__ = [
    "UNAVAILABLE",
    "AggregatedView",
    "AggregationContext",
    "Aggregator",
    "FieldSpec",
    "safe_rate",
    "StalenessTracker",
]
