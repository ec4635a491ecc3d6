"""
Composition of several independent source results into one view.

Each field declares the sources it depends on. A field whose sources are all
available is computed; otherwise it is carried over from the previous view
(or omitted), never defaulted to zero. Composition is pure: no I/O and no
mutation of the source objects.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from crm_core.utils.logging import get_logger

logger = get_logger(__name__)


class _Unavailable:
    """Marker for a source whose fetch failed."""

    _instance: Optional["_Unavailable"] = None

    def __new__(cls) -> "_Unavailable":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE = _Unavailable()

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class AggregationContext:
    """Inputs shared by every field of one composition pass.

    ``computed_at`` is the single reference instant for all relative date
    bucketing ("this week", "this month") within the pass.
    """
    computed_at: datetime
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FieldSpec:
    """One field of an aggregated view."""
    name: str
    requires: tuple[str, ...]
    compute: Callable[[Mapping[str, Any], AggregationContext], Any]
    # When False the whole view is withheld if this field cannot be computed
    partial_ok: bool = False


@dataclass(frozen=True)
class AggregatedView:
    """Read-only snapshot composed from several sources."""
    values: Mapping[str, Any]
    computed_at: datetime
    carried_over: frozenset[str] = frozenset()
    missing: frozenset[str] = frozenset()
    unavailable_sources: frozenset[str] = frozenset()

    @property
    def is_partial(self) -> bool:
        return bool(self.carried_over or self.missing)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def to_dict(self) -> dict:
        return {
            "values": dict(self.values),
            "computed_at": self.computed_at.isoformat(),
            "carried_over": sorted(self.carried_over),
            "missing": sorted(self.missing),
            "unavailable_sources": sorted(self.unavailable_sources),
        }


def safe_rate(numerator: Number, denominator: Number, scale: Number = 1) -> Number:
    """Ratio that yields 0 instead of raising or NaN on a zero denominator."""
    if not denominator:
        return Decimal(0) if isinstance(numerator, Decimal) else 0
    if isinstance(numerator, Decimal) or isinstance(denominator, Decimal):
        return Decimal(numerator) / Decimal(denominator) * Decimal(scale)
    return numerator / denominator * scale


class Aggregator:
    """Composes source results according to a list of field specs."""

    def __init__(self, fields: Iterable[FieldSpec]):
        self._fields = list(fields)
        names = [f.name for f in self._fields]
        if len(names) != len(set(names)):
            raise ValueError("Duplicate field names in aggregator")

    @property
    def fields(self) -> list[FieldSpec]:
        return list(self._fields)

    @property
    def source_ids(self) -> frozenset[str]:
        """Every source any field depends on."""
        return frozenset(s for f in self._fields for s in f.requires)

    def compose(
        self,
        sources: Mapping[str, Any],
        computed_at: datetime,
        previous: Optional[AggregatedView] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[AggregatedView]:
        """
        Build a view from the given source results.

        Args:
            sources: Source id -> result, or UNAVAILABLE (a missing key counts
                as unavailable)
            computed_at: Reference instant for the pass
            previous: Last published view, used to carry fields over
            options: Extra per-pass inputs exposed on the context

        Returns:
            The new view, or None when a field that does not tolerate
            partial data cannot be computed
        """
        ctx = AggregationContext(computed_at=computed_at, options=MappingProxyType(dict(options or {})))
        unavailable = frozenset(
            s for s in self.source_ids
            if sources.get(s, UNAVAILABLE) is UNAVAILABLE
        )

        values: dict[str, Any] = {}
        carried: set[str] = set()
        missing: set[str] = set()

        for spec in self._fields:
            blocked = [s for s in spec.requires if s in unavailable]
            if not blocked:
                inputs = MappingProxyType({s: sources[s] for s in spec.requires})
                values[spec.name] = spec.compute(inputs, ctx)
                continue

            if not spec.partial_ok:
                logger.info(
                    "Aggregation withheld",
                    field=spec.name,
                    unavailable=sorted(blocked),
                )
                return None

            if previous is not None and spec.name in previous.values:
                values[spec.name] = previous.values[spec.name]
                carried.add(spec.name)
            else:
                missing.add(spec.name)

        return AggregatedView(
            values=MappingProxyType(values),
            computed_at=computed_at,
            carried_over=frozenset(carried),
            missing=frozenset(missing),
            unavailable_sources=unavailable,
        )
