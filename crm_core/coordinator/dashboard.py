"""
Dashboard KPI coordinator.

Pulls one result per source concurrently, each through the cache and the
fetch gate, and composes them into an AggregatedView. A failed source is
passed to the aggregator as UNAVAILABLE; when a required field cannot be
computed the previously published view stays in place.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from crm_core.aggregation.aggregator import UNAVAILABLE, AggregatedView, Aggregator
from crm_core.aggregation.kpis import DEFAULT_PERIOD, PERIODS, dashboard_aggregator
from crm_core.aggregation.staleness import StalenessTracker
from crm_core.cache.gate import FetchGate
from crm_core.cache.store import CacheStore
from crm_core.config import CoordinatorOptions
from crm_core.coordinator.calls import call_collaborator
from crm_core.errors import CollaboratorUnavailable, CoordinatorDisposedError, QueryDescriptorError
from crm_core.query.composer import FilterQueryComposer, Pagination, SortSpec
from crm_core.refresh.scheduler import RefreshScheduler
from crm_core.sources.base import DataCollaborator, EntityKind, QueryResult
from crm_core.utils.logging import LoggerMixin, log_context

# Page size used to pull every row of a source for aggregation
SOURCE_ROW_LIMIT = 1000

SOURCE_SORTS = {
    EntityKind.OPPORTUNITIES.value: SortSpec("created_at", "desc"),
    EntityKind.ORGANIZATIONS.value: SortSpec("created_at", "desc"),
    EntityKind.PRINCIPALS.value: SortSpec("engagement_score", "desc"),
    EntityKind.PRODUCTS.value: SortSpec("name", "asc"),
    EntityKind.INTERACTIONS.value: SortSpec("interaction_date", "desc"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DashboardSnapshot:
    """Published KPI view plus status flags."""
    view: Optional[AggregatedView]
    period: str
    is_loading: bool
    is_stale: bool
    last_error: Optional[str]
    auto_refresh: bool
    refresh_interval_seconds: float

    def to_dict(self) -> dict:
        return {
            "view": self.view.to_dict() if self.view else None,
            "period": self.period,
            "is_loading": self.is_loading,
            "is_stale": self.is_stale,
            "last_error": self.last_error,
            "auto_refresh": self.auto_refresh,
            "refresh_interval_seconds": self.refresh_interval_seconds,
        }


class DashboardCoordinator(LoggerMixin):
    """Aggregated KPI view with periodic background refresh."""

    def __init__(
        self,
        collaborators: Mapping[str, DataCollaborator],
        options: Optional[CoordinatorOptions] = None,
        cache: Optional[CacheStore] = None,
        gate: Optional[FetchGate] = None,
        aggregator: Optional[Aggregator] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
        period: str = DEFAULT_PERIOD,
    ):
        self.options = options or CoordinatorOptions()
        self.aggregator = aggregator or dashboard_aggregator()
        self.collaborators = {getattr(k, "value", k): v for k, v in collaborators.items()}
        self.cache = cache if cache is not None else CacheStore(self.options.aggregate_cache_ttl_seconds, clock=clock)
        self.gate = gate if gate is not None else FetchGate()
        self.tracker = StalenessTracker()
        self.scheduler = RefreshScheduler(
            self._scheduled_refresh,
            interval_seconds=self.options.refresh_interval_seconds,
            name="dashboard-refresh",
        )
        self._clock = clock
        self._wall_clock = wall_clock
        self._period = self._validate_period(period)

        self._view: Optional[AggregatedView] = None
        self._loading = 0
        self._generation = 0
        self._disposed = False
        self.last_error: Optional[str] = None

    @staticmethod
    def _validate_period(period: str) -> str:
        if period not in PERIODS:
            raise QueryDescriptorError(f"Period must be one of {PERIODS}, got {period!r}", code="invalid_period")
        return period

    @property
    def view(self) -> Optional[AggregatedView]:
        return self._view

    @property
    def period(self) -> str:
        return self._period

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    @property
    def is_stale(self) -> bool:
        return self.tracker.is_stale(self._clock(), self.options.staleness_max_age_seconds)

    def source_key(self, source: str) -> str:
        return f"{source}:dashboard"

    def snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            view=self._view,
            period=self._period,
            is_loading=self.is_loading,
            is_stale=self.is_stale,
            last_error=self.last_error,
            auto_refresh=self.scheduler.is_running,
            refresh_interval_seconds=self.scheduler.config.interval_seconds,
        )

    async def refresh(self, force: bool = False) -> Optional[AggregatedView]:
        """
        Re-aggregate the dashboard.

        Args:
            force: Bypass cached source results

        Returns:
            The newly published view, or None when it was withheld or dropped
        """
        self._ensure_active()
        self._generation += 1
        generation = self._generation
        source_ids = sorted(self.aggregator.source_ids)

        self._loading += 1
        try:
            with log_context(dashboard_period=self._period):
                results = await asyncio.gather(
                    *(self._load_source(source, force) for source in source_ids),
                    return_exceptions=True,
                )
        finally:
            self._loading -= 1

        sources: dict[str, Any] = {}
        failures: list[str] = []
        for source, result in zip(source_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                sources[source] = UNAVAILABLE
                failures.append(str(result))
            else:
                sources[source] = result

        if self._disposed:
            self.log.debug("Dropping dashboard result for disposed coordinator")
            return None
        if generation != self._generation:
            self.log.debug("Dropping superseded dashboard result", generation=generation)
            return None

        view = self.aggregator.compose(
            sources,
            computed_at=self._wall_clock(),
            previous=self._view,
            options={"period": self._period},
        )
        if view is None:
            self.last_error = "Dashboard not updated: " + "; ".join(failures)
            self.log.warning("Dashboard view withheld", unavailable=sorted(s for s, v in sources.items() if v is UNAVAILABLE))
            return None

        self._view = view
        self.tracker.mark_fresh(self._clock())
        self.last_error = "; ".join(failures) if failures else None
        if failures:
            self.log.info("Dashboard published with partial data", unavailable=sorted(view.unavailable_sources))
        return view

    async def ensure_fresh(self) -> Optional[AggregatedView]:
        if self.is_stale:
            return await self.refresh(force=True)
        return self._view

    async def set_time_period(self, period: str) -> Optional[AggregatedView]:
        """Switch the reporting period and recompute."""
        self._ensure_active()
        self._period = self._validate_period(period)
        self.tracker.reset()
        for source in self.aggregator.source_ids:
            self.cache.invalidate(self.source_key(source))
        return await self.refresh()

    async def _load_source(self, source: str, force: bool) -> QueryResult:
        collaborator = self.collaborators.get(source)
        if collaborator is None:
            raise CollaboratorUnavailable("No collaborator configured", source=source, code="missing")

        key = self.source_key(source)
        if not force:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        prefix = f"{source}:"
        epoch = self.cache.epoch(prefix)
        composer = FilterQueryComposer(source)
        page_size = SOURCE_ROW_LIMIT

        async def fetch() -> QueryResult:
            rows: list[dict] = []
            page = 1
            while True:
                descriptor = composer.canonicalize(
                    sort=SOURCE_SORTS.get(source),
                    pagination=Pagination(page=page, limit=page_size),
                ).descriptor
                chunk = await call_collaborator(
                    collaborator.query(descriptor),
                    timeout=self.options.fetch_timeout_seconds,
                    source=source,
                )
                rows.extend(chunk.items)
                if len(chunk.items) < page_size or len(rows) >= chunk.total_count:
                    break
                page += 1

            result = QueryResult(items=tuple(rows), total_count=max(chunk.total_count, len(rows)))
            self.cache.set_if_current(key, result, prefix, epoch, self.options.aggregate_cache_ttl_seconds)
            return result

        return await self.gate.run(f"{key}@{epoch[0]}.{epoch[1]}", fetch)

    async def _scheduled_refresh(self) -> None:
        if self._disposed:
            return
        await self.refresh(force=True)

    # ===================
    # Auto refresh
    # ===================

    def start_auto_refresh(self, interval_seconds: Optional[float] = None) -> None:
        self._ensure_active()
        self.scheduler.start(interval_seconds or self.scheduler.config.interval_seconds)

    def stop_auto_refresh(self) -> None:
        self.scheduler.stop()

    def configure_auto_refresh(self, enabled: bool, interval_seconds: Optional[float] = None) -> None:
        """Turn background refresh on/off and optionally change its interval."""
        self._ensure_active()
        interval = interval_seconds or self.scheduler.config.interval_seconds
        if self.scheduler.is_running:
            self.scheduler.reconfigure(interval, enabled=enabled)
        elif enabled:
            self.scheduler.start(interval)
        else:
            self.scheduler.reconfigure(interval, enabled=False)

    def dispose(self) -> None:
        if self._disposed:
            return
        self.scheduler.stop()
        self._disposed = True
        self._generation += 1
        self.log.info("Dashboard coordinator disposed")

    def _ensure_active(self) -> None:
        if self._disposed:
            raise CoordinatorDisposedError("Dashboard coordinator has been disposed", code="disposed")
