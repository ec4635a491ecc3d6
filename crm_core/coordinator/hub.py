"""
Per-scope registry of coordinators.

A hub is constructed explicitly (per app, per session, per test) and passed
to whoever needs it; there is no module-level instance. All coordinators of
one hub share a single CacheStore and FetchGate.
"""

import asyncio
import time
from typing import Any, Callable, Optional

from crm_core.cache.gate import FetchGate
from crm_core.cache.store import CacheStore
from crm_core.config import CoordinatorOptions, DataSourceMode, Settings, get_settings
from crm_core.coordinator.dashboard import DashboardCoordinator
from crm_core.coordinator.entity import EntityCoordinator
from crm_core.errors import CoordinatorDisposedError
from crm_core.sources import build_collaborator
from crm_core.sources.base import DataCollaborator, EntityKind
from crm_core.utils.logging import LoggerMixin

CollaboratorFactory = Callable[[EntityKind], DataCollaborator]


class CoordinatorHub(LoggerMixin):
    """
    Builds coordinators lazily and tears them all down on ``close``.

    Usage:
        async with CoordinatorHub(settings) as hub:
            orgs = hub.use_coordinator("organizations")
            await orgs.load()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        collaborator_factory: Optional[CollaboratorFactory] = None,
        options: Optional[CoordinatorOptions] = None,
        clock: Callable[[], float] = time.monotonic,
        mode: Optional[DataSourceMode] = None,
    ):
        self.settings = settings or get_settings()
        self.options = options or CoordinatorOptions.from_settings(self.settings)
        self.data_source = DataSourceMode(mode) if mode is not None else self.settings.resolved_data_source
        self._factory = collaborator_factory or (
            lambda kind: build_collaborator(kind, self.settings, self.data_source)
        )
        self._clock = clock

        self.cache = CacheStore(self.options.list_cache_ttl_seconds, clock=clock)
        self.gate = FetchGate()

        self._collaborators: dict[EntityKind, DataCollaborator] = {}
        self._coordinators: dict[EntityKind, EntityCoordinator] = {}
        self._dashboard: Optional[DashboardCoordinator] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def collaborator(self, kind: EntityKind) -> DataCollaborator:
        kind = EntityKind(kind)
        if kind not in self._collaborators:
            self._collaborators[kind] = self._factory(kind)
        return self._collaborators[kind]

    def use_coordinator(self, kind: EntityKind, **overrides: Any) -> EntityCoordinator:
        """
        Get the coordinator for ``kind``, creating it on first use.

        ``overrides`` replace hub options for a newly created coordinator and
        are ignored once it exists. When auto refresh is enabled the timer is
        started, so this must be called from inside the event loop.
        """
        self._ensure_open()
        kind = EntityKind(kind)
        coordinator = self._coordinators.get(kind)
        if coordinator is None:
            options = self.options.with_overrides(**overrides) if overrides else self.options
            coordinator = EntityCoordinator(
                kind,
                self.collaborator(kind),
                options=options,
                cache=self.cache,
                gate=self.gate,
                clock=self._clock,
            )
            if options.auto_refresh:
                coordinator.start_auto_refresh()
            self._coordinators[kind] = coordinator
            self.log.info("Coordinator created", kind=kind.value, data_source=self.data_source.value)
        return coordinator

    def dashboard(self, **overrides: Any) -> DashboardCoordinator:
        """Get the dashboard coordinator, creating it on first use."""
        self._ensure_open()
        if self._dashboard is None:
            options = self.options.with_overrides(**overrides) if overrides else self.options
            self._dashboard = DashboardCoordinator(
                {kind.value: self.collaborator(kind) for kind in EntityKind},
                options=options,
                cache=self.cache,
                gate=self.gate,
                clock=self._clock,
            )
            if options.auto_refresh:
                self._dashboard.start_auto_refresh()
            self.log.info("Dashboard coordinator created", data_source=self.data_source.value)
        return self._dashboard

    def stats(self) -> dict:
        return {
            "data_source": self.data_source.value,
            "coordinators": sorted(k.value for k in self._coordinators),
            "dashboard": self._dashboard is not None,
            "cache": self.cache.stats(),
            "gate": self.gate.stats(),
        }

    async def close(self) -> None:
        """Dispose every coordinator and close collaborators. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for coordinator in self._coordinators.values():
            coordinator.dispose()
        if self._dashboard is not None:
            self._dashboard.dispose()

        collaborators = list(self._collaborators.values())
        results = await asyncio.gather(*(c.close() for c in collaborators), return_exceptions=True)
        for collaborator, result in zip(collaborators, results):
            if isinstance(result, Exception):
                self.log.error("Failed to close collaborator", kind=collaborator.kind.value, error=str(result))

        self._coordinators.clear()
        self._dashboard = None
        self._collaborators.clear()
        self.cache.invalidate()
        self.log.info("Coordinator hub closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise CoordinatorDisposedError("Coordinator hub has been closed", code="closed")

    async def __aenter__(self) -> "CoordinatorHub":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
