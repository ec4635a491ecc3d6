"""
Pytest configuration and fixtures.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from crm_core.config import CoordinatorOptions, DataSourceMode, Settings
from crm_core.errors import CollaboratorUnavailable
from crm_core.sources.base import EntityKind, QueryResult
from crm_core.sources.fallback import InMemoryCollaborator, demo_records

# Wednesday, mid-March
FIXED_NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ControlledCollaborator(InMemoryCollaborator):
    """In-memory collaborator whose calls can be made to fail or block."""

    def __init__(self, kind: EntityKind, records=None, latency_seconds: float = 0.0):
        super().__init__(kind, records, latency_seconds)
        self.fail_queries = False
        self.fail_mutations = False
        self.query_gate: Optional[asyncio.Event] = None
        # Awaited after the rows are read, so the reply carries data from before the wait
        self.reply_gate: Optional[asyncio.Event] = None
        self.mutation_gate: Optional[asyncio.Event] = None
        self.get_count = 0

    async def query(self, descriptor) -> QueryResult:
        if self.query_gate is not None:
            await self.query_gate.wait()
        if self.fail_queries:
            raise CollaboratorUnavailable("backend down", source=self.kind.value, code="503")
        result = await super().query(descriptor)
        if self.reply_gate is not None:
            await self.reply_gate.wait()
        return result

    async def get_by_id(self, entity_id: str) -> dict:
        self.get_count += 1
        return await super().get_by_id(entity_id)

    async def mutate(self, operation_kind: str, entity_id: str, payload: Any) -> dict:
        if self.mutation_gate is not None:
            await self.mutation_gate.wait()
        if self.fail_mutations:
            raise CollaboratorUnavailable("write rejected", source=self.kind.value, code="409")
        return await super().mutate(operation_kind, entity_id, payload)


def make_collaborator(kind: EntityKind, latency_seconds: float = 0.0) -> ControlledCollaborator:
    return ControlledCollaborator(kind, demo_records(kind, now=FIXED_NOW), latency_seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def options() -> CoordinatorOptions:
    """Coordinator options with background refresh off and small pages."""
    return CoordinatorOptions(auto_refresh=False, default_page_size=2)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, using demo data."""
    return Settings(_env_file=None, data_source=DataSourceMode.FALLBACK)


@pytest.fixture
def org_collaborator() -> ControlledCollaborator:
    return make_collaborator(EntityKind.ORGANIZATIONS)


@pytest.fixture
def dashboard_collaborators() -> dict[str, ControlledCollaborator]:
    return {kind.value: make_collaborator(kind) for kind in EntityKind}
