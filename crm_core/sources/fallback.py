"""
In-memory collaborator serving demo data.

Used when no live backend is configured. It honours the same descriptor
semantics as the live backend so coordinators behave identically on either.
"""

import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from crm_core.errors import CollaboratorUnavailable
from crm_core.query.composer import QueryDescriptor
from crm_core.sources.base import DataCollaborator, EntityKind, QueryResult
from crm_core.utils.logging import get_logger

logger = get_logger(__name__)


def _matches(row: Mapping[str, Any], name: str, expected: Any) -> bool:
    actual = row.get(name)
    if isinstance(expected, Mapping):
        if actual is None:
            return False
        low = expected.get("min")
        high = expected.get("max")
        if low is not None and actual < low:
            return False
        if high is not None and actual > high:
            return False
        return True
    if isinstance(expected, (list, tuple)):
        if isinstance(actual, (list, tuple)):
            return any(a in expected for a in actual)
        return actual in expected
    return actual == expected


class InMemoryCollaborator(DataCollaborator):
    """Serves and mutates a list of rows held in memory."""

    def __init__(
        self,
        kind: EntityKind,
        records: Optional[Iterable[dict]] = None,
        latency_seconds: float = 0.0,
    ):
        self.kind = EntityKind(kind)
        self.latency_seconds = latency_seconds
        self._rows: dict[str, dict] = {}
        for row in records or ():
            self._rows[str(row[self.kind.id_field])] = dict(row)
        self.query_count = 0
        self.mutation_count = 0

    async def _simulate_latency(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        await self._simulate_latency()
        self.query_count += 1

        rows = list(self._rows.values())
        for name, expected in descriptor.filters.items():
            rows = [r for r in rows if _matches(r, name, expected)]

        if descriptor.search:
            term = descriptor.search.lower()
            name_field = self.kind.name_field
            rows = [r for r in rows if term in str(r.get(name_field) or "").lower()]

        if descriptor.sort:
            sort_field = descriptor.sort.field
            present = [r for r in rows if r.get(sort_field) is not None]
            absent = [r for r in rows if r.get(sort_field) is None]
            present.sort(key=lambda r: r[sort_field], reverse=descriptor.sort.descending)
            rows = present + absent

        page = descriptor.pagination
        window = rows[page.offset:page.offset + page.limit]
        return QueryResult(items=tuple(copy.deepcopy(window)), total_count=len(rows))

    async def get_by_id(self, entity_id: str) -> dict:
        await self._simulate_latency()
        row = self._rows.get(str(entity_id))
        if row is None:
            raise CollaboratorUnavailable(f"{entity_id} not found", source=self.kind.value, code="not_found")
        return copy.deepcopy(row)

    async def mutate(self, operation_kind: str, entity_id: str, payload: Any) -> dict:
        await self._simulate_latency()
        operation = getattr(operation_kind, "value", operation_kind)
        entity_id = str(entity_id)
        patch = dict(payload or {})

        if operation == "create_for_principal":
            new_id = str(uuid.uuid4())
            row = {**patch, self.kind.id_field: new_id, "principal_id": entity_id}
            row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
            self._rows[new_id] = row
            self.mutation_count += 1
            return copy.deepcopy(row)

        row = self._rows.get(entity_id)
        if row is None:
            raise CollaboratorUnavailable(f"{entity_id} not found", source=self.kind.value, code="not_found")

        if operation == "delete":
            del self._rows[entity_id]
        elif operation == "archive":
            row.update(patch)
            row["is_active"] = False
        elif operation in ("update", "assign"):
            row.update(patch)
        else:
            raise CollaboratorUnavailable(f"Unsupported operation {operation}", source=self.kind.value, code="bad_operation")

        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.mutation_count += 1
        logger.debug("Demo row mutated", kind=self.kind.value, entity_id=entity_id, operation=operation)
        return copy.deepcopy(row)


# ===================
# Demo data
# ===================

def demo_records(kind: EntityKind, now: Optional[datetime] = None) -> list[dict]:
    """Seed rows for the demo data source, dated relative to ``now``."""
    now = now or datetime.now(timezone.utc)

    def ago(days: int) -> str:
        return (now - timedelta(days=days)).isoformat()

    kind = EntityKind(kind)
    if kind is EntityKind.ORGANIZATIONS:
        return [
            {"id": "org-1", "name": "Harbor Bistro Group", "type": "Customer", "status": "Active", "industry": "Restaurant", "created_at": ago(2)},
            {"id": "org-2", "name": "Summit Foods", "type": "Principal", "status": "Active", "industry": "Manufacturing", "created_at": ago(40)},
            {"id": "org-3", "name": "Valley Distribution", "type": "Distributor", "status": "Active", "industry": "Distribution", "created_at": ago(90)},
            {"id": "org-4", "name": "Oak Street Grill", "type": "Customer", "status": "Prospect", "industry": "Restaurant", "created_at": ago(5)},
            {"id": "org-5", "name": "Coastal Catering", "type": "Customer", "status": "Inactive", "industry": "Catering", "created_at": ago(200)},
        ]
    if kind is EntityKind.PRINCIPALS:
        return [
            {"principal_id": "org-2", "principal_name": "Summit Foods", "activity_status": "ACTIVE", "engagement_score": 82, "total_opportunities": 3, "follow_ups_required": 1},
            {"principal_id": "org-6", "principal_name": "Blue Ridge Sauces", "activity_status": "MODERATE", "engagement_score": 55, "total_opportunities": 1, "follow_ups_required": 0},
            {"principal_id": "org-7", "principal_name": "Prairie Dairy Co", "activity_status": "INACTIVE", "engagement_score": 12, "total_opportunities": 0, "follow_ups_required": 2},
        ]
    if kind is EntityKind.PRODUCTS:
        return [
            {"id": "prod-1", "name": "Smoked Brisket", "category": "Protein", "principal_id": "org-2", "is_active": True},
            {"id": "prod-2", "name": "Chipotle BBQ Sauce", "category": "Sauce", "principal_id": "org-6", "is_active": True},
            {"id": "prod-3", "name": "Aged Cheddar", "category": "Dairy", "principal_id": "org-7", "is_active": True},
            {"id": "prod-4", "name": "Garlic Rub", "category": "Seasoning", "principal_id": "org-6", "is_active": False},
        ]
    if kind is EntityKind.OPPORTUNITIES:
        return [
            {"id": "opp-1", "name": "Harbor Bistro - Summit Foods - Brisket", "stage": "Demo Scheduled", "organization_id": "org-1", "principal_id": "org-2", "estimated_value": "12000", "probability": 60, "created_at": ago(3), "updated_at": ago(1)},
            {"id": "opp-2", "name": "Oak Street - Blue Ridge - Sauce", "stage": "New Lead", "organization_id": "org-4", "principal_id": "org-6", "estimated_value": "4500", "probability": 10, "created_at": ago(6), "updated_at": ago(6)},
            {"id": "opp-3", "name": "Coastal - Summit Foods - Sampling", "stage": "Closed - Won", "organization_id": "org-5", "principal_id": "org-2", "estimated_value": "8000", "probability": 100, "created_at": ago(60), "updated_at": ago(1), "closed_at": ago(1)},
            {"id": "opp-4", "name": "Harbor Bistro - Blue Ridge - Follow-up", "stage": "Awaiting Response", "organization_id": "org-1", "principal_id": "org-6", "estimated_value": "3000", "probability": 40, "created_at": ago(20), "updated_at": ago(10)},
        ]
    return [
        {"id": "int-1", "subject": "Brisket tasting", "type": "DEMO", "status": "COMPLETED", "interaction_date": ago(1), "organization_id": "org-1", "follow_up_required": True},
        {"id": "int-2", "subject": "Intro call", "type": "CALL", "status": "SCHEDULED", "interaction_date": ago(0), "organization_id": "org-4", "follow_up_required": True},
        {"id": "int-3", "subject": "Sample drop-off", "type": "SAMPLE_DELIVERY", "status": "COMPLETED", "interaction_date": ago(45), "organization_id": "org-5", "follow_up_required": False},
    ]
