"""
Data collaborators: live backend and demo data.
"""
from typing import Optional

from crm_core.config import DataSourceMode, Settings
from crm_core.utils.logging import get_logger

from .base import DataCollaborator, EntityKind, QueryResult
from .fallback import InMemoryCollaborator, demo_records
from .supabase import SupabaseCollaborator

logger = get_logger(__name__)


def build_collaborator(
    kind: EntityKind,
    settings: Settings,
    mode: Optional[DataSourceMode] = None,
) -> DataCollaborator:
    """Build the collaborator for ``kind``.

    The variant is chosen here, once; nothing downstream branches on it.
    """
    kind = EntityKind(kind)
    mode = DataSourceMode(mode) if mode is not None else settings.resolved_data_source

    if mode is DataSourceMode.LIVE:
        if not settings.supabase_configured:
            raise ValueError("Live data source requires CRM_SUPABASE_URL and CRM_SUPABASE_ANON_KEY")
        return SupabaseCollaborator(
            kind,
            base_url=settings.supabase_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.fetch_timeout_seconds,
        )

    logger.info("Using demo data source", kind=kind.value)
    return InMemoryCollaborator(
        kind,
        records=demo_records(kind),
        latency_seconds=settings.fallback_latency_seconds,
    )


__all__ = [
    "DataCollaborator",
    "EntityKind",
    "QueryResult",
    "InMemoryCollaborator",
    "demo_records",
    "SupabaseCollaborator",
    "build_collaborator",
]
