"""
Per-entity list coordinator.

Owns the filter/sort/page/search state of one entity list and routes every
load through the shared path: canonical key, cache lookup, coalesced fetch,
cache write, freshness mark. Collaborator failures end up in ``last_error``;
results that arrive after the query changed or after ``dispose`` are dropped.
"""

import csv
import io
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from crm_core.aggregation.staleness import StalenessTracker
from crm_core.batch.executor import BatchExecutor, BatchOperation, BatchResult, OperationKind
from crm_core.cache.gate import FetchGate
from crm_core.cache.store import CacheStore
from crm_core.config import CoordinatorOptions
from crm_core.coordinator.calls import call_collaborator
from crm_core.errors import CollaboratorUnavailable, CoordinatorDisposedError, QueryDescriptorError
from crm_core.query.composer import CanonicalQuery, FilterQueryComposer, Pagination, SortSpec
from crm_core.refresh.scheduler import RefreshScheduler
from crm_core.selection import SelectionSet
from crm_core.sources.base import DataCollaborator, EntityKind, QueryResult
from crm_core.utils.logging import LoggerMixin, log_context

EXPORT_FORMATS = ("csv", "json")


@dataclass(frozen=True)
class EntitySnapshot:
    """What a view needs to render one entity list."""
    kind: str
    items: list[dict]
    total_count: int
    is_loading: bool
    is_stale: bool
    last_error: Optional[str]
    filters: dict
    sort: Optional[dict]
    search: Optional[str]
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool
    has_active_filters: bool
    selection: list[str]
    pending_ids: list[str] = field(default_factory=list)
    auto_refresh: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "items": self.items,
            "total_count": self.total_count,
            "is_loading": self.is_loading,
            "is_stale": self.is_stale,
            "last_error": self.last_error,
            "filters": self.filters,
            "sort": self.sort,
            "search": self.search,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_previous": self.has_previous,
            "has_active_filters": self.has_active_filters,
            "selection": self.selection,
            "pending_ids": self.pending_ids,
            "auto_refresh": self.auto_refresh,
        }


@dataclass
class _ProvisionalPatch:
    """Local patch shown until the authoritative row arrives."""
    token: object
    patch: dict


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


class EntityCoordinator(LoggerMixin):
    """
    Cached, paginated, filterable view over one entity kind.

    Instances are created per scope (see CoordinatorHub) and must be disposed
    when the scope ends; ``dispose`` stops background refresh and makes any
    in-flight result a no-op.
    """

    def __init__(
        self,
        kind: EntityKind,
        collaborator: DataCollaborator,
        options: Optional[CoordinatorOptions] = None,
        cache: Optional[CacheStore] = None,
        gate: Optional[FetchGate] = None,
        clock: Callable[[], float] = time.monotonic,
        ordered_fields: Iterable[str] = (),
    ):
        self.kind = EntityKind(kind)
        self.collaborator = collaborator
        self.options = options or CoordinatorOptions()
        self.cache = cache if cache is not None else CacheStore(self.options.list_cache_ttl_seconds, clock=clock)
        self.gate = gate if gate is not None else FetchGate()
        self.composer = FilterQueryComposer(self.kind.value, ordered_fields=ordered_fields)
        self.batch_executor = BatchExecutor(concurrency=self.options.batch_concurrency)
        self.selection = SelectionSet(max_size=self.options.max_selections)
        self.tracker = StalenessTracker()
        self.scheduler = RefreshScheduler(
            self._scheduled_refresh,
            interval_seconds=self.options.refresh_interval_seconds,
            name=f"{self.kind.value}-refresh",
        )
        self._clock = clock

        self._filters: dict[str, Any] = {}
        self._sort: Optional[SortSpec] = None
        self._search: Optional[str] = None
        self._page = 1
        self._page_size = self.options.default_page_size

        self._result: Optional[QueryResult] = None
        self._pending: dict[str, _ProvisionalPatch] = {}
        self._loading = 0
        self._generation = 0
        self._disposed = False
        self.last_error: Optional[str] = None

    # ===================
    # State
    # ===================

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    @property
    def is_stale(self) -> bool:
        return self.tracker.is_stale(self._clock(), self.options.staleness_max_age_seconds)

    @property
    def filters(self) -> dict:
        return dict(self._filters)

    @property
    def sort(self) -> Optional[SortSpec]:
        return self._sort

    @property
    def search_term(self) -> Optional[str]:
        return self._search

    @property
    def page(self) -> int:
        return self._page

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def result(self) -> Optional[QueryResult]:
        return self._result

    @property
    def total_count(self) -> int:
        return self._result.total_count if self._result else 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self._page_size)

    @property
    def has_next(self) -> bool:
        return self._page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self._page > 1

    @property
    def has_active_filters(self) -> bool:
        return bool(self.current_query().descriptor.filters) or self._search is not None

    @property
    def items(self) -> list[dict]:
        """Visible rows with provisional patches applied."""
        if self._result is None:
            return []
        id_field = self.kind.id_field
        rows = []
        for row in self._result.items:
            pending = self._pending.get(str(row.get(id_field)))
            rows.append({**row, **pending.patch} if pending else dict(row))
        return rows

    def current_query(self) -> CanonicalQuery:
        return self.composer.canonicalize(
            filters=self._filters,
            sort=self._sort,
            pagination=Pagination(page=self._page, limit=self._page_size),
            search=self._search,
        )

    @property
    def cache_prefix(self) -> str:
        """Prefix shared by every cache key of this kind."""
        return f"{self.kind.value}:"

    def _gate_key(self, key: str, epoch: tuple[int, int]) -> str:
        # A fetch started before an invalidation is never joined after it
        return f"{key}@{epoch[0]}.{epoch[1]}"

    def snapshot(self) -> EntitySnapshot:
        descriptor = self.current_query().descriptor
        return EntitySnapshot(
            kind=self.kind.value,
            items=self.items,
            total_count=self.total_count,
            is_loading=self.is_loading,
            is_stale=self.is_stale,
            last_error=self.last_error,
            filters=descriptor.to_dict()["filters"],
            sort={"field": self._sort.field, "order": self._sort.order} if self._sort else None,
            search=self._search,
            page=self._page,
            page_size=self._page_size,
            total_pages=self.total_pages,
            has_next=self.has_next,
            has_previous=self.has_previous,
            has_active_filters=self.has_active_filters,
            selection=self.selection.ids,
            pending_ids=list(self._pending),
            auto_refresh=self.scheduler.is_running,
        )

    # ===================
    # Loading
    # ===================

    async def load(self, force: bool = False) -> Optional[QueryResult]:
        """
        Load the current page.

        Args:
            force: Skip the cache lookup (the fetch result is still cached)

        Returns:
            The applied result, or None when the fetch failed or the result
            was dropped
        """
        self._ensure_active()
        query = self.current_query()
        self._generation += 1
        generation = self._generation

        if not force:
            entry = self.cache.get_entry(query.key)
            if entry is not None:
                self._apply(generation, entry.payload, fresh_at=entry.stored_at)
                return entry.payload

        epoch = self.cache.epoch(self.cache_prefix)
        self._loading += 1
        try:
            with log_context(kind=self.kind.value, cache_key=query.key):
                result = await self.gate.run(self._gate_key(query.key, epoch), lambda: self._fetch(query, epoch))
        except CollaboratorUnavailable as e:
            if self._is_current(generation):
                self.last_error = str(e)
                self.log.warning("Load failed", kind=self.kind.value, error=str(e))
            return None
        finally:
            self._loading -= 1

        if not self._apply(generation, result, fresh_at=self._clock()):
            return None
        return result

    async def refresh(self) -> Optional[QueryResult]:
        """Reload the current page, bypassing the cache."""
        return await self.load(force=True)

    async def ensure_fresh(self) -> Optional[QueryResult]:
        """Refresh only when the current view is stale (e.g. on view entry)."""
        if self.is_stale:
            return await self.load(force=True)
        return self._result

    async def _fetch(self, query: CanonicalQuery, epoch: tuple[int, int]) -> QueryResult:
        result = await call_collaborator(
            self.collaborator.query(query.descriptor),
            timeout=self.options.fetch_timeout_seconds,
            source=self.kind.value,
        )
        self.cache.set_if_current(
            query.key, result, self.cache_prefix, epoch, self.options.list_cache_ttl_seconds
        )
        return result

    def _is_current(self, generation: int) -> bool:
        return not self._disposed and generation == self._generation

    def _apply(self, generation: int, result: QueryResult, fresh_at: float) -> bool:
        if self._disposed:
            self.log.debug("Dropping result for disposed coordinator", kind=self.kind.value)
            return False
        if generation != self._generation:
            self.log.debug("Dropping superseded result", kind=self.kind.value, generation=generation)
            return False
        self._result = result
        self.last_error = None
        self.tracker.mark_fresh(fresh_at)
        return True

    async def _scheduled_refresh(self) -> None:
        if self._disposed:
            return
        await self.load(force=True)

    # ===================
    # Query actions
    # ===================

    async def apply_filters(self, partial: Mapping[str, Any]) -> Optional[QueryResult]:
        """Merge ``partial`` into the filters (blank values remove a filter) and go to page 1."""
        self._ensure_active()
        if not isinstance(partial, Mapping):
            raise QueryDescriptorError("Filters must be a mapping", code="invalid_filter")

        merged = dict(self._filters)
        for name, value in partial.items():
            if _is_blank(value):
                merged.pop(name, None)
            else:
                merged[name] = value
        # Validate before touching state
        self.composer.canonicalize(filters=merged)

        self._filters = merged
        self._page = 1
        return await self.load()

    async def clear_filters(self) -> Optional[QueryResult]:
        """Drop every filter and the search term."""
        self._ensure_active()
        self._filters = {}
        self._search = None
        self._page = 1
        return await self.load()

    async def search(self, term: Optional[str]) -> Optional[QueryResult]:
        self._ensure_active()
        self._search = self.composer.normalize_search(term)
        self._page = 1
        return await self.load()

    async def set_sort(self, field_name: str, order: str = "asc") -> Optional[QueryResult]:
        self._ensure_active()
        self._sort = SortSpec(field_name, order)
        self._page = 1
        return await self.load()

    async def go_to_page(self, page: int) -> Optional[QueryResult]:
        """Move to ``page`` keeping filters; out-of-range pages are ignored."""
        self._ensure_active()
        if isinstance(page, bool) or not isinstance(page, int):
            raise QueryDescriptorError(f"Page must be an integer, got {page!r}", code="invalid_page")
        if page < 1 or (self._result is not None and page > max(self.total_pages, 1)):
            self.log.debug("Ignoring out-of-range page", kind=self.kind.value, page=page, total_pages=self.total_pages)
            return self._result
        self._page = page
        return await self.load()

    async def next_page(self) -> Optional[QueryResult]:
        if not self.has_next:
            return self._result
        return await self.go_to_page(self._page + 1)

    async def previous_page(self) -> Optional[QueryResult]:
        if not self.has_previous:
            return self._result
        return await self.go_to_page(self._page - 1)

    async def set_page_size(self, page_size: int) -> Optional[QueryResult]:
        self._ensure_active()
        Pagination(page=1, limit=page_size)
        self._page_size = page_size
        self._page = 1
        return await self.load()

    # ===================
    # Selection
    # ===================

    def select_many(self, entity_ids: Iterable[str]) -> list[str]:
        self._ensure_active()
        self.selection.select_many(str(i) for i in entity_ids)
        return self.selection.ids

    def toggle_selection(self, entity_id: str) -> bool:
        self._ensure_active()
        return self.selection.toggle(str(entity_id))

    def clear_selection(self) -> None:
        self.selection.clear()

    def select_all_visible(self) -> list[str]:
        """Select every row on the current page (up to the selection cap)."""
        self._ensure_active()
        id_field = self.kind.id_field
        self.selection.select_many(str(row[id_field]) for row in self.items if row.get(id_field) is not None)
        return self.selection.ids

    def export_selected(self, fmt: str = "csv") -> str:
        """Export the selected visible rows as CSV or JSON text."""
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Export format must be one of {EXPORT_FORMATS}, got {fmt!r}")

        id_field = self.kind.id_field
        rows = [row for row in self.items if str(row.get(id_field)) in self.selection]
        if fmt == "json":
            return json.dumps(rows, indent=2, default=str)

        columns: list[str] = []
        for row in rows:
            columns.extend(c for c in row if c not in columns)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=columns)
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()

    # ===================
    # Detail and mutations
    # ===================

    def detail_key(self, entity_id: str) -> str:
        return f"{self.kind.value}:detail:{entity_id}"

    async def get_by_id(self, entity_id: str) -> Optional[dict]:
        """Fetch one row through the cache; None (with ``last_error`` set) on failure."""
        self._ensure_active()
        entity_id = str(entity_id)
        key = self.detail_key(entity_id)

        row = self.cache.get(key)
        if row is None:
            epoch = self.cache.epoch(self.cache_prefix)

            async def fetch_detail() -> dict:
                fetched = await call_collaborator(
                    self.collaborator.get_by_id(entity_id),
                    timeout=self.options.fetch_timeout_seconds,
                    source=self.kind.value,
                )
                self.cache.set_if_current(
                    key, fetched, self.cache_prefix, epoch, self.options.list_cache_ttl_seconds
                )
                return fetched

            try:
                row = await self.gate.run(self._gate_key(key, epoch), fetch_detail)
            except CollaboratorUnavailable as e:
                if not self._disposed:
                    self.last_error = str(e)
                return None

        pending = self._pending.get(entity_id)
        return {**row, **pending.patch} if pending else dict(row)

    async def run_batch(
        self,
        operation_kind: OperationKind,
        parameters: Any = None,
        target_ids: Optional[Iterable[str]] = None,
    ) -> BatchResult:
        """
        Apply an operation to many entities.

        Targets default to the current selection. Entries cached for this kind
        are invalidated afterwards; the selection is cleared only when every
        target succeeded, then the current page is reloaded.
        """
        self._ensure_active()
        # Loads started before the batch must not be applied after it
        self._generation += 1
        targets = self.selection.ids if target_ids is None else [str(t) for t in target_ids]
        operation = BatchOperation(operation_kind, targets, parameters)

        async def apply_one(target_id: str, params: Any) -> dict:
            return await call_collaborator(
                self.collaborator.mutate(operation.operation_kind, target_id, params),
                timeout=self.options.fetch_timeout_seconds,
                source=self.kind.value,
            )

        result = await self.batch_executor.execute(
            operation, apply_one, concurrency=self.options.batch_concurrency
        )
        self.cache.invalidate_prefix(self.cache_prefix)

        if self._disposed:
            return result
        if result.success:
            self.selection.clear()
        await self.load()
        if not result.success and not self._disposed:
            self.last_error = f"Batch {operation.operation_kind.value}: {result.failed} of {result.total} failed"
        return result

    async def mutate_optimistic(
        self,
        entity_id: str,
        patch: Mapping[str, Any],
        operation_kind: OperationKind = OperationKind.UPDATE,
    ) -> Optional[dict]:
        """
        Show ``patch`` immediately, then reconcile with the backend.

        The provisional patch is tagged and overlays every result (including
        background refreshes) until the authoritative row arrives. On failure
        it is discarded and ``last_error`` is set.
        """
        self._ensure_active()
        entity_id = str(entity_id)
        token = object()
        self._pending[entity_id] = _ProvisionalPatch(token=token, patch=dict(patch))

        try:
            row = await call_collaborator(
                self.collaborator.mutate(OperationKind(operation_kind), entity_id, dict(patch)),
                timeout=self.options.fetch_timeout_seconds,
                source=self.kind.value,
            )
        except CollaboratorUnavailable as e:
            self._drop_pending(entity_id, token)
            if not self._disposed:
                self.last_error = str(e)
                self.log.warning("Optimistic update rolled back", kind=self.kind.value, entity_id=entity_id, error=str(e))
            return None

        self._drop_pending(entity_id, token)
        self.cache.invalidate_prefix(self.cache_prefix)
        if self._disposed:
            return row

        # A load in flight may have read the row before this write
        superseded = self._loading > 0
        self._generation += 1
        self._splice(entity_id, row)
        if superseded:
            await self.load()
        return row

    def _drop_pending(self, entity_id: str, token: object) -> None:
        pending = self._pending.get(entity_id)
        if pending is not None and pending.token is token:
            del self._pending[entity_id]

    def _splice(self, entity_id: str, row: dict) -> None:
        if self._result is None:
            return
        id_field = self.kind.id_field
        items = tuple(
            row if str(existing.get(id_field)) == entity_id else existing
            for existing in self._result.items
        )
        self._result = QueryResult(items=items, total_count=self._result.total_count)

    # ===================
    # Lifecycle
    # ===================

    def start_auto_refresh(self, interval_seconds: Optional[float] = None) -> None:
        self._ensure_active()
        self.scheduler.start(interval_seconds or self.options.refresh_interval_seconds)

    def stop_auto_refresh(self) -> None:
        self.scheduler.stop()

    def dispose(self) -> None:
        """Stop background refresh and ignore every result still in flight."""
        if self._disposed:
            return
        self.scheduler.stop()
        self._disposed = True
        self._generation += 1
        self._pending.clear()
        self.log.info("Coordinator disposed", kind=self.kind.value)

    def _ensure_active(self) -> None:
        if self._disposed:
            raise CoordinatorDisposedError(f"{self.kind.value} coordinator has been disposed", code="disposed")
