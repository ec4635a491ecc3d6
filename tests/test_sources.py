"""
Tests for the data collaborators.
"""

import json

import httpx
import pytest
from tenacity import wait_none

from crm_core.config import DataSourceMode, Settings
from crm_core.errors import CollaboratorUnavailable, RateLimitError
from crm_core.query import FilterQueryComposer, Pagination, SortSpec
from crm_core.sources import (
    EntityKind,
    InMemoryCollaborator,
    SupabaseCollaborator,
    build_collaborator,
    demo_records,
)
from crm_core.sources.supabase import build_query_params, parse_total_count

from tests.conftest import FIXED_NOW


def descriptor(kind="organizations", filters=None, sort=None, page=1, limit=20, search=None):
    return FilterQueryComposer(kind).canonicalize(
        filters=filters,
        sort=sort,
        pagination=Pagination(page=page, limit=limit),
        search=search,
    ).descriptor


@pytest.fixture
def orgs():
    return InMemoryCollaborator(EntityKind.ORGANIZATIONS, demo_records(EntityKind.ORGANIZATIONS, now=FIXED_NOW))


class TestInMemoryCollaborator:
    """Test the demo data source."""

    async def test_filters_and_total(self, orgs):
        """Total counts every match, not just the page."""
        result = await orgs.query(descriptor(filters={"status": "Active"}, limit=2))
        assert result.total_count == 3
        assert len(result.items) == 2

    async def test_list_filter_and_range(self, orgs):
        """List filters match any value; ranges are inclusive."""
        result = await orgs.query(descriptor(filters={"type": ["Distributor", "Principal"]}))
        assert {r["id"] for r in result.items} == {"org-2", "org-3"}

        cutoff = "2026-03-01T00:00:00+00:00"
        recent = await orgs.query(descriptor(filters={"created_at": {"min": cutoff}}))
        assert {r["id"] for r in recent.items} == {"org-1", "org-4"}

    async def test_search_sort_and_pages(self, orgs):
        """Search matches the name column; sort then paginate."""
        found = await orgs.query(descriptor(search="GRILL"))
        assert [r["id"] for r in found.items] == ["org-4"]

        page2 = await orgs.query(descriptor(sort=SortSpec("name", "asc"), page=2, limit=2))
        assert [r["name"] for r in page2.items] == ["Oak Street Grill", "Summit Foods"]
        assert page2.total_count == 5

    async def test_results_are_copies(self, orgs):
        """Callers cannot mutate the stored rows."""
        result = await orgs.query(descriptor())
        result.items[0]["name"] = "changed"
        row = await orgs.get_by_id(result.items[0]["id"])
        assert row["name"] != "changed"

    async def test_get_by_id_missing(self, orgs):
        """Missing rows raise CollaboratorUnavailable with not_found."""
        with pytest.raises(CollaboratorUnavailable) as exc:
            await orgs.get_by_id("nope")
        assert exc.value.code == "not_found"

    async def test_mutations(self, orgs):
        """Update, archive, delete and create apply to the stored rows."""
        updated = await orgs.mutate("update", "org-1", {"status": "Inactive"})
        assert updated["status"] == "Inactive"

        archived = await orgs.mutate("archive", "org-2", None)
        assert archived["is_active"] is False

        await orgs.mutate("delete", "org-3", None)
        with pytest.raises(CollaboratorUnavailable):
            await orgs.get_by_id("org-3")

        created = await orgs.mutate("create_for_principal", "org-2", {"name": "New deal"})
        assert created["principal_id"] == "org-2"
        assert orgs.mutation_count == 4

    async def test_unsupported_operation(self, orgs):
        """Unknown operations fail as collaborator errors."""
        with pytest.raises(CollaboratorUnavailable) as exc:
            await orgs.mutate("explode", "org-1", None)
        assert exc.value.code == "bad_operation"


class TestPostgrestMapping:
    """Test descriptor translation to PostgREST parameters."""

    def test_build_query_params(self):
        """Lists, scalars, ranges, search, sort and paging."""
        params = build_query_params(
            EntityKind.ORGANIZATIONS,
            descriptor(
                filters={
                    "status": ["Prospect", "Active"],
                    "priority": "A",
                    "created_at": {"min": "2026-01-01"},
                },
                sort=SortSpec("name", "desc"),
                page=2,
                limit=10,
                search="Harbor",
            ),
        )
        assert ("select", "*") in params
        assert ("status", "in.(Active,Prospect)") in params
        assert ("priority", "eq.A") in params
        assert ("created_at", "gte.2026-01-01") in params
        assert ("name", "ilike.*harbor*") in params
        assert ("order", "name.desc.nullslast") in params
        assert ("offset", "10") in params
        assert ("limit", "10") in params

    def test_values_with_reserved_characters_are_quoted(self):
        """Commas and spaces are quoted inside in.()"""
        params = build_query_params(
            EntityKind.OPPORTUNITIES,
            descriptor("opportunities", filters={"stage": ["Closed - Won", "New Lead"]}),
        )
        assert ("stage", 'in.("Closed - Won","New Lead")') in params

    def test_principals_search_column(self):
        """Principals search their name column."""
        params = build_query_params(EntityKind.PRINCIPALS, descriptor("principals", search="summit"))
        assert ("principal_name", "ilike.*summit*") in params

    @pytest.mark.parametrize("header, expected", [
        ("0-19/57", 57),
        ("*/0", 0),
        ("0-1/*", 2),
        (None, 2),
        ("garbage", 2),
    ])
    def test_parse_total_count(self, header, expected):
        """Totals come from Content-Range, falling back to the row count."""
        assert parse_total_count(header, fallback=2) == expected


def supabase(kind, handler):
    return SupabaseCollaborator(
        kind,
        base_url="https://example.supabase.co/",
        api_key="anon-key",
        transport=httpx.MockTransport(handler),
    )


class TestSupabaseCollaborator:
    """Test the live collaborator against a mock transport."""

    async def test_query(self):
        """GET against the table with count header; total from Content-Range."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(
                200,
                json=[{"id": "org-1"}, {"id": "org-2"}],
                headers={"Content-Range": "0-1/42"},
            )

        collaborator = supabase(EntityKind.ORGANIZATIONS, handler)
        result = await collaborator.query(descriptor(filters={"status": "Active"}))
        await collaborator.close()

        request = seen["request"]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/organizations"
        assert request.url.params["status"] == "eq.Active"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer anon-key"
        assert request.headers["prefer"] == "count=exact"
        assert result.total_count == 42
        assert [r["id"] for r in result.items] == ["org-1", "org-2"]

    async def test_principals_use_activity_view(self):
        """Principals are read from the activity summary view by principal_id."""
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=[{"principal_id": "p1"}])

        collaborator = supabase(EntityKind.PRINCIPALS, handler)
        row = await collaborator.get_by_id("p1")

        assert seen["request"].url.path == "/rest/v1/principal_activity_summary"
        assert seen["request"].url.params["principal_id"] == "eq.p1"
        assert row == {"principal_id": "p1"}

    async def test_get_by_id_not_found(self):
        """An empty result is not_found."""
        collaborator = supabase(EntityKind.PRODUCTS, lambda request: httpx.Response(200, json=[]))
        with pytest.raises(CollaboratorUnavailable) as exc:
            await collaborator.get_by_id("missing")
        assert exc.value.code == "not_found"

    async def test_mutation_verbs(self):
        """update/archive use PATCH, delete uses DELETE, create uses POST."""
        requests = []

        def handler(request):
            requests.append(request)
            body = json.loads(request.content) if request.content else {}
            return httpx.Response(200, json=[{"id": "org-1", **body}])

        collaborator = supabase(EntityKind.ORGANIZATIONS, handler)
        archived = await collaborator.mutate("archive", "org-1", {"note": "x"})
        await collaborator.mutate("delete", "org-1", None)
        created = await collaborator.mutate("create_for_principal", "p9", {"name": "Deal"})

        assert [r.method for r in requests] == ["PATCH", "DELETE", "POST"]
        assert requests[0].url.params["id"] == "eq.org-1"
        assert requests[0].headers["prefer"] == "return=representation"
        assert archived["is_active"] is False
        assert created["principal_id"] == "p9"

    async def test_server_error(self):
        """Backend errors become CollaboratorUnavailable with the status code."""
        collaborator = supabase(EntityKind.ORGANIZATIONS, lambda request: httpx.Response(500))
        with pytest.raises(CollaboratorUnavailable) as exc:
            await collaborator.query(descriptor())
        assert exc.value.code == "500"
        assert exc.value.source == "organizations"

    async def test_transport_error(self):
        """Connection failures become CollaboratorUnavailable."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        collaborator = supabase(EntityKind.ORGANIZATIONS, handler)
        with pytest.raises(CollaboratorUnavailable) as exc:
            await collaborator.query(descriptor())
        assert exc.value.code == "transport"

    async def test_rate_limit_retried(self, monkeypatch):
        """429 responses are retried before succeeding."""
        monkeypatch.setattr(SupabaseCollaborator._request.retry, "wait", wait_none())
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(429)
            return httpx.Response(200, json=[{"id": "org-1"}])

        collaborator = supabase(EntityKind.ORGANIZATIONS, handler)
        result = await collaborator.query(descriptor())
        assert calls == 3
        assert result.total_count == 1

    async def test_rate_limit_exhausted(self, monkeypatch):
        """Persistent rate limiting surfaces as RateLimitError after three attempts."""
        monkeypatch.setattr(SupabaseCollaborator._request.retry, "wait", wait_none())
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(429)

        collaborator = supabase(EntityKind.ORGANIZATIONS, handler)
        with pytest.raises(RateLimitError):
            await collaborator.query(descriptor())
        assert calls == 3


class TestBuildCollaborator:
    """Test data source selection."""

    def test_fallback_when_unconfigured(self):
        """Without Supabase settings the demo source is used."""
        settings = Settings(_env_file=None)
        assert settings.resolved_data_source is DataSourceMode.FALLBACK
        collaborator = build_collaborator(EntityKind.PRODUCTS, settings)
        assert isinstance(collaborator, InMemoryCollaborator)

    def test_live_when_configured(self):
        """Configured Supabase settings select the live source."""
        settings = Settings(_env_file=None, supabase_url="https://x.supabase.co/", supabase_anon_key="k")
        assert settings.supabase_url == "https://x.supabase.co"
        collaborator = build_collaborator(EntityKind.PRODUCTS, settings)
        assert isinstance(collaborator, SupabaseCollaborator)

    def test_explicit_mode_wins(self):
        """An explicit mode overrides the settings."""
        settings = Settings(_env_file=None, supabase_url="https://x.supabase.co", supabase_anon_key="k")
        collaborator = build_collaborator(EntityKind.PRODUCTS, settings, DataSourceMode.FALLBACK)
        assert isinstance(collaborator, InMemoryCollaborator)

    def test_live_without_configuration(self):
        """Forcing live without credentials is a configuration error."""
        with pytest.raises(ValueError):
            build_collaborator(EntityKind.PRODUCTS, Settings(_env_file=None), DataSourceMode.LIVE)
