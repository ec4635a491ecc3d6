"""
Live collaborator backed by a Supabase (PostgREST) endpoint.
"""

import json
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from crm_core.errors import CollaboratorUnavailable, RateLimitError
from crm_core.query.composer import QueryDescriptor
from crm_core.sources.base import DataCollaborator, EntityKind, QueryResult
from crm_core.utils.logging import get_logger

logger = get_logger(__name__)

TABLES = {
    EntityKind.ORGANIZATIONS: "organizations",
    EntityKind.PRINCIPALS: "principal_activity_summary",
    EntityKind.PRODUCTS: "products",
    EntityKind.OPPORTUNITIES: "opportunities",
    EntityKind.INTERACTIONS: "interactions",
}


def _literal(value: Any) -> str:
    """Render a filter value in PostgREST syntax."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if any(ch in text for ch in ',()"\\ '):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _search_term(term: str) -> str:
    return "".join(ch for ch in term if ch not in ",()*")


def build_query_params(kind: EntityKind, descriptor: QueryDescriptor) -> list[tuple[str, str]]:
    """Translate a descriptor into PostgREST query parameters."""
    params: list[tuple[str, str]] = [("select", "*")]

    for name, value in descriptor.filters.items():
        if isinstance(value, tuple):
            params.append((name, f"in.({','.join(_literal(v) for v in value)})"))
        elif hasattr(value, "items"):
            if value.get("min") is not None:
                params.append((name, f"gte.{_literal(value['min'])}"))
            if value.get("max") is not None:
                params.append((name, f"lte.{_literal(value['max'])}"))
        else:
            params.append((name, f"eq.{_literal(value)}"))

    if descriptor.search:
        params.append((kind.name_field, f"ilike.*{_search_term(descriptor.search)}*"))

    if descriptor.sort:
        params.append(("order", f"{descriptor.sort.field}.{descriptor.sort.order}.nullslast"))

    params.append(("offset", str(descriptor.pagination.offset)))
    params.append(("limit", str(descriptor.pagination.limit)))
    return params


def parse_total_count(content_range: Optional[str], fallback: int) -> int:
    """Read the total from a ``Content-Range: 0-19/57`` header."""
    if not content_range or "/" not in content_range:
        return fallback
    total = content_range.rsplit("/", 1)[1]
    if total == "*":
        return fallback
    try:
        return int(total)
    except ValueError:
        return fallback


class SupabaseCollaborator(DataCollaborator):
    """
    Entity access through the Supabase REST API.
    Rate limits are retried; every other failure surfaces as CollaboratorUnavailable.
    """

    def __init__(
        self,
        kind: EntityKind,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.kind = EntityKind(kind)
        self.table = TABLES[self.kind]
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        """Initialize the REST client."""
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        self._http_client = httpx.AsyncClient(
            base_url=f"{self._base_url}/rest/v1",
            timeout=self._timeout,
            headers=headers,
            transport=self._transport,
        )
        logger.info("Supabase collaborator initialized", kind=self.kind.value, table=self.table)

    async def close(self) -> None:
        """Close connections."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _request(self, method: str, **kwargs) -> httpx.Response:
        """Make a request against the table with retry on rate limit."""
        if not self._http_client:
            await self.initialize()

        try:
            response = await self._http_client.request(method, f"/{self.table}", **kwargs)
        except httpx.HTTPError as e:
            raise CollaboratorUnavailable(f"Transport error: {e}", source=self.kind.value, code="transport")

        if response.status_code == 429:
            logger.warning("Rate limited by backend, retrying...", kind=self.kind.value)
            raise RateLimitError("Rate limit exceeded", source=self.kind.value, code="429")

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CollaboratorUnavailable(
                f"API error: {e.response.status_code}",
                source=self.kind.value,
                code=str(e.response.status_code),
            )
        return response

    def _rows(self, response: httpx.Response) -> list[dict]:
        try:
            payload = response.json()
        except json.JSONDecodeError:
            raise CollaboratorUnavailable("Malformed response body", source=self.kind.value, code="decode")
        if isinstance(payload, dict):
            return [payload]
        return list(payload)

    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        response = await self._request(
            "GET",
            params=build_query_params(self.kind, descriptor),
            headers={"Prefer": "count=exact"},
        )
        rows = self._rows(response)
        total = parse_total_count(response.headers.get("content-range"), fallback=len(rows))
        return QueryResult(items=tuple(rows), total_count=total)

    async def get_by_id(self, entity_id: str) -> dict:
        response = await self._request(
            "GET",
            params=[("select", "*"), (self.kind.id_field, f"eq.{entity_id}"), ("limit", "1")],
        )
        rows = self._rows(response)
        if not rows:
            raise CollaboratorUnavailable(f"{entity_id} not found", source=self.kind.value, code="not_found")
        return rows[0]

    async def mutate(self, operation_kind: str, entity_id: str, payload: Any) -> dict:
        operation = getattr(operation_kind, "value", operation_kind)
        body = dict(payload or {})
        headers = {"Prefer": "return=representation"}
        match_params = [(self.kind.id_field, f"eq.{entity_id}")]

        if operation == "create_for_principal":
            body["principal_id"] = entity_id
            response = await self._request("POST", json=body, headers=headers)
        elif operation == "delete":
            response = await self._request("DELETE", params=match_params, headers=headers)
        elif operation in ("update", "assign", "archive"):
            if operation == "archive":
                body["is_active"] = False
            response = await self._request("PATCH", params=match_params, json=body, headers=headers)
        else:
            raise CollaboratorUnavailable(f"Unsupported operation {operation}", source=self.kind.value, code="bad_operation")

        rows = self._rows(response)
        if not rows:
            raise CollaboratorUnavailable(f"{entity_id} not found", source=self.kind.value, code="not_found")
        return rows[0]
