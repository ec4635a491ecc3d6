"""
Dashboard KPI field definitions.

Opportunity and organization figures are required for a dashboard to be
published; principal, product and interaction figures tolerate an
unavailable source and are carried over from the previous view instead.
Every "this period" bucket is measured against ``ctx.computed_at``.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from crm_core.aggregation.aggregator import AggregationContext, Aggregator, FieldSpec, safe_rate
from crm_core.sources.base import EntityKind, QueryResult

OPPORTUNITIES = EntityKind.OPPORTUNITIES.value
ORGANIZATIONS = EntityKind.ORGANIZATIONS.value
PRINCIPALS = EntityKind.PRINCIPALS.value
PRODUCTS = EntityKind.PRODUCTS.value
INTERACTIONS = EntityKind.INTERACTIONS.value

OPPORTUNITY_STAGES = (
    "New Lead",
    "Initial Outreach",
    "Sample/Visit Offered",
    "Awaiting Response",
    "Feedback Logged",
    "Demo Scheduled",
    "Closed - Won",
)
WON_STAGE = "Closed - Won"
CLOSED_STAGES = frozenset({WON_STAGE, "Closed - Lost"})

PERIODS = ("today", "week", "month", "quarter", "year")
DEFAULT_PERIOD = "month"
TOP_PRINCIPALS_LIMIT = 10
RECENT_ACTIVITY_LIMIT = 20


# ===================
# Helpers
# ===================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp from the backend; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)


def period_bounds(period: str, reference: datetime) -> tuple[datetime, datetime]:
    """Half-open [start, end) range of the calendar period containing ``reference``."""
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    day = reference.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == "today":
        return day, day + timedelta(days=1)
    if period == "week":
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=7)
    if period == "month":
        start = day.replace(day=1)
        return start, _add_months(start, 1)
    if period == "quarter":
        start = day.replace(month=(day.month - 1) // 3 * 3 + 1, day=1)
        return start, _add_months(start, 3)
    if period == "year":
        start = day.replace(month=1, day=1)
        return start, start.replace(year=start.year + 1)
    raise ValueError(f"Unknown period: {period}")


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    return start.replace(year=start.year + month_index // 12, month=month_index % 12 + 1)


def _in_period(value: Any, ctx: AggregationContext) -> bool:
    ts = parse_timestamp(value)
    if ts is None:
        return False
    start, end = period_bounds(ctx.options.get("period", DEFAULT_PERIOD), ctx.computed_at)
    return start <= ts < end


def _items(inputs: Mapping[str, Any], source: str) -> list[dict]:
    result: QueryResult = inputs[source]
    return list(result.items)


def _active(opportunities: list[dict]) -> list[dict]:
    return [o for o in opportunities if o.get("stage") not in CLOSED_STAGES]


# ===================
# Opportunity fields
# ===================

def total_opportunities(inputs, ctx) -> int:
    return inputs[OPPORTUNITIES].total_count


def active_pipeline(inputs, ctx) -> int:
    return len(_active(_items(inputs, OPPORTUNITIES)))


def pipeline_value(inputs, ctx) -> Decimal:
    return sum((to_decimal(o.get("estimated_value")) for o in _active(_items(inputs, OPPORTUNITIES))), Decimal(0))


def won_this_period(inputs, ctx) -> int:
    return sum(
        1 for o in _items(inputs, OPPORTUNITIES)
        if o.get("stage") == WON_STAGE and _in_period(o.get("closed_at") or o.get("updated_at"), ctx)
    )


def conversion_rate(inputs, ctx) -> float:
    opportunities = _items(inputs, OPPORTUNITIES)
    won = sum(1 for o in opportunities if o.get("stage") == WON_STAGE)
    return round(float(safe_rate(won, len(opportunities), 100)), 1)


def average_deal_size(inputs, ctx) -> Decimal:
    opportunities = _items(inputs, OPPORTUNITIES)
    total = sum((to_decimal(o.get("estimated_value")) for o in opportunities), Decimal(0))
    return safe_rate(total, len(opportunities)).quantize(Decimal("0.01"))


def weighted_pipeline(inputs, ctx) -> Decimal:
    weighted = sum(
        (to_decimal(o.get("estimated_value")) * to_decimal(o.get("probability")) / 100
         for o in _active(_items(inputs, OPPORTUNITIES))),
        Decimal(0),
    )
    return weighted.quantize(Decimal("0.01"))


def stage_distribution(inputs, ctx) -> dict[str, int]:
    counts = Counter(o.get("stage") for o in _items(inputs, OPPORTUNITIES) if o.get("stage"))
    distribution = {stage: counts.get(stage, 0) for stage in OPPORTUNITY_STAGES}
    for stage, count in counts.items():
        distribution.setdefault(stage, count)
    return distribution


# ===================
# Organization fields
# ===================

def total_organizations(inputs, ctx) -> int:
    return inputs[ORGANIZATIONS].total_count


def organization_status_distribution(inputs, ctx) -> dict[str, int]:
    counts = Counter(org.get("status") or "Unknown" for org in _items(inputs, ORGANIZATIONS))
    return dict(sorted(counts.items()))


def new_organizations_this_period(inputs, ctx) -> int:
    return sum(1 for org in _items(inputs, ORGANIZATIONS) if _in_period(org.get("created_at"), ctx))


# ===================
# Principal fields
# ===================

def total_principals(inputs, ctx) -> int:
    return inputs[PRINCIPALS].total_count


def principal_engagement_rate(inputs, ctx) -> float:
    principals = _items(inputs, PRINCIPALS)
    engaged_ids = {o.get("principal_id") for o in _items(inputs, OPPORTUNITIES) if o.get("principal_id")}
    engaged = sum(1 for p in principals if p.get("principal_id") in engaged_ids)
    return round(float(safe_rate(engaged, len(principals), 100)), 1)


def top_principals(inputs, ctx) -> list[dict]:
    ranked = sorted(
        _items(inputs, PRINCIPALS),
        key=lambda p: p.get("engagement_score") or 0,
        reverse=True,
    )
    return [
        {
            "principal_id": p.get("principal_id"),
            "principal_name": p.get("principal_name"),
            "engagement_score": p.get("engagement_score") or 0,
        }
        for p in ranked[:ctx.options.get("top_n", TOP_PRINCIPALS_LIMIT)]
    ]


# ===================
# Product fields
# ===================

def total_products(inputs, ctx) -> int:
    return inputs[PRODUCTS].total_count


def product_category_distribution(inputs, ctx) -> dict[str, int]:
    counts = Counter(p.get("category") or "Other" for p in _items(inputs, PRODUCTS))
    return dict(sorted(counts.items()))


# ===================
# Interaction fields
# ===================

def interactions_this_period(inputs, ctx) -> int:
    return sum(1 for i in _items(inputs, INTERACTIONS) if _in_period(i.get("interaction_date"), ctx))


def follow_ups_pending(inputs, ctx) -> int:
    return sum(
        1 for i in _items(inputs, INTERACTIONS)
        if i.get("follow_up_required") and i.get("status") != "COMPLETED"
    )


# ===================
# Activity feed
# ===================

def recent_activity(inputs, ctx) -> list[dict]:
    """Latest created opportunities and organizations, newest first."""
    activities = []
    for opp in _items(inputs, OPPORTUNITIES)[:5]:
        activities.append({
            "id": f"opp-{opp.get('id')}",
            "type": "opportunity",
            "action": "created",
            "title": f"New Opportunity: {opp.get('name')}",
            "entity_id": opp.get("id"),
            "timestamp": parse_timestamp(opp.get("created_at")),
        })
    for org in _items(inputs, ORGANIZATIONS)[:3]:
        activities.append({
            "id": f"org-{org.get('id')}",
            "type": "organization",
            "action": "created",
            "title": f"New Organization: {org.get('name')}",
            "entity_id": org.get("id"),
            "timestamp": parse_timestamp(org.get("created_at")),
        })

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    activities.sort(key=lambda a: a["timestamp"] or epoch, reverse=True)
    return activities[:RECENT_ACTIVITY_LIMIT]


DASHBOARD_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("total_opportunities", (OPPORTUNITIES,), total_opportunities),
    FieldSpec("active_pipeline", (OPPORTUNITIES,), active_pipeline),
    FieldSpec("pipeline_value", (OPPORTUNITIES,), pipeline_value),
    FieldSpec("won_this_period", (OPPORTUNITIES,), won_this_period),
    FieldSpec("conversion_rate", (OPPORTUNITIES,), conversion_rate),
    FieldSpec("average_deal_size", (OPPORTUNITIES,), average_deal_size),
    FieldSpec("weighted_pipeline", (OPPORTUNITIES,), weighted_pipeline),
    FieldSpec("stage_distribution", (OPPORTUNITIES,), stage_distribution),
    FieldSpec("total_organizations", (ORGANIZATIONS,), total_organizations),
    FieldSpec("organization_status_distribution", (ORGANIZATIONS,), organization_status_distribution),
    FieldSpec("new_organizations_this_period", (ORGANIZATIONS,), new_organizations_this_period),
    FieldSpec("total_principals", (PRINCIPALS,), total_principals, partial_ok=True),
    FieldSpec("principal_engagement_rate", (PRINCIPALS, OPPORTUNITIES), principal_engagement_rate, partial_ok=True),
    FieldSpec("top_principals", (PRINCIPALS,), top_principals, partial_ok=True),
    FieldSpec("total_products", (PRODUCTS,), total_products, partial_ok=True),
    FieldSpec("product_category_distribution", (PRODUCTS,), product_category_distribution, partial_ok=True),
    FieldSpec("interactions_this_period", (INTERACTIONS,), interactions_this_period, partial_ok=True),
    FieldSpec("follow_ups_pending", (INTERACTIONS,), follow_ups_pending, partial_ok=True),
    FieldSpec("recent_activity", (OPPORTUNITIES, ORGANIZATIONS), recent_activity, partial_ok=True),
)


def dashboard_aggregator() -> Aggregator:
    return Aggregator(DASHBOARD_FIELDS)
