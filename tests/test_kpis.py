"""
Tests for dashboard KPI definitions.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from crm_core.aggregation import UNAVAILABLE
from crm_core.aggregation.kpis import dashboard_aggregator, period_bounds
from crm_core.sources.base import QueryResult

from tests.conftest import FIXED_NOW

OPPORTUNITIES = [
    {"id": "o1", "stage": "Demo Scheduled", "estimated_value": "1000", "probability": 50, "principal_id": "p1", "created_at": "2026-03-10T09:00:00+00:00"},
    {"id": "o2", "stage": "New Lead", "estimated_value": "3000", "probability": 10, "principal_id": "p1", "created_at": "2026-02-01T09:00:00+00:00"},
    {"id": "o3", "stage": "Closed - Won", "estimated_value": "2000", "probability": 100, "closed_at": "2026-03-05T09:00:00Z", "created_at": "2026-01-02T09:00:00Z"},
    {"id": "o4", "stage": "Closed - Won", "estimated_value": "4000", "probability": 100, "closed_at": "2026-01-20T09:00:00Z", "created_at": "2025-12-01T09:00:00Z"},
]

ORGANIZATIONS = [
    {"id": "org-1", "name": "Harbor", "status": "Active", "created_at": "2026-03-02T10:00:00Z"},
    {"id": "org-2", "name": "Summit", "status": "Active", "created_at": "2026-03-17T10:00:00Z"},
    {"id": "org-3", "name": "Valley", "status": "Prospect", "created_at": "2025-06-01T10:00:00Z"},
]

PRINCIPALS = [
    {"principal_id": "p1", "principal_name": "Summit Foods", "engagement_score": 80},
    {"principal_id": "p2", "principal_name": "Blue Ridge", "engagement_score": 90},
]

PRODUCTS = [
    {"id": "x1", "category": "Sauce"},
    {"id": "x2", "category": "Sauce"},
    {"id": "x3", "category": None},
]

INTERACTIONS = [
    {"id": "i1", "interaction_date": "2026-03-18T08:00:00Z", "follow_up_required": True, "status": "SCHEDULED"},
    {"id": "i2", "interaction_date": "2026-02-10T08:00:00Z", "follow_up_required": True, "status": "COMPLETED"},
]


def sources(**overrides):
    base = {
        "opportunities": QueryResult(OPPORTUNITIES, len(OPPORTUNITIES)),
        "organizations": QueryResult(ORGANIZATIONS, len(ORGANIZATIONS)),
        "principals": QueryResult(PRINCIPALS, len(PRINCIPALS)),
        "products": QueryResult(PRODUCTS, len(PRODUCTS)),
        "interactions": QueryResult(INTERACTIONS, len(INTERACTIONS)),
    }
    base.update(overrides)
    return base


class TestDashboardKpis:
    """Test KPI values over a fixed data set."""

    def test_opportunity_figures(self):
        """Pipeline figures only count open opportunities."""
        view = dashboard_aggregator().compose(sources(), computed_at=FIXED_NOW, options={"period": "month"})
        assert view["total_opportunities"] == 4
        assert view["active_pipeline"] == 2
        assert view["pipeline_value"] == Decimal("4000")
        assert view["won_this_period"] == 1
        assert view["conversion_rate"] == 50.0
        assert view["average_deal_size"] == Decimal("2500.00")
        assert view["weighted_pipeline"] == Decimal("800.00")

    def test_stage_distribution_lists_every_stage(self):
        """Stages with no opportunities report 0."""
        view = dashboard_aggregator().compose(sources(), computed_at=FIXED_NOW)
        distribution = view["stage_distribution"]
        assert distribution["Closed - Won"] == 2
        assert distribution["New Lead"] == 1
        assert distribution["Feedback Logged"] == 0

    def test_period_uses_computed_at(self):
        """'This period' buckets are relative to the composition instant."""
        aggregator = dashboard_aggregator()
        month = aggregator.compose(sources(), computed_at=FIXED_NOW, options={"period": "month"})
        year = aggregator.compose(sources(), computed_at=FIXED_NOW, options={"period": "year"})
        later = aggregator.compose(
            sources(),
            computed_at=datetime(2026, 4, 2, tzinfo=timezone.utc),
            options={"period": "month"},
        )
        assert month["won_this_period"] == 1
        assert year["won_this_period"] == 2
        assert later["won_this_period"] == 0
        assert month["new_organizations_this_period"] == 2

    def test_organization_and_secondary_figures(self):
        """Organization, principal, product and interaction figures."""
        view = dashboard_aggregator().compose(sources(), computed_at=FIXED_NOW)
        assert view["total_organizations"] == 3
        assert view["organization_status_distribution"] == {"Active": 2, "Prospect": 1}
        assert view["total_principals"] == 2
        assert view["principal_engagement_rate"] == 50.0
        assert [p["principal_id"] for p in view["top_principals"]] == ["p2", "p1"]
        assert view["product_category_distribution"] == {"Other": 1, "Sauce": 2}
        assert view["interactions_this_period"] == 1
        assert view["follow_ups_pending"] == 1

    def test_recent_activity_newest_first(self):
        """Activity feed is sorted by timestamp, newest first."""
        view = dashboard_aggregator().compose(sources(), computed_at=FIXED_NOW)
        timestamps = [a["timestamp"] for a in view["recent_activity"]]
        assert timestamps == sorted(timestamps, reverse=True)
        assert view["recent_activity"][0]["entity_id"] == "org-2"

    def test_empty_opportunities_do_not_divide_by_zero(self):
        """Rates and averages fall back to zero."""
        view = dashboard_aggregator().compose(
            sources(opportunities=QueryResult((), 0)),
            computed_at=FIXED_NOW,
        )
        assert view["conversion_rate"] == 0
        assert view["average_deal_size"] == Decimal("0.00")
        assert view["principal_engagement_rate"] == 0

    def test_secondary_source_unavailable_keeps_view(self):
        """Missing principals leave a partial view instead of zeros."""
        view = dashboard_aggregator().compose(sources(principals=UNAVAILABLE), computed_at=FIXED_NOW)
        assert view is not None
        assert "total_principals" not in view
        assert "total_principals" in view.missing
        assert view["total_opportunities"] == 4

    def test_required_source_unavailable_withholds_view(self):
        """Missing opportunities withhold the whole dashboard."""
        assert dashboard_aggregator().compose(sources(opportunities=UNAVAILABLE), computed_at=FIXED_NOW) is None


class TestPeriodBounds:
    """Test calendar period ranges."""

    @pytest.mark.parametrize("period, start, end", [
        ("today", datetime(2026, 3, 18, tzinfo=timezone.utc), datetime(2026, 3, 19, tzinfo=timezone.utc)),
        ("week", datetime(2026, 3, 16, tzinfo=timezone.utc), datetime(2026, 3, 23, tzinfo=timezone.utc)),
        ("month", datetime(2026, 3, 1, tzinfo=timezone.utc), datetime(2026, 4, 1, tzinfo=timezone.utc)),
        ("quarter", datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 4, 1, tzinfo=timezone.utc)),
        ("year", datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc)),
    ])
    def test_bounds(self, period, start, end):
        """Half-open range containing the reference instant."""
        assert period_bounds(period, FIXED_NOW) == (start, end)

    def test_december_rolls_over(self):
        """Month after December is January of the next year."""
        start, end = period_bounds("month", datetime(2026, 12, 5, tzinfo=timezone.utc))
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_unknown_period(self):
        """Unknown periods are rejected."""
        with pytest.raises(ValueError):
            period_bounds("fortnight", FIXED_NOW)
