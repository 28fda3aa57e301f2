from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from billing.models import TokenPricing
from billing.services.analytics import usage_analytics
from billing.services.consumption import authorize


@pytest.mark.django_db
def test_usage_analytics_groups_consumption_by_category(make_subscription, make_pricing):
    make_pricing("test_an_proposal", token_cost=60, category=TokenPricing.Category.PROPOSAL)
    make_pricing("test_an_email", token_cost=20, category=TokenPricing.Category.EMAIL)
    subscription = make_subscription(balance=1000)
    for action_type in ("test_an_proposal", "test_an_proposal", "test_an_email"):
        assert authorize(subscription.tenant_id, action_type).allowed

    report = usage_analytics(subscription.tenant_id, "week")

    assert report.total_tokens == 140
    assert report.total_actions == 3
    by_category = {row.category: row for row in report.by_category}
    assert by_category["proposal"].tokens == 120
    assert by_category["proposal"].percentage == Decimal("85.71")
    assert by_category["email"].actions == 1
    assert report.top_actions[0].action_type == "test_an_proposal"


@pytest.mark.django_db
def test_usage_analytics_ignores_credits_and_other_windows(make_subscription, pricing):
    subscription = make_subscription(balance=500)
    authorize(subscription.tenant_id, pricing.action_type)

    report = usage_analytics(subscription.tenant_id, "day", now=timezone.now() + timedelta(days=2))

    assert report.total_tokens == 0
    assert report.by_category == []


def test_usage_analytics_rejects_unknown_period():
    with pytest.raises(ValueError):
        usage_analytics("00000000-0000-0000-0000-000000000000", "decade")
