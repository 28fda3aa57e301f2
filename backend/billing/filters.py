"""FilterSet definitions for token billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import BillingCharge, TokenTransaction


class TokenTransactionFilter(django_filters.FilterSet):
    type = django_filters.ChoiceFilter(field_name="type", choices=TokenTransaction.TransactionType.choices)
    action_type = django_filters.CharFilter(field_name="action_type", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = TokenTransaction
        fields = ["type", "action_type"]


class BillingChargeFilter(django_filters.FilterSet):
    kind = django_filters.ChoiceFilter(field_name="kind", choices=BillingCharge.Kind.choices)
    status = django_filters.ChoiceFilter(field_name="status", choices=BillingCharge.Status.choices)
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = BillingCharge
        fields = ["kind", "status"]
