"""Page-number pagination for ledger and charge listings."""
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination


class BoundedPageNumberPagination(PageNumberPagination):
    """Caps ``page_size`` so a client cannot pull a whole ledger in one page."""

    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 100


class LedgerPageNumberPagination(BoundedPageNumberPagination):
    # Ledger exports are read in bulk by reconciliation scripts.
    page_size = 50
    max_page_size = 500
