"""
Pagination classes for billing API.

Cursor pagination keeps payment history stable while new payments are
being recorded.
"""

from rest_framework.pagination import CursorPagination


class PaymentHistoryCursorPagination(CursorPagination):
    """
    Cursor pagination for payment history, newest first.

    Default: 20 payments per page
    Maximum: 100 payments per page
    """

    page_size = 20
    max_page_size = 100
    page_size_query_param = "page_size"
    ordering = ("-created_at", "-id")
    cursor_query_param = "cursor"
