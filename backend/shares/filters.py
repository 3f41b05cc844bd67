"""
Custody record filtering for the owner listing.

Filter Types:
- state: active, consumed or expired
- search: Case-insensitive substring match on original_name
- content_type: Exact MIME type match
- date_from/date_to: Upload date range

All filters use AND logic when combined.
"""

from django.utils import timezone
from django_filters import rest_framework as filters
from contracts.models import CustodyRecord


class CustodyRecordFilter(filters.FilterSet):
    """
    FilterSet for an owner's custody records.

    Query Parameters:
        state: Lifecycle state (active, consumed, expired)
        search: Substring match on filename (case-insensitive)
        content_type: Exact MIME type (e.g., 'application/pdf')
        date_from: Records uploaded on or after this date (ISO 8601)
        date_to: Records uploaded on or before this date (ISO 8601)
    """

    state = filters.ChoiceFilter(
        choices=CustodyRecord.State.choices,
        method='filter_state',
        help_text='Lifecycle state'
    )

    search = filters.CharFilter(
        field_name='original_name',
        lookup_expr='icontains',
        max_length=255,
        help_text='Case-insensitive substring match on filename'
    )

    content_type = filters.CharFilter(
        field_name='content_type',
        lookup_expr='exact',
        help_text='Exact MIME type match (e.g., application/pdf)'
    )

    date_from = filters.DateFilter(
        field_name='uploaded_at',
        lookup_expr='date__gte',
        help_text='Records uploaded on or after this date (ISO 8601)'
    )
    date_to = filters.DateFilter(
        field_name='uploaded_at',
        lookup_expr='date__lte',
        help_text='Records uploaded on or before this date (ISO 8601)'
    )

    class Meta:
        model = CustodyRecord
        fields = [
            'state',
            'search',
            'content_type',
            'date_from',
            'date_to',
        ]

    def filter_state(self, queryset, name, value):
        # A record past its deadline is expired before any sweep reaches it
        now = timezone.now()
        if value == CustodyRecord.State.ACTIVE:
            return queryset.active_as_of(now)
        if value == CustodyRecord.State.CONSUMED:
            return queryset.consumed()
        if value == CustodyRecord.State.EXPIRED:
            return queryset.expired() | queryset.expired_as_of(now)
        return queryset
