"""
Views for monitoring stats endpoints.
"""
import logging

from django.db.models import Sum
from django.utils import timezone
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response

from contracts.models import CustodyRecord
from .serializers import CustodyStatsSerializer

logger = logging.getLogger(__name__)


class CustodyStatsView(APIView):
    """
    GET /api/stats/custody/

    Returns counts of custody records per lifecycle state and the bytes
    still held for active shares.
    """

    def get(self, request):
        """Get custody statistics."""
        try:
            stats = self._calculate_custody_stats()
            serializer = CustodyStatsSerializer(stats)
            return Response(serializer.data)
        except Exception as e:
            logger.error(f"Failed to calculate custody stats: {e}", exc_info=True)
            return Response(
                {'error': 'Failed to calculate custody stats'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

    def _calculate_custody_stats(self):
        """Calculate custody statistics from database."""
        now = timezone.now()
        records = CustodyRecord.objects.all()

        active = records.active_as_of(now)
        active_size = active.aggregate(total=Sum('size_bytes'))['total'] or 0

        return {
            'total_records': records.count(),
            'active_records': active.count(),
            'consumed_records': records.consumed().count(),
            'expired_records': (records.expired() | records.expired_as_of(now)).count(),
            'active_size_bytes': active_size,
            # Expired, but the sweep has not reclaimed them yet
            'pending_expiry': records.expired_as_of(now).count(),
            'timestamp': now,
        }
