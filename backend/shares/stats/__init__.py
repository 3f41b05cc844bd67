"""
Stats module for monitoring endpoints.
"""
from .views import CustodyStatsView
from .serializers import CustodyStatsSerializer

__all__ = [
    'CustodyStatsView',
    'CustodyStatsSerializer',
]
