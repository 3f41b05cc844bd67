"""
Serializers for monitoring stats endpoints.
"""
from rest_framework import serializers


class CustodyStatsSerializer(serializers.Serializer):
    """Serializer for custody statistics response."""
    total_records = serializers.IntegerField()
    active_records = serializers.IntegerField()
    consumed_records = serializers.IntegerField()
    expired_records = serializers.IntegerField()
    active_size_bytes = serializers.IntegerField()
    pending_expiry = serializers.IntegerField()
    timestamp = serializers.DateTimeField()
