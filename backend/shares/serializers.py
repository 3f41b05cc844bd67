from rest_framework import serializers
from contracts.models import CustodyRecord


class CustodyRecordSerializer(serializers.ModelSerializer):
    """
    Public view of a custody record.
    Token hash and salt are never exposed.
    """
    state = serializers.CharField(read_only=True)

    class Meta:
        model = CustodyRecord
        fields = [
            'id',
            'original_name',
            'content_type',
            'size_bytes',
            'uploaded_at',
            'expires_at',
            'token_consumed_at',
            'deleted_at',
            'state',
        ]
        read_only_fields = fields


class IssuedShareSerializer(CustodyRecordSerializer):
    """Upload response: the record plus the one-time link, shown once."""
    token = serializers.SerializerMethodField()
    download_url = serializers.SerializerMethodField()

    class Meta(CustodyRecordSerializer.Meta):
        fields = CustodyRecordSerializer.Meta.fields + ['token', 'download_url']
        read_only_fields = fields

    def get_token(self, obj):
        return self.context['token']

    def get_download_url(self, obj):
        return self.context['download_url']
