import logging

from django.db import connection
from django.http import FileResponse, HttpResponse
from django.utils import timezone
from django.views.decorators.http import require_GET
from rest_framework import generics, status
from rest_framework.decorators import api_view
from rest_framework.pagination import LimitOffsetPagination
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response

from contracts.models import CustodyRecord
from .filters import CustodyRecordFilter
from .options import ShareOptions
from .serializers import CustodyRecordSerializer, IssuedShareSerializer
from .services import DownloadStatus, build_coordinator

logger = logging.getLogger(__name__)


LINK_INVALID_MESSAGE = "This download link is no longer valid."
NOT_FOUND_MESSAGE = "Not found."


def format_file_size(size_bytes):
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def _no_store(response):
    response['Cache-Control'] = 'no-store'
    response['X-Content-Type-Options'] = 'nosniff'
    return response


class SharePagination(LimitOffsetPagination):
    default_limit = 20
    max_limit = 100


class ShareListCreateView(generics.ListAPIView):
    """
    Upload a file for one-time sharing, or list the caller's shares.

    The owner identity comes from the header configured as
    OWNER_ID_HEADER, set by the authenticating proxy in front of us.

    Filtering (all use AND logic):
    - state: active, consumed, expired
    - search: Case-insensitive filename search
    - content_type: Exact MIME type match
    - date_from/date_to: Upload date range (ISO 8601)
    """
    serializer_class = CustodyRecordSerializer
    filterset_class = CustodyRecordFilter
    pagination_class = SharePagination
    parser_classes = [MultiPartParser, FormParser]

    def get_options(self):
        return ShareOptions.from_settings()

    def get_owner_id(self):
        return self.request.headers.get(self.get_options().owner_id_header, '').strip()

    def get_queryset(self):
        return CustodyRecord.objects.owned_by(self.get_owner_id())

    def list(self, request, *args, **kwargs):
        if not self.get_owner_id():
            return Response({'error': 'Owner identity missing'}, status=status.HTTP_401_UNAUTHORIZED)
        return super().list(request, *args, **kwargs)

    def post(self, request, *args, **kwargs):
        """
        Store the uploaded file and issue its one-time link.

        The plaintext token appears in this response and nowhere else.
        """
        options = self.get_options()
        owner_id = self.get_owner_id()
        if not owner_id:
            logger.warning("Upload attempt without owner identity")
            return Response({'error': 'Owner identity missing'}, status=status.HTTP_401_UNAUTHORIZED)

        file_obj = request.FILES.get('file')
        if not file_obj:
            return Response({'error': 'No file provided'}, status=status.HTTP_400_BAD_REQUEST)

        if file_obj.size > options.max_upload_bytes:
            return Response(
                {
                    'error': 'File size exceeds maximum allowed',
                    'details': {
                        'file_size': file_obj.size,
                        'max_size': options.max_upload_bytes,
                        'max_size_formatted': format_file_size(options.max_upload_bytes),
                    }
                },
                status=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
            )

        try:
            record, token = build_coordinator(options).issue(
                owner_id=owner_id,
                name=file_obj.name,
                content_type=file_obj.content_type,
                stream=file_obj,
            )
        except Exception:
            logger.error(f"Error uploading file for owner {owner_id}", exc_info=True)
            return Response(
                {'error': 'Upload failed'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        base_url = options.base_url or request.build_absolute_uri('/').rstrip('/')
        serializer = IssuedShareSerializer(record, context={
            'token': token,
            'download_url': f"{base_url}/d/{record.id}?t={token}",
        })
        return _no_store(Response(serializer.data, status=status.HTTP_201_CREATED))


@require_GET
def download(request, record_id):
    """
    GET /d/{id}?t={token}

    Serves the file once. A forged id and a forged token both render
    as 404; used and expired links both render as the same 410.
    """
    token = request.GET.get('t', '')
    if not token:
        logger.warning(f"Download attempt for record {record_id} without token")
        return _no_store(HttpResponse(NOT_FOUND_MESSAGE, status=404, content_type='text/plain'))

    try:
        outcome = build_coordinator().consume(record_id, token)
    except Exception:
        logger.error(f"Error during download attempt for record {record_id}", exc_info=True)
        return _no_store(HttpResponse(
            "An error occurred while processing the download.",
            status=500,
            content_type='text/plain'
        ))

    if outcome.status is DownloadStatus.SUCCESS:
        response = FileResponse(
            outcome.stream,
            as_attachment=True,
            filename=outcome.file_name,
            content_type=outcome.content_type,
        )
        response['Content-Length'] = str(outcome.size_bytes)
        return _no_store(response)

    if outcome.status in (DownloadStatus.ALREADY_USED, DownloadStatus.EXPIRED):
        return _no_store(HttpResponse(LINK_INVALID_MESSAGE, status=410, content_type='text/plain'))

    return _no_store(HttpResponse(NOT_FOUND_MESSAGE, status=404, content_type='text/plain'))


@api_view(['GET'])
def health_live(request):
    return Response({'status': 'healthy', 'timestamp': timezone.now()})


@api_view(['GET'])
def health_ready(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
    except Exception:
        logger.error("Health check failed", exc_info=True)
        return Response(
            {
                'status': 'unhealthy',
                'timestamp': timezone.now(),
                'error': 'Database connection failed',
            },
            status=status.HTTP_503_SERVICE_UNAVAILABLE
        )
    return Response({
        'status': 'ready',
        'timestamp': timezone.now(),
        'checks': {'database': 'healthy'},
    })
