"""
Download Coordinator
====================
Issues one-time shares and performs the consume-once download transition.

State per record: Active -> {Consumed, Expired} -> Purged.

Consume algorithm:
1. Load the record. Unknown or purged -> NOT_FOUND.
2. Past its retention deadline, or tombstoned by the sweeper -> EXPIRED.
3. Token already consumed -> ALREADY_USED.
4. Token does not verify -> NOT_FOUND (same as a missing record).
5. Conditional update on the observed version. Zero rows -> ALREADY_USED.
6. Open the blob. Missing after a won update -> NOT_FOUND, logged as an
   integrity anomaly; the consumption stands.
7. Queue best-effort deletion of the blob and return SUCCESS.
"""

import enum
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from django.utils import timezone

from contracts.models import CustodyRecord
from shares.exceptions import BlobNotFound
from shares.options import ShareOptions
from .records import RecordStore
from .storage import LocalStorageBackend
from .tokens import TokenService

logger = logging.getLogger(__name__)


DEFAULT_CONTENT_TYPE = 'application/octet-stream'
FALLBACK_NAME = 'download'
MAX_NAME_LENGTH = 255


class DownloadStatus(enum.Enum):
    SUCCESS = 'success'
    NOT_FOUND = 'not_found'
    ALREADY_USED = 'already_used'
    EXPIRED = 'expired'


@dataclass
class DownloadOutcome:
    status: DownloadStatus
    stream: Optional[Any] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is DownloadStatus.SUCCESS

    @classmethod
    def success(cls, stream, file_name, content_type, size_bytes):
        return cls(DownloadStatus.SUCCESS, stream, file_name, content_type, size_bytes)

    @classmethod
    def not_found(cls):
        return cls(DownloadStatus.NOT_FOUND)

    @classmethod
    def already_used(cls):
        return cls(DownloadStatus.ALREADY_USED)

    @classmethod
    def expired(cls):
        return cls(DownloadStatus.EXPIRED)


def clean_original_name(name) -> str:
    """Basename of an uploaded filename, never empty, at most 255 chars."""
    name = (name or '').replace('\\', '/').split('/')[-1]
    name = name.replace('\0', '').strip()
    if name in ('', '.', '..'):
        return FALLBACK_NAME
    if len(name) > MAX_NAME_LENGTH:
        stem, ext = os.path.splitext(name)
        ext = ext[:32]
        name = stem[:MAX_NAME_LENGTH - len(ext)] + ext
    return name


class DownloadCoordinator:
    """
    Ties tokens, records and storage together.

    Holds no mutable state of its own; one instance may serve concurrent
    requests, and any number of processes may share the same database.
    """

    def __init__(self, options: ShareOptions, storage=None, tokens=None,
                 records=None, clock=timezone.now):
        self.options = options
        self.storage = storage if storage is not None else LocalStorageBackend(options.storage_root)
        self.tokens = tokens if tokens is not None else TokenService()
        self.records = records if records is not None else RecordStore()
        self.clock = clock

    def issue(self, owner_id: str, name: str, content_type: str, stream) -> tuple[CustodyRecord, str]:
        """
        Store ``stream`` and create an Active custody record for it.

        If the record cannot be written the blob is removed before the
        error propagates, including on cancellation.

        Returns:
            tuple: (CustodyRecord, plaintext token). The token exists
            nowhere else afterwards.
        """
        if not owner_id:
            raise ValueError("owner_id is required")

        plaintext, token_hash, salt = self.tokens.generate_token()
        original_name = clean_original_name(name)
        blob = self.storage.save(stream, os.path.splitext(original_name)[1])

        try:
            now = self.clock()
            record = CustodyRecord(
                owner_id=owner_id,
                original_name=original_name,
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                size_bytes=blob.size_bytes,
                storage_location=blob.location,
                uploaded_at=now,
                expires_at=now + self.options.retention_period,
                token_hash=token_hash,
                token_salt=salt,
                token_issued_at=now,
            )
            self.records.insert(record)
        except BaseException:
            logger.error(
                f"Failed to save custody record for owner {owner_id}; removing blob {blob.location}",
                exc_info=True
            )
            self._discard_blob(blob.location)
            raise

        logger.info(
            f"Share issued for owner {owner_id}, record {record.id}, size {blob.size_bytes} bytes"
        )
        return record, plaintext

    def consume(self, record_id, candidate_token) -> DownloadOutcome:
        """
        Attempt the one-time download of ``record_id``.

        Exactly one caller per record can ever get SUCCESS. Once the
        conditional update lands the token stays consumed, whatever
        happens afterwards.
        """
        if not candidate_token:
            logger.warning(f"Download attempt for record {record_id} without token")
            return DownloadOutcome.not_found()

        record = self.records.find(record_id)
        if record is None:
            logger.warning(f"Download attempt for non-existent record {record_id}")
            return DownloadOutcome.not_found()

        now = self.clock()
        swept = record.deleted_at is not None and record.token_consumed_at is None
        if swept or record.is_expired(now):
            logger.warning(f"Download attempt for expired record {record.id}")
            return DownloadOutcome.expired()

        if record.token_consumed_at is not None:
            logger.warning(f"Download attempt for already used token, record {record.id}")
            return DownloadOutcome.already_used()

        if not self.tokens.verify_token(candidate_token, record.token_hash, record.token_salt):
            logger.warning(f"Download attempt with invalid token for record {record.id}")
            return DownloadOutcome.not_found()

        if not self.records.mark_consumed(record, now):
            logger.warning(f"Concurrent download attempt lost the race for record {record.id}")
            return DownloadOutcome.already_used()

        try:
            stream = self.storage.open(record.storage_location)
        except BlobNotFound:
            logger.error(
                f"Integrity anomaly: record {record.id} consumed but blob "
                f"{record.storage_location} is missing"
            )
            return DownloadOutcome.not_found()

        logger.info(f"Successful one-time download for record {record.id} by owner {record.owner_id}")
        self._schedule_blob_deletion(record)

        return DownloadOutcome.success(
            stream,
            record.original_name,
            record.content_type,
            record.size_bytes,
        )

    def _schedule_blob_deletion(self, record: CustodyRecord) -> None:
        """
        Queue physical deletion of a consumed blob.

        Best effort: if queueing fails the retention sweep reaps the blob
        in its orphan phase.
        """
        try:
            from shares.tasks import delete_blob
            delete_blob.delay(record.storage_location)
        except Exception as e:
            logger.warning(
                f"Could not queue blob deletion for record {record.id}, "
                f"leaving it to the retention sweep: {e}"
            )

    def _discard_blob(self, location: str) -> None:
        try:
            self.storage.delete(location)
        except Exception as e:
            logger.warning(f"Failed to clean up blob {location} after failed issuance: {e}")
