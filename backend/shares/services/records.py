"""
Record Store
============
Persistence for custody records on top of the Django ORM.

Every mutation is a conditional ``UPDATE ... WHERE version = <observed>``;
the number of affected rows decides who won. No in-process lock stands
in for it, so the guarantee holds across processes sharing one database.
"""

from datetime import datetime

from django.core.exceptions import ValidationError

from contracts.models import CustodyRecord, new_version


class RecordStore:
    """Thin repository over CustodyRecord with compare-and-set writes."""

    @staticmethod
    def insert(record: CustodyRecord) -> CustodyRecord:
        record.save(force_insert=True)
        return record

    @staticmethod
    def find(record_id):
        """
        Fetch a record that has not been purged, tombstoned or not.

        Returns None for unknown and malformed ids alike.
        """
        try:
            return CustodyRecord.objects.filter(id=record_id).first()
        except (ValidationError, ValueError):
            return None

    @staticmethod
    def mark_consumed(record: CustodyRecord, now: datetime) -> bool:
        """
        Flip a record from Active to Consumed.

        Sets ``token_consumed_at`` and ``deleted_at`` together, guarded
        on the version observed when the record was read. Returns True
        only for the single caller whose update landed.
        """
        version = new_version()
        updated = CustodyRecord.objects.filter(
            id=record.id,
            token_consumed_at__isnull=True,
            deleted_at__isnull=True,
            version=record.version,
        ).update(
            token_consumed_at=now,
            deleted_at=now,
            version=version,
        )
        if updated != 1:
            return False
        record.token_consumed_at = now
        record.deleted_at = now
        record.version = version
        return True

    @staticmethod
    def mark_expired(record: CustodyRecord, now: datetime) -> bool:
        """Tombstone an Active record whose retention deadline passed."""
        version = new_version()
        updated = CustodyRecord.objects.filter(
            id=record.id,
            deleted_at__isnull=True,
            version=record.version,
        ).update(
            deleted_at=now,
            version=version,
        )
        if updated != 1:
            return False
        record.deleted_at = now
        record.version = version
        return True

    @staticmethod
    def expired_candidates(now: datetime):
        # Materialised: the caller updates these rows while walking them
        return list(CustodyRecord.objects.expired_as_of(now).order_by('expires_at'))

    @staticmethod
    def tombstoned_locations(before: datetime):
        """(id, storage_location) for records tombstoned before ``before``."""
        return CustodyRecord.objects.tombstoned().filter(deleted_at__lt=before).order_by().values_list(
            'id', 'storage_location'
        ).iterator()

    @staticmethod
    def is_referenced(location: str) -> bool:
        return CustodyRecord.objects.filter(storage_location=location).exists()

    @staticmethod
    def purge_tombstoned_before(cutoff: datetime) -> int:
        """
        Hard-delete records tombstoned before ``cutoff``.

        Only the retention sweeper calls this.
        """
        deleted, _ = CustodyRecord.objects.filter(
            deleted_at__isnull=False,
            deleted_at__lt=cutoff,
        ).delete()
        return deleted
