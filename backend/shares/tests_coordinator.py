"""
Unit Tests for the Download Coordinator
=======================================
Tests cover:
- Issuance (record fields, token handling, blob cleanup on failure)
- Consume outcomes (success, not found, already used, expired)
- Exactly-once consumption under races (stale snapshots, threads on the real database)
- Integrity anomaly when a won blob is missing
- Best-effort deletion scheduling
"""

import io
import shutil
import tempfile
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from django.db import DatabaseError, IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from contracts.models import CustodyRecord
from shares.exceptions import StorageFailure
from shares.options import ShareOptions
from shares.services import (
    DownloadCoordinator,
    DownloadStatus,
    LocalStorageBackend,
    RecordStore,
    TokenService,
)
from shares.services.coordinator import clean_original_name


class RecordingStorage(LocalStorageBackend):
    """Local storage that remembers every blob it saved."""

    def __init__(self, root):
        super().__init__(root)
        self.saved = []

    def save(self, stream, extension_hint=None):
        blob = super().save(stream, extension_hint)
        self.saved.append(blob)
        return blob


class FailingInsertStore(RecordStore):
    def __init__(self, exc):
        self.exc = exc

    def insert(self, record):
        raise self.exc


class DownloadCoordinatorTestBase(TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.options = ShareOptions(storage_root=Path(self.root))
        self.storage = RecordingStorage(self.root)
        self.coordinator = DownloadCoordinator(self.options, storage=self.storage)

        patcher = patch('shares.tasks.delete_blob.delay')
        self.delete_delay = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _issue(self, content=b'0123456789', name='notes.txt', content_type='text/plain', owner='owner-1'):
        return self.coordinator.issue(owner, name, content_type, io.BytesIO(content))


class IssueTests(DownloadCoordinatorTestBase):
    """Tests for DownloadCoordinator.issue."""

    def test_issue_creates_active_record(self):
        record, token = self._issue()

        stored = CustodyRecord.objects.get(id=record.id)
        self.assertEqual(stored.state, CustodyRecord.State.ACTIVE)
        self.assertEqual(stored.owner_id, 'owner-1')
        self.assertEqual(stored.original_name, 'notes.txt')
        self.assertEqual(stored.content_type, 'text/plain')
        self.assertEqual(stored.size_bytes, 10)
        self.assertIsNone(stored.token_consumed_at)
        self.assertIsNone(stored.deleted_at)
        self.assertTrue(self.storage.exists(stored.storage_location))

    def test_expiry_is_upload_plus_retention(self):
        record, _ = self._issue()

        self.assertEqual(record.expires_at - record.uploaded_at, self.options.retention_period)

    def test_plaintext_token_is_not_persisted(self):
        record, token = self._issue()

        stored = CustodyRecord.objects.get(id=record.id)
        for value in (stored.token_hash, stored.token_salt, stored.storage_location, stored.version):
            self.assertNotIn(token, value)
        self.assertTrue(TokenService.verify_token(token, stored.token_hash, stored.token_salt))

    def test_size_comes_from_bytes_written(self):
        record, _ = self._issue(content=b'x' * 1234)

        self.assertEqual(record.size_bytes, 1234)

    def test_filename_is_reduced_to_basename(self):
        record, _ = self._issue(name='../../etc/passwd')
        self.assertEqual(record.original_name, 'passwd')

        record, _ = self._issue(name='C:\\Users\\me\\report.pdf')
        self.assertEqual(record.original_name, 'report.pdf')
        self.assertTrue(record.storage_location.endswith('.pdf'))

    def test_missing_content_type_defaults(self):
        record, _ = self._issue(content_type='')

        self.assertEqual(record.content_type, 'application/octet-stream')

    def test_owner_is_required(self):
        with self.assertRaises(ValueError):
            self._issue(owner='')

        self.assertEqual(self.storage.saved, [])

    def test_clean_original_name(self):
        self.assertEqual(clean_original_name(''), 'download')
        self.assertEqual(clean_original_name(None), 'download')
        self.assertEqual(clean_original_name('dir/'), 'download')
        self.assertEqual(clean_original_name('..'), 'download')
        long_name = 'a' * 300 + '.txt'
        cleaned = clean_original_name(long_name)
        self.assertEqual(len(cleaned), 255)
        self.assertTrue(cleaned.endswith('.txt'))

    # ===================
    # Issuance atomicity
    # ===================

    def test_failed_insert_removes_blob(self):
        """If the record insert fails after the blob was saved, the blob must go."""
        coordinator = DownloadCoordinator(
            self.options,
            storage=self.storage,
            records=FailingInsertStore(DatabaseError("disk full")),
        )

        with self.assertRaises(DatabaseError):
            coordinator.issue('owner-1', 'a.txt', 'text/plain', io.BytesIO(b'content'))

        self.assertEqual(len(self.storage.saved), 1)
        self.assertFalse(self.storage.exists(self.storage.saved[0].location))
        self.assertEqual(CustodyRecord.objects.count(), 0)

    def test_cancelled_insert_removes_blob(self):
        coordinator = DownloadCoordinator(
            self.options,
            storage=self.storage,
            records=FailingInsertStore(KeyboardInterrupt()),
        )

        with self.assertRaises(KeyboardInterrupt):
            coordinator.issue('owner-1', 'a.txt', 'text/plain', io.BytesIO(b'content'))

        self.assertFalse(self.storage.exists(self.storage.saved[0].location))

    def test_cleanup_failure_does_not_mask_original_error(self):
        coordinator = DownloadCoordinator(
            self.options,
            storage=self.storage,
            records=FailingInsertStore(DatabaseError("disk full")),
        )

        with patch.object(self.storage, 'delete', side_effect=StorageFailure("read-only fs")):
            with self.assertRaises(DatabaseError):
                coordinator.issue('owner-1', 'a.txt', 'text/plain', io.BytesIO(b'content'))

    def test_token_hash_is_unique(self):
        record, _ = self._issue()

        duplicate = CustodyRecord(
            owner_id='owner-2',
            original_name='x.txt',
            content_type='text/plain',
            size_bytes=1,
            storage_location='blobs/00/00/other.txt',
            token_hash=record.token_hash,
            token_salt=record.token_salt,
        )
        with self.assertRaises(IntegrityError), transaction.atomic():
            duplicate.save(force_insert=True)


class ConsumeTests(DownloadCoordinatorTestBase):
    """Tests for DownloadCoordinator.consume."""

    def test_issue_then_consume_then_consume_again(self):
        """10-byte file: first consume succeeds, the second is already used."""
        record, token = self._issue(content=b'0123456789')

        outcome = self.coordinator.consume(record.id, token)

        self.assertEqual(outcome.status, DownloadStatus.SUCCESS)
        with outcome.stream:
            self.assertEqual(outcome.stream.read(), b'0123456789')
        self.assertEqual(outcome.size_bytes, 10)
        self.assertEqual(outcome.content_type, 'text/plain')
        self.assertEqual(outcome.file_name, 'notes.txt')

        again = self.coordinator.consume(record.id, token)
        self.assertEqual(again.status, DownloadStatus.ALREADY_USED)

    def test_consume_sets_both_markers_and_new_version(self):
        record, token = self._issue()
        old_version = record.version

        outcome = self.coordinator.consume(record.id, token)
        outcome.stream.close()

        stored = CustodyRecord.objects.get(id=record.id)
        self.assertIsNotNone(stored.token_consumed_at)
        self.assertEqual(stored.token_consumed_at, stored.deleted_at)
        self.assertNotEqual(stored.version, old_version)
        self.assertEqual(stored.state, CustodyRecord.State.CONSUMED)

    def test_swept_record_reports_expired(self):
        """A record tombstoned by the sweeper stays expired, not already used."""
        record, token = self._issue()
        self.assertTrue(RecordStore.mark_expired(record, timezone.now()))

        outcome = self.coordinator.consume(record.id, token)

        self.assertEqual(outcome.status, DownloadStatus.EXPIRED)

    def test_wrong_token_is_not_found(self):
        record, _ = self._issue()
        other_token, _, _ = TokenService.generate_token()

        outcome = self.coordinator.consume(record.id, other_token)

        self.assertEqual(outcome.status, DownloadStatus.NOT_FOUND)
        self.assertEqual(CustodyRecord.objects.get(id=record.id).state, CustodyRecord.State.ACTIVE)

    def test_unknown_id_is_not_found(self):
        _, token = self._issue()

        self.assertEqual(self.coordinator.consume(uuid.uuid4(), token).status, DownloadStatus.NOT_FOUND)

    def test_malformed_id_is_not_found(self):
        _, token = self._issue()

        self.assertEqual(self.coordinator.consume('not-a-uuid', token).status, DownloadStatus.NOT_FOUND)

    def test_empty_token_is_not_found(self):
        record, _ = self._issue()

        self.assertEqual(self.coordinator.consume(record.id, '').status, DownloadStatus.NOT_FOUND)
        self.assertEqual(self.coordinator.consume(record.id, None).status, DownloadStatus.NOT_FOUND)

    def test_expired_record_reports_expired_even_with_valid_token(self):
        record, token = self._issue()
        CustodyRecord.objects.filter(id=record.id).update(
            expires_at=timezone.now() - timedelta(seconds=1)
        )

        outcome = self.coordinator.consume(record.id, token)

        self.assertEqual(outcome.status, DownloadStatus.EXPIRED)
        stored = CustodyRecord.objects.get(id=record.id)
        self.assertIsNone(stored.token_consumed_at)

    def test_expiry_checked_against_clock(self):
        record, token = self._issue()
        later = DownloadCoordinator(
            self.options,
            storage=self.storage,
            clock=lambda: timezone.now() + self.options.retention_period + timedelta(minutes=1),
        )

        self.assertEqual(later.consume(record.id, token).status, DownloadStatus.EXPIRED)

    def test_record_without_expiry_never_expires(self):
        record, token = self._issue()
        CustodyRecord.objects.filter(id=record.id).update(expires_at=None)

        outcome = self.coordinator.consume(record.id, token)
        outcome.stream.close()

        self.assertEqual(outcome.status, DownloadStatus.SUCCESS)

    # ===================
    # Races
    # ===================

    def test_stale_reader_loses_the_race(self):
        """A caller that verified against a stale snapshot must get ALREADY_USED."""
        record, token = self._issue()
        stale = CustodyRecord.objects.get(id=record.id)

        first = self.coordinator.consume(record.id, token)
        first.stream.close()
        self.assertEqual(first.status, DownloadStatus.SUCCESS)

        with patch.object(RecordStore, 'find', return_value=stale):
            second = self.coordinator.consume(record.id, token)

        self.assertEqual(second.status, DownloadStatus.ALREADY_USED)

    def test_version_mismatch_blocks_update(self):
        record, _ = self._issue()
        stale = CustodyRecord.objects.get(id=record.id)
        CustodyRecord.objects.filter(id=record.id).update(version='rewritten')

        self.assertFalse(RecordStore.mark_consumed(stale, timezone.now()))
        self.assertIsNone(CustodyRecord.objects.get(id=record.id).token_consumed_at)

    # ===================
    # Integrity anomaly
    # ===================

    def test_missing_blob_after_win_is_not_found_and_stays_consumed(self):
        record, token = self._issue()
        self.storage.delete(record.storage_location)

        with self.assertLogs('shares.services.coordinator', level='ERROR') as logs:
            outcome = self.coordinator.consume(record.id, token)

        self.assertEqual(outcome.status, DownloadStatus.NOT_FOUND)
        self.assertTrue(any('Integrity anomaly' in line for line in logs.output))
        stored = CustodyRecord.objects.get(id=record.id)
        self.assertIsNotNone(stored.token_consumed_at)
        self.assertIsNotNone(stored.deleted_at)

    def test_storage_failure_after_win_propagates_and_stays_consumed(self):
        record, token = self._issue()

        with patch.object(self.storage, 'open', side_effect=StorageFailure("EIO")):
            with self.assertRaises(StorageFailure):
                self.coordinator.consume(record.id, token)

        self.assertEqual(CustodyRecord.objects.get(id=record.id).state, CustodyRecord.State.CONSUMED)

    # ===================
    # Deletion scheduling
    # ===================

    def test_success_schedules_blob_deletion(self):
        record, token = self._issue()

        outcome = self.coordinator.consume(record.id, token)
        outcome.stream.close()

        self.delete_delay.assert_called_once_with(record.storage_location)

    def test_failed_consume_schedules_nothing(self):
        record, _ = self._issue()

        self.coordinator.consume(record.id, 'wrong')

        self.delete_delay.assert_not_called()

    def test_scheduling_failure_does_not_affect_result(self):
        record, token = self._issue()
        self.delete_delay.side_effect = ConnectionError("broker down")

        with self.assertLogs('shares.services.coordinator', level='WARNING'):
            outcome = self.coordinator.consume(record.id, token)

        self.assertEqual(outcome.status, DownloadStatus.SUCCESS)
        with outcome.stream:
            self.assertEqual(outcome.stream.read(), b'0123456789')


class ConcurrentConsumeTests(TransactionTestCase):
    """
    Many threads race on one record through the real database.

    Each thread gets its own connection, so the only thing deciding the
    winner is the version-guarded UPDATE.
    """

    workers = 8

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.options = ShareOptions(storage_root=Path(self.root))
        self.coordinator = DownloadCoordinator(self.options)

        patcher = patch('shares.tasks.delete_blob.delay')
        self.delete_delay = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_concurrent_consumers_exactly_one_wins(self):
        record, token = self.coordinator.issue('owner-1', 'a.txt', 'text/plain', io.BytesIO(b'payload'))

        barrier = threading.Barrier(self.workers)
        outcomes = []
        errors = []
        outcomes_lock = threading.Lock()

        def attempt():
            try:
                barrier.wait()
                outcome = self.coordinator.consume(record.id, token)
                if outcome.stream is not None:
                    outcome.stream.close()
                with outcomes_lock:
                    outcomes.append(outcome.status)
            except Exception as e:
                with outcomes_lock:
                    errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(outcomes.count(DownloadStatus.SUCCESS), 1)
        self.assertEqual(outcomes.count(DownloadStatus.ALREADY_USED), self.workers - 1)
        stored = CustodyRecord.objects.get(id=record.id)
        self.assertEqual(stored.state, CustodyRecord.State.CONSUMED)
        self.delete_delay.assert_called_once_with(record.storage_location)
