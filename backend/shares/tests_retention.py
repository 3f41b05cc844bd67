"""
Unit Tests for Retention Sweeping
=================================
Tests cover:
- Expire phase (tombstone + blob deletion)
- Orphan reaping for tombstoned records
- Purge after retention + grace
- Stray blob reaping
- Per-record and per-phase failure isolation
- Sweep loop start/stop behaviour
- Sweep lease (cross-process exclusion, expiry, stale holders)
- Celery tasks (lease-guarded sweep, blob deletion)
- sweep_storage management command
"""

import io
import os
import shutil
import tempfile
import threading
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from contracts.models import CustodyRecord, SweepLease
from shares.exceptions import StorageFailure
from shares.options import ShareOptions
from shares.services import (
    DownloadCoordinator,
    LocalStorageBackend,
    RecordStore,
    RetentionSweeper,
    SweepLoop,
    SweepReport,
)
from shares.services.lease import RETENTION_SWEEP_LEASE, Lease
from shares.tasks import delete_blob, sweep_retention


class FlakyStorage(LocalStorageBackend):
    """Fails to delete any location listed in ``broken``."""

    def __init__(self, root):
        super().__init__(root)
        self.broken = set()

    def delete(self, location):
        if location in self.broken:
            raise StorageFailure(f"cannot delete {location}")
        return super().delete(location)


class RetentionSweeperTestBase(TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.options = ShareOptions(
            storage_root=Path(self.root),
            retention_period=timedelta(days=30),
            grace_period=timedelta(days=7),
        )
        self.storage = FlakyStorage(self.root)
        self.now = timezone.now()
        self.coordinator = DownloadCoordinator(self.options, storage=self.storage, clock=lambda: self.now)

        patcher = patch('shares.tasks.delete_blob.delay')
        self.delete_delay = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _issue(self, content=b'payload', name='file.txt'):
        return self.coordinator.issue('owner-1', name, 'text/plain', io.BytesIO(content))

    def _sweeper(self, at):
        return RetentionSweeper(self.options, storage=self.storage, clock=lambda: at)


class ExpirePhaseTests(RetentionSweeperTestBase):

    def test_expired_record_is_tombstoned_and_blob_deleted(self):
        record, _ = self._issue()

        report = self._sweeper(self.now + timedelta(days=31)).run_pass()

        stored = CustodyRecord.objects.get(id=record.id)
        self.assertEqual(report.expired, 1)
        self.assertEqual(stored.state, CustodyRecord.State.EXPIRED)
        self.assertIsNone(stored.token_consumed_at)
        self.assertNotEqual(stored.version, record.version)
        self.assertFalse(self.storage.exists(record.storage_location))

    def test_unexpired_record_is_untouched(self):
        record, _ = self._issue()

        report = self._sweeper(self.now + timedelta(days=29)).run_pass()

        self.assertEqual(report.expired, 0)
        self.assertEqual(CustodyRecord.objects.get(id=record.id).state, CustodyRecord.State.ACTIVE)
        self.assertTrue(self.storage.exists(record.storage_location))

    def test_record_consumed_since_read_is_not_expired(self):
        record, _ = self._issue()
        stale = CustodyRecord.objects.get(id=record.id)
        self.assertTrue(RecordStore.mark_consumed(record, self.now))

        self.assertFalse(RecordStore.mark_expired(stale, self.now + timedelta(days=31)))
        self.assertEqual(CustodyRecord.objects.get(id=record.id).state, CustodyRecord.State.CONSUMED)

    def test_one_failing_record_does_not_stop_the_phase(self):
        first, _ = self._issue(name='first.txt')
        second, _ = self._issue(name='second.txt')
        self.storage.broken.add(first.storage_location)

        with self.assertLogs('shares.services.retention', level='ERROR'):
            report = self._sweeper(self.now + timedelta(days=31)).run_pass()

        self.assertEqual(report.expired, 1)
        self.assertGreaterEqual(report.record_failures, 1)
        self.assertFalse(report.ok)
        self.assertFalse(self.storage.exists(second.storage_location))
        # Tombstoned anyway; the blob is left for a later orphan pass
        self.assertEqual(CustodyRecord.objects.get(id=first.id).state, CustodyRecord.State.EXPIRED)
        self.assertTrue(self.storage.exists(first.storage_location))

        self.storage.broken.clear()
        later = self._sweeper(self.now + timedelta(days=32)).run_pass()
        self.assertEqual(later.orphans_reaped, 1)
        self.assertFalse(self.storage.exists(first.storage_location))


class OrphanPhaseTests(RetentionSweeperTestBase):

    def test_consumed_blob_left_behind_is_reaped(self):
        """Async deletion never ran; the next pass removes the blob."""
        record, token = self._issue()
        outcome = self.coordinator.consume(record.id, token)
        outcome.stream.close()
        self.assertTrue(self.storage.exists(record.storage_location))

        report = self._sweeper(self.now + timedelta(minutes=15)).run_pass()

        self.assertEqual(report.orphans_reaped, 1)
        self.assertFalse(self.storage.exists(record.storage_location))

    def test_tombstone_without_blob_is_skipped(self):
        record, token = self._issue()
        self.coordinator.consume(record.id, token).stream.close()
        self.storage.delete(record.storage_location)

        report = self._sweeper(self.now + timedelta(minutes=15)).run_pass()

        self.assertEqual(report.orphans_reaped, 0)
        self.assertTrue(report.ok)

    def test_fresh_tombstone_keeps_its_blob(self):
        """A download that just won must still find its blob when it opens it."""
        record, _ = self._issue()
        consumed_at = self.now + timedelta(minutes=1)
        self.assertTrue(RecordStore.mark_consumed(record, consumed_at))

        report = self._sweeper(consumed_at + timedelta(seconds=1)).run_pass()

        self.assertEqual(report.orphans_reaped, 0)
        self.assertTrue(self.storage.exists(record.storage_location))
        with self.storage.open(record.storage_location) as stream:
            self.assertEqual(stream.read(), b'payload')

        later = self._sweeper(consumed_at + self.options.orphan_min_age + timedelta(seconds=1)).run_pass()
        self.assertEqual(later.orphans_reaped, 1)

    def test_active_blobs_are_not_reaped(self):
        record, _ = self._issue()

        report = self._sweeper(self.now + timedelta(minutes=5)).run_pass()

        self.assertEqual(report.orphans_reaped, 0)
        self.assertTrue(self.storage.exists(record.storage_location))


class PurgePhaseTests(RetentionSweeperTestBase):

    def _tombstone(self, at):
        record, token = self._issue()
        consumer = DownloadCoordinator(self.options, storage=self.storage, clock=lambda: at)
        consumer.consume(record.id, token).stream.close()
        return record

    def test_purges_after_retention_plus_grace(self):
        old = self._tombstone(self.now)
        recent = self._tombstone(self.now + timedelta(days=10))

        report = self._sweeper(self.now + timedelta(days=37, minutes=1)).run_pass()

        self.assertEqual(report.purged, 1)
        self.assertFalse(CustodyRecord.objects.filter(id=old.id).exists())
        self.assertTrue(CustodyRecord.objects.filter(id=recent.id).exists())

    def test_not_purged_within_grace_period(self):
        record = self._tombstone(self.now)

        report = self._sweeper(self.now + timedelta(days=36)).run_pass()

        self.assertEqual(report.purged, 0)
        self.assertTrue(CustodyRecord.objects.filter(id=record.id).exists())

    def test_active_records_are_never_purged(self):
        record, _ = self._issue()
        CustodyRecord.objects.filter(id=record.id).update(expires_at=None)

        report = self._sweeper(self.now + timedelta(days=400)).run_pass()

        self.assertEqual(report.purged, 0)
        self.assertEqual(CustodyRecord.objects.get(id=record.id).state, CustodyRecord.State.ACTIVE)

    def test_purged_record_does_not_reappear(self):
        record = self._tombstone(self.now)
        sweeper = self._sweeper(self.now + timedelta(days=40))

        first = sweeper.run_pass()
        second = sweeper.run_pass()

        self.assertEqual(first.purged, 1)
        self.assertEqual(second.purged, 0)
        self.assertEqual(second.orphans_reaped, 0)
        self.assertFalse(CustodyRecord.objects.filter(id=record.id).exists())


class StrayPhaseTests(RetentionSweeperTestBase):

    def _age(self, location, seconds=7200):
        past = time.time() - seconds
        os.utime(Path(self.root) / location, (past, past))

    def test_old_unreferenced_blob_is_reaped(self):
        stray = self.storage.save(io.BytesIO(b'crashed upload'), '.txt')
        self._age(stray.location)

        report = self._sweeper(self.now).run_pass()

        self.assertEqual(report.strays_reaped, 1)
        self.assertFalse(self.storage.exists(stray.location))

    def test_young_unreferenced_blob_is_kept(self):
        in_flight = self.storage.save(io.BytesIO(b'uploading'), '.txt')

        report = self._sweeper(self.now).run_pass()

        self.assertEqual(report.strays_reaped, 0)
        self.assertTrue(self.storage.exists(in_flight.location))

    def test_referenced_blob_is_kept(self):
        record, _ = self._issue()
        self._age(record.storage_location)

        report = self._sweeper(self.now).run_pass()

        self.assertEqual(report.strays_reaped, 0)
        self.assertTrue(self.storage.exists(record.storage_location))


class PhaseIsolationTests(RetentionSweeperTestBase):

    def test_failing_phase_does_not_block_others(self):
        old, token = self._issue(name='old.txt')
        DownloadCoordinator(self.options, storage=self.storage, clock=lambda: self.now).consume(
            old.id, token
        ).stream.close()
        fresh, _ = self._issue(name='fresh.txt')

        with patch.object(RecordStore, 'tombstoned_locations', side_effect=RuntimeError("db hiccup")):
            with self.assertLogs('shares.services.retention', level='ERROR'):
                report = self._sweeper(self.now + timedelta(days=38)).run_pass()

        self.assertEqual(report.failed_phases, ['reap_orphans'])
        self.assertEqual(report.expired, 1)
        self.assertEqual(report.purged, 1)
        self.assertFalse(self.storage.exists(fresh.storage_location))

    def test_report_as_dict(self):
        report = SweepReport(expired=2, purged=1, failed_phases=['purge'])

        self.assertEqual(report.as_dict()['expired'], 2)
        self.assertEqual(report.as_dict()['failed_phases'], ['purge'])
        self.assertFalse(report.ok)


class SweepLoopTests(TestCase):

    class FakeSweeper:
        def __init__(self, fail_first=False):
            self.options = ShareOptions()
            self.calls = 0
            self.fail_first = fail_first
            self.on_pass = None

        def run_pass(self):
            self.calls += 1
            if self.on_pass:
                self.on_pass(self.calls)
            if self.fail_first and self.calls == 1:
                raise RuntimeError("boom")
            return SweepReport()

    def test_runs_immediately_then_on_interval_until_stopped(self):
        sweeper = self.FakeSweeper()
        loop = SweepLoop(sweeper, interval=timedelta(milliseconds=10))
        sweeper.on_pass = lambda n: loop.stop() if n >= 3 else None

        loop.run()

        self.assertEqual(sweeper.calls, 3)
        self.assertEqual(loop.passes, 3)

    def test_stop_before_start_runs_nothing(self):
        sweeper = self.FakeSweeper()
        loop = SweepLoop(sweeper, interval=timedelta(hours=1))
        loop.stop()

        loop.run()

        self.assertEqual(sweeper.calls, 0)

    def test_failing_pass_does_not_kill_loop(self):
        sweeper = self.FakeSweeper(fail_first=True)
        loop = SweepLoop(sweeper, interval=timedelta(milliseconds=10))
        sweeper.on_pass = lambda n: loop.stop() if n >= 2 else None

        with self.assertLogs('shares.services.retention', level='ERROR'):
            loop.run()

        self.assertEqual(sweeper.calls, 2)

    def test_stop_from_another_thread_wakes_loop(self):
        sweeper = self.FakeSweeper()
        loop = SweepLoop(sweeper, interval=timedelta(hours=1))
        thread = threading.Thread(target=loop.run)

        thread.start()
        loop.stop()
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        self.assertLessEqual(sweeper.calls, 1)


class SweepLeaseTests(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.clock = [self.now]
        patcher = patch.object(Lease, '_now', side_effect=lambda: self.clock[0])
        patcher.start()
        self.addCleanup(patcher.stop)

    def _lease(self, ttl=timedelta(minutes=10)):
        return Lease(RETENTION_SWEEP_LEASE, ttl)

    def test_second_holder_is_refused_while_lease_is_live(self):
        first, second = self._lease(), self._lease()

        self.assertTrue(first.acquire())
        self.assertFalse(second.acquire())
        self.assertIsNone(second.holder)

    def test_release_frees_the_lease(self):
        first, second = self._lease(), self._lease()
        first.acquire()

        self.assertTrue(first.release())

        stored = SweepLease.objects.get(name=RETENTION_SWEEP_LEASE)
        self.assertEqual(stored.holder, '')
        self.assertIsNone(stored.expires_at)
        self.assertTrue(second.acquire())

    def test_lapsed_lease_can_be_taken_over(self):
        first, second = self._lease(), self._lease()
        first.acquire()

        self.clock[0] = self.now + timedelta(minutes=10, seconds=1)

        self.assertTrue(second.acquire())
        self.assertFalse(first.renew())

    def test_stale_holder_cannot_release_a_taken_over_lease(self):
        first, second = self._lease(), self._lease()
        first.acquire()
        self.clock[0] = self.now + timedelta(minutes=11)
        second.acquire()

        with self.assertLogs('shares.services.lease', level='WARNING'):
            self.assertFalse(first.release())

        stored = SweepLease.objects.get(name=RETENTION_SWEEP_LEASE)
        self.assertEqual(stored.holder, second.holder)
        self.assertFalse(self._lease().acquire())

    def test_renew_pushes_the_deadline_forward(self):
        first, second = self._lease(), self._lease()
        first.acquire()

        self.clock[0] = self.now + timedelta(minutes=9)
        self.assertTrue(first.renew())
        self.clock[0] = self.now + timedelta(minutes=15)

        self.assertFalse(second.acquire())

    def test_renew_and_release_without_acquire(self):
        lease = self._lease()

        self.assertFalse(lease.renew())
        self.assertFalse(lease.release())


class RetentionTaskTests(TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_sweep_task_runs_a_pass(self):
        with override_settings(SHARE_STORAGE_ROOT=self.root):
            result = sweep_retention.apply().get()

        self.assertTrue(result['success'])
        self.assertFalse(result['skipped'])
        self.assertIn('expired', result)
        self.assertEqual(SweepLease.objects.get(name=RETENTION_SWEEP_LEASE).holder, '')

    def test_overlapping_tick_is_skipped(self):
        other_worker = Lease(RETENTION_SWEEP_LEASE, timedelta(hours=1))
        self.assertTrue(other_worker.acquire())

        with override_settings(SHARE_STORAGE_ROOT=self.root):
            with patch.object(RetentionSweeper, 'run_pass') as run_pass:
                result = sweep_retention.apply().get()

        self.assertTrue(result['skipped'])
        run_pass.assert_not_called()
        self.assertEqual(SweepLease.objects.get(name=RETENTION_SWEEP_LEASE).holder, other_worker.holder)

    def test_tick_after_interval_is_skipped_while_pass_still_runs(self):
        """A pass outliving one cleanup interval still excludes the next beat tick."""
        now = timezone.now()
        clock = [now]
        nested = []

        with override_settings(SHARE_STORAGE_ROOT=self.root, SHARE_CLEANUP_INTERVAL_MINUTES=60,
                               SHARE_SWEEP_LEASE_MINUTES=120):
            interval = ShareOptions.from_settings().cleanup_interval

            def long_pass(heartbeat=None):
                clock[0] = now + interval + timedelta(seconds=1)
                nested.append(sweep_retention.apply().get())
                return SweepReport()

            with patch.object(Lease, '_now', side_effect=lambda: clock[0]):
                with patch.object(RetentionSweeper, 'run_pass', side_effect=long_pass) as run_pass:
                    result = sweep_retention.apply().get()

        self.assertFalse(result['skipped'])
        self.assertEqual(len(nested), 1)
        self.assertTrue(nested[0]['skipped'])
        run_pass.assert_called_once()
        self.assertEqual(SweepLease.objects.get(name=RETENTION_SWEEP_LEASE).holder, '')

    def test_pass_that_lost_its_lease_stops_between_phases(self):
        options = ShareOptions(storage_root=Path(self.root))
        sweeper = RetentionSweeper(options)

        with patch.object(RetentionSweeper, '_reap_orphans') as reap_orphans:
            with self.assertLogs('shares.services.retention', level='WARNING'):
                report = sweeper.run_pass(heartbeat=lambda: False)

        reap_orphans.assert_not_called()
        self.assertEqual(report.failed_phases, ['reap_orphans', 'purge', 'reap_strays'])
        self.assertFalse(report.ok)

    def test_sweep_loop_with_lease_skips_when_held_elsewhere(self):
        options = ShareOptions(storage_root=Path(self.root))
        other_worker = Lease(RETENTION_SWEEP_LEASE, timedelta(hours=1))
        other_worker.acquire()
        loop = SweepLoop(RetentionSweeper(options), interval=timedelta(hours=1),
                         lease=Lease(RETENTION_SWEEP_LEASE, options.sweep_lease))

        with patch.object(RetentionSweeper, 'run_pass') as run_pass:
            loop._tick()

        run_pass.assert_not_called()
        self.assertEqual(loop.passes, 1)

    def test_delete_blob_task(self):
        storage = LocalStorageBackend(self.root)
        blob = storage.save(io.BytesIO(b'consumed'), '.txt')

        with override_settings(SHARE_STORAGE_ROOT=self.root):
            first = delete_blob.apply(args=[blob.location]).get()
            second = delete_blob.apply(args=[blob.location]).get()

        self.assertTrue(first['success'])
        self.assertTrue(first['removed'])
        self.assertTrue(second['success'])
        self.assertFalse(second['removed'])
        self.assertFalse(storage.exists(blob.location))

    def test_delete_blob_task_reports_failure(self):
        with override_settings(SHARE_STORAGE_ROOT=self.root):
            result = delete_blob.apply(args=['../outside.txt']).get()

        self.assertFalse(result['success'])


class SweepStorageCommandTests(TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_once_runs_a_single_pass(self):
        out = io.StringIO()

        with override_settings(SHARE_STORAGE_ROOT=self.root):
            with patch.object(RetentionSweeper, 'run_pass', return_value=SweepReport(expired=3)) as run_pass:
                call_command('sweep_storage', '--once', stdout=out)

        run_pass.assert_called_once()
        self.assertIn('Sweep complete', out.getvalue())
        self.assertIn('Expired: 3', out.getvalue())

    def test_once_reports_failed_phases(self):
        out = io.StringIO()
        report = SweepReport(failed_phases=['purge'])

        with override_settings(SHARE_STORAGE_ROOT=self.root):
            with patch.object(RetentionSweeper, 'run_pass', return_value=report):
                call_command('sweep_storage', '--once', stdout=out)

        self.assertIn('purge', out.getvalue())
        self.assertIn('failures', out.getvalue())

    def test_once_does_nothing_while_another_sweep_holds_the_lease(self):
        out = io.StringIO()
        Lease(RETENTION_SWEEP_LEASE, timedelta(hours=1)).acquire()

        with override_settings(SHARE_STORAGE_ROOT=self.root):
            with patch.object(RetentionSweeper, 'run_pass') as run_pass:
                call_command('sweep_storage', '--once', stdout=out)

        run_pass.assert_not_called()
        self.assertIn('holds the lease', out.getvalue())
