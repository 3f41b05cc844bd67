"""
Retention Sweeper
=================
Periodic reclamation of expired and orphaned custody artifacts.

Each pass runs four phases, each isolated from the others' failures:
1. Expire: tombstone Active records past their deadline, delete their blobs.
2. Reap orphans: delete blobs still present for tombstoned records
   (failed async deletions, integrity anomalies). Fresh tombstones are
   skipped so a download that just won is not robbed of its blob.
3. Purge: hard-delete records tombstoned longer than retention + grace.
4. Reap strays: delete old blobs no record references at all
   (crash between blob save and cleanup).

Failures on one record are logged and the phase moves on. Passes run
under a database lease, so no two ever overlap across processes.
"""

import logging
import threading
from dataclasses import dataclass, field

from django.utils import timezone

from shares.options import ShareOptions
from .records import RecordStore
from .storage import LocalStorageBackend

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    orphans_reaped: int = 0
    purged: int = 0
    strays_reaped: int = 0
    record_failures: int = 0
    failed_phases: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_phases and not self.record_failures

    def as_dict(self) -> dict:
        return {
            'expired': self.expired,
            'orphans_reaped': self.orphans_reaped,
            'purged': self.purged,
            'strays_reaped': self.strays_reaped,
            'record_failures': self.record_failures,
            'failed_phases': list(self.failed_phases),
        }


class RetentionSweeper:
    """
    The only component allowed to hard-delete custody records.

    Safe to run alongside live downloads: expiry uses the same
    version-guarded update as consumption, so a record consumed mid-sweep
    is left alone.
    """

    PHASES = ('expire', 'reap_orphans', 'purge', 'reap_strays')

    def __init__(self, options: ShareOptions, storage=None, records=None, clock=timezone.now):
        self.options = options
        self.storage = storage if storage is not None else LocalStorageBackend(options.storage_root)
        self.records = records if records is not None else RecordStore()
        self.clock = clock

    def run_exclusive(self, lease):
        """
        Run one pass while holding ``lease``.

        Returns None without sweeping when another process holds it.
        """
        if not lease.acquire():
            logger.info("Retention sweep already running elsewhere, skipping")
            return None
        try:
            return self.run_pass(heartbeat=lease.renew)
        finally:
            lease.release()

    def run_pass(self, heartbeat=None) -> SweepReport:
        """
        Run all phases once.

        ``heartbeat`` is called between phases; if it returns False the
        lease is gone and the remaining phases are abandoned.
        """
        now = self.clock()
        report = SweepReport()
        logger.info(f"Starting retention sweep at {now.isoformat()}")

        for index, phase in enumerate(self.PHASES):
            if index and heartbeat is not None and not heartbeat():
                logger.warning(f"Sweep lease lost before phase '{phase}', abandoning pass")
                report.failed_phases.extend(self.PHASES[index:])
                break
            try:
                getattr(self, f'_{phase}')(now, report)
            except Exception:
                logger.error(f"Retention sweep phase '{phase}' failed", exc_info=True)
                report.failed_phases.append(phase)

        logger.info(
            f"Retention sweep completed. Expired: {report.expired}, "
            f"orphans reaped: {report.orphans_reaped}, purged: {report.purged}, "
            f"strays reaped: {report.strays_reaped}, record failures: {report.record_failures}"
        )
        return report

    def _expire(self, now, report: SweepReport) -> None:
        for record in self.records.expired_candidates(now):
            try:
                if not self.records.mark_expired(record, now):
                    # Consumed or expired by someone else since it was read
                    continue
                self.storage.delete(record.storage_location)
                report.expired += 1
                logger.info(f"Expired record {record.id}")
            except Exception:
                logger.error(f"Failed to expire record {record.id}", exc_info=True)
                report.record_failures += 1

    def _reap_orphans(self, now, report: SweepReport) -> None:
        before = now - self.options.orphan_min_age
        for record_id, location in self.records.tombstoned_locations(before):
            try:
                if self.storage.exists(location):
                    self.storage.delete(location)
                    report.orphans_reaped += 1
                    logger.info(f"Reaped orphaned blob for record {record_id}")
            except Exception:
                logger.error(f"Failed to reap orphaned blob for record {record_id}", exc_info=True)
                report.record_failures += 1

    def _purge(self, now, report: SweepReport) -> None:
        cutoff = now - self.options.purge_after
        report.purged = self.records.purge_tombstoned_before(cutoff)
        if report.purged:
            logger.info(f"Purged {report.purged} custody records tombstoned before {cutoff.isoformat()}")

    def _reap_strays(self, now, report: SweepReport) -> None:
        min_age = self.options.stray_min_age.total_seconds()
        for location in self.storage.iter_locations(older_than=min_age):
            try:
                if self.records.is_referenced(location):
                    continue
                self.storage.delete(location)
                report.strays_reaped += 1
                logger.warning(f"Reaped stray blob with no custody record: {location}")
            except Exception:
                logger.error(f"Failed to reap stray blob {location}", exc_info=True)
                report.record_failures += 1


class SweepLoop:
    """
    Run sweeps on a fixed interval until stopped.

    Waits on the stop event with the interval as timeout, so ``stop()``
    wakes the loop immediately. A pass in progress always completes
    before the loop exits. With a ``lease`` each pass also excludes
    sweeps running in other processes.
    """

    def __init__(self, sweeper: RetentionSweeper, interval=None, stop_event=None, lease=None):
        self.sweeper = sweeper
        self.lease = lease
        self.interval = interval if interval is not None else sweeper.options.cleanup_interval
        self._stop = stop_event if stop_event is not None else threading.Event()
        self.passes = 0

    def run(self, run_immediately=True) -> None:
        logger.info(f"Retention sweep loop starting. Interval: {self.interval}")
        if run_immediately and not self._stop.is_set():
            self._tick()
        while not self._stop.wait(self.interval.total_seconds()):
            self._tick()
        logger.info("Retention sweep loop stopped")

    def stop(self) -> None:
        self._stop.set()

    def _tick(self) -> None:
        try:
            if self.lease is not None:
                self.sweeper.run_exclusive(self.lease)
            else:
                self.sweeper.run_pass()
        except Exception:
            logger.error("Error during retention sweep", exc_info=True)
        self.passes += 1
