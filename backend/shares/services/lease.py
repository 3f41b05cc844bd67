"""
Sweep Lease
===========
Database-backed mutual exclusion for retention sweeps.

The lease row is taken, renewed and given back with conditional
updates, the same compare-and-set the record store uses. It therefore
holds across Celery workers, beat and management commands, whatever
cache each process happens to run with.
"""

import logging
import uuid
from datetime import timedelta

from django.db.models import Q
from django.utils import timezone

from contracts.models import SweepLease

logger = logging.getLogger(__name__)


RETENTION_SWEEP_LEASE = 'retention-sweep'


class Lease:
    """
    One holder's handle on a named lease.

    ``release`` and ``renew`` only touch the row while this handle still
    holds it, so a holder whose lease already lapsed can never free or
    extend a lease someone else has since taken.
    """

    def __init__(self, name: str, ttl: timedelta):
        self.name = name
        self.ttl = ttl
        self.holder = None

    def _now(self):
        return timezone.now()

    def acquire(self) -> bool:
        now = self._now()
        self._ensure_row()

        holder = uuid.uuid4().hex
        updated = SweepLease.objects.filter(name=self.name).filter(
            Q(expires_at__isnull=True) | Q(expires_at__lte=now)
        ).update(
            holder=holder,
            expires_at=now + self.ttl,
        )
        if updated != 1:
            return False
        self.holder = holder
        logger.debug(f"Lease {self.name} acquired by {holder}")
        return True

    def renew(self) -> bool:
        if self.holder is None:
            return False
        updated = SweepLease.objects.filter(name=self.name, holder=self.holder).update(
            expires_at=self._now() + self.ttl,
        )
        return updated == 1

    def release(self) -> bool:
        if self.holder is None:
            return False
        updated = SweepLease.objects.filter(name=self.name, holder=self.holder).update(
            holder='',
            expires_at=None,
        )
        if updated != 1:
            logger.warning(f"Lease {self.name} was lost before release by {self.holder}")
        self.holder = None
        return updated == 1

    def _ensure_row(self) -> None:
        # get_or_create retries the lookup if another process inserted first
        SweepLease.objects.get_or_create(name=self.name)
