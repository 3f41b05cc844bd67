"""
Shared Data Contract Models
===========================
Custody records for one-time shares.

Models:
    - CustodyRecord: one uploaded artifact, its single-use credential
      (salted hash only) and its lifecycle markers.
    - SweepLease: cross-process exclusion for retention sweeps.

Only the download path (consumption) and the retention sweep (expiry,
purge) mutate a record after it is created. Every mutation rewrites
``version`` and is guarded on the previously observed value.
"""

import uuid

from django.db import models
from django.utils import timezone


def new_version():
    """Fresh opaque concurrency stamp."""
    return uuid.uuid4().hex


class CustodyRecordQuerySet(models.QuerySet):

    def live(self):
        """Records not yet tombstoned (consumed or expired)."""
        return self.filter(deleted_at__isnull=True)

    def tombstoned(self):
        return self.filter(deleted_at__isnull=False)

    def expired_as_of(self, now):
        return self.live().filter(expires_at__isnull=False, expires_at__lt=now)

    def active_as_of(self, now):
        """Live records still inside their retention window."""
        return self.live().filter(models.Q(expires_at__isnull=True) | models.Q(expires_at__gte=now))

    def consumed(self):
        return self.filter(token_consumed_at__isnull=False)

    def expired(self):
        """Tombstoned by the sweeper rather than by a download."""
        return self.tombstoned().filter(token_consumed_at__isnull=True)

    def owned_by(self, owner_id):
        return self.filter(owner_id=owner_id)


class CustodyRecord(models.Model):
    """
    One uploaded artifact held in custody until its link is used or expires.

    The plaintext token is never stored; ``token_hash``/``token_salt``
    are enough to verify a candidate.
    """

    class State(models.TextChoices):
        ACTIVE = 'active', 'Active'
        CONSUMED = 'consumed', 'Consumed'
        EXPIRED = 'expired', 'Expired'

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )
    owner_id = models.CharField(
        max_length=255,
        help_text="Opaque identity of the uploader, supplied by the auth layer"
    )
    original_name = models.CharField(
        max_length=255,
        help_text="Original filename (basename only) as uploaded"
    )
    content_type = models.CharField(
        max_length=255,
        help_text="MIME type of the file"
    )
    size_bytes = models.BigIntegerField(
        help_text="Bytes actually written to storage"
    )
    storage_location = models.CharField(
        max_length=512,
        unique=True,
        help_text="Opaque location resolvable by the storage backend"
    )
    uploaded_at = models.DateTimeField(
        default=timezone.now,
        help_text="When this file was uploaded"
    )
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Retention deadline for the download link"
    )
    token_hash = models.CharField(
        max_length=128,
        unique=True,
        help_text="Base64 SHA-256 of salt || token"
    )
    token_salt = models.CharField(
        max_length=64,
        help_text="Base64 random salt for the token hash"
    )
    token_issued_at = models.DateTimeField(
        default=timezone.now
    )
    token_consumed_at = models.DateTimeField(
        null=True,
        blank=True
    )
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Tombstone: consumed, expired or swept"
    )
    version = models.CharField(
        max_length=32,
        default=new_version,
        help_text="Concurrency stamp, rewritten on every mutation"
    )

    objects = CustodyRecordQuerySet.as_manager()

    class Meta:
        ordering = ['-uploaded_at']
        verbose_name = "Custody Record"
        verbose_name_plural = "Custody Records"
        indexes = [
            models.Index(fields=['owner_id', 'uploaded_at'], name='custody_owner_date_idx'),
            models.Index(fields=['expires_at'], name='custody_expires_idx'),
            models.Index(fields=['deleted_at'], name='custody_deleted_idx'),
        ]

    def __str__(self):
        return f"{self.original_name} ({self.state})"

    @property
    def state(self):
        if self.deleted_at is None:
            # Past its deadline but not yet reached by a sweep
            return self.State.EXPIRED if self.is_expired() else self.State.ACTIVE
        if self.token_consumed_at is not None:
            return self.State.CONSUMED
        return self.State.EXPIRED

    def is_expired(self, now=None):
        now = now or timezone.now()
        return self.expires_at is not None and self.expires_at < now


class SweepLease(models.Model):
    """
    Named lease giving one process at a time the right to sweep.

    Acquired, renewed and released with conditional updates, so it holds
    across every worker sharing the database. A lease whose ``expires_at``
    is null or in the past is free.
    """
    name = models.CharField(
        max_length=64,
        primary_key=True
    )
    holder = models.CharField(
        max_length=64,
        blank=True,
        default='',
        help_text="Random id of the current holder, empty when free"
    )
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Lease is free after this instant unless renewed"
    )

    class Meta:
        verbose_name = "Sweep Lease"
        verbose_name_plural = "Sweep Leases"

    def __str__(self):
        return f"{self.name} ({self.holder or 'free'})"
