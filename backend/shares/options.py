"""
Immutable share configuration.

Built once from Django settings and passed into each service, so no
service reads process-wide state on its own.
"""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True)
class ShareOptions:
    retention_period: timedelta = timedelta(days=30)
    grace_period: timedelta = timedelta(days=7)
    cleanup_interval: timedelta = timedelta(minutes=1440)
    storage_root: Path = Path('./storage')
    max_upload_bytes: int = 100 * 1024 * 1024
    stray_min_age: timedelta = timedelta(minutes=60)
    orphan_min_age: timedelta = timedelta(minutes=10)
    sweep_lease: timedelta = timedelta(minutes=2880)
    base_url: str = ''
    owner_id_header: str = 'X-Owner-Id'

    def __post_init__(self):
        if self.retention_period <= timedelta(0):
            raise ImproperlyConfigured("Retention period must be positive")
        if self.grace_period < timedelta(0):
            raise ImproperlyConfigured("Grace period must not be negative")
        if self.cleanup_interval <= timedelta(0):
            raise ImproperlyConfigured("Cleanup interval must be positive")
        if self.max_upload_bytes <= 0:
            raise ImproperlyConfigured("Maximum upload size must be positive")
        if self.sweep_lease <= timedelta(0):
            raise ImproperlyConfigured("Sweep lease must be positive")

    @property
    def purge_after(self) -> timedelta:
        """Age of a tombstone after which the record itself is hard-deleted."""
        return self.retention_period + self.grace_period

    @classmethod
    def from_settings(cls, settings=None) -> 'ShareOptions':
        if settings is None:
            from django.conf import settings
        return cls(
            retention_period=timedelta(days=settings.SHARE_RETENTION_DAYS),
            grace_period=timedelta(days=settings.SHARE_GRACE_PERIOD_DAYS),
            cleanup_interval=timedelta(minutes=settings.SHARE_CLEANUP_INTERVAL_MINUTES),
            storage_root=Path(settings.SHARE_STORAGE_ROOT),
            max_upload_bytes=settings.SHARE_MAX_UPLOAD_BYTES,
            stray_min_age=timedelta(minutes=settings.SHARE_STRAY_MIN_AGE_MINUTES),
            orphan_min_age=timedelta(minutes=settings.SHARE_ORPHAN_MIN_AGE_MINUTES),
            sweep_lease=timedelta(minutes=settings.SHARE_SWEEP_LEASE_MINUTES),
            base_url=settings.SHARE_BASE_URL.rstrip('/'),
            owner_id_header=settings.SHARE_OWNER_ID_HEADER,
        )
