from shares.options import ShareOptions

from .coordinator import DownloadCoordinator, DownloadOutcome, DownloadStatus
from .lease import RETENTION_SWEEP_LEASE, Lease
from .records import RecordStore
from .retention import RetentionSweeper, SweepLoop, SweepReport
from .storage import LocalStorageBackend, StoredBlob
from .tokens import TokenService

__all__ = [
    'DownloadCoordinator',
    'DownloadOutcome',
    'DownloadStatus',
    'Lease',
    'LocalStorageBackend',
    'RecordStore',
    'RetentionSweeper',
    'StoredBlob',
    'SweepLoop',
    'SweepReport',
    'TokenService',
    'build_coordinator',
    'build_sweep_lease',
    'build_sweeper',
]


def build_coordinator(options=None) -> DownloadCoordinator:
    return DownloadCoordinator(options or ShareOptions.from_settings())


def build_sweeper(options=None) -> RetentionSweeper:
    return RetentionSweeper(options or ShareOptions.from_settings())


def build_sweep_lease(options=None) -> Lease:
    options = options or ShareOptions.from_settings()
    return Lease(RETENTION_SWEEP_LEASE, options.sweep_lease)
