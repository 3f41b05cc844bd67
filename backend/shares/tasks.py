"""
Celery tasks for blob cleanup.

Handles best-effort deletion of consumed blobs and the periodic
retention sweep driven by celery beat.
"""

import logging

from celery import shared_task

from shares.options import ShareOptions
from .services import LocalStorageBackend, build_sweep_lease, build_sweeper

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    name='shares.tasks.delete_blob'
)
def delete_blob(self, location: str) -> dict:
    """
    Delete a blob after a successful one-time download.

    Failures are logged and left for the retention sweep's orphan phase;
    the task itself never retries.

    Args:
        location: storage location of the consumed blob

    Returns:
        Dictionary with deletion result
    """
    try:
        storage = LocalStorageBackend(ShareOptions.from_settings().storage_root)
        removed = storage.delete(location)
        return {
            'success': True,
            'location': location,
            'removed': removed
        }
    except Exception as e:
        logger.error(f"Failed to delete blob {location}: {str(e)}", exc_info=True)
        return {
            'success': False,
            'error': str(e),
            'location': location
        }


@shared_task(
    bind=True,
    name='shares.tasks.sweep_retention'
)
def sweep_retention(self) -> dict:
    """
    Run one retention sweep pass.

    A tick that fires while another pass, in this worker or any other,
    still holds the sweep lease is skipped, so passes never overlap.

    Returns:
        Dictionary with the sweep report, or a skipped marker
    """
    options = ShareOptions.from_settings()
    report = build_sweeper(options).run_exclusive(build_sweep_lease(options))
    if report is None:
        return {'success': True, 'skipped': True}
    return {'success': report.ok, 'skipped': False, **report.as_dict()}
