"""
Shares app configuration.

Validates share options and prepares the storage root on startup.
"""

import logging
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class SharesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'shares'

    def ready(self):
        """
        Build ShareOptions once so bad configuration fails at startup
        rather than on the first request.
        """
        from shares.options import ShareOptions

        options = ShareOptions.from_settings()
        try:
            options.storage_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create storage root {options.storage_root}: {e}")

        logger.info(
            f"One-time shares ready: storage root {options.storage_root}, "
            f"retention {options.retention_period.days} days, "
            f"sweep interval {options.cleanup_interval}"
        )
