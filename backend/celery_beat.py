"""
Celery Beat scheduler entrypoint.

Fires the mailbox sync enumerator every 15 minutes and the cleanup
enumerator daily at 02:00 UTC.

Usage:
    celery -A celery_beat beat --loglevel=info

Environment Variables:
    CELERY_BROKER_URL: Redis broker URL (default: redis://redis:6379/1)
"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.config import get_settings
from dmarc_pipeline.logging_config import setup_logging

settings = get_settings()
setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="dmarc-pipeline-beat",
    enable_json=settings.log_json
)

logger = logging.getLogger(__name__)
logger.info("Celery Beat scheduler starting...")

if __name__ == "__main__":
    celery_app.Beat().run()
