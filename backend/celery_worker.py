"""
Celery worker entrypoint.

Usage:
    celery -A celery_worker worker -Q mailbox-sync -c 1 --loglevel=info
    celery -A celery_worker worker -Q ip-enrichment -c 10 --loglevel=info

Run one worker per queue with the queue's concurrency; see
dmarc_pipeline.jobs.queues.QUEUE_POLICIES.

Environment Variables:
    CELERY_BROKER_URL: Redis broker URL (default: redis://redis:6379/1)
    DATABASE_URL: PostgreSQL connection string
"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.config import get_settings
from dmarc_pipeline.logging_config import setup_logging

settings = get_settings()
setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="dmarc-pipeline-worker",
    enable_json=settings.log_json
)

logger = logging.getLogger(__name__)
logger.info("Celery worker starting...")

if __name__ == "__main__":
    celery_app.worker_main([
        'worker',
        '--loglevel=info',
        '--concurrency=4'
    ])
