"""Celery task running one retention cleanup type"""

import logging
from dataclasses import asdict

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.jobs.types import CLEANUP_QUEUE
from dmarc_pipeline.services.cleanup import CleanupService
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=JobTask,
    queue_name=CLEANUP_QUEUE,
    name="dmarc_pipeline.tasks.cleanup.cleanup_task"
)
def cleanup_task(self, job_id: str, cleanup_type: str, organization_id: str = None):
    def handler(queue, job):
        return asdict(CleanupService(self.db).run(cleanup_type, organization_id))

    return self.run_job(job_id, handler)
