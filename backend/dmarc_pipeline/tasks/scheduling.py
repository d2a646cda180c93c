"""
Beat-driven enumerators.

These run on the default queue and only enqueue per-entity jobs.
"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.jobs import scheduler
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=JobTask,
    name="dmarc_pipeline.tasks.scheduling.schedule_mailbox_syncs_task"
)
def schedule_mailbox_syncs_task(self):
    return scheduler.schedule_mailbox_syncs(self.db)


@celery_app.task(
    bind=True,
    base=JobTask,
    name="dmarc_pipeline.tasks.scheduling.schedule_cleanup_task"
)
def schedule_cleanup_task(self):
    job_ids = scheduler.schedule_cleanup(self.db)
    logger.info(f"Scheduled {len(job_ids)} cleanup job(s)")
    return {"jobs": job_ids}
