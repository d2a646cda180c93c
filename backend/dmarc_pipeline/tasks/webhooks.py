"""Celery task delivering one webhook event"""

import logging
from dataclasses import asdict

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.jobs.types import WEBHOOK_DELIVERY_QUEUE
from dmarc_pipeline.services.webhook_delivery import WebhookDeliveryService
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=JobTask,
    queue_name=WEBHOOK_DELIVERY_QUEUE,
    name="dmarc_pipeline.tasks.webhooks.deliver_webhook_task"
)
def deliver_webhook_task(self, job_id: str, webhook_id: str, event: str, data: dict = None):
    def handler(queue, job):
        return asdict(WebhookDeliveryService(self.db).deliver(webhook_id, event, data or {}))

    return self.run_job(job_id, handler)
