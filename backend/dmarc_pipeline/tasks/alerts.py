"""Celery task evaluating alert rules for a freshly imported report"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.jobs.queues import dispatch_requests
from dmarc_pipeline.jobs.types import ALERTS_QUEUE
from dmarc_pipeline.services.alerting import AlertEvaluator
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=JobTask,
    queue_name=ALERTS_QUEUE,
    name="dmarc_pipeline.tasks.alerts.evaluate_report_task"
)
def evaluate_report_task(self, job_id: str, report_id: str, domain_id: str = None,
                         organization_id: str = None):
    def handler(queue, job):
        evaluation = AlertEvaluator(self.db).evaluate_report(report_id)
        webhooks = dispatch_requests(self.db, evaluation.follow_ups)
        return {
            "alerts": [alert.id for alert in evaluation.alerts],
            "webhooks_enqueued": webhooks,
        }

    return self.run_job(job_id, handler)
