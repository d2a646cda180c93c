"""Celery task syncing one mailbox account"""

import logging

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.config import get_settings
from dmarc_pipeline.jobs.types import MAILBOX_SYNC_QUEUE
from dmarc_pipeline.models import MailboxAccount
from dmarc_pipeline.services.mailbox_sync import MailboxSyncService, build_mailbox
from dmarc_pipeline.tasks.base import JobTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=JobTask,
    queue_name=MAILBOX_SYNC_QUEUE,
    name="dmarc_pipeline.tasks.mailbox_sync.sync_mailbox_task"
)
def sync_mailbox_task(self, job_id: str, account_id: str):
    """
    Sync a mailbox account and import the reports found.

    Returns:
        dict: job outcome with the sync counters as result
    """
    settings = get_settings()

    def handler(queue, job):
        account = self.db.query(MailboxAccount).filter(MailboxAccount.id == account_id).first()
        if account is None:
            raise ValueError(f"Mailbox account {account_id} not found")

        with build_mailbox(account) as mailbox:
            service = MailboxSyncService(self.db, mailbox)
            result = service.sync_account(
                account_id,
                job_lease=lambda: queue.renew_lease(job_id, settings.job_lease_seconds),
            )
        return {**result.to_dict(), "cancelled": result.cancelled, "capped": result.capped}

    return self.run_job(job_id, handler)
