"""
Periodic triggers and manual job entry points.

Celery beat fires the enumerators below; they fan out one job per entity.
Recurring mailbox syncs use a stable key per account, manual syncs a
timestamped key under the same prefix. At most one sync per account is in
flight: both entry points skip an account whose recurring or manual sync is
still queued or running.
"""
import logging
import time
from typing import Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dmarc_pipeline.jobs.queues import JobQueue, STALLED
from dmarc_pipeline.jobs.types import CLEANUP_QUEUE, CLEANUP_TYPES, MAILBOX_SYNC_QUEUE
from dmarc_pipeline.models import IN_FLIGHT_STATES, JobRecord, MailboxAccount

logger = logging.getLogger(__name__)


def _timestamp() -> int:
    return int(time.time() * 1000)


def mailbox_sync_key(account_id: str) -> str:
    return f"mailbox-sync-{account_id}"


def in_flight_sync(queue: JobQueue, account_id: str) -> Optional[JobRecord]:
    """The account's recurring or manual sync still waiting, delayed or running"""
    key = mailbox_sync_key(account_id)
    candidates = queue.db.query(JobRecord).filter(
        JobRecord.queue == MAILBOX_SYNC_QUEUE,
        or_(JobRecord.id == key, JobRecord.id.like(f"{key}-manual-%")),
        JobRecord.state.in_(IN_FLIGHT_STATES),
    ).order_by(JobRecord.created_at).all()

    for job in candidates:
        if queue.get_state(job.id) != STALLED:
            return job
    return None


def schedule_mailbox_syncs(db: Session, dispatcher=None) -> Dict[str, int]:
    """Enqueue a sync for every sync-enabled account not already in flight"""
    queue = JobQueue(db, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher)
    account_ids = [
        row.id for row in
        db.query(MailboxAccount.id).filter(MailboxAccount.sync_enabled.is_(True)).all()
    ]

    enqueued = 0
    for account_id in account_ids:
        running = in_flight_sync(queue, account_id)
        if running is not None:
            logger.debug(
                f"Sync already in flight for account {account_id}",
                extra={"job_id": running.id, "state": running.state}
            )
            continue

        job = queue.add_unique(
            "sync-mailbox",
            {"account_id": account_id},
            job_id=mailbox_sync_key(account_id),
        )
        if job is not None:
            enqueued += 1

    logger.info(
        f"Scheduled {enqueued} mailbox sync(s)",
        extra={"accounts": len(account_ids), "enqueued": enqueued}
    )
    return {"accounts": len(account_ids), "enqueued": enqueued}


def schedule_cleanup(db: Session, dispatcher=None, cleanup_types: Optional[List[str]] = None) -> List[str]:
    """One one-shot job per cleanup type"""
    queue = JobQueue(db, CLEANUP_QUEUE, dispatcher=dispatcher)
    ts = _timestamp()
    job_ids = []
    for cleanup_type in cleanup_types or CLEANUP_TYPES:
        job = queue.add(
            f"cleanup-{cleanup_type}",
            {"cleanup_type": cleanup_type},
            job_id=f"cleanup-{cleanup_type}-{ts}",
        )
        job_ids.append(job.id)
    return job_ids


def trigger_mailbox_sync(db: Session, account_id: str, dispatcher=None) -> Tuple[JobRecord, bool]:
    """
    Manual "sync now".

    Returns ``(job, already_running)``: the account's sync already in flight,
    recurring or manual, or else a newly enqueued one-shot job.
    """
    queue = JobQueue(db, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher)

    running = in_flight_sync(queue, account_id)
    if running is not None:
        logger.info(
            f"Sync already in flight for account {account_id}",
            extra={"job_id": running.id, "state": running.state}
        )
        return running, True

    job = queue.add(
        "sync-mailbox",
        {"account_id": account_id},
        job_id=f"{mailbox_sync_key(account_id)}-manual-{_timestamp()}",
    )
    return job, False
