"""
Named job queues with per-queue retry policy.

Celery over Redis transports the work. Every job also has a ``JobRecord``
row keyed by its idempotency key, which lets the queue:

- refuse a duplicate while a job for the same entity is in flight
- count attempts and compute the policy's backoff
- keep a bounded number of completed/failed jobs for inspection
- detect stalled long-running jobs through an expiring lease
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_, and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dmarc_pipeline.jobs.types import (
    JobRequest,
    MAILBOX_SYNC_QUEUE,
    ALERTS_QUEUE,
    IP_ENRICHMENT_QUEUE,
    WEBHOOK_DELIVERY_QUEUE,
    CLEANUP_QUEUE,
)
from dmarc_pipeline.models import JobRecord, JobState, IN_FLIGHT_STATES

logger = logging.getLogger(__name__)

STALLED = "stalled"


@dataclass(frozen=True)
class QueuePolicy:
    """Retry, retention and concurrency settings of one queue"""
    name: str
    task_name: str
    attempts: int
    backoff: Optional[str] = "exponential"
    backoff_delay: float = 5.0  # seconds
    backoff_max: Optional[float] = None
    keep_completed: int = 100
    keep_failed: int = 500
    concurrency: int = 1

    def backoff_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt after ``attempts_made`` tries"""
        if not self.backoff:
            return 0.0
        delay = self.backoff_delay * (2 ** max(attempts_made - 1, 0))
        if self.backoff_max is not None:
            delay = min(delay, self.backoff_max)
        return delay


QUEUE_POLICIES: Dict[str, QueuePolicy] = {
    MAILBOX_SYNC_QUEUE: QueuePolicy(
        name=MAILBOX_SYNC_QUEUE,
        task_name="dmarc_pipeline.tasks.mailbox_sync.sync_mailbox_task",
        attempts=3,
        backoff_delay=5.0,
        keep_completed=100,
        keep_failed=500,
        concurrency=1,
    ),
    ALERTS_QUEUE: QueuePolicy(
        name=ALERTS_QUEUE,
        task_name="dmarc_pipeline.tasks.alerts.evaluate_report_task",
        attempts=3,
        backoff_delay=5.0,
        keep_completed=200,
        keep_failed=500,
        concurrency=5,
    ),
    IP_ENRICHMENT_QUEUE: QueuePolicy(
        name=IP_ENRICHMENT_QUEUE,
        task_name="dmarc_pipeline.tasks.enrichment.enrich_ip_task",
        attempts=5,
        backoff_delay=30.0,
        backoff_max=300.0,
        keep_completed=2000,
        keep_failed=1000,
        concurrency=10,
    ),
    WEBHOOK_DELIVERY_QUEUE: QueuePolicy(
        name=WEBHOOK_DELIVERY_QUEUE,
        task_name="dmarc_pipeline.tasks.webhooks.deliver_webhook_task",
        attempts=5,
        backoff_delay=10.0,
        keep_completed=1000,
        keep_failed=2000,
        concurrency=10,
    ),
    CLEANUP_QUEUE: QueuePolicy(
        name=CLEANUP_QUEUE,
        task_name="dmarc_pipeline.tasks.cleanup.cleanup_task",
        attempts=1,
        backoff=None,
        keep_completed=30,
        keep_failed=50,
        concurrency=1,
    ),
}


def get_policy(queue_name: str) -> QueuePolicy:
    try:
        return QUEUE_POLICIES[queue_name]
    except KeyError:
        raise ValueError(f"Unknown queue: {queue_name}")


class CeleryDispatcher:
    """Hands jobs to Celery, using the job key as the task id"""

    def dispatch(self, policy: QueuePolicy, job_id: str, payload: Dict[str, Any],
                 delay: Optional[float] = None) -> None:
        from dmarc_pipeline.celery_app import celery_app

        celery_app.send_task(
            policy.task_name,
            kwargs={"job_id": job_id, **payload},
            task_id=job_id,
            queue=policy.name,
            countdown=delay,
        )

    def revoke(self, job_id: str) -> None:
        from dmarc_pipeline.celery_app import celery_app

        celery_app.control.revoke(job_id)


class JobQueue:
    """One named queue: enqueue, lifecycle transitions, retention"""

    def __init__(
        self,
        db: Session,
        queue_name: str,
        dispatcher=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.policy = get_policy(queue_name)
        self.dispatcher = dispatcher or CeleryDispatcher()
        self.clock = clock or datetime.utcnow

    @property
    def name(self) -> str:
        return self.policy.name

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------

    def add(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        delay: Optional[float] = None,
    ) -> JobRecord:
        """
        Persist and dispatch a job.

        Raises:
            IntegrityError: a job with this id already exists
        """
        payload = payload or {}
        job_id = job_id or f"{self.name}-{uuid.uuid4()}"

        job = JobRecord(
            id=job_id,
            queue=self.name,
            name=name,
            payload=payload,
            state=JobState.DELAYED.value if delay else JobState.WAITING.value,
            max_attempts=self.policy.attempts,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise

        try:
            self.dispatcher.dispatch(self.policy, job_id, payload, delay)
        except Exception:
            # An undispatched record would block this key forever
            self.db.delete(job)
            self.db.commit()
            raise

        logger.info(
            f"Enqueued job {job_id}",
            extra={"queue": self.name, "job_id": job_id, "job_name": name}
        )
        return job

    def add_unique(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        job_id: str = None,
        delay: Optional[float] = None,
    ) -> Optional[JobRecord]:
        """
        Enqueue unless a job with the same key is still in flight.

        waiting/active/delayed -> skip (returns None);
        completed/failed -> remove the old record, then re-add.
        """
        if not job_id:
            raise ValueError("add_unique requires a stable job_id")

        existing = self.get_job(job_id)
        if existing is not None:
            if existing.state in IN_FLIGHT_STATES and self.get_state(job_id) != STALLED:
                logger.debug(
                    f"Job {job_id} still {existing.state}, not re-adding",
                    extra={"queue": self.name, "job_id": job_id}
                )
                return None
            self.db.delete(existing)
            self.db.commit()

        try:
            return self.add(name, payload, job_id=job_id, delay=delay)
        except IntegrityError:
            # Lost a race with another enqueuer for the same key
            return None

    def submit(self, request: JobRequest) -> Optional[JobRecord]:
        if request.queue != self.name:
            raise ValueError(f"Request for {request.queue} submitted to {self.name}")
        if request.unique:
            return self.add_unique(request.name, request.payload, job_id=request.job_id, delay=request.delay)
        return self.add(request.name, request.payload, job_id=request.job_id, delay=request.delay)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self.db.query(JobRecord).filter(
            JobRecord.id == job_id,
            JobRecord.queue == self.name,
        ).first()

    def get_state(self, job_id: str) -> Optional[str]:
        """Job state, or ``stalled`` for an active job whose lease ran out"""
        job = self.get_job(job_id)
        if job is None:
            return None
        if (
            job.state == JobState.ACTIVE.value
            and job.lease_expires_at is not None
            and job.lease_expires_at < self.clock()
        ):
            return STALLED
        return job.state

    def counts(self) -> Dict[str, int]:
        rows = self.db.query(JobRecord.state, func.count(JobRecord.id)).filter(
            JobRecord.queue == self.name
        ).group_by(JobRecord.state).all()
        counts = {state.value: 0 for state in JobState}
        counts.update({state: count for state, count in rows})
        return counts

    def recent(self, limit: int = 20, state: Optional[str] = None) -> List[JobRecord]:
        query = self.db.query(JobRecord).filter(JobRecord.queue == self.name)
        if state:
            query = query.filter(JobRecord.state == state)
        return query.order_by(JobRecord.updated_at.desc()).limit(limit).all()

    def remove(self, job_id: str) -> bool:
        """Drop a job that has not started; active jobs are left alone"""
        job = self.get_job(job_id)
        if job is None or job.state == JobState.ACTIVE.value:
            return False
        self.db.delete(job)
        self.db.commit()
        try:
            self.dispatcher.revoke(job_id)
        except Exception as e:
            # The task finds no record when it runs and skips itself
            logger.warning(f"Could not revoke job {job_id}: {e}")
        return True

    # ------------------------------------------------------------------
    # Lifecycle, driven by the worker
    # ------------------------------------------------------------------

    def claim(self, job_id: str, lease_seconds: int) -> Optional[JobRecord]:
        """
        Move a job to active and count the attempt.

        Returns None when the job was removed, already finished or is held
        by another worker with a live lease (duplicate delivery).
        """
        now = self.clock()
        result = self.db.execute(
            update(JobRecord)
            .where(
                JobRecord.id == job_id,
                JobRecord.queue == self.name,
                or_(
                    JobRecord.state.in_([JobState.WAITING.value, JobState.DELAYED.value]),
                    and_(
                        JobRecord.state == JobState.ACTIVE.value,
                        JobRecord.lease_expires_at < now,
                    ),
                ),
            )
            .values(
                state=JobState.ACTIVE.value,
                attempts_made=JobRecord.attempts_made + 1,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None
        job = self.get_job(job_id)
        self.db.refresh(job)
        return job

    def renew_lease(self, job_id: str, lease_seconds: int) -> None:
        now = self.clock()
        self.db.execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.state == JobState.ACTIVE.value)
            .values(lease_expires_at=now + timedelta(seconds=lease_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def mark_completed(self, job_id: str, result: Any = None) -> None:
        job = self.get_job(job_id)
        if job is None:
            return
        now = self.clock()
        job.state = JobState.COMPLETED.value
        job.result = result
        job.error = None
        job.lease_expires_at = None
        job.finished_at = now
        job.updated_at = now
        self.db.commit()
        self.prune()

    def mark_failed(self, job_id: str, error: str, retryable: bool = True) -> Optional[float]:
        """
        Record a failed attempt.

        Returns the backoff in seconds when another attempt is allowed,
        otherwise None and the job is left in ``failed`` for inspection.
        """
        job = self.get_job(job_id)
        if job is None:
            return None

        now = self.clock()
        job.error = error
        job.lease_expires_at = None
        job.updated_at = now

        if retryable and job.attempts_made < job.max_attempts:
            job.state = JobState.DELAYED.value
            self.db.commit()
            return self.policy.backoff_for(job.attempts_made)

        job.state = JobState.FAILED.value
        job.finished_at = now
        self.db.commit()
        logger.error(
            f"Job {job_id} failed after {job.attempts_made} attempt(s): {error}",
            extra={"queue": self.name, "job_id": job_id}
        )
        self.prune()
        return None

    def prune(self) -> int:
        """Trim finished jobs to the policy's retention counts"""
        removed = 0
        for state, keep in (
            (JobState.COMPLETED.value, self.policy.keep_completed),
            (JobState.FAILED.value, self.policy.keep_failed),
        ):
            stale_ids = [
                row[0] for row in self.db.query(JobRecord.id)
                .filter(JobRecord.queue == self.name, JobRecord.state == state)
                .order_by(JobRecord.finished_at.desc(), JobRecord.id.desc())
                .offset(keep)
                .all()
            ]
            if stale_ids:
                removed += self.db.query(JobRecord).filter(
                    JobRecord.id.in_(stale_ids)
                ).delete(synchronize_session=False)
        if removed:
            self.db.commit()
        return removed


def dispatch_requests(db: Session, requests: List[JobRequest], dispatcher=None) -> int:
    """
    Fire-and-forget submission of follow-up jobs.

    Failures are logged and swallowed so the caller's own work continues.
    Returns the number of jobs actually enqueued.
    """
    enqueued = 0
    for request in requests:
        try:
            job = JobQueue(db, request.queue, dispatcher=dispatcher).submit(request)
        except Exception as e:
            db.rollback()
            logger.warning(
                f"Failed to enqueue follow-up job: {e}",
                extra={"queue": request.queue, "job_id": request.job_id}
            )
            continue
        if job is not None:
            enqueued += 1
    return enqueued
