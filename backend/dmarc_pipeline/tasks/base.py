"""
Base task tying a Celery task to its JobRecord.

The Celery task id is the job key. A task claims its record before doing
any work, so a redelivered or revoked-but-delivered task finds nothing to
claim and returns immediately.
"""

import logging
import time
from typing import Any, Callable

from celery import Task

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.database import SessionLocal
from dmarc_pipeline.exceptions import DomainMismatchError, RateLimitedError, ReportParseError
from dmarc_pipeline.jobs.queues import JobQueue
from dmarc_pipeline.metrics import JOBS_IN_PROGRESS, record_job
from dmarc_pipeline.models import JobRecord

logger = logging.getLogger(__name__)

# Retrying cannot change the outcome
NON_RETRYABLE = (ReportParseError, DomainMismatchError, ValueError)


class JobTask(Task):
    """Base task that manages the database session and job bookkeeping"""

    _db = None
    queue_name: str = None

    @property
    def db(self):
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task completes"""
        if self._db is not None:
            self._db.close()
            self._db = None

    def run_job(self, job_id: str, handler: Callable[[JobQueue, JobRecord], Any]) -> dict:
        """
        Claim the job, run ``handler`` and record the outcome.

        Retryable errors are re-raised through ``self.retry`` with the
        queue's backoff until the job's attempts are used up.
        """
        settings = get_settings()
        queue = JobQueue(self.db, self.queue_name)

        job = queue.claim(job_id, settings.job_lease_seconds)
        if job is None:
            logger.info(f"Job {job_id} is not claimable, skipping", extra={"queue": self.queue_name})
            record_job(self.queue_name, "skipped")
            return {"status": "skipped", "job_id": job_id}

        logger.info(
            f"Starting job {job_id} (attempt {job.attempts_made}/{job.max_attempts})",
            extra={"queue": self.queue_name, "job_id": job_id}
        )
        JOBS_IN_PROGRESS.labels(queue=self.queue_name).inc()
        start_time = time.time()
        try:
            result = handler(queue, job)
        except NON_RETRYABLE as e:
            self.db.rollback()
            queue.mark_failed(job_id, str(e), retryable=False)
            record_job(self.queue_name, "failed", time.time() - start_time)
            return {"status": "failed", "job_id": job_id, "error": str(e)}
        except Exception as e:
            self.db.rollback()
            countdown = queue.mark_failed(job_id, str(e))
            if countdown is None:
                record_job(self.queue_name, "failed", time.time() - start_time)
                logger.error(f"Error in job {job_id}: {e}", exc_info=True)
                return {"status": "failed", "job_id": job_id, "error": str(e)}

            if isinstance(e, RateLimitedError) and e.retry_after:
                countdown = max(countdown, e.retry_after)
            record_job(self.queue_name, "retried", time.time() - start_time)
            logger.warning(
                f"Job {job_id} failed, retrying in {countdown}s: {e}",
                extra={"queue": self.queue_name, "job_id": job_id}
            )
            raise self.retry(exc=e, countdown=countdown, max_retries=None)
        finally:
            JOBS_IN_PROGRESS.labels(queue=self.queue_name).dec()

        queue.mark_completed(job_id, result)
        record_job(self.queue_name, "completed", time.time() - start_time)
        return {"status": "completed", "job_id": job_id, "result": result}
