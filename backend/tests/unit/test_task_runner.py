"""Unit tests for the job-aware Celery task base and Celery configuration"""
import pytest

from dmarc_pipeline.celery_app import celery_app
from dmarc_pipeline.exceptions import ReportParseError
from dmarc_pipeline.jobs.queues import QUEUE_POLICIES, JobQueue
from dmarc_pipeline.jobs.types import CLEANUP_QUEUE
from dmarc_pipeline.models import JobState
from dmarc_pipeline.tasks.base import JobTask


class ProbeTask(JobTask):
    name = "tests.probe_task"
    queue_name = CLEANUP_QUEUE


@pytest.fixture
def task(db_session):
    probe = ProbeTask()
    probe._db = db_session
    return probe


@pytest.fixture
def cleanup_queue(db_session, dispatcher):
    queue = JobQueue(db_session, CLEANUP_QUEUE, dispatcher=dispatcher)
    queue.add("cleanup-expired_sessions", {"cleanup_type": "expired_sessions"}, job_id="cleanup-1")
    return queue


@pytest.mark.unit
class TestRunJob:
    """Test JobTask.run_job outcomes"""

    def test_success_completes_job(self, task, cleanup_queue):
        outcome = task.run_job("cleanup-1", lambda queue, job: {"deleted": 3})

        assert outcome == {"status": "completed", "job_id": "cleanup-1", "result": {"deleted": 3}}
        job = cleanup_queue.get_job("cleanup-1")
        assert job.state == JobState.COMPLETED.value
        assert job.attempts_made == 1

    def test_unclaimable_job_is_skipped(self, task):
        assert task.run_job("missing", lambda queue, job: None) == {"status": "skipped", "job_id": "missing"}

    def test_non_retryable_error_fails_job(self, task, cleanup_queue):
        def handler(queue, job):
            raise ReportParseError("not a report")

        outcome = task.run_job("cleanup-1", handler)

        assert outcome["status"] == "failed"
        assert cleanup_queue.get_job("cleanup-1").state == JobState.FAILED.value

    def test_exhausted_attempts_fail_job(self, task, cleanup_queue):
        def handler(queue, job):
            raise RuntimeError("database went away")

        outcome = task.run_job("cleanup-1", handler)

        assert outcome == {"status": "failed", "job_id": "cleanup-1", "error": "database went away"}
        assert cleanup_queue.get_job("cleanup-1").error == "database went away"


@pytest.mark.unit
class TestCeleryConfig:
    """Test queue routing and beat schedule"""

    def test_tasks_route_to_their_queue(self):
        routes = celery_app.conf.task_routes
        for name, policy in QUEUE_POLICIES.items():
            assert routes[policy.task_name] == {"queue": name}

    def test_acks_late(self):
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.task_reject_on_worker_lost is True

    def test_beat_schedule(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "dmarc_pipeline.tasks.scheduling.schedule_mailbox_syncs_task",
            "dmarc_pipeline.tasks.scheduling.schedule_cleanup_task",
        }
