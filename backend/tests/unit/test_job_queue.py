"""Unit tests for job queue bookkeeping"""
from datetime import datetime, timedelta

import pytest

from dmarc_pipeline.jobs.queues import (
    QUEUE_POLICIES,
    STALLED,
    JobQueue,
    QueuePolicy,
    dispatch_requests,
    get_policy,
)
from dmarc_pipeline.jobs.types import (
    CLEANUP_QUEUE,
    IP_ENRICHMENT_QUEUE,
    MAILBOX_SYNC_QUEUE,
    alerts_request,
    enrichment_request,
)
from dmarc_pipeline.models import JobRecord, JobState

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def sync_queue(db_session, dispatcher):
    return JobQueue(db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher, clock=lambda: NOW)


@pytest.mark.unit
class TestQueuePolicy:
    """Test retry policy arithmetic"""

    def test_exponential_backoff(self):
        policy = get_policy(MAILBOX_SYNC_QUEUE)
        assert [policy.backoff_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    def test_backoff_is_capped(self):
        policy = get_policy(IP_ENRICHMENT_QUEUE)
        assert policy.backoff_for(1) == 30.0
        assert policy.backoff_for(5) == 300.0

    def test_no_backoff(self):
        assert QueuePolicy(name="q", task_name="t", attempts=1, backoff=None).backoff_for(3) == 0.0

    def test_every_queue_has_a_policy(self):
        assert set(QUEUE_POLICIES) == {
            "mailbox-sync", "alerts", "ip-enrichment", "webhook-delivery", "cleanup"
        }
        assert get_policy(CLEANUP_QUEUE).attempts == 1

    def test_unknown_queue(self):
        with pytest.raises(ValueError):
            get_policy("nope")


@pytest.mark.unit
class TestEnqueue:
    """Test add / add_unique"""

    def test_add_persists_and_dispatches(self, sync_queue, dispatcher):
        job = sync_queue.add("sync-mailbox", {"account_id": "a1"}, job_id="mailbox-sync-a1")

        assert job.state == JobState.WAITING.value
        assert job.max_attempts == 3
        assert dispatcher.dispatched == [("mailbox-sync", "mailbox-sync-a1", {"account_id": "a1"}, None)]

    def test_add_with_delay_is_delayed(self, sync_queue):
        job = sync_queue.add("sync-mailbox", job_id="j1", delay=30)
        assert job.state == JobState.DELAYED.value

    def test_generated_job_id(self, sync_queue):
        job = sync_queue.add("sync-mailbox")
        assert job.id.startswith("mailbox-sync-")

    def test_failed_dispatch_removes_record(self, db_session, sync_queue, dispatcher):
        dispatcher.fail = True

        with pytest.raises(ConnectionError):
            sync_queue.add("sync-mailbox", job_id="mailbox-sync-a1")

        assert db_session.query(JobRecord).count() == 0

    def test_add_unique_skips_in_flight_job(self, sync_queue, dispatcher):
        first = sync_queue.add_unique("sync-mailbox", job_id="mailbox-sync-a1")
        second = sync_queue.add_unique("sync-mailbox", job_id="mailbox-sync-a1")

        assert first is not None
        assert second is None
        assert dispatcher.job_ids() == ["mailbox-sync-a1"]

    def test_add_unique_replaces_finished_job(self, sync_queue, dispatcher):
        sync_queue.add_unique("sync-mailbox", job_id="mailbox-sync-a1")
        sync_queue.claim("mailbox-sync-a1", 300)
        sync_queue.mark_completed("mailbox-sync-a1", {"emails_processed": 0})

        again = sync_queue.add_unique("sync-mailbox", job_id="mailbox-sync-a1")

        assert again is not None
        assert again.state == JobState.WAITING.value
        assert again.attempts_made == 0
        assert dispatcher.job_ids() == ["mailbox-sync-a1", "mailbox-sync-a1"]

    def test_add_unique_replaces_stalled_job(self, db_session, dispatcher):
        early = JobQueue(db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher, clock=lambda: NOW)
        early.add_unique("sync-mailbox", job_id="mailbox-sync-a1")
        early.claim("mailbox-sync-a1", 60)

        later = JobQueue(
            db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher,
            clock=lambda: NOW + timedelta(minutes=5),
        )
        assert later.get_state("mailbox-sync-a1") == STALLED
        assert later.add_unique("sync-mailbox", job_id="mailbox-sync-a1") is not None

    def test_add_unique_requires_job_id(self, sync_queue):
        with pytest.raises(ValueError):
            sync_queue.add_unique("sync-mailbox")

    def test_submit_rejects_other_queue(self, sync_queue):
        with pytest.raises(ValueError):
            sync_queue.submit(alerts_request("r1", "d1", "o1"))


@pytest.mark.unit
class TestLifecycle:
    """Test claim / mark_failed / mark_completed"""

    def test_claim_counts_attempt_and_sets_lease(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")

        job = sync_queue.claim("j1", 300)

        assert job.state == JobState.ACTIVE.value
        assert job.attempts_made == 1
        assert job.lease_expires_at == NOW + timedelta(seconds=300)

    def test_duplicate_delivery_is_not_claimable(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        assert sync_queue.claim("j1", 300) is not None
        assert sync_queue.claim("j1", 300) is None

    def test_expired_lease_can_be_reclaimed(self, db_session, sync_queue, dispatcher):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 60)

        later = JobQueue(
            db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher,
            clock=lambda: NOW + timedelta(minutes=2),
        )
        job = later.claim("j1", 60)

        assert job is not None
        assert job.attempts_made == 2

    def test_removed_job_is_not_claimable(self, sync_queue):
        assert sync_queue.claim("missing", 300) is None

    def test_retry_until_attempts_exhausted(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")

        backoffs = []
        for _ in range(3):
            sync_queue.claim("j1", 300)
            backoffs.append(sync_queue.mark_failed("j1", "IMAP timeout"))

        assert backoffs == [5.0, 10.0, None]
        job = sync_queue.get_job("j1")
        assert job.state == JobState.FAILED.value
        assert job.error == "IMAP timeout"
        assert job.finished_at == NOW

    def test_delayed_between_attempts(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 300)
        sync_queue.mark_failed("j1", "boom")

        assert sync_queue.get_state("j1") == JobState.DELAYED.value

    def test_non_retryable_fails_immediately(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 300)

        assert sync_queue.mark_failed("j1", "bad xml", retryable=False) is None
        assert sync_queue.get_state("j1") == JobState.FAILED.value

    def test_mark_completed_stores_result(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 300)
        sync_queue.mark_completed("j1", {"reports_found": 2})

        job = sync_queue.get_job("j1")
        assert job.state == JobState.COMPLETED.value
        assert job.result == {"reports_found": 2}
        assert job.lease_expires_at is None

    def test_renew_lease(self, db_session, sync_queue, dispatcher):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 60)

        later = JobQueue(
            db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher,
            clock=lambda: NOW + timedelta(seconds=50),
        )
        later.renew_lease("j1", 60)

        db_session.expire_all()
        assert sync_queue.get_job("j1").lease_expires_at == NOW + timedelta(seconds=110)


@pytest.mark.unit
class TestInspectionAndRetention:
    """Test counts, remove and prune"""

    def test_counts(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.add("sync-mailbox", job_id="j2")
        sync_queue.claim("j2", 300)

        counts = sync_queue.counts()
        assert counts["waiting"] == 1
        assert counts["active"] == 1
        assert counts["failed"] == 0

    def test_remove_waiting_job(self, sync_queue, dispatcher):
        sync_queue.add("sync-mailbox", job_id="j1")

        assert sync_queue.remove("j1") is True
        assert sync_queue.get_job("j1") is None
        assert dispatcher.revoked == ["j1"]

    def test_active_job_is_not_removed(self, sync_queue):
        sync_queue.add("sync-mailbox", job_id="j1")
        sync_queue.claim("j1", 300)

        assert sync_queue.remove("j1") is False
        assert sync_queue.get_job("j1") is not None

    def test_prune_keeps_most_recent(self, db_session, dispatcher):
        queue = JobQueue(db_session, CLEANUP_QUEUE, dispatcher=dispatcher)
        keep = queue.policy.keep_completed
        for i in range(keep + 3):
            db_session.add(JobRecord(
                id=f"cleanup-{i:03d}",
                queue=CLEANUP_QUEUE,
                name="cleanup",
                state=JobState.COMPLETED.value,
                finished_at=NOW + timedelta(minutes=i),
            ))
        db_session.commit()

        assert queue.prune() == 3
        remaining = {row.id for row in db_session.query(JobRecord.id).all()}
        assert len(remaining) == keep
        assert "cleanup-000" not in remaining
        assert f"cleanup-{keep + 2:03d}" in remaining


@pytest.mark.unit
class TestDispatchRequests:
    """Test fire-and-forget follow-up submission"""

    def test_duplicates_are_enqueued_once(self, db_session, dispatcher):
        requests = [enrichment_request("s1", "209.85.220.41"), enrichment_request("s1", "209.85.220.41")]

        assert dispatch_requests(db_session, requests, dispatcher=dispatcher) == 1
        assert dispatcher.job_ids() == ["ip-enrichment-s1"]

    def test_broker_failure_is_swallowed(self, db_session, dispatcher):
        dispatcher.fail = True

        assert dispatch_requests(db_session, [alerts_request("r1", "d1", "o1")], dispatcher=dispatcher) == 0
        assert db_session.query(JobRecord).count() == 0
