"""Integration tests for mailbox sync"""
import gzip
from unittest.mock import patch

import pytest

from dmarc_pipeline.config import Settings
from dmarc_pipeline.exceptions import MailboxError, StorageError
from dmarc_pipeline.jobs.cancellation import AccountStatusCancellationToken, NeverCancelled
from dmarc_pipeline.jobs.queues import JobQueue
from dmarc_pipeline.jobs.types import MAILBOX_SYNC_QUEUE
from dmarc_pipeline.mailbox.base import MailAttachment, MailMessage, Mailbox, SearchPage
from dmarc_pipeline.models import JobRecord, JobState, MailboxAccount, Report
from dmarc_pipeline.services.importer import ReportImporter
from dmarc_pipeline.services.mailbox_sync import (
    MailboxSyncService,
    extract_report_domain,
    request_cancel,
)


class FakeMailbox(Mailbox):
    """In-memory inbox: message id -> [(filename, bytes)]"""

    def __init__(self, messages, label_id="Label_1"):
        self.messages = dict(messages)
        self.label_id = label_id
        self.archived = []
        self.queries = []
        self.fail_messages = set()
        self.fail_attachments = set()
        self.search_error = None
        self.on_get_message = None

    def build_query(self, domains):
        return " ".join(domains)

    def search(self, query, page_token=None, page_size=50):
        if self.search_error:
            raise self.search_error
        self.queries.append(query)
        ids = list(self.messages)
        start = int(page_token or 0)
        end = start + page_size
        return SearchPage(ids[start:end], str(end) if end < len(ids) else None)

    def get_message(self, message_id):
        if self.on_get_message:
            self.on_get_message(message_id)
        if message_id in self.fail_messages:
            raise MailboxError(f"500 fetching {message_id}", status_code=500)
        return MailMessage(
            id=message_id,
            subject="Report domain: example.com",
            attachments=[
                MailAttachment(filename=name, mime_type="application/gzip", data=data)
                for name, data in self.messages[message_id]
            ],
        )

    def get_attachment(self, message_id, attachment):
        if message_id in self.fail_attachments:
            raise MailboxError(f"503 fetching attachment of {message_id}", status_code=503)
        return attachment.data

    def archive(self, message_id, label):
        self.archived.append((message_id, label))

    def ensure_archive_label(self, name):
        return self.label_id


@pytest.fixture
def account(db_session, organization, domain):
    account = MailboxAccount(
        organization_id=organization.id,
        email="dmarc@example.com",
        provider="gmail",
        access_token="token",
    )
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def make_service(db_session, dispatched):
    def _make(mailbox, token=None, **overrides):
        settings = Settings(
            **{
                "mailbox_message_delay_seconds": 0,
                "mailbox_checkpoint_interval": 10,
                **overrides,
            }
        )

        def queue_dispatch(requests):
            dispatched.extend(requests)
            return len(requests)

        return MailboxSyncService(
            db_session,
            mailbox,
            queue_dispatch=queue_dispatch,
            cancellation_token=token or NeverCancelled(),
            sleep=lambda seconds: None,
            settings=settings,
        )

    return _make


def report_messages(report_xml, count, prefix="m"):
    return {
        f"{prefix}{i}": [(f"report-{i}.xml.gz", gzip.compress(report_xml(
            report_id=f"r{i}", records=[{"ip": "209.85.220.41", "count": 1}]
        )))]
        for i in range(count)
    }


@pytest.mark.integration
class TestSyncAccount:
    """Test MailboxSyncService.sync_account"""

    def test_imports_and_archives_every_message(self, db_session, account, report_xml, make_service, dispatched):
        good = gzip.compress(report_xml(report_id="r1", records=[{"ip": "209.85.220.41", "count": 5}]))
        mailbox = FakeMailbox({
            "m1": [("google.com!example.com.xml.gz", good)],
            "m2": [("broken.xml", b"<feedback><oops")],
            "m3": [("other.xml", report_xml(report_id="r3", domain="unknown.example"))],
            "m4": [("again.xml.gz", good)],
        })

        result = make_service(mailbox).sync_account(account.id)

        assert result.emails_processed == 4
        assert result.reports_found == 1
        assert result.reports_skipped == 1
        assert result.errors == 2
        assert [message_id for message_id, _ in mailbox.archived] == ["m1", "m2", "m3", "m4"]
        assert {label for _, label in mailbox.archived} == {"Label_1"}
        assert mailbox.queries == ["example.com"]

        report = db_session.query(Report).one()
        assert report.external_message_id == "m1"
        assert result.follow_ups_enqueued == len(dispatched) == 2

        db_session.refresh(account)
        assert account.sync_status == "idle"
        assert account.last_sync_at is not None
        assert account.archive_label_id == "Label_1"
        assert account.sync_progress["reports_found"] == 1
        assert "completed_at" in account.sync_progress

    def test_existing_label_is_reused(self, db_session, account, report_xml, make_service):
        account.archive_label_id = "Label_9"
        db_session.commit()
        mailbox = FakeMailbox(report_messages(report_xml, 1))

        make_service(mailbox).sync_account(account.id)

        assert mailbox.archived == [("m0", "Label_9")]

    def test_pagination(self, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 5))

        result = make_service(mailbox, mailbox_page_size=2).sync_account(account.id)

        assert result.emails_processed == 5
        assert result.reports_found == 5

    def test_message_cap(self, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 5))

        result = make_service(mailbox, mailbox_max_messages=3).sync_account(account.id)

        assert result.capped is True
        assert result.emails_processed == 3
        assert len(mailbox.archived) == 3

    def test_fetch_error_leaves_message_in_inbox(self, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 3))
        mailbox.fail_messages = {"m1"}

        result = make_service(mailbox).sync_account(account.id)

        assert result.emails_processed == 3
        assert result.errors == 1
        assert "m1" not in [message_id for message_id, _ in mailbox.archived]

    def test_attachment_fetch_error_leaves_message_in_inbox(self, db_session, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 3))
        mailbox.fail_attachments = {"m1"}

        result = make_service(mailbox).sync_account(account.id)

        assert result.emails_processed == 3
        assert result.reports_found == 2
        assert result.errors == 1
        assert [message_id for message_id, _ in mailbox.archived] == ["m0", "m2"]

        # The next sync picks the message up again
        mailbox.fail_attachments = set()
        mailbox.messages = {"m1": mailbox.messages["m1"]}
        retry = make_service(mailbox).sync_account(account.id)

        assert retry.reports_found == 1
        assert db_session.query(Report).count() == 3

    def test_storage_error_fails_sync_without_archiving(self, db_session, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 2))

        with patch.object(
            ReportImporter, "import_report", side_effect=StorageError("database unavailable")
        ):
            with pytest.raises(StorageError):
                make_service(mailbox).sync_account(account.id)

        assert mailbox.archived == []
        assert db_session.query(Report).count() == 0
        db_session.refresh(account)
        assert account.sync_status == "idle"
        assert account.sync_progress["error"] == "database unavailable"

    def test_checkpoints_renew_job_lease(self, db_session, account, report_xml, make_service):
        mailbox = FakeMailbox(report_messages(report_xml, 5))
        renewals = []

        make_service(mailbox, mailbox_checkpoint_interval=2).sync_account(
            account.id, job_lease=lambda: renewals.append(1)
        )

        assert len(renewals) == 2

    def test_failure_returns_account_to_idle(self, db_session, account, make_service):
        mailbox = FakeMailbox({})
        mailbox.search_error = MailboxError("Gmail API returned 503", status_code=503)

        with pytest.raises(MailboxError):
            make_service(mailbox).sync_account(account.id)

        db_session.refresh(account)
        assert account.sync_status == "idle"
        assert account.sync_progress["error"] == "Gmail API returned 503"
        assert "failed_at" in account.sync_progress
        assert account.last_sync_at is None

    def test_cancel_stops_between_messages(self, db_session, account, report_xml, make_service, dispatcher):
        mailbox = FakeMailbox(report_messages(report_xml, 4))
        queue = JobQueue(db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher)

        def cancel_on_second(message_id):
            if message_id == "m1":
                request_cancel(db_session, account.id, queue)

        mailbox.on_get_message = cancel_on_second
        token = AccountStatusCancellationToken(db_session, account.id, ttl=0)

        result = make_service(mailbox, token=token).sync_account(account.id)

        assert result.cancelled is True
        assert result.emails_processed == 2
        assert [message_id for message_id, _ in mailbox.archived] == ["m0", "m1"]
        db_session.refresh(account)
        assert account.sync_status == "idle"
        assert "cancelled_at" in account.sync_progress
        assert account.last_sync_at is None

    def test_missing_account(self, make_service):
        result = make_service(FakeMailbox({})).sync_account("missing")
        assert result.emails_processed == 0


@pytest.mark.integration
class TestRequestCancel:
    """Test request_cancel"""

    def test_removes_queued_syncs_only(self, db_session, account, dispatcher):
        queue = JobQueue(db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher)
        queue.add("sync-mailbox", {"account_id": account.id}, job_id=f"mailbox-sync-{account.id}")
        queue.add("sync-mailbox", {"account_id": account.id}, job_id=f"mailbox-sync-{account.id}-manual-1")
        queue.add("sync-mailbox", {"account_id": "other"}, job_id="mailbox-sync-other")
        queue.claim(f"mailbox-sync-{account.id}-manual-1", 300)

        outcome = request_cancel(db_session, account.id, queue)

        assert outcome == {"cancelled": False, "removed_jobs": 1}
        remaining = {row.id for row in db_session.query(JobRecord.id).all()}
        assert remaining == {f"mailbox-sync-{account.id}-manual-1", "mailbox-sync-other"}
        assert dispatcher.revoked == [f"mailbox-sync-{account.id}"]

    def test_running_sync_is_flagged(self, db_session, account, dispatcher):
        account.sync_status = "syncing"
        db_session.commit()

        outcome = request_cancel(db_session, account.id, JobQueue(db_session, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher))

        assert outcome["cancelled"] is True
        db_session.refresh(account)
        assert account.sync_status == "idle"
        assert "cancelled_at" in account.sync_progress

    def test_unknown_account(self, db_session):
        assert request_cancel(db_session, "missing") == {"cancelled": False, "removed_jobs": 0}


@pytest.mark.unit
class TestExtractReportDomain:
    def test_policy_published_domain(self, report_xml):
        xml = report_xml(domain="Example.COM", records=[{"ip": "209.85.220.41", "count": 1, "dkim_domain": "x.test"}])
        assert extract_report_domain(xml) == "example.com"

    def test_no_domain(self):
        assert extract_report_domain(b"<feedback/>") is None
