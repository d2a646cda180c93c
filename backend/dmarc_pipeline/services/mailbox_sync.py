"""
Mailbox sync: pull report attachments out of an inbox and import them.

Messages are handled one at a time. A message is archived once its
attachments have been attempted, so a bad report is never fetched twice.
A message whose attachment could not be fetched stays in the inbox for the
next sync, and a storage failure aborts the sync so the job is retried.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.exceptions import ReportParseError, TransientExternalError
from dmarc_pipeline.jobs.cancellation import AccountStatusCancellationToken, CancellationToken, SYNCING
from dmarc_pipeline.jobs.queues import JobQueue, dispatch_requests
from dmarc_pipeline.jobs.scheduler import mailbox_sync_key
from dmarc_pipeline.jobs.types import MAILBOX_SYNC_QUEUE, JobRequest
from dmarc_pipeline.mailbox.base import Mailbox
from dmarc_pipeline.mailbox.gmail import GmailMailbox
from dmarc_pipeline.mailbox.imap import ImapMailbox
from dmarc_pipeline.metrics import record_mailbox_message
from dmarc_pipeline.models import Domain, JobRecord, JobState, MailboxAccount
from dmarc_pipeline.parsers.dmarc_parser import decompress_attachment
from dmarc_pipeline.services.importer import ReportImporter

logger = logging.getLogger(__name__)

IDLE = "idle"
MAX_ERROR_MESSAGES = 20

POLICY_DOMAIN_RE = re.compile(
    r"<policy_published>.*?<domain>\s*([^<\s]+)\s*</domain>", re.IGNORECASE | re.DOTALL
)
DOMAIN_RE = re.compile(r"<domain>\s*([^<\s]+)\s*</domain>", re.IGNORECASE)


def extract_report_domain(xml: bytes) -> Optional[str]:
    """Published domain of a report, without a full parse"""
    text = xml.decode("utf-8", errors="replace")
    match = POLICY_DOMAIN_RE.search(text) or DOMAIN_RE.search(text)
    return match.group(1).lower() if match else None


def build_mailbox(account: MailboxAccount) -> Mailbox:
    if account.provider == "gmail":
        return GmailMailbox(account.access_token)
    if account.provider == "imap":
        return ImapMailbox(
            host=account.imap_host,
            port=account.imap_port or 993,
            user=account.imap_user,
            password=account.imap_password,
            folder=account.imap_folder or "INBOX",
        )
    raise ValueError(f"Unsupported mailbox provider: {account.provider}")


def _now() -> str:
    return datetime.utcnow().isoformat()


@dataclass
class SyncResult:
    account_id: str
    emails_processed: int = 0
    reports_found: int = 0
    reports_skipped: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    follow_ups_enqueued: int = 0
    cancelled: bool = False
    capped: bool = False

    def add_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)
        del self.error_messages[:-MAX_ERROR_MESSAGES]

    def to_dict(self) -> Dict:
        return {
            "emails_processed": self.emails_processed,
            "reports_found": self.reports_found,
            "reports_skipped": self.reports_skipped,
            "errors": self.errors,
            "error_messages": list(self.error_messages),
        }


class MailboxSyncService:
    """Sync one mailbox account per call"""

    def __init__(
        self,
        db: Session,
        mailbox: Mailbox,
        queue_dispatch: Optional[Callable[[List[JobRequest]], int]] = None,
        cancellation_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], None] = time.sleep,
        settings=None,
    ):
        self.db = db
        self.mailbox = mailbox
        self.queue_dispatch = queue_dispatch or (lambda requests: dispatch_requests(db, requests))
        self.cancellation_token = cancellation_token
        self.sleep = sleep
        self.settings = settings or get_settings()
        self.importer = ReportImporter(db)

    def sync_account(self, account_id: str, job_lease: Optional[Callable[[], None]] = None) -> SyncResult:
        """
        Run one sync of the account.

        Args:
            account_id: MailboxAccount id
            job_lease: Called at each checkpoint to keep the job's lease alive

        Raises:
            Whatever stopped the sync; the account is back in ``idle`` with the
            error recorded in ``sync_progress`` first.
        """
        result = SyncResult(account_id=account_id)
        account = self.db.query(MailboxAccount).filter(MailboxAccount.id == account_id).first()
        if account is None:
            logger.warning(f"Mailbox account {account_id} not found, nothing to sync")
            return result

        progress = {"started_at": _now(), **result.to_dict()}
        account.sync_status = SYNCING
        account.sync_progress = progress
        self.db.commit()

        token = self.cancellation_token or AccountStatusCancellationToken(
            self.db, account_id, ttl=self.settings.mailbox_cancel_check_ttl_seconds
        )

        logger.info(f"Starting mailbox sync for {account.email}", extra={"account_id": account_id})
        try:
            self._run(account, result, token, job_lease)
        except Exception as e:
            self.db.rollback()
            self._finish(account, result, IDLE, failed_at=_now(), error=str(e)[:500])
            logger.error(
                f"Mailbox sync failed for {account.email}: {e}",
                extra={"account_id": account_id, **result.to_dict()},
                exc_info=True
            )
            raise

        if result.cancelled:
            self._finish(account, result, IDLE, cancelled_at=_now())
            logger.info(f"Mailbox sync cancelled for {account.email}", extra={"account_id": account_id})
        else:
            account.last_sync_at = datetime.utcnow()
            self._finish(account, result, IDLE, completed_at=_now())
            logger.info(
                f"Mailbox sync completed for {account.email}",
                extra={"account_id": account_id, **result.to_dict()}
            )
        return result

    def _run(self, account, result: SyncResult, token: CancellationToken, job_lease) -> None:
        settings = self.settings

        label = account.archive_label_id
        if not label:
            label = self.mailbox.ensure_archive_label(settings.mailbox_archive_label)
            account.archive_label_id = label
            self.db.commit()

        domains = {
            d.domain.lower(): d
            for d in self.db.query(Domain).filter(Domain.organization_id == account.organization_id).all()
        }
        query = self.mailbox.build_query(sorted(domains))

        page_token = None
        while True:
            page = self.mailbox.search(query, page_token, settings.mailbox_page_size)
            for message_id in page.message_ids:
                if result.emails_processed >= settings.mailbox_max_messages:
                    result.capped = True
                    logger.info(
                        f"Reached {settings.mailbox_max_messages} messages, remaining mail left for next sync",
                        extra={"account_id": account.id}
                    )
                    return
                if token.is_cancelled():
                    result.cancelled = True
                    return

                self._process_message(message_id, domains, label, result)
                result.emails_processed += 1

                if result.emails_processed % settings.mailbox_checkpoint_interval == 0:
                    self._checkpoint(account, result)
                    if job_lease is not None:
                        job_lease()

                if settings.mailbox_message_delay_seconds:
                    self.sleep(settings.mailbox_message_delay_seconds)

            page_token = page.next_page_token
            if not page_token:
                return

    def _process_message(
        self, message_id: str, domains: Dict[str, Domain], label: Optional[str], result: SyncResult
    ) -> None:
        try:
            message = self.mailbox.get_message(message_id)
        except TransientExternalError as e:
            # Left in the inbox for the next sync
            result.add_error(f"Message {message_id}: {e}")
            record_mailbox_message("failed")
            return

        imported_any = False
        keep_in_inbox = False
        for attachment in message.attachments:
            try:
                content = self.mailbox.get_attachment(message_id, attachment)
            except TransientExternalError as e:
                result.add_error(f"{attachment.filename}: {e}")
                keep_in_inbox = True
                continue

            try:
                xml = decompress_attachment(content, attachment.filename)
            except ReportParseError as e:
                result.add_error(f"{attachment.filename}: {e}")
                continue

            report_domain = extract_report_domain(xml)
            domain = domains.get(report_domain) if report_domain else None
            if domain is None:
                result.add_error(f"{attachment.filename}: no matching domain for {report_domain}")
                continue

            # StorageError propagates: the sync fails before this message is archived
            imported = self.importer.import_report(xml, domain.id, dedup_ref=message_id)

            if imported.skipped:
                result.reports_skipped += 1
            elif imported.success:
                result.reports_found += 1
                imported_any = True
                result.follow_ups_enqueued += self._dispatch(imported.follow_ups)
            else:
                result.add_error(f"{attachment.filename}: {imported.error}")

        if keep_in_inbox:
            logger.warning(
                f"Message {message_id} left in inbox after attachment fetch failure",
                extra={"message_id": message_id}
            )
            record_mailbox_message("failed")
            return

        try:
            self.mailbox.archive(message_id, label)
        except TransientExternalError as e:
            result.add_error(f"Archive {message_id}: {e}")

        record_mailbox_message("success" if imported_any else "skipped")

    def _dispatch(self, requests: List[JobRequest]) -> int:
        try:
            return self.queue_dispatch(requests)
        except Exception as e:
            logger.warning(f"Follow-up dispatch failed: {e}", extra={"jobs": len(requests)})
            return 0

    def _checkpoint(self, account: MailboxAccount, result: SyncResult) -> None:
        progress = dict(account.sync_progress or {})
        progress.update(result.to_dict(), last_batch_at=_now())
        account.sync_progress = progress
        self.db.commit()

    def _finish(self, account: MailboxAccount, result: SyncResult, status: str, **extra) -> None:
        progress = dict(account.sync_progress or {})
        progress.update(result.to_dict(), **extra)
        account.sync_status = status
        account.sync_progress = progress
        self.db.commit()


def request_cancel(db: Session, account_id: str, queue: Optional[JobQueue] = None) -> Dict:
    """
    Ask a running sync to stop and drop queued syncs of the account.

    The running worker notices through its cancellation token.
    """
    account = db.query(MailboxAccount).filter(MailboxAccount.id == account_id).first()
    if account is None:
        return {"cancelled": False, "removed_jobs": 0}

    was_syncing = account.sync_status == SYNCING
    if was_syncing:
        progress = dict(account.sync_progress or {})
        progress["cancelled_at"] = _now()
        account.sync_status = IDLE
        account.sync_progress = progress
        db.commit()

    queue = queue or JobQueue(db, MAILBOX_SYNC_QUEUE)
    key = mailbox_sync_key(account_id)
    queued = db.query(JobRecord.id).filter(
        JobRecord.queue == MAILBOX_SYNC_QUEUE,
        or_(JobRecord.id == key, JobRecord.id.like(f"{key}-manual-%")),
        JobRecord.state.in_([JobState.WAITING.value, JobState.DELAYED.value]),
    ).all()
    removed = sum(1 for (job_id,) in queued if queue.remove(job_id))

    logger.info(
        f"Sync cancel requested for {account.email}",
        extra={"account_id": account_id, "was_syncing": was_syncing, "removed_jobs": removed}
    )
    return {"cancelled": was_syncing, "removed_jobs": removed}
