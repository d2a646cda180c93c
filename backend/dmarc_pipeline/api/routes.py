import logging
from typing import List

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from dmarc_pipeline.database import get_db
from dmarc_pipeline.error_handlers import NotFoundError
from dmarc_pipeline.exceptions import ReportParseError
from dmarc_pipeline.jobs.queues import QUEUE_POLICIES, CeleryDispatcher, JobQueue, dispatch_requests
from dmarc_pipeline.jobs.scheduler import trigger_mailbox_sync
from dmarc_pipeline.jobs.types import MAILBOX_SYNC_QUEUE
from dmarc_pipeline.models import Domain, JobRecord, MailboxAccount
from dmarc_pipeline.parsers.dmarc_parser import decompress_attachment
from dmarc_pipeline.schemas import (
    JobResponse,
    JobsOverviewResponse,
    QueueSummary,
    SyncCancelResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
    UploadedReport,
    UploadReportsResponse,
    WebhookResponse,
)
from dmarc_pipeline.services.importer import ReportImporter
from dmarc_pipeline.services.mailbox_sync import request_cancel
from dmarc_pipeline.services.webhook_delivery import enable_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

MAX_FILE_SIZE = 52_428_800  # 50MB
ALLOWED_EXTENSIONS = (".xml", ".gz", ".zip")


def get_dispatcher():
    """Job dispatcher; overridden in tests"""
    return CeleryDispatcher()


def _get_account(db: Session, account_id: str) -> MailboxAccount:
    account = db.query(MailboxAccount).filter(MailboxAccount.id == account_id).first()
    if account is None:
        raise NotFoundError(f"Mailbox account {account_id} not found", resource_type="account")
    return account


# ==================== Mailbox sync ====================

@router.post("/accounts/{account_id}/sync", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    account_id: str,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Queue a one-shot sync, or report the sync already in flight"""
    _get_account(db, account_id)
    job, already_running = trigger_mailbox_sync(db, account_id, dispatcher=dispatcher)
    return SyncTriggerResponse(
        job_id=job.id,
        state=job.state,
        already_running=already_running,
    )


@router.post("/accounts/{account_id}/sync/cancel", response_model=SyncCancelResponse)
async def cancel_sync(
    account_id: str,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    _get_account(db, account_id)
    outcome = request_cancel(db, account_id, JobQueue(db, MAILBOX_SYNC_QUEUE, dispatcher=dispatcher))
    return SyncCancelResponse(**outcome)


@router.get("/accounts/{account_id}/sync", response_model=SyncStatusResponse)
async def sync_status(account_id: str, db: Session = Depends(get_db)):
    account = _get_account(db, account_id)
    return SyncStatusResponse(
        account_id=account.id,
        sync_status=account.sync_status,
        sync_progress=account.sync_progress,
        last_sync_at=account.last_sync_at,
    )


# ==================== Report upload ====================

@router.post("/domains/{domain_id}/reports", response_model=UploadReportsResponse)
async def upload_reports(
    domain_id: str,
    files: List[UploadFile] = File(..., description="DMARC report files (.xml, .gz, .zip)"),
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """
    Import uploaded aggregate reports into a domain.

    Each file is imported independently; one bad file does not stop the rest.
    """
    if db.query(Domain).filter(Domain.id == domain_id).first() is None:
        raise NotFoundError(f"Domain {domain_id} not found", resource_type="domain")

    importer = ReportImporter(db)
    results: List[UploadedReport] = []

    for upload_file in files:
        filename = upload_file.filename or "upload"
        content = await upload_file.read()

        if not filename.lower().endswith(ALLOWED_EXTENSIONS):
            results.append(UploadedReport(
                filename=filename, status="failed",
                error=f"Invalid file type. Allowed: {', '.join(ALLOWED_EXTENSIONS)}",
            ))
            continue
        if len(content) > MAX_FILE_SIZE:
            results.append(UploadedReport(
                filename=filename, status="failed",
                error=f"File too large. Maximum size: {MAX_FILE_SIZE // 1_048_576}MB",
            ))
            continue

        try:
            xml = decompress_attachment(content, filename)
        except ReportParseError as e:
            results.append(UploadedReport(
                filename=filename, status="failed", error=str(e), error_type=type(e).__name__
            ))
            continue

        outcome = importer.import_report(xml, domain_id, dedup_ref=f"upload:{filename}")
        if outcome.skipped:
            status = "skipped"
        elif outcome.success:
            status = "imported"
            dispatch_requests(db, outcome.follow_ups, dispatcher=dispatcher)
        else:
            status = "failed"

        results.append(UploadedReport(
            filename=filename,
            status=status,
            report_id=outcome.report_id,
            records=outcome.record_count,
            error=outcome.error,
            error_type=outcome.error_type,
        ))

    return UploadReportsResponse(
        imported=sum(1 for r in results if r.status == "imported"),
        skipped=sum(1 for r in results if r.status == "skipped"),
        failed=sum(1 for r in results if r.status == "failed"),
        files=results,
    )


# ==================== Jobs ====================

@router.get("/jobs", response_model=JobsOverviewResponse)
async def list_jobs(
    limit: int = Query(10, ge=0, le=100, description="Recent jobs per queue"),
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Per-queue state counts and the most recently updated jobs"""
    summaries = []
    for name in QUEUE_POLICIES:
        queue = JobQueue(db, name, dispatcher=dispatcher)
        summaries.append(QueueSummary(
            queue=name,
            counts=queue.counts(),
            recent=[JobResponse.model_validate(job) for job in queue.recent(limit)],
        ))
    return JobsOverviewResponse(queues=summaries)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, db: Session = Depends(get_db), dispatcher=Depends(get_dispatcher)):
    job = db.query(JobRecord).filter(JobRecord.id == job_id).first()
    if job is None:
        raise NotFoundError(f"Job {job_id} not found", resource_type="job")

    response = JobResponse.model_validate(job)
    response.state = JobQueue(db, job.queue, dispatcher=dispatcher).get_state(job_id)
    return response


# ==================== Webhooks ====================

@router.post("/webhooks/{webhook_id}/enable", response_model=WebhookResponse)
async def enable(webhook_id: str, db: Session = Depends(get_db)):
    """Re-enable a webhook disabled after repeated delivery failures"""
    webhook = enable_webhook(db, webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook {webhook_id} not found", resource_type="webhook")
    return webhook
