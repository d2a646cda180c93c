from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    service: str
    database: str


class JobResponse(BaseModel):
    id: str
    queue: str
    name: str
    state: str
    payload: Optional[Dict[str, Any]] = None
    attempts_made: int
    max_attempts: int
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueueSummary(BaseModel):
    queue: str
    counts: Dict[str, int]
    recent: List[JobResponse] = []


class JobsOverviewResponse(BaseModel):
    queues: List[QueueSummary]


class SyncTriggerResponse(BaseModel):
    job_id: str
    state: str
    already_running: bool = False


class SyncCancelResponse(BaseModel):
    cancelled: bool
    removed_jobs: int


class SyncStatusResponse(BaseModel):
    account_id: str
    sync_status: str
    sync_progress: Optional[Dict[str, Any]] = None
    last_sync_at: Optional[datetime] = None


class UploadedReport(BaseModel):
    filename: str
    status: str  # imported, skipped, failed
    report_id: Optional[str] = None
    records: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None


class UploadReportsResponse(BaseModel):
    imported: int
    skipped: int
    failed: int
    files: List[UploadedReport]


class WebhookResponse(BaseModel):
    id: str
    name: str
    url: str
    type: str
    is_active: bool
    failure_count: int
    last_triggered_at: Optional[datetime] = None

    class Config:
        from_attributes = True
