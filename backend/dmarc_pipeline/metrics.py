"""
Prometheus metrics for the DMARC pipeline

Provides:
- HTTP request latency and counts
- Job outcomes per queue
- Business metrics (reports imported, alerts created, webhook deliveries,
  geolocation lookups)
"""
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response
import time
import logging

logger = logging.getLogger(__name__)

metrics_router = APIRouter(tags=["metrics"])

# =============================================================================
# HTTP Metrics
# =============================================================================

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

# =============================================================================
# Business Metrics
# =============================================================================

DMARC_REPORTS_IMPORTED = Counter(
    "dmarc_reports_imported_total",
    "Total number of DMARC report import attempts",
    ["status"]  # success, skipped, failed, mismatch
)

DMARC_RECORDS_INGESTED = Counter(
    "dmarc_records_ingested_total",
    "Total number of DMARC records ingested"
)

MAILBOX_MESSAGES_PROCESSED = Counter(
    "mailbox_messages_processed_total",
    "Total number of mailbox messages scanned by sync",
    ["status"]  # success, failed
)

ALERTS_CREATED = Counter(
    "alerts_created_total",
    "Total number of alerts created or merged",
    ["alert_type", "severity"]
)

WEBHOOK_DELIVERIES = Counter(
    "webhook_deliveries_total",
    "Total number of webhook delivery attempts",
    ["status"]  # success, failed, skipped
)

GEOLOCATION_LOOKUPS = Counter(
    "geolocation_lookups_total",
    "Geolocation resolutions by how they were answered",
    ["source"]  # private, cached, api, not_found, rate_limited
)

# =============================================================================
# Job Metrics
# =============================================================================

JOBS_TOTAL = Counter(
    "pipeline_jobs_total",
    "Total number of queue jobs by outcome",
    ["queue", "status"]  # status: completed, retried, failed, skipped
)

JOB_DURATION = Histogram(
    "pipeline_job_duration_seconds",
    "Queue job duration in seconds",
    ["queue"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300, 900, 1800]
)

JOBS_IN_PROGRESS = Gauge(
    "pipeline_jobs_in_progress",
    "Number of jobs currently executing in this process",
    ["queue"]
)

APP_INFO = Info(
    "dmarc_pipeline",
    "DMARC pipeline application information"
)

APP_INFO.info({
    "version": "1.0.0",
    "framework": "fastapi+celery"
})

# =============================================================================
# Metrics Endpoint
# =============================================================================


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


async def metrics_middleware(request, call_next):
    """Collect HTTP request metrics"""
    method = request.method

    # Collapse ids to keep label cardinality bounded
    parts = []
    for part in request.url.path.split("/"):
        if part.isdigit() or (len(part) == 36 and "-" in part):
            parts.append("{id}")
        else:
            parts.append(part)
    endpoint = "/".join(parts)

    start_time = time.time()
    status_code = "500"
    try:
        response = await call_next(request)
        status_code = str(response.status_code)
        return response
    finally:
        HTTP_REQUEST_DURATION.labels(
            method=method, endpoint=endpoint, status_code=status_code
        ).observe(time.time() - start_time)
        HTTP_REQUESTS_TOTAL.labels(
            method=method, endpoint=endpoint, status_code=status_code
        ).inc()


# =============================================================================
# Helper Functions
# =============================================================================

def record_report_imported(status: str = "success", record_count: int = 0):
    """Record a report import outcome"""
    DMARC_REPORTS_IMPORTED.labels(status=status).inc()
    if record_count:
        DMARC_RECORDS_INGESTED.inc(record_count)


def record_mailbox_message(status: str = "success"):
    MAILBOX_MESSAGES_PROCESSED.labels(status=status).inc()


def record_alert_created(alert_type: str, severity: str):
    ALERTS_CREATED.labels(alert_type=alert_type, severity=severity).inc()


def record_webhook_delivery(status: str):
    WEBHOOK_DELIVERIES.labels(status=status).inc()


def record_geolocation_lookup(source: str):
    GEOLOCATION_LOOKUPS.labels(source=source).inc()


def record_job(queue: str, status: str, duration: float = None):
    """Record a job outcome"""
    JOBS_TOTAL.labels(queue=queue, status=status).inc()
    if duration is not None:
        JOB_DURATION.labels(queue=queue).observe(duration)
