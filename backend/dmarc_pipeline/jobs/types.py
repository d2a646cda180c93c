"""
Queue names and the job request value passed between services and workers.

Services describe follow-up work as ``JobRequest`` values and leave it to
the caller to decide whether and how to enqueue them.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

MAILBOX_SYNC_QUEUE = "mailbox-sync"
ALERTS_QUEUE = "alerts"
IP_ENRICHMENT_QUEUE = "ip-enrichment"
WEBHOOK_DELIVERY_QUEUE = "webhook-delivery"
CLEANUP_QUEUE = "cleanup"

CLEANUP_TYPES = ("data_retention", "unverified_domains", "expired_sessions", "expired_exports")


@dataclass
class JobRequest:
    """A job one component asks another to run"""
    queue: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None
    # Refuse the enqueue while a job with the same id is still in flight
    unique: bool = False
    delay: Optional[float] = None


def enrichment_request(source_id: str, ip_address: str) -> JobRequest:
    return JobRequest(
        queue=IP_ENRICHMENT_QUEUE,
        name="enrich-ip",
        payload={"source_id": source_id, "ip_address": ip_address},
        job_id=f"ip-enrichment-{source_id}",
        unique=True,
    )


def alerts_request(report_id: str, domain_id: str, organization_id: str) -> JobRequest:
    return JobRequest(
        queue=ALERTS_QUEUE,
        name="evaluate-report",
        payload={
            "report_id": report_id,
            "domain_id": domain_id,
            "organization_id": organization_id,
        },
        job_id=f"alerts-{report_id}",
        unique=True,
    )


def webhook_request(webhook_id: str, event: str, data: Dict[str, Any]) -> JobRequest:
    # One-shot: every event is its own delivery
    return JobRequest(
        queue=WEBHOOK_DELIVERY_QUEUE,
        name="deliver-webhook",
        payload={"webhook_id": webhook_id, "event": event, "data": data},
        job_id=f"webhook-{webhook_id}-{event}-{uuid.uuid4().hex[:12]}",
    )
