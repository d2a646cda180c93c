"""
Webhook delivery for real-time event notifications.

Supports:
- Slack, Discord and Teams message formats plus a raw JSON envelope
- HMAC-SHA256 signing of custom webhook bodies
- Circuit breaker: endpoints are disabled after repeated failures
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import case, update
from sqlalchemy.orm import Session

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.exceptions import WebhookDeliveryError
from dmarc_pipeline.metrics import record_webhook_delivery
from dmarc_pipeline.models import Webhook, WebhookDelivery, WebhookType

logger = logging.getLogger(__name__)

USER_AGENT = "DMARC-Pipeline-Webhook/1.0"

SLACK_COLORS = {"critical": "#DC2626", "warning": "#F59E0B", "info": "#3B82F6"}
DISCORD_COLORS = {"critical": 14423100, "warning": 16098851, "info": 3901635}
TEAMS_COLORS = {"critical": "DC2626", "warning": "F59E0B", "info": "3B82F6"}
SEVERITY_EMOJI = {"critical": ":red_circle:", "warning": ":orange_circle:"}

EVENT_TITLES = {
    "report.received": "New DMARC Report Received",
    "source.new": "New Email Source Detected",
    "compliance.drop": "Compliance Drop Detected",
}


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    skipped: bool = False
    error: Optional[str] = None


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def event_title(event: str, data: Dict[str, Any]) -> str:
    if event == "alert.created":
        return f"Alert: {data.get('title') or 'New Alert'}"
    return EVENT_TITLES.get(event, f"DMARC Event: {event}")


def event_fields(event: str, data: Dict[str, Any]) -> List[tuple]:
    """(label, value) pairs shown by the chat formats"""
    fields = []
    if data.get("domain"):
        fields.append(("Domain", data["domain"]))
    severity = data.get("severity")
    if severity:
        emoji = SEVERITY_EMOJI.get(severity, ":large_blue_circle:")
        fields.append(("Severity", f"{emoji} {severity.upper()}"))

    if event == "alert.created":
        if data.get("type"):
            fields.append(("Type", data["type"]))
    elif event == "report.received":
        if data.get("reportId"):
            fields.append(("Report ID", data["reportId"]))
        if data.get("orgName"):
            fields.append(("Reporter", data["orgName"]))
        if data.get("messageCount"):
            fields.append(("Messages", str(data["messageCount"])))
    elif event == "source.new":
        if data.get("sourceIp"):
            fields.append(("IP Address", data["sourceIp"]))
        if data.get("organization"):
            fields.append(("Organization", data["organization"]))
        if data.get("country"):
            fields.append(("Location", data["country"]))
    elif event == "compliance.drop":
        if data.get("passRate") is not None:
            fields.append(("Pass Rate", f"{data['passRate']}%"))
        if data.get("previousRate") is not None:
            fields.append(("Previous", f"{data['previousRate']}%"))
    return fields


def format_slack(envelope: Dict[str, Any]) -> Dict[str, Any]:
    event, data = envelope["event"], envelope["data"]
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": event_title(event, data)}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}
                for label, value in event_fields(event, data)
            ],
        },
        {"type": "context", "elements": [{"type": "mrkdwn", "text": envelope["timestamp"]}]},
    ]
    return {
        "attachments": [{
            "color": SLACK_COLORS.get(data.get("severity"), "#0066CC"),
            "blocks": blocks,
        }]
    }


def format_discord(envelope: Dict[str, Any]) -> Dict[str, Any]:
    event, data = envelope["event"], envelope["data"]
    return {
        "embeds": [{
            "title": event_title(event, data),
            "description": data.get("message") or data.get("description"),
            "color": DISCORD_COLORS.get(data.get("severity"), 3447003),
            "fields": [
                {"name": label, "value": value, "inline": True}
                for label, value in event_fields(event, data)
            ],
            "timestamp": envelope["timestamp"],
            "footer": {"text": "DMARC Pipeline"},
        }]
    }


def format_teams(envelope: Dict[str, Any]) -> Dict[str, Any]:
    event, data = envelope["event"], envelope["data"]
    title = event_title(event, data)
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": title,
        "themeColor": TEAMS_COLORS.get(data.get("severity"), "0066CC"),
        "title": title,
        "text": data.get("message") or data.get("description"),
        "sections": [{
            "facts": [{"name": label, "value": value} for label, value in event_fields(event, data)]
        }],
    }


FORMATTERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    WebhookType.SLACK.value: format_slack,
    WebhookType.DISCORD.value: format_discord,
    WebhookType.TEAMS.value: format_teams,
}


def format_payload(webhook_type: str, envelope: Dict[str, Any]) -> Dict[str, Any]:
    formatter = FORMATTERS.get(webhook_type)
    return formatter(envelope) if formatter else envelope


class WebhookDeliveryService:
    """Deliver one event to one webhook endpoint"""

    def __init__(
        self,
        db: Session,
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
        settings=None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.http_client_factory = http_client_factory or (
            lambda: httpx.Client(timeout=self.settings.webhook_timeout_seconds)
        )

    def deliver(self, webhook_id: str, event: str, data: Dict[str, Any]) -> DeliveryResult:
        """
        POST the event to the webhook.

        Raises:
            WebhookDeliveryError: non-2xx response or network failure
        """
        webhook = self.db.query(Webhook).filter(Webhook.id == webhook_id).first()
        if webhook is None:
            logger.warning(f"Webhook {webhook_id} not found, dropping {event}")
            return DeliveryResult(success=False, status_code=404, error="Webhook not found")

        if not webhook.is_active:
            record_webhook_delivery("skipped")
            return DeliveryResult(success=True, skipped=True)

        envelope = {
            "event": event,
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "organizationId": webhook.organization_id,
            "data": data,
        }
        body = json.dumps(format_payload(webhook.type, envelope), default=str).encode()

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": event,
        }
        if webhook.type == WebhookType.CUSTOM.value and webhook.secret:
            headers["X-Webhook-Signature"] = sign_payload(body, webhook.secret)
            headers["X-Webhook-Timestamp"] = str(int(time.time() * 1000))

        start_time = time.time()
        status_code = None
        response_body = None
        error = None
        try:
            with self.http_client_factory() as client:
                response = client.post(webhook.url, content=body, headers=headers)
            status_code = response.status_code
            response_body = response.text[:1000] if response.text else None
            if not response.is_success:
                error = f"HTTP {status_code}: {response.text[:200]}"
        except httpx.HTTPError as e:
            error = str(e) or e.__class__.__name__

        duration_ms = int((time.time() - start_time) * 1000)

        self.db.add(WebhookDelivery(
            webhook_id=webhook.id,
            event=event,
            success=error is None,
            status_code=status_code,
            response_body=response_body,
            error_message=error[:500] if error else None,
            duration_ms=duration_ms,
        ))

        if error is None:
            webhook.failure_count = 0
            webhook.last_triggered_at = datetime.utcnow()
            self.db.commit()
            record_webhook_delivery("success")
            return DeliveryResult(success=True, status_code=status_code)

        self._record_failure(webhook.id, error)
        record_webhook_delivery("failure")
        logger.error(
            f"Webhook delivery failed: {error}",
            extra={"webhook_id": webhook.id, "event": event, "status_code": status_code}
        )
        raise WebhookDeliveryError(error, status_code=status_code)

    def _record_failure(self, webhook_id: str, error: str) -> None:
        threshold = self.settings.webhook_failure_threshold
        # Right-hand side sees the pre-update count
        self.db.execute(
            update(Webhook)
            .where(Webhook.id == webhook_id)
            .values(
                failure_count=Webhook.failure_count + 1,
                is_active=case(
                    (Webhook.failure_count + 1 >= threshold, False),
                    else_=Webhook.is_active,
                ),
                last_failure_at=datetime.utcnow(),
                last_error=error[:500],
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        webhook = self.db.query(Webhook).filter(Webhook.id == webhook_id).first()
        self.db.refresh(webhook)
        if not webhook.is_active:
            logger.warning(
                f"Webhook {webhook.name} disabled after {webhook.failure_count} consecutive failures",
                extra={"webhook_id": webhook_id}
            )


def enable_webhook(db: Session, webhook_id: str) -> Optional[Webhook]:
    """Manually re-enable a webhook disabled by the circuit breaker"""
    webhook = db.query(Webhook).filter(Webhook.id == webhook_id).first()
    if webhook is None:
        return None
    webhook.is_active = True
    webhook.failure_count = 0
    webhook.last_error = None
    db.commit()
    db.refresh(webhook)
    logger.info(f"Webhook {webhook.name} re-enabled", extra={"webhook_id": webhook_id})
    return webhook
