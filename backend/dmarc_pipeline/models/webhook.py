from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text, ForeignKey, JSON
from datetime import datetime
from enum import Enum
from dmarc_pipeline.database import Base
from dmarc_pipeline.models.tenancy import generate_id


class WebhookEvent(str, Enum):
    """Events a webhook can subscribe to"""
    REPORT_RECEIVED = "report.received"
    SOURCE_NEW = "source.new"
    COMPLIANCE_DROP = "compliance.drop"
    ALERT_CREATED = "alert.created"
    WILDCARD = "*"


class WebhookType(str, Enum):
    SLACK = "slack"
    DISCORD = "discord"
    TEAMS = "teams"
    CUSTOM = "custom"


class Webhook(Base):
    """Configured webhook endpoint of an organization"""
    __tablename__ = "webhooks"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False)
    url = Column(String(500), nullable=False)
    type = Column(String(20), default=WebhookType.CUSTOM.value, nullable=False)
    secret = Column(String(128), nullable=True)  # For HMAC signing

    # Subscriptions and filters (JSON arrays; empty filter matches everything)
    events = Column(JSON, nullable=False)
    severity_filter = Column(JSON, nullable=True)
    domain_filter = Column(JSON, nullable=True)

    # Circuit breaker
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    failure_count = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Webhook(name={self.name}, url={self.url}, active={self.is_active})>"


class WebhookDelivery(Base):
    """Log of webhook delivery attempts"""
    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=generate_id)
    webhook_id = Column(
        String(36), ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False, index=True
    )

    event = Column(String(50), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(String(500), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<WebhookDelivery(event={self.event}, success={self.success})>"
