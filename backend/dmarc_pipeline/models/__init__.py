"""
SQLAlchemy models for the DMARC pipeline.

All models are exported from this module for easy importing.
"""

# Tenant models
from dmarc_pipeline.models.tenancy import (
    Organization, Domain, MailboxAccount, KnownSender, UserSession, DataExport, generate_id
)

# DMARC models
from dmarc_pipeline.models.dmarc import (
    Report, Record, DkimResult, SpfResult, Source, Subdomain
)

# Alert models
from dmarc_pipeline.models.alert import Alert, AlertType, AlertSeverity

# Webhook models
from dmarc_pipeline.models.webhook import Webhook, WebhookDelivery, WebhookEvent, WebhookType

# Job models
from dmarc_pipeline.models.job import JobRecord, JobState, IN_FLIGHT_STATES

__all__ = [
    # Tenant models
    "Organization",
    "Domain",
    "MailboxAccount",
    "KnownSender",
    "UserSession",
    "DataExport",
    "generate_id",
    # DMARC models
    "Report",
    "Record",
    "DkimResult",
    "SpfResult",
    "Source",
    "Subdomain",
    # Alert models
    "Alert",
    "AlertType",
    "AlertSeverity",
    # Webhook models
    "Webhook",
    "WebhookDelivery",
    "WebhookEvent",
    "WebhookType",
    # Job models
    "JobRecord",
    "JobState",
    "IN_FLIGHT_STATES",
]
