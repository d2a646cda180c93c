"""
Pipeline exception hierarchy

Parse and domain errors are fatal for a single report and are returned to
callers as structured results. Transient and storage errors propagate to the
job layer, which retries them with the owning queue's backoff policy.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors"""


class ReportParseError(PipelineError):
    """Report XML could not be turned into a structured report"""


class MalformedXmlError(ReportParseError):
    """Not well-formed XML, or no <feedback> root"""


class MissingMetadataError(ReportParseError):
    """<report_metadata> element absent"""


class MissingPolicyError(ReportParseError):
    """<policy_published> element absent"""


class MalformedDateRangeError(ReportParseError):
    """<date_range> absent, non-numeric or inverted"""


class DomainMismatchError(PipelineError):
    """Report's published domain differs from the domain it was routed to"""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Report domain mismatch: expected {expected}, got {actual}")


class StorageError(PipelineError):
    """Database write failed; safe to retry"""


class TransientExternalError(PipelineError):
    """Network failure, 5xx or 429 from an external collaborator"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(TransientExternalError):
    """External API answered 429"""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class MailboxError(TransientExternalError):
    """Mailbox provider call failed"""


class WebhookDeliveryError(TransientExternalError):
    """Webhook endpoint did not acknowledge the delivery"""
