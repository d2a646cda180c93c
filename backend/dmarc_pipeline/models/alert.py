from sqlalchemy import Column, String, DateTime, Boolean, Text, ForeignKey, JSON, Index
from datetime import datetime
import enum
from dmarc_pipeline.database import Base
from dmarc_pipeline.models.tenancy import generate_id


class AlertType(str, enum.Enum):
    PASS_RATE_DROP = "pass_rate_drop"
    NEW_SOURCE = "new_source"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Alert(Base):
    """
    Alert raised by report evaluation.

    alert_metadata holds what deduplication needs, e.g. ``source_ips`` for
    new-source alerts.
    """
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_domain_type_created", "domain_id", "type", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain_id = Column(String(36), ForeignKey("domains.id", ondelete="CASCADE"), nullable=True)

    type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    fingerprint = Column(String(64), nullable=False, index=True)
    alert_metadata = Column("metadata", JSON, nullable=True)

    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Alert(id={self.id}, type={self.type}, severity={self.severity})>"
