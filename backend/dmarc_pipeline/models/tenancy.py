"""
Tenant-side models: organizations, their domains and mailbox accounts.

Organization CRUD, sessions and exports are owned by other services; only the
columns the pipeline reads or prunes are mapped here.
"""
from sqlalchemy import Column, String, DateTime, Boolean, Integer, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from dmarc_pipeline.database import Base


def generate_id() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)

    # Days of report history to keep; None means the configured default
    data_retention_days = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    domains = relationship("Domain", back_populates="organization")

    def __repr__(self):
        return f"<Organization(id={self.id}, name={self.name})>"


class Domain(Base):
    """A domain whose DMARC reports the organization receives"""
    __tablename__ = "domains"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain = Column(String(255), nullable=False, index=True)

    # Set once DNS ownership is proven; unverified domains expire
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    organization = relationship("Organization", back_populates="domains")

    def __repr__(self):
        return f"<Domain(id={self.id}, domain={self.domain})>"


class MailboxAccount(Base):
    """
    A mailbox that receives aggregate reports for an organization.

    sync_status moves idle -> syncing -> idle. Failures never leave the account
    in a separate failed state; they are written to sync_progress instead.
    """
    __tablename__ = "mailbox_accounts"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email = Column(String(255), nullable=False)
    provider = Column(String(20), default="gmail", nullable=False)  # gmail, imap

    # Gmail
    access_token = Column(Text, nullable=True)
    archive_label_id = Column(String(255), nullable=True)

    # IMAP
    imap_host = Column(String(255), nullable=True)
    imap_port = Column(Integer, default=993, nullable=True)
    imap_user = Column(String(255), nullable=True)
    imap_password = Column(String(255), nullable=True)
    imap_folder = Column(String(255), default="INBOX", nullable=True)

    # Sync state
    sync_enabled = Column(Boolean, default=True, nullable=False)
    sync_status = Column(String(20), default="idle", nullable=False)
    sync_progress = Column(JSON, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<MailboxAccount(id={self.id}, email={self.email}, status={self.sync_status})>"


class KnownSender(Base):
    """Pre-classified sending infrastructure (ESPs, relays)"""
    __tablename__ = "known_senders"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    ip_ranges = Column(JSON, nullable=True)  # CIDR strings
    dkim_domains = Column(JSON, nullable=True)
    is_global = Column(Boolean, default=False, nullable=False)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )

    def __repr__(self):
        return f"<KnownSender(id={self.id}, name={self.name})>"


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DataExport(Base):
    __tablename__ = "data_exports"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(20), default="pending", nullable=False)
    file_path = Column(String(1000), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
