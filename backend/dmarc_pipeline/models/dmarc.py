from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, JSON, Float, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime
from dmarc_pipeline.database import Base
from dmarc_pipeline.models.tenancy import generate_id


class Report(Base):
    """Parsed DMARC aggregate report. Immutable once created."""
    __tablename__ = "reports"
    __table_args__ = (
        UniqueConstraint("report_id", "org_name", name="uq_reports_report_org"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    domain_id = Column(
        String(36), ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Report metadata
    report_id = Column(String(500), nullable=False, index=True)
    org_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    extra_contact_info = Column(String(500), nullable=True)

    # Date range [begin, end)
    date_begin = Column(DateTime, nullable=False)
    date_end = Column(DateTime, nullable=False, index=True)

    # Policy published
    policy_domain = Column(String(255), nullable=False)
    adkim = Column(String(1), nullable=True)
    aspf = Column(String(1), nullable=True)
    p = Column(String(20), nullable=False)
    sp = Column(String(20), nullable=True)
    pct = Column(Integer, default=100)
    fo = Column(String(10), nullable=True)

    raw_xml = Column(Text, nullable=True)

    # Mailbox message the report arrived in
    external_message_id = Column(String(255), nullable=True, index=True)

    imported_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    records = relationship("Record", back_populates="report", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Report(id={self.id}, report_id={self.report_id}, org={self.org_name})>"


class Record(Base):
    """One source IP x disposition row of a report"""
    __tablename__ = "records"

    id = Column(String(36), primary_key=True, default=generate_id)
    report_id = Column(
        String(36), ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )

    source_ip = Column(String(45), nullable=False, index=True)
    count = Column(Integer, nullable=False)

    # Policy evaluated
    disposition = Column(String(20), nullable=False)
    dmarc_dkim = Column(String(10), nullable=True)
    dmarc_spf = Column(String(10), nullable=True)
    policy_override_reasons = Column(JSON, nullable=True)

    # Identifiers
    header_from = Column(String(255), nullable=True)
    envelope_from = Column(String(255), nullable=True)
    envelope_to = Column(String(255), nullable=True)

    report = relationship("Report", back_populates="records")
    dkim_results = relationship("DkimResult", cascade="all, delete-orphan")
    spf_results = relationship("SpfResult", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Record(id={self.id}, source_ip={self.source_ip}, count={self.count})>"


class DkimResult(Base):
    __tablename__ = "dkim_results"

    id = Column(String(36), primary_key=True, default=generate_id)
    record_id = Column(
        String(36), ForeignKey("records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain = Column(String(255), nullable=False)
    selector = Column(String(255), nullable=True)
    result = Column(String(20), nullable=False)
    human_result = Column(String(255), nullable=True)


class SpfResult(Base):
    __tablename__ = "spf_results"

    id = Column(String(36), primary_key=True, default=generate_id)
    record_id = Column(
        String(36), ForeignKey("records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain = Column(String(255), nullable=False)
    scope = Column(String(20), nullable=True)
    result = Column(String(20), nullable=False)


class Source(Base):
    """
    Rolling per-(domain, IP) aggregate.

    Only ever changed through the additive upsert in the importer, so
    concurrent imports of the same IP cannot lose increments.
    """
    __tablename__ = "sources"
    __table_args__ = (
        UniqueConstraint("domain_id", "source_ip", name="uq_sources_domain_ip"),
        Index("ix_sources_source_ip", "source_ip"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    domain_id = Column(
        String(36), ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_ip = Column(String(45), nullable=False)

    total_messages = Column(Integer, default=0, nullable=False)
    passed_messages = Column(Integer, default=0, nullable=False)
    failed_messages = Column(Integer, default=0, nullable=False)
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False)

    # Geolocation, filled in asynchronously by enrichment
    country = Column(String(100), nullable=True)
    country_code = Column(String(2), nullable=True)
    region = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    asn = Column(String(20), nullable=True)
    organization = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    known_sender_id = Column(
        String(36), ForeignKey("known_senders.id", ondelete="SET NULL"), nullable=True
    )

    def __repr__(self):
        return f"<Source(domain_id={self.domain_id}, ip={self.source_ip}, total={self.total_messages})>"


class Subdomain(Base):
    """Rolling per-(domain, subdomain) aggregate, same shape as Source"""
    __tablename__ = "subdomains"
    __table_args__ = (
        UniqueConstraint("domain_id", "subdomain", name="uq_subdomains_domain_name"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    domain_id = Column(
        String(36), ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subdomain = Column(String(255), nullable=False)

    total_messages = Column(Integer, default=0, nullable=False)
    passed_messages = Column(Integer, default=0, nullable=False)
    failed_messages = Column(Integer, default=0, nullable=False)
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Subdomain(domain_id={self.domain_id}, subdomain={self.subdomain})>"
