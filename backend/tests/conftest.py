"""
Test Configuration and Fixtures

Runs against an in-memory SQLite database by default. Set TEST_DATABASE_URL
to run the same suite against PostgreSQL, e.g. inside Docker Compose:
postgresql://dmarc:dmarc@db:5432/dmarc_test
"""

import os

# Must be set before dmarc_pipeline is imported: settings and the engine are
# built at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy_utils import database_exists, create_database

from dmarc_pipeline.database import Base

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture(scope="function")
def db_engine():
    """Fresh schema per test; services commit, so there is no outer transaction to roll back"""
    import dmarc_pipeline.models  # noqa: F401  registers every table on Base

    if TEST_DATABASE_URL:
        if not database_exists(TEST_DATABASE_URL):
            create_database(TEST_DATABASE_URL)
        engine = create_engine(TEST_DATABASE_URL)
    else:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def organization(db_session):
    from dmarc_pipeline.models import Organization

    org = Organization(name="Acme Corp")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture
def make_domain(db_session, organization):
    """Factory for domains of the test organization"""
    from dmarc_pipeline.models import Domain

    def _make(name="example.com", organization_id=None, verified=True, created_at=None):
        domain = Domain(
            organization_id=organization_id or organization.id,
            domain=name,
            verified_at=datetime(2021, 1, 1) if verified else None,
            created_at=created_at or datetime.utcnow(),
        )
        db_session.add(domain)
        db_session.commit()
        return domain

    return _make


@pytest.fixture
def domain(make_domain):
    return make_domain("example.com")


def build_report_xml(
    report_id="report-1",
    org_name="google.com",
    domain="example.com",
    begin=1609459200,
    end=1609545600,
    records=(),
):
    """
    Aggregate report XML.

    Each record is a dict with ``ip`` and ``count`` plus optional ``dkim``,
    ``spf`` (policy evaluated, default pass), ``header_from``,
    ``dkim_domain`` and ``disposition``.
    """
    rows = []
    for rec in records:
        header_from = rec.get("header_from", domain)
        dkim_domain = rec.get("dkim_domain", header_from)
        dkim = rec.get("dkim", "pass")
        spf = rec.get("spf", "pass")
        rows.append(f"""
  <record>
    <row>
      <source_ip>{rec['ip']}</source_ip>
      <count>{rec['count']}</count>
      <policy_evaluated>
        <disposition>{rec.get('disposition', 'none')}</disposition>
        <dkim>{dkim}</dkim>
        <spf>{spf}</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>{header_from}</header_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>{dkim_domain}</domain>
        <result>{dkim}</result>
        <selector>s1</selector>
      </dkim>
      <spf>
        <domain>{header_from}</domain>
        <result>{spf}</result>
      </spf>
    </auth_results>
  </record>""")

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>{org_name}</org_name>
    <email>noreply-dmarc-support@{org_name}</email>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>{begin}</begin>
      <end>{end}</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>{domain}</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>quarantine</p>
    <pct>100</pct>
  </policy_published>{''.join(rows)}
</feedback>
""".encode()


@pytest.fixture
def report_xml():
    """The report XML builder"""
    return build_report_xml


class FakeDispatcher:
    """Records what would have been sent to Celery"""

    def __init__(self, fail=False):
        self.dispatched = []
        self.revoked = []
        self.fail = fail

    def dispatch(self, policy, job_id, payload, delay=None):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.dispatched.append((policy.name, job_id, payload, delay))

    def revoke(self, job_id):
        self.revoked.append(job_id)

    def job_ids(self, queue=None):
        return [job_id for name, job_id, _, _ in self.dispatched if queue is None or name == queue]


@pytest.fixture
def dispatcher():
    return FakeDispatcher()
