"""Integration tests for retention and housekeeping cleanup"""
import itertools
from datetime import datetime, timedelta

import pytest

from dmarc_pipeline.config import Settings
from dmarc_pipeline.models import (
    Alert,
    DataExport,
    DkimResult,
    Domain,
    Organization,
    Record,
    Report,
    Source,
    SpfResult,
    UserSession,
)
from dmarc_pipeline.services.cleanup import CleanupService
from dmarc_pipeline.services.importer import ReportImporter

NOW = datetime(2021, 3, 1)
DAY = 86400
JAN_1 = 1609459200
GOOGLE_IP = "209.85.220.41"
MICROSOFT_IP = "40.107.22.1"


def service(db_session, **overrides):
    return CleanupService(db_session, clock=lambda: NOW, settings=Settings(**overrides))


@pytest.fixture
def import_report(db_session, report_xml):
    importer = ReportImporter(db_session)

    def _import(domain, report_id, day, ip=GOOGLE_IP):
        result = importer.import_report(
            report_xml(
                report_id=report_id,
                domain=domain.domain,
                begin=JAN_1 + day * DAY,
                end=JAN_1 + (day + 1) * DAY,
                records=[{"ip": ip, "count": 10}],
            ),
            domain.id,
        )
        assert result.success
        return result.report_id

    return _import


@pytest.mark.integration
class TestDataRetention:
    """Test the data_retention cleanup"""

    def test_deletes_reports_older_than_retention(self, db_session, organization, domain, import_report):
        organization.data_retention_days = 30
        db_session.commit()
        import_report(domain, "old-1", 0)
        import_report(domain, "old-2", 5)
        recent = import_report(domain, "recent", 50, ip=MICROSOFT_IP)

        result = service(db_session).run("data_retention")

        assert result.deleted["reports"] == 2
        assert result.deleted["records"] == 2
        assert result.deleted["dkim_results"] == 2
        assert result.deleted["spf_results"] == 2
        assert result.deleted["sources"] == 1
        assert result.organizations_processed == 1
        assert result.truncated is False

        assert [r.id for r in db_session.query(Report).all()] == [recent]
        assert db_session.query(Record).count() == 1
        assert db_session.query(DkimResult).count() == 1
        assert db_session.query(SpfResult).count() == 1
        assert [s.source_ip for s in db_session.query(Source).all()] == [MICROSOFT_IP]

    def test_default_retention_applies(self, db_session, domain, import_report):
        import_report(domain, "old", 0)

        result = service(db_session, default_retention_days=365).run("data_retention")

        assert result.deleted.get("reports", 0) == 0
        assert db_session.query(Report).count() == 1

    def test_batches_until_done(self, db_session, organization, domain, import_report):
        organization.data_retention_days = 30
        db_session.commit()
        for i in range(3):
            import_report(domain, f"old-{i}", i)

        result = service(db_session, cleanup_batch_size=1).run("data_retention")

        assert result.deleted["reports"] == 3
        assert db_session.query(Report).count() == 0

    def test_limited_to_one_organization(self, db_session, organization, domain, import_report):
        other = Organization(name="Other", data_retention_days=30)
        db_session.add(other)
        db_session.commit()
        other_domain = Domain(organization_id=other.id, domain="other.example", verified_at=NOW)
        db_session.add(other_domain)
        db_session.commit()
        organization.data_retention_days = 30
        db_session.commit()
        import_report(domain, "mine", 0)
        import_report(other_domain, "theirs", 0)

        result = service(db_session).run("data_retention", organization_id=other.id)

        assert result.organizations_processed == 1
        assert [r.report_id for r in db_session.query(Report).all()] == ["mine"]

    def test_time_budget_truncates(self, db_session, organization, domain, import_report):
        organization.data_retention_days = 30
        db_session.commit()
        import_report(domain, "old", 0)
        ticks = itertools.count(0, 100)

        result = CleanupService(
            db_session,
            clock=lambda: NOW,
            monotonic=lambda: next(ticks),
            settings=Settings(cleanup_time_budget_seconds=10),
        ).run("data_retention")

        assert result.truncated is True
        assert result.organizations_processed == 0
        assert db_session.query(Report).count() == 1


@pytest.mark.integration
class TestHousekeeping:
    """Test the other cleanup types"""

    def test_unverified_domains(self, db_session, organization, make_domain, import_report):
        stale = make_domain("stale.example", verified=False, created_at=NOW - timedelta(days=10))
        fresh = make_domain("fresh.example", verified=False, created_at=NOW - timedelta(days=2))
        verified = make_domain("verified.example", created_at=NOW - timedelta(days=100))
        import_report(stale, "stale-report", 0)
        db_session.add(Alert(
            organization_id=organization.id, domain_id=stale.id, type="new_source",
            severity="info", title="t", message="m", fingerprint="f",
        ))
        db_session.commit()
        stale_id = stale.id

        result = service(db_session).run("unverified_domains")

        assert result.deleted["domains"] == 1
        assert result.deleted["reports"] == 1
        assert result.deleted["sources"] == 1
        assert result.deleted["alerts"] == 1
        remaining = {d.id for d in db_session.query(Domain).all()}
        assert remaining == {fresh.id, verified.id}
        assert stale_id not in remaining
        assert db_session.query(Record).count() == 0

    def test_expired_sessions(self, db_session):
        db_session.add_all([
            UserSession(user_id="u1", expires_at=NOW - timedelta(hours=1)),
            UserSession(user_id="u2", expires_at=NOW - timedelta(days=3)),
            UserSession(user_id="u3", expires_at=NOW + timedelta(hours=1)),
        ])
        db_session.commit()

        result = service(db_session).run("expired_sessions")

        assert result.deleted["sessions"] == 2
        assert [s.user_id for s in db_session.query(UserSession).all()] == ["u3"]

    def test_expired_exports(self, db_session, organization):
        db_session.add_all([
            DataExport(organization_id=organization.id, created_at=NOW - timedelta(days=8)),
            DataExport(organization_id=organization.id, created_at=NOW - timedelta(days=1)),
        ])
        db_session.commit()

        result = service(db_session).run("expired_exports")

        assert result.deleted["exports"] == 1
        assert db_session.query(DataExport).count() == 1

    def test_unknown_type(self, db_session):
        with pytest.raises(ValueError):
            service(db_session).run("everything")
