"""
Retention and housekeeping.

Deletes run as explicit batched statements, children first, so they behave
the same whether or not the database enforces ON DELETE CASCADE.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.jobs.types import CLEANUP_TYPES
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
    Subdomain,
    UserSession,
)

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    cleanup_type: str
    deleted: Dict[str, int] = field(default_factory=dict)
    organizations_processed: int = 0
    truncated: bool = False

    def add(self, table: str, count: int) -> None:
        self.deleted[table] = self.deleted.get(table, 0) + count


class CleanupService:
    """Run one cleanup type to completion or until the time budget runs out"""

    def __init__(
        self,
        db: Session,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        settings=None,
    ):
        self.db = db
        self.clock = clock or datetime.utcnow
        self.monotonic = monotonic
        self.settings = settings or get_settings()
        self._deadline: Optional[float] = None

    def run(self, cleanup_type: str, organization_id: Optional[str] = None) -> CleanupResult:
        if cleanup_type not in CLEANUP_TYPES:
            raise ValueError(f"Unknown cleanup type: {cleanup_type}")

        self._deadline = self.monotonic() + self.settings.cleanup_time_budget_seconds
        result = CleanupResult(cleanup_type=cleanup_type)
        handler = getattr(self, f"_cleanup_{cleanup_type}")
        handler(result, organization_id)

        logger.info(
            f"Cleanup {cleanup_type} finished",
            extra={
                "cleanup_type": cleanup_type,
                "deleted": result.deleted,
                "truncated": result.truncated,
            }
        )
        return result

    def _out_of_time(self) -> bool:
        return self.monotonic() >= self._deadline

    # ==================== Cleanup types ====================

    def _cleanup_data_retention(self, result: CleanupResult, organization_id: Optional[str]) -> None:
        query = self.db.query(Organization)
        if organization_id:
            query = query.filter(Organization.id == organization_id)
        organizations = query.order_by(Organization.created_at).all()

        for organization in organizations:
            if self._out_of_time():
                result.truncated = True
                logger.warning(
                    "Cleanup time budget exhausted, remaining organizations deferred",
                    extra={"remaining": len(organizations) - result.organizations_processed}
                )
                break

            days = organization.data_retention_days or self.settings.default_retention_days
            cutoff = self.clock() - timedelta(days=days)
            domain_ids = [
                row.id for row in
                self.db.query(Domain.id).filter(Domain.organization_id == organization.id).all()
            ]
            if domain_ids:
                self._delete_reports(
                    result,
                    Report.domain_id.in_(domain_ids),
                    Report.date_end < cutoff,
                )
                result.add("sources", self.db.query(Source).filter(
                    Source.domain_id.in_(domain_ids),
                    Source.last_seen < cutoff,
                ).delete(synchronize_session=False))
                result.add("subdomains", self.db.query(Subdomain).filter(
                    Subdomain.domain_id.in_(domain_ids),
                    Subdomain.last_seen < cutoff,
                ).delete(synchronize_session=False))
                self.db.commit()

            result.organizations_processed += 1

    def _cleanup_unverified_domains(self, result: CleanupResult, organization_id: Optional[str]) -> None:
        cutoff = self.clock() - timedelta(days=self.settings.unverified_domain_days)
        query = self.db.query(Domain.id).filter(
            Domain.verified_at.is_(None),
            Domain.created_at < cutoff,
        )
        if organization_id:
            query = query.filter(Domain.organization_id == organization_id)
        domain_ids = [row.id for row in query.all()]

        for domain_id in domain_ids:
            if self._out_of_time():
                result.truncated = True
                break
            self._delete_reports(result, Report.domain_id == domain_id)
            for model, table in ((Source, "sources"), (Subdomain, "subdomains"), (Alert, "alerts")):
                result.add(table, self.db.query(model).filter(
                    model.domain_id == domain_id
                ).delete(synchronize_session=False))
            result.add("domains", self.db.query(Domain).filter(
                Domain.id == domain_id
            ).delete(synchronize_session=False))
            self.db.commit()

    def _cleanup_expired_sessions(self, result: CleanupResult, organization_id: Optional[str]) -> None:
        now = self.clock()
        self._delete_in_batches(
            result, "sessions", UserSession, UserSession.expires_at < now
        )

    def _cleanup_expired_exports(self, result: CleanupResult, organization_id: Optional[str]) -> None:
        cutoff = self.clock() - timedelta(days=self.settings.export_ttl_days)
        criteria = [DataExport.created_at < cutoff]
        if organization_id:
            criteria.append(DataExport.organization_id == organization_id)
        self._delete_in_batches(result, "exports", DataExport, *criteria)

    # ==================== Batched deletes ====================

    def _delete_reports(self, result: CleanupResult, *criteria) -> None:
        """Delete matching reports with their records and auth results"""
        batch_size = self.settings.cleanup_batch_size
        while True:
            report_ids = [
                row.id for row in
                self.db.query(Report.id).filter(*criteria).limit(batch_size).all()
            ]
            if not report_ids:
                return

            record_ids = select(Record.id).where(Record.report_id.in_(report_ids))
            result.add("dkim_results", self.db.query(DkimResult).filter(
                DkimResult.record_id.in_(record_ids)
            ).delete(synchronize_session=False))
            result.add("spf_results", self.db.query(SpfResult).filter(
                SpfResult.record_id.in_(record_ids)
            ).delete(synchronize_session=False))
            result.add("records", self.db.query(Record).filter(
                Record.report_id.in_(report_ids)
            ).delete(synchronize_session=False))
            result.add("reports", self.db.query(Report).filter(
                Report.id.in_(report_ids)
            ).delete(synchronize_session=False))
            self.db.commit()

            if len(report_ids) < batch_size:
                return
            if self._out_of_time():
                result.truncated = True
                return

    def _delete_in_batches(self, result: CleanupResult, table: str, model, *criteria) -> None:
        batch_size = self.settings.cleanup_batch_size
        while True:
            ids: List[str] = [
                row.id for row in self.db.query(model.id).filter(*criteria).limit(batch_size).all()
            ]
            if not ids:
                return
            result.add(table, self.db.query(model).filter(
                model.id.in_(ids)
            ).delete(synchronize_session=False))
            self.db.commit()
            if len(ids) < batch_size or self._out_of_time():
                result.truncated = result.truncated or len(ids) == batch_size
                return
