"""
Report Import / Aggregation Engine

Persists a parsed aggregate report exactly once and folds its records into
the rolling per-source and per-subdomain counters:

1. Parse the XML (parse errors are returned, nothing is written)
2. Skip reports already stored under the same (report_id, org_name)
3. Refuse reports whose published domain differs from the target domain
4. In one transaction: insert the report, its records and auth results,
   and upsert the Source/Subdomain aggregates additively

Geolocation is not resolved here. The result carries follow-up job requests
(enrichment, alert evaluation) for the caller to dispatch.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import case
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dmarc_pipeline.exceptions import ReportParseError, DomainMismatchError, StorageError
from dmarc_pipeline.jobs.types import JobRequest, enrichment_request, alerts_request
from dmarc_pipeline.metrics import record_report_imported
from dmarc_pipeline.models import (
    Domain, Report, Record, DkimResult, SpfResult, Source, Subdomain, generate_id
)
from dmarc_pipeline.parsers.dmarc_parser import parse_report, ParsedReport

logger = logging.getLogger(__name__)

ALREADY_IMPORTED = "Report already imported"


@dataclass
class ImportResult:
    success: bool
    report_id: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    record_count: int = 0
    message_count: int = 0
    follow_ups: List[JobRequest] = field(default_factory=list)


def extract_subdomain(header_from: Optional[str], domain: str) -> Optional[str]:
    """Return header_from when it is a strict subdomain of domain"""
    if not header_from:
        return None
    candidate = header_from.strip().lower().rstrip(".")
    domain = domain.strip().lower().rstrip(".")
    if candidate != domain and candidate.endswith("." + domain):
        return candidate
    return None


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise StorageError(f"Atomic upsert is not supported on {dialect}")


def upsert_aggregate(
    db: Session,
    model,
    key: dict,
    count: int,
    passed: bool,
    seen_from: datetime,
    seen_to: datetime,
) -> None:
    """
    Insert an aggregate row or add to the existing counters.

    Runs as a single INSERT ... ON CONFLICT DO UPDATE so concurrent writers
    touching the same key never lose an increment. first_seen/last_seen only
    ever widen.
    """
    table = model.__table__
    stmt = _dialect_insert(db)(table).values(
        id=generate_id(),
        total_messages=count,
        passed_messages=count if passed else 0,
        failed_messages=0 if passed else count,
        first_seen=seen_from,
        last_seen=seen_to,
        **key,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key.keys()),
        set_={
            "total_messages": table.c.total_messages + excluded.total_messages,
            "passed_messages": table.c.passed_messages + excluded.passed_messages,
            "failed_messages": table.c.failed_messages + excluded.failed_messages,
            "first_seen": case(
                (excluded.first_seen < table.c.first_seen, excluded.first_seen),
                else_=table.c.first_seen,
            ),
            "last_seen": case(
                (excluded.last_seen > table.c.last_seen, excluded.last_seen),
                else_=table.c.last_seen,
            ),
        },
    )
    db.execute(stmt)


class ReportImporter:
    """Import parsed DMARC reports into a domain's statistics"""

    def __init__(self, db: Session):
        self.db = db

    def import_report(
        self,
        xml: Union[bytes, str],
        domain_id: str,
        dedup_ref: Optional[str] = None,
    ) -> ImportResult:
        """
        Import one report XML document for a domain.

        Parse failures, domain mismatches and duplicates are returned as
        results. Database failures roll back the whole report and raise
        StorageError so the job layer can retry.

        ``dedup_ref`` is stored as the report's ``external_message_id`` to
        trace it back to the mail it arrived in. Redelivered reports are
        recognised by (report_id, org_name), since one message can carry
        several reports.
        """
        try:
            parsed = parse_report(xml)
        except ReportParseError as e:
            logger.warning(
                f"Report parse failed: {e}",
                extra={"domain_id": domain_id, "error_type": type(e).__name__}
            )
            record_report_imported("failed")
            return ImportResult(success=False, error=str(e), error_type=type(e).__name__)

        metadata = parsed.metadata

        existing = self._find_existing(metadata.report_id, metadata.org_name)
        if existing is not None:
            logger.info(
                f"Report {metadata.report_id} from {metadata.org_name} already imported",
                extra={"report_id": existing.id, "domain_id": domain_id}
            )
            record_report_imported("skipped")
            return ImportResult(
                success=True, report_id=existing.id, skipped=True, skip_reason=ALREADY_IMPORTED
            )

        domain = self.db.query(Domain).filter(Domain.id == domain_id).first()
        if domain is None:
            record_report_imported("failed")
            return ImportResult(success=False, error="Domain not found", error_type="DomainNotFound")

        if parsed.policy_published.domain.lower() != domain.domain.lower():
            mismatch = DomainMismatchError(domain.domain, parsed.policy_published.domain)
            logger.error(
                str(mismatch),
                extra={
                    "domain_id": domain_id,
                    "report_id": metadata.report_id,
                    "org_name": metadata.org_name,
                }
            )
            record_report_imported("mismatch")
            return ImportResult(success=False, error=str(mismatch), error_type=type(mismatch).__name__)

        xml_text = xml.decode("utf-8", errors="replace") if isinstance(xml, bytes) else xml

        try:
            report = self._store(parsed, domain, xml_text, dedup_ref)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            # A concurrent import of the same report won the unique constraint
            existing = self._find_existing(metadata.report_id, metadata.org_name)
            if existing is not None:
                record_report_imported("skipped")
                return ImportResult(
                    success=True, report_id=existing.id, skipped=True, skip_reason=ALREADY_IMPORTED
                )
            raise StorageError(f"Failed to store report {metadata.report_id}: {e}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Failed to store report {metadata.report_id}: {e}",
                extra={"domain_id": domain_id},
                exc_info=True
            )
            raise StorageError(f"Failed to store report {metadata.report_id}: {e}") from e
        except Exception:
            # Nothing of a half-written report may reach a later commit
            self.db.rollback()
            raise

        record_report_imported("success", len(parsed.records))
        logger.info(
            f"Imported report {metadata.report_id} from {metadata.org_name}",
            extra={
                "report_id": report.id,
                "domain_id": domain_id,
                "records": len(parsed.records),
                "messages": parsed.message_count,
            }
        )

        return ImportResult(
            success=True,
            report_id=report.id,
            record_count=len(parsed.records),
            message_count=parsed.message_count,
            follow_ups=self._follow_ups(report, domain, parsed),
        )

    def _find_existing(self, report_id: str, org_name: str) -> Optional[Report]:
        return self.db.query(Report).filter(
            Report.report_id == report_id,
            Report.org_name == org_name,
        ).first()

    def _store(
        self,
        parsed: ParsedReport,
        domain: Domain,
        xml_text: str,
        dedup_ref: Optional[str],
    ) -> Report:
        metadata = parsed.metadata
        policy = parsed.policy_published

        report = Report(
            id=generate_id(),
            domain_id=domain.id,
            report_id=metadata.report_id,
            org_name=metadata.org_name,
            email=metadata.email,
            extra_contact_info=metadata.extra_contact_info,
            date_begin=metadata.date_begin,
            date_end=metadata.date_end,
            policy_domain=policy.domain,
            adkim=policy.adkim,
            aspf=policy.aspf,
            p=policy.p,
            sp=policy.sp,
            pct=policy.pct,
            fo=policy.fo,
            raw_xml=xml_text,
            external_message_id=dedup_ref,
        )
        self.db.add(report)
        # Unique (report_id, org_name) is enforced before any record is written
        self.db.flush()

        for parsed_record in parsed.records:
            evaluated = parsed_record.policy_evaluated
            record = Record(
                id=generate_id(),
                report_id=report.id,
                source_ip=parsed_record.source_ip,
                count=parsed_record.count,
                disposition=evaluated.disposition,
                dmarc_dkim=evaluated.dkim,
                dmarc_spf=evaluated.spf,
                policy_override_reasons=[r.model_dump() for r in evaluated.reasons] or None,
                header_from=parsed_record.identifiers.header_from,
                envelope_from=parsed_record.identifiers.envelope_from,
                envelope_to=parsed_record.identifiers.envelope_to,
            )
            record.dkim_results = [
                DkimResult(
                    domain=d.domain,
                    selector=d.selector,
                    result=d.result,
                    human_result=d.human_result,
                )
                for d in parsed_record.dkim_results
            ]
            record.spf_results = [
                SpfResult(domain=s.domain, scope=s.scope, result=s.result)
                for s in parsed_record.spf_results
            ]
            self.db.add(record)

            upsert_aggregate(
                self.db,
                Source,
                {"domain_id": domain.id, "source_ip": parsed_record.source_ip},
                parsed_record.count,
                parsed_record.passed,
                metadata.date_begin,
                metadata.date_end,
            )

            subdomain = extract_subdomain(parsed_record.identifiers.header_from, domain.domain)
            if subdomain:
                upsert_aggregate(
                    self.db,
                    Subdomain,
                    {"domain_id": domain.id, "subdomain": subdomain},
                    parsed_record.count,
                    parsed_record.passed,
                    metadata.date_begin,
                    metadata.date_end,
                )

        self.db.flush()
        return report

    def _follow_ups(self, report: Report, domain: Domain, parsed: ParsedReport) -> List[JobRequest]:
        source_ips = {r.source_ip for r in parsed.records}
        follow_ups = []
        if source_ips:
            unresolved = self.db.query(Source.id, Source.source_ip).filter(
                Source.domain_id == domain.id,
                Source.source_ip.in_(source_ips),
                Source.country.is_(None),
            ).all()
            follow_ups.extend(enrichment_request(source_id, ip) for source_id, ip in unresolved)
        follow_ups.append(alerts_request(report.id, domain.id, domain.organization_id))
        return follow_ups
