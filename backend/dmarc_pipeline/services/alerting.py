"""
Alert evaluation after report import.

Two independent checks run for every newly imported report:

- Pass-rate drop: compares the domain's two most recent reports
- New sources: sending IPs first seen in the report's date range that no
  known sender accounts for, consolidated into a single alert per domain
  and dedup window

Alerts are deduplicated via SHA256 fingerprints and a trailing time window.
Webhook notifications are returned as job requests rather than sent here.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from dmarc_pipeline.config import get_settings, Settings
from dmarc_pipeline.jobs.types import JobRequest, webhook_request
from dmarc_pipeline.metrics import record_alert_created
from dmarc_pipeline.models import (
    Alert, AlertType, AlertSeverity, Domain, Report, Record, DkimResult, Source, Webhook,
    WebhookEvent, generate_id,
)
from dmarc_pipeline.services.known_senders import KnownSenderMatcher

logger = logging.getLogger(__name__)


@dataclass
class AlertEvaluation:
    alerts: List[Alert] = field(default_factory=list)
    follow_ups: List[JobRequest] = field(default_factory=list)


def severity_for_drop(drop: float, settings: Settings) -> AlertSeverity:
    """Severity of a pass-rate drop already known to exceed the alert threshold"""
    if drop >= settings.alert_pass_rate_critical:
        return AlertSeverity.CRITICAL
    if drop >= settings.alert_pass_rate_warning:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def fingerprint(*parts: Any) -> str:
    data = ":".join(str(p) for p in parts)
    return hashlib.sha256(data.encode()).hexdigest()


class AlertEvaluator:
    """Evaluate one imported report and raise deduplicated alerts"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock or datetime.utcnow

    def evaluate_report(self, report_id: str) -> AlertEvaluation:
        evaluation = AlertEvaluation()

        report = self.db.query(Report).filter(Report.id == report_id).first()
        if report is None:
            logger.warning(f"Report {report_id} not found, nothing to evaluate")
            return evaluation

        domain = self.db.query(Domain).filter(Domain.id == report.domain_id).first()

        evaluation.follow_ups.extend(self.webhook_requests(
            domain.organization_id,
            WebhookEvent.REPORT_RECEIVED.value,
            {
                "domain": domain.domain,
                "reportId": report.report_id,
                "orgName": report.org_name,
                "messageCount": self._message_count(report.id),
                "dateRangeBegin": report.date_begin.isoformat(),
                "dateRangeEnd": report.date_end.isoformat(),
            },
            domain_id=domain.id,
        ))

        for check in (self.check_pass_rate, self.check_new_sources):
            outcome = check(report, domain)
            if outcome is None:
                continue
            alert, event, data = outcome
            evaluation.alerts.append(alert)
            evaluation.follow_ups.extend(self.webhook_requests(
                domain.organization_id, event, data, severity=alert.severity, domain_id=domain.id
            ))

        return evaluation

    # ==================== Pass rate ====================

    def compute_pass_rate(self, report_id: str) -> float:
        """max(DKIM-pass, SPF-pass) / total as a percentage; 100 for an empty report"""
        total, dkim_pass, spf_pass = self.db.query(
            func.coalesce(func.sum(Record.count), 0),
            func.coalesce(func.sum(case((Record.dmarc_dkim == "pass", Record.count), else_=0)), 0),
            func.coalesce(func.sum(case((Record.dmarc_spf == "pass", Record.count), else_=0)), 0),
        ).filter(Record.report_id == report_id).one()

        if not total:
            return 100.0
        return max(dkim_pass, spf_pass) / total * 100

    def check_pass_rate(self, report: Report, domain: Domain) -> Optional[Tuple[Alert, str, Dict]]:
        latest_two = self.db.query(Report).filter(
            Report.domain_id == domain.id
        ).order_by(Report.date_end.desc(), Report.imported_at.desc()).limit(2).all()

        if len(latest_two) < 2:
            return None

        current, previous = latest_two
        current_rate = self.compute_pass_rate(current.id)
        previous_rate = self.compute_pass_rate(previous.id)
        drop = round(previous_rate - current_rate, 2)

        if drop < self.settings.alert_pass_rate_drop_threshold:
            return None

        severity = severity_for_drop(drop, self.settings)
        alert_fingerprint = fingerprint(
            AlertType.PASS_RATE_DROP.value, domain.id, current.id, previous.id,
            round(current_rate, 1), round(previous_rate, 1),
        )
        if self._recent_with_fingerprint(domain.id, AlertType.PASS_RATE_DROP, alert_fingerprint):
            logger.info(
                f"Pass rate alert for {domain.domain} already raised",
                extra={"fingerprint": alert_fingerprint}
            )
            return None

        title = f"DMARC pass rate dropped for {domain.domain}"
        message = (
            f"Pass rate fell from {previous_rate:.1f}% to {current_rate:.1f}% "
            f"({drop:.1f} points) in the report from {current.org_name}"
        )
        alert = self._save_alert(
            domain,
            AlertType.PASS_RATE_DROP,
            severity,
            title,
            message,
            alert_fingerprint,
            {
                "current_rate": round(current_rate, 2),
                "previous_rate": round(previous_rate, 2),
                "drop": drop,
                "report_id": current.id,
                "previous_report_id": previous.id,
            },
        )
        data = {
            "alertId": alert.id,
            "type": alert.type,
            "domain": domain.domain,
            "severity": alert.severity,
            "title": title,
            "message": message,
            "passRate": round(current_rate, 1),
            "previousRate": round(previous_rate, 1),
        }
        return alert, WebhookEvent.COMPLIANCE_DROP.value, data

    # ==================== New sources ====================

    def check_new_sources(self, report: Report, domain: Domain) -> Optional[Tuple[Alert, str, Dict]]:
        candidates = self.db.query(Source).filter(
            Source.domain_id == domain.id,
            Source.first_seen >= report.date_begin,
            Source.first_seen <= report.date_end,
            Source.known_sender_id.is_(None),
            Source.total_messages >= self.settings.new_source_min_messages,
        ).order_by(Source.total_messages.desc(), Source.source_ip).all()

        candidates = self._exclude_known_senders(candidates, report, domain)
        if not candidates:
            return None

        since = self.clock() - timedelta(hours=self.settings.new_source_dedup_hours)
        recent = self.db.query(Alert).filter(
            Alert.domain_id == domain.id,
            Alert.type == AlertType.NEW_SOURCE.value,
            Alert.created_at >= since,
        ).order_by(Alert.created_at.desc()).all()

        already_alerted = set()
        for existing in recent:
            already_alerted.update((existing.alert_metadata or {}).get("source_ips", []))

        fresh = [c for c in candidates if c.source_ip not in already_alerted]
        if not fresh:
            logger.debug(
                f"All {len(candidates)} new source(s) for {domain.domain} already alerted",
                extra={"domain_id": domain.id}
            )
            return None

        if recent:
            alert = self._merge_new_sources(recent[0], fresh, domain)
        else:
            alert = self._create_new_source_alert(fresh, domain)

        first = fresh[0]
        data = {
            "alertId": alert.id,
            "type": alert.type,
            "domain": domain.domain,
            "severity": alert.severity,
            "title": alert.title,
            "message": alert.message,
            "sourceIp": first.source_ip,
            "organization": first.organization,
            "country": first.country,
            "newSourceCount": len(fresh),
            "sources": [self._example(s) for s in fresh[:self.settings.new_source_example_limit]],
        }
        return alert, WebhookEvent.SOURCE_NEW.value, data

    def _exclude_known_senders(self, candidates: List[Source], report: Report, domain: Domain) -> List[Source]:
        if not candidates:
            return candidates

        matcher = KnownSenderMatcher(self.db, domain.organization_id)
        if not matcher.senders:
            return candidates

        unknown = []
        linked = 0
        for source in candidates:
            sender = matcher.match_ip(source.source_ip)
            if sender is None:
                for dkim_domain in self._passing_dkim_domains(report.id, source.source_ip):
                    sender = matcher.match_dkim_domain(dkim_domain)
                    if sender is not None:
                        break
            if sender is None:
                unknown.append(source)
                continue
            source.known_sender_id = sender.id
            linked += 1

        if linked:
            self.db.commit()
            logger.info(
                f"Linked {linked} source(s) of {domain.domain} to known senders",
                extra={"domain_id": domain.id}
            )
        return unknown

    def _passing_dkim_domains(self, report_id: str, source_ip: str) -> List[str]:
        rows = self.db.query(DkimResult.domain).join(
            Record, DkimResult.record_id == Record.id
        ).filter(
            Record.report_id == report_id,
            Record.source_ip == source_ip,
            DkimResult.result == "pass",
        ).distinct().all()
        return [row[0] for row in rows if row[0]]

    def _create_new_source_alert(self, sources: List[Source], domain: Domain) -> Alert:
        ips = [s.source_ip for s in sources]
        severity = self._new_source_severity(len(ips))
        examples = [self._example(s) for s in sources[:self.settings.new_source_example_limit]]
        return self._save_alert(
            domain,
            AlertType.NEW_SOURCE,
            severity,
            f"New sending sources for {domain.domain}",
            self._new_source_message(domain, examples, len(ips)),
            fingerprint(AlertType.NEW_SOURCE.value, domain.id, ",".join(sorted(ips))),
            {
                "source_ips": ips,
                "count": len(ips),
                "examples": examples,
                "remaining": len(ips) - len(examples),
            },
        )

    def _merge_new_sources(self, alert: Alert, sources: List[Source], domain: Domain) -> Alert:
        """Fold newly seen IPs into the alert already open for this window"""
        metadata = dict(alert.alert_metadata or {})
        ips = list(metadata.get("source_ips", []))
        ips.extend(s.source_ip for s in sources)

        limit = self.settings.new_source_example_limit
        examples = list(metadata.get("examples", []))
        examples.extend(self._example(s) for s in sources)
        examples = examples[:limit]

        metadata.update({
            "source_ips": ips,
            "count": len(ips),
            "examples": examples,
            "remaining": len(ips) - len(examples),
        })
        # Assign a new dict; JSON columns do not track in-place mutation
        alert.alert_metadata = metadata
        alert.message = self._new_source_message(domain, examples, len(ips))
        alert.fingerprint = fingerprint(AlertType.NEW_SOURCE.value, domain.id, ",".join(sorted(ips)))
        if self._new_source_severity(len(ips)) == AlertSeverity.WARNING:
            alert.severity = AlertSeverity.WARNING.value
        alert.updated_at = self.clock()
        self.db.commit()

        record_alert_created(alert.type, alert.severity)
        logger.info(
            f"Merged {len(sources)} new source(s) into alert {alert.id}",
            extra={"alert_id": alert.id, "domain_id": domain.id, "total_sources": len(ips)}
        )
        return alert

    def _new_source_severity(self, count: int) -> AlertSeverity:
        if count > self.settings.new_source_elevated_count:
            return AlertSeverity.WARNING
        return AlertSeverity.INFO

    @staticmethod
    def _example(source: Source) -> Dict[str, Any]:
        return {
            "ip": source.source_ip,
            "messages": source.total_messages,
            "country": source.country,
            "organization": source.organization,
        }

    @staticmethod
    def _new_source_message(domain: Domain, examples: List[Dict], count: int) -> str:
        listed = ", ".join(f"{e['ip']} ({e['messages']} messages)" for e in examples)
        message = f"{count} new sending source(s) detected for {domain.domain}: {listed}"
        remaining = count - len(examples)
        if remaining > 0:
            message += f" and {remaining} more"
        return message

    # ==================== Webhook fan-out ====================

    def webhook_requests(
        self,
        organization_id: str,
        event: str,
        data: Dict[str, Any],
        severity: Optional[str] = None,
        domain_id: Optional[str] = None,
    ) -> List[JobRequest]:
        """One delivery job per active webhook subscribed to the event"""
        webhooks = self.db.query(Webhook).filter(
            Webhook.organization_id == organization_id,
            Webhook.is_active.is_(True),
        ).all()

        requests = []
        for webhook in webhooks:
            events = webhook.events or []
            if event not in events and WebhookEvent.WILDCARD.value not in events:
                continue
            if webhook.severity_filter and severity and severity not in webhook.severity_filter:
                continue
            if webhook.domain_filter and domain_id not in webhook.domain_filter:
                continue
            requests.append(webhook_request(webhook.id, event, data))
        return requests

    # ==================== Helpers ====================

    def _message_count(self, report_id: str) -> int:
        return self.db.query(func.coalesce(func.sum(Record.count), 0)).filter(
            Record.report_id == report_id
        ).scalar()

    def _recent_with_fingerprint(self, domain_id: str, alert_type: AlertType, alert_fingerprint: str) -> bool:
        since = self.clock() - timedelta(hours=self.settings.alert_dedup_window_hours)
        return self.db.query(Alert.id).filter(
            Alert.domain_id == domain_id,
            Alert.type == alert_type.value,
            Alert.fingerprint == alert_fingerprint,
            Alert.created_at >= since,
        ).first() is not None

    def _save_alert(
        self,
        domain: Domain,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        alert_fingerprint: str,
        metadata: Dict[str, Any],
    ) -> Alert:
        now = self.clock()
        alert = Alert(
            id=generate_id(),
            organization_id=domain.organization_id,
            domain_id=domain.id,
            type=alert_type.value,
            severity=severity.value,
            title=title,
            message=message,
            fingerprint=alert_fingerprint,
            alert_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        self.db.add(alert)
        self.db.commit()

        record_alert_created(alert_type.value, severity.value)
        logger.info(
            f"Alert created: {alert_type.value} ({severity.value})",
            extra={"alert_id": alert.id, "domain_id": domain.id, "fingerprint": alert_fingerprint}
        )
        return alert
