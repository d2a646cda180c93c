"""
DMARC Aggregate Report XML Parser

Pure parser with no database or network dependencies.

xmltodict collapses a single child element into a dict and repeated ones
into a list. ``record``, ``auth_results/dkim``, ``auth_results/spf`` and
``policy_evaluated/reason`` are forced to lists while parsing, so everything
downstream of :func:`parse_report` only ever sees sequences.
"""
import gzip
import io
import logging
import zipfile
from datetime import datetime, timezone
from typing import Any, List, Optional, Union
from xml.parsers.expat import ExpatError

import xmltodict
from pydantic import BaseModel, Field

from dmarc_pipeline.exceptions import (
    ReportParseError,
    MalformedXmlError,
    MissingMetadataError,
    MissingPolicyError,
    MalformedDateRangeError,
)

logger = logging.getLogger(__name__)

DISPOSITIONS = {"none", "quarantine", "reject"}
POLICIES = {"none", "quarantine", "reject"}
ALIGNMENTS = {"r", "s"}
DKIM_RESULTS = {"none", "pass", "fail", "policy", "neutral", "temperror", "permerror"}
SPF_RESULTS = {"none", "neutral", "pass", "fail", "softfail", "temperror", "permerror"}
EVALUATED_RESULTS = {"pass", "fail"}

# parent element -> children that may repeat
_LIST_ELEMENTS = {
    "feedback": {"record"},
    "auth_results": {"dkim", "spf"},
    "policy_evaluated": {"reason"},
}


class ReportMetadata(BaseModel):
    """Report metadata"""
    org_name: str
    email: Optional[str] = None
    extra_contact_info: Optional[str] = None
    report_id: str
    date_begin: datetime
    date_end: datetime


class PolicyPublished(BaseModel):
    """Published DMARC policy"""
    domain: str
    adkim: Optional[str] = None  # DKIM alignment mode
    aspf: Optional[str] = None   # SPF alignment mode
    p: str                        # Policy for domain
    sp: Optional[str] = None      # Policy for subdomains
    pct: int = 100                # Percentage of messages to filter
    fo: Optional[str] = None      # Failure reporting options


class DkimAuthResult(BaseModel):
    domain: str
    selector: Optional[str] = None
    result: str
    human_result: Optional[str] = None


class SpfAuthResult(BaseModel):
    domain: str
    scope: Optional[str] = None
    result: str


class PolicyOverrideReason(BaseModel):
    type: str
    comment: Optional[str] = None


class PolicyEvaluated(BaseModel):
    """Policy evaluation for a record"""
    disposition: str = "none"
    dkim: Optional[str] = None  # pass / fail; None when not reported
    spf: Optional[str] = None
    reasons: List[PolicyOverrideReason] = Field(default_factory=list)


class Identifiers(BaseModel):
    """Identifiers for a record"""
    header_from: Optional[str] = None
    envelope_from: Optional[str] = None
    envelope_to: Optional[str] = None


class ParsedRecord(BaseModel):
    """Individual row of a DMARC report"""
    source_ip: str
    count: int
    policy_evaluated: PolicyEvaluated
    identifiers: Identifiers
    dkim_results: List[DkimAuthResult] = Field(default_factory=list)
    spf_results: List[SpfAuthResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        """DMARC pass: aligned DKIM or aligned SPF"""
        return self.policy_evaluated.dkim == "pass" or self.policy_evaluated.spf == "pass"


class ParsedReport(BaseModel):
    """Complete DMARC aggregate report"""
    metadata: ReportMetadata
    policy_published: PolicyPublished
    records: List[ParsedRecord]

    @property
    def message_count(self) -> int:
        return sum(record.count for record in self.records)


def decompress_attachment(data: bytes, filename: str = "") -> bytes:
    """
    Return the report XML held in an attachment.

    Magic bytes decide the format ahead of the extension since some senders
    name plain XML ``.gz``. A zip yields its first ``.xml`` entry.

    Raises:
        ReportParseError: If the payload is empty or cannot be decompressed
    """
    if not data:
        raise ReportParseError(f"Empty attachment: {filename}")

    lowered = (filename or "").lower()
    try:
        if data[:2] == b"\x1f\x8b":
            return gzip.decompress(data)
        if data[:2] == b"PK":
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                xml_names = [n for n in zf.namelist() if n.lower().endswith(".xml")]
                if not xml_names:
                    raise ReportParseError(f"No XML entry in zip: {filename}")
                return zf.read(xml_names[0])
        if lowered.endswith(".gz") and not data.lstrip().startswith(b"<"):
            return gzip.decompress(data)
        return data
    except (OSError, EOFError, zipfile.BadZipFile) as e:
        raise ReportParseError(f"Failed to decompress {filename}: {e}")


def ensure_list(value: Any) -> List[Any]:
    """Normalise an absent, single or repeated element to a list"""
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None]
    return [value]


def _force_list(path, key, value) -> bool:
    if not path:
        return False
    parent = path[-1][0]
    return key in _LIST_ELEMENTS.get(parent, ())


def _text(value: Any) -> Optional[str]:
    """Text content of an element, ignoring attributes"""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("#text")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _choice(value: Any, allowed: set, default: Optional[str]) -> Optional[str]:
    text = _text(value)
    if text is None:
        return default
    text = text.lower()
    return text if text in allowed else default


def _evaluated(value: Any) -> Optional[str]:
    """Policy-evaluated verdict; unknown values count as a failure"""
    text = _text(value)
    if text is None:
        return None
    text = text.lower()
    return text if text in EVALUATED_RESULTS else "fail"


def _to_datetime(epoch: Any, field: str) -> datetime:
    text = _text(epoch)
    if text is None:
        raise MalformedDateRangeError(f"date_range/{field} is missing")
    try:
        return datetime.fromtimestamp(int(float(text)), tz=timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedDateRangeError(f"date_range/{field} is not an epoch timestamp: {text!r}") from e


def _count(value: Any) -> int:
    try:
        return max(int(_text(value) or 0), 0)
    except ValueError:
        return 0


def _parse_metadata(meta: Any) -> ReportMetadata:
    if not isinstance(meta, dict):
        raise MissingMetadataError("Missing report_metadata")

    date_range = meta.get("date_range")
    if not isinstance(date_range, dict):
        raise MalformedDateRangeError("report_metadata has no date_range")

    date_begin = _to_datetime(date_range.get("begin"), "begin")
    date_end = _to_datetime(date_range.get("end"), "end")
    if date_end < date_begin:
        raise MalformedDateRangeError(f"date_range ends before it begins ({date_begin} > {date_end})")

    report_id = _text(meta.get("report_id"))
    if not report_id:
        report_id = f"unknown-{int(date_begin.replace(tzinfo=timezone.utc).timestamp())}"

    return ReportMetadata(
        org_name=_text(meta.get("org_name")) or "Unknown",
        email=_text(meta.get("email")),
        extra_contact_info=_text(meta.get("extra_contact_info")),
        report_id=report_id,
        date_begin=date_begin,
        date_end=date_end,
    )


def _parse_policy(policy: Any) -> PolicyPublished:
    if not isinstance(policy, dict):
        raise MissingPolicyError("Missing policy_published")

    domain = _text(policy.get("domain"))
    if not domain:
        raise MissingPolicyError("policy_published has no domain")

    try:
        pct = int(_text(policy.get("pct")) or 100)
    except ValueError:
        pct = 100

    return PolicyPublished(
        domain=domain.lower(),
        adkim=_choice(policy.get("adkim"), ALIGNMENTS, "r") if policy.get("adkim") is not None else None,
        aspf=_choice(policy.get("aspf"), ALIGNMENTS, "r") if policy.get("aspf") is not None else None,
        p=_choice(policy.get("p"), POLICIES, "none"),
        sp=_choice(policy.get("sp"), POLICIES, "none") if policy.get("sp") is not None else None,
        pct=min(max(pct, 0), 100),
        fo=_text(policy.get("fo")),
    )


def parse_auth_results(auth_results: Any) -> tuple[List[DkimAuthResult], List[SpfAuthResult]]:
    """
    Parse authentication results for DKIM and SPF

    Returns:
        Tuple of (dkim_results, spf_results)
    """
    dkim_results = []
    spf_results = []

    if not isinstance(auth_results, dict):
        return dkim_results, spf_results

    for d in ensure_list(auth_results.get("dkim")):
        if not isinstance(d, dict):
            continue
        dkim_results.append(DkimAuthResult(
            domain=_text(d.get("domain")) or "",
            selector=_text(d.get("selector")),
            result=_choice(d.get("result"), DKIM_RESULTS, "none"),
            human_result=_text(d.get("human_result")),
        ))

    for s in ensure_list(auth_results.get("spf")):
        if not isinstance(s, dict):
            continue
        spf_results.append(SpfAuthResult(
            domain=_text(s.get("domain")) or "",
            scope=_text(s.get("scope")),
            result=_choice(s.get("result"), SPF_RESULTS, "none"),
        ))

    return dkim_results, spf_results


def _parse_record(rec: Any) -> Optional[ParsedRecord]:
    if not isinstance(rec, dict):
        return None

    row = rec.get("row") or {}
    source_ip = _text(row.get("source_ip"))
    if not source_ip:
        logger.warning("Skipping record without source_ip")
        return None

    policy_eval = row.get("policy_evaluated") or {}
    reasons = [
        PolicyOverrideReason(type=_text(r.get("type")) or "other", comment=_text(r.get("comment")))
        for r in ensure_list(policy_eval.get("reason"))
        if isinstance(r, dict)
    ]

    ids = rec.get("identifiers") or {}
    header_from = _text(ids.get("header_from"))

    dkim_results, spf_results = parse_auth_results(rec.get("auth_results"))

    return ParsedRecord(
        source_ip=source_ip,
        count=_count(row.get("count")),
        policy_evaluated=PolicyEvaluated(
            disposition=_choice(policy_eval.get("disposition"), DISPOSITIONS, "none"),
            dkim=_evaluated(policy_eval.get("dkim")),
            spf=_evaluated(policy_eval.get("spf")),
            reasons=reasons,
        ),
        identifiers=Identifiers(
            header_from=header_from.lower() if header_from else None,
            envelope_from=_text(ids.get("envelope_from")),
            envelope_to=_text(ids.get("envelope_to")),
        ),
        dkim_results=dkim_results,
        spf_results=spf_results,
    )


def parse_report(xml_data: Union[bytes, str]) -> ParsedReport:
    """
    Parse DMARC aggregate report XML

    Args:
        xml_data: Decompressed XML content

    Returns:
        Parsed report with every repeatable element as a list

    Raises:
        MalformedXmlError: XML is not well formed or lacks <feedback>
        MissingMetadataError: <report_metadata> is absent
        MissingPolicyError: <policy_published> or its domain is absent
        MalformedDateRangeError: dates are absent, non-numeric or inverted
    """
    try:
        data = xmltodict.parse(xml_data, force_list=_force_list)
    except ExpatError as e:
        raise MalformedXmlError(f"Failed to parse XML: {e}") from e

    feedback = data.get("feedback") if isinstance(data, dict) else None
    if not isinstance(feedback, dict):
        raise MalformedXmlError("Invalid DMARC XML: missing 'feedback' root element")

    metadata = _parse_metadata(feedback.get("report_metadata"))
    policy_published = _parse_policy(feedback.get("policy_published"))

    records = []
    for rec in ensure_list(feedback.get("record")):
        parsed = _parse_record(rec)
        if parsed is not None:
            records.append(parsed)

    return ParsedReport(
        metadata=metadata,
        policy_published=policy_published,
        records=records,
    )
