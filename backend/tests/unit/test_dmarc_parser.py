"""Unit tests for the aggregate report parser"""
import gzip
import io
import zipfile
from datetime import datetime

import pytest

from dmarc_pipeline.exceptions import (
    MalformedDateRangeError,
    MalformedXmlError,
    MissingMetadataError,
    MissingPolicyError,
    ReportParseError,
)
from dmarc_pipeline.parsers.dmarc_parser import decompress_attachment, ensure_list, parse_report


SINGLE_RECORD_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>Yahoo</org_name>
    <report_id>1234</report_id>
    <date_range><begin>1609459200</begin><end>1609545600</end></date_range>
  </report_metadata>
  <policy_published>
    <domain>Example.COM</domain>
    <p>reject</p>
    <pct>150</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>209.85.220.41</source_ip>
      <count>3</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>pass</dkim>
        <spf>softfail</spf>
        <reason><type>forwarded</type><comment>list</comment></reason>
      </policy_evaluated>
    </row>
    <identifiers><header_from>Mail.Example.com</header_from></identifiers>
    <auth_results>
      <dkim><domain>example.com</domain><result>pass</result></dkim>
      <spf><domain>example.com</domain><result>softfail</result></spf>
    </auth_results>
  </record>
</feedback>
"""


@pytest.mark.unit
class TestParseReport:
    """Test parse_report"""

    def test_single_elements_become_lists(self):
        """A lone record, dkim, spf and reason are still sequences"""
        report = parse_report(SINGLE_RECORD_XML)

        assert len(report.records) == 1
        record = report.records[0]
        assert len(record.dkim_results) == 1
        assert len(record.spf_results) == 1
        assert [r.type for r in record.policy_evaluated.reasons] == ["forwarded"]

    def test_metadata_and_policy(self):
        report = parse_report(SINGLE_RECORD_XML)

        assert report.metadata.org_name == "Yahoo"
        assert report.metadata.report_id == "1234"
        assert report.metadata.date_begin == datetime(2021, 1, 1)
        assert report.metadata.date_end == datetime(2021, 1, 2)
        assert report.policy_published.domain == "example.com"
        assert report.policy_published.p == "reject"
        assert report.policy_published.pct == 100

    def test_unknown_evaluated_result_counts_as_fail(self):
        record = parse_report(SINGLE_RECORD_XML).records[0]

        assert record.policy_evaluated.dkim == "pass"
        assert record.policy_evaluated.spf == "fail"
        assert record.passed is True

    def test_header_from_is_lowercased(self):
        record = parse_report(SINGLE_RECORD_XML).records[0]
        assert record.identifiers.header_from == "mail.example.com"

    def test_multiple_records(self, report_xml):
        xml = report_xml(records=[
            {"ip": "209.85.220.41", "count": 10},
            {"ip": "40.107.22.1", "count": 5, "dkim": "fail", "spf": "fail"},
        ])
        report = parse_report(xml)

        assert [r.source_ip for r in report.records] == ["209.85.220.41", "40.107.22.1"]
        assert report.message_count == 15
        assert report.records[1].passed is False

    def test_report_without_records(self, report_xml):
        report = parse_report(report_xml())
        assert report.records == []
        assert report.message_count == 0

    def test_negative_count_is_clamped(self, report_xml):
        report = parse_report(report_xml(records=[{"ip": "209.85.220.41", "count": -4}]))
        assert report.records[0].count == 0

    def test_missing_report_id_and_org_name_get_defaults(self):
        xml = b"""<feedback>
          <report_metadata>
            <date_range><begin>1609459200</begin><end>1609545600</end></date_range>
          </report_metadata>
          <policy_published><domain>example.com</domain><p>none</p></policy_published>
        </feedback>"""
        report = parse_report(xml)

        assert report.metadata.report_id == "unknown-1609459200"
        assert report.metadata.org_name == "Unknown"

    def test_record_without_source_ip_is_skipped(self):
        xml = b"""<feedback>
          <report_metadata>
            <org_name>x</org_name><report_id>1</report_id>
            <date_range><begin>1609459200</begin><end>1609545600</end></date_range>
          </report_metadata>
          <policy_published><domain>example.com</domain><p>none</p></policy_published>
          <record><row><count>4</count></row></record>
        </feedback>"""
        assert parse_report(xml).records == []


@pytest.mark.unit
class TestParseErrors:
    """Structural problems map to specific error classes"""

    def test_malformed_xml(self):
        with pytest.raises(MalformedXmlError):
            parse_report(b"<feedback><report_metadata>")

    def test_wrong_root_element(self):
        with pytest.raises(MalformedXmlError):
            parse_report(b"<html><body/></html>")

    def test_missing_metadata(self):
        xml = b"<feedback><policy_published><domain>example.com</domain></policy_published></feedback>"
        with pytest.raises(MissingMetadataError):
            parse_report(xml)

    def test_missing_policy_domain(self):
        xml = b"""<feedback>
          <report_metadata>
            <org_name>x</org_name><report_id>1</report_id>
            <date_range><begin>1609459200</begin><end>1609545600</end></date_range>
          </report_metadata>
          <policy_published><p>none</p></policy_published>
        </feedback>"""
        with pytest.raises(MissingPolicyError):
            parse_report(xml)

    def test_inverted_date_range(self, report_xml):
        with pytest.raises(MalformedDateRangeError):
            parse_report(report_xml(begin=1609545600, end=1609459200))

    def test_non_numeric_date(self, report_xml):
        with pytest.raises(MalformedDateRangeError):
            parse_report(report_xml(begin="yesterday"))

    def test_all_errors_are_parse_errors(self):
        with pytest.raises(ReportParseError):
            parse_report(b"not xml at all")


@pytest.mark.unit
class TestDecompression:
    """Test attachment decompression"""

    def test_decompress_gzip(self):
        assert decompress_attachment(gzip.compress(SINGLE_RECORD_XML), "report.xml.gz") == SINGLE_RECORD_XML

    def test_gzip_detected_by_magic_bytes(self):
        """Senders sometimes name gzip payloads .xml"""
        assert decompress_attachment(gzip.compress(SINGLE_RECORD_XML), "report.xml") == SINGLE_RECORD_XML

    def test_decompress_zip_returns_first_xml_entry(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("readme.txt", "not a report")
            zf.writestr("report.xml", SINGLE_RECORD_XML)

        assert decompress_attachment(buffer.getvalue(), "report.zip") == SINGLE_RECORD_XML

    def test_zip_without_xml(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("readme.txt", "nothing here")

        with pytest.raises(ReportParseError):
            decompress_attachment(buffer.getvalue(), "report.zip")

    def test_raw_xml_passes_through(self):
        assert decompress_attachment(SINGLE_RECORD_XML, "report.xml") == SINGLE_RECORD_XML

    def test_empty_payload(self):
        with pytest.raises(ReportParseError):
            decompress_attachment(b"", "report.xml")

    def test_corrupt_gzip(self):
        with pytest.raises(ReportParseError):
            decompress_attachment(b"\x1f\x8bgarbage", "report.gz")


@pytest.mark.unit
def test_ensure_list():
    assert ensure_list(None) == []
    assert ensure_list({"a": 1}) == [{"a": 1}]
    assert ensure_list([1, None, 2]) == [1, 2]
