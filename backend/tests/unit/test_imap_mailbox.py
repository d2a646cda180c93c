import imaplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import MagicMock, patch

import pytest

from dmarc_pipeline.exceptions import MailboxError
from dmarc_pipeline.mailbox.base import MailAttachment
from dmarc_pipeline.mailbox.imap import FALLBACK_CRITERIA, ImapMailbox


def report_email() -> bytes:
    msg = MIMEMultipart()
    msg["Subject"] = "Report domain: example.com Submitter: google.com"
    msg.attach(MIMEText("DMARC aggregate report"))

    report = MIMEApplication(b"<feedback/>", _subtype="xml")
    report.add_header("Content-Disposition", "attachment", filename="google.com!example.com!1!2.xml")
    msg.attach(report)

    logo = MIMEApplication(b"\x89PNG", _subtype="octet-stream")
    logo.add_header("Content-Disposition", "attachment", filename="logo.png")
    msg.attach(logo)
    return msg.as_bytes()


@pytest.fixture
def connection():
    conn = MagicMock()
    conn.uid.return_value = ("OK", [None])
    return conn


@pytest.fixture
def mailbox(connection):
    box = ImapMailbox("imap.example.com", 993, "dmarc@example.com", "password")
    box.connection = connection
    return box


@pytest.mark.unit
class TestImapMailbox:
    """Test the IMAP mailbox against a mocked connection"""

    def test_requires_credentials(self):
        with pytest.raises(ValueError, match="IMAP credentials not configured"):
            ImapMailbox("imap.example.com", 993, "", "")

    def test_connect_failure_is_mailbox_error(self):
        box = ImapMailbox("imap.example.com", 993, "user", "pass")

        with patch("dmarc_pipeline.mailbox.imap.imaplib.IMAP4_SSL", side_effect=OSError("refused")):
            with pytest.raises(MailboxError, match="Failed to connect"):
                box.connect()

    def test_build_query(self, mailbox):
        assert mailbox.build_query(["example.com"]) == '(SUBJECT "example.com")'
        assert mailbox.build_query(["a.com", "b.com", "c.com"]) == (
            '(OR SUBJECT "a.com" OR SUBJECT "b.com" SUBJECT "c.com")'
        )
        assert mailbox.build_query([]) == FALLBACK_CRITERIA

    def test_search_pages_over_one_uid_list(self, mailbox, connection):
        connection.uid.return_value = ("OK", [b"1 2 3 4 5"])

        first = mailbox.search("ALL", page_size=2)
        second = mailbox.search("ALL", page_token=first.next_page_token, page_size=2)
        last = mailbox.search("ALL", page_token=second.next_page_token, page_size=2)

        assert first.message_ids == ["1", "2"]
        assert second.message_ids == ["3", "4"]
        assert last.message_ids == ["5"]
        assert last.next_page_token is None
        assert connection.uid.call_count == 1

    def test_search_error(self, mailbox, connection):
        connection.uid.return_value = ("NO", [b"bad criteria"])

        with pytest.raises(MailboxError):
            mailbox.search("ALL")

    def test_get_message_keeps_report_attachments(self, mailbox, connection):
        connection.uid.return_value = ("OK", [(b"7 (RFC822 {100}", report_email()), b")"])

        message = mailbox.get_message("7")

        assert message.subject.startswith("Report domain: example.com")
        assert [a.filename for a in message.attachments] == ["google.com!example.com!1!2.xml"]
        assert message.attachments[0].data == b"<feedback/>"

    def test_get_attachment_uses_fetched_bytes(self, mailbox, connection):
        attachment = MailAttachment(filename="r.xml", mime_type="text/xml", data=b"<feedback/>")

        assert mailbox.get_attachment("7", attachment) == b"<feedback/>"
        connection.uid.assert_not_called()

    def test_missing_message(self, mailbox, connection):
        connection.uid.return_value = ("OK", [None])

        with pytest.raises(MailboxError, match="not found"):
            mailbox.get_message("99")

    def test_archive_copies_then_deletes(self, mailbox, connection):
        mailbox.archive("7", "DMARC-Processed")

        commands = [c.args[0] for c in connection.uid.call_args_list]
        assert commands == ["COPY", "STORE"]
        assert connection.uid.call_args_list[0].args == ("COPY", "7", "DMARC-Processed")
        connection.expunge.assert_called_once()

    def test_ensure_archive_label(self, mailbox, connection):
        assert mailbox.ensure_archive_label("DMARC-Processed") == "DMARC-Processed"
        connection.create.assert_called_once_with("DMARC-Processed")

    def test_close_logs_out(self, mailbox, connection):
        connection.close.side_effect = imaplib.IMAP4.error("not selected")

        mailbox.close()

        assert mailbox.connection is None
