import email
import imaplib
import logging
from email.message import Message
from typing import Dict, Iterable, List, Optional

from dmarc_pipeline.exceptions import MailboxError
from dmarc_pipeline.mailbox.base import (
    Mailbox, MailAttachment, MailMessage, SearchPage, is_report_attachment
)

logger = logging.getLogger(__name__)

FALLBACK_CRITERIA = '(OR SUBJECT "dmarc" SUBJECT "report domain")'


class ImapMailbox(Mailbox):
    """
    IMAP mailbox for fetching DMARC reports.

    Page tokens are offsets into the UID list captured by the first search,
    so archiving messages mid-sync does not shift later pages.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        folder: str = "INBOX",
        use_ssl: bool = True
    ):
        if not host or not user or not password:
            raise ValueError("IMAP credentials not configured")

        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.folder = folder or "INBOX"
        self.use_ssl = use_ssl
        self.connection: Optional[imaplib.IMAP4] = None
        self._uids: Dict[str, List[str]] = {}
        self._messages: Dict[str, Message] = {}

    def connect(self):
        """Connect to IMAP server, login and select the folder"""
        try:
            if self.use_ssl:
                self.connection = imaplib.IMAP4_SSL(self.host, self.port)
            else:
                self.connection = imaplib.IMAP4(self.host, self.port)

            self.connection.login(self.user, self.password)
            self.connection.select(self.folder)

            logger.info(f"Connected to IMAP server: {self.host}", extra={"folder": self.folder})

        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Failed to connect to email server: {e}") from e

    def close(self):
        """Disconnect from IMAP server"""
        if self.connection:
            try:
                self.connection.close()
                self.connection.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("IMAP close error: %s", e)
            self.connection = None
        self._uids.clear()
        self._messages.clear()

    def _conn(self) -> imaplib.IMAP4:
        if self.connection is None:
            self.connect()
        return self.connection

    def _uid(self, command: str, *args):
        try:
            status, data = self._conn().uid(command, *args)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP {command} failed: {e}") from e
        if status != "OK":
            raise MailboxError(f"IMAP {command} returned {status}")
        return data

    def build_query(self, domains: Iterable[str]) -> str:
        terms = [f'SUBJECT "{domain}"' for domain in domains]
        if not terms:
            return FALLBACK_CRITERIA
        # IMAP OR is binary: OR a OR b c
        criteria = terms[-1]
        for term in reversed(terms[:-1]):
            criteria = f"OR {term} {criteria}"
        return f"({criteria})"

    def search(self, query: str, page_token: Optional[str] = None, page_size: int = 50) -> SearchPage:
        if page_token is None or query not in self._uids:
            data = self._uid("SEARCH", None, query)
            self._uids[query] = [uid.decode() for uid in (data[0] or b"").split()]
            logger.info(
                f"Found {len(self._uids[query])} messages",
                extra={"criteria": query, "total": len(self._uids[query])}
            )

        uids = self._uids[query]
        offset = int(page_token or 0)
        page = uids[offset:offset + page_size]
        next_offset = offset + page_size
        return SearchPage(
            message_ids=page,
            next_page_token=str(next_offset) if next_offset < len(uids) else None,
        )

    def _fetch(self, message_id: str) -> Message:
        if message_id not in self._messages:
            data = self._uid("FETCH", message_id, "(RFC822)")
            if not data or not isinstance(data[0], tuple):
                raise MailboxError(f"IMAP message {message_id} not found")
            self._messages[message_id] = email.message_from_bytes(data[0][1])
        return self._messages[message_id]

    def get_message(self, message_id: str) -> MailMessage:
        msg = self._fetch(message_id)
        attachments = []

        for index, part in enumerate(msg.walk()):
            # Skip multipart containers
            if part.get_content_maintype() == "multipart":
                continue

            filename = part.get_filename()
            if not filename or not is_report_attachment(filename, part.get_content_type()):
                continue

            content = part.get_payload(decode=True)
            if not content:
                continue

            attachments.append(MailAttachment(
                filename=filename,
                mime_type=part.get_content_type(),
                attachment_id=str(index),
                size=len(content),
                data=content,
            ))

        return MailMessage(id=message_id, subject=msg.get("Subject", ""), attachments=attachments)

    def get_attachment(self, message_id: str, attachment: MailAttachment) -> bytes:
        if attachment.data is not None:
            return attachment.data
        for found in self.get_message(message_id).attachments:
            if found.attachment_id == attachment.attachment_id:
                return found.data
        raise MailboxError(f"Attachment {attachment.filename} not found in message {message_id}")

    def ensure_archive_label(self, name: str) -> Optional[str]:
        # CREATE answers NO when the folder exists already
        try:
            self._conn().create(name)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP CREATE {name} failed: {e}") from e
        return name

    def archive(self, message_id: str, label: Optional[str]) -> None:
        if label:
            self._uid("COPY", message_id, label)
        self._uid("STORE", message_id, "+FLAGS", "(\\Deleted)")
        try:
            self._conn().expunge()
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP EXPUNGE failed: {e}") from e
        self._messages.pop(message_id, None)
