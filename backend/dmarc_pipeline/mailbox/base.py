"""Mailbox collaborator interface used by the sync worker"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

REPORT_EXTENSIONS = (".xml", ".zip", ".gz")
REPORT_MIME_TYPES = {
    "application/xml",
    "text/xml",
    "application/zip",
    "application/x-zip-compressed",
    "application/gzip",
    "application/x-gzip",
}


def is_report_attachment(filename: Optional[str], mime_type: Optional[str]) -> bool:
    """Could this attachment hold an aggregate report?"""
    if filename and filename.lower().endswith(REPORT_EXTENSIONS):
        return True
    return (mime_type or "").lower() in REPORT_MIME_TYPES


@dataclass
class MailAttachment:
    filename: str
    mime_type: str
    attachment_id: Optional[str] = None
    size: int = 0
    # Set when the provider returned the bytes inline
    data: Optional[bytes] = None


@dataclass
class MailMessage:
    id: str
    subject: str = ""
    attachments: List[MailAttachment] = field(default_factory=list)


@dataclass
class SearchPage:
    message_ids: List[str]
    next_page_token: Optional[str] = None


class Mailbox(ABC):
    """
    A provider-neutral view of an inbox.

    Implementations raise TransientExternalError (or a subclass) for 429,
    5xx and network failures so the job layer can retry.
    """

    @abstractmethod
    def build_query(self, domains: Iterable[str]) -> str:
        """Provider-specific search expression for report mail"""

    @abstractmethod
    def search(self, query: str, page_token: Optional[str] = None, page_size: int = 50) -> SearchPage:
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> MailMessage:
        ...

    @abstractmethod
    def get_attachment(self, message_id: str, attachment: MailAttachment) -> bytes:
        ...

    @abstractmethod
    def archive(self, message_id: str, label: Optional[str]) -> None:
        """Remove the message from the inbox, filing it under ``label``"""

    def ensure_archive_label(self, name: str) -> Optional[str]:
        """Create the archive label if needed; returns the provider's label id"""
        return name

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
