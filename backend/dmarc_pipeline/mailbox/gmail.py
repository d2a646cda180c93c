"""
Gmail REST API mailbox.

Only the four calls the sync worker needs: search, message fetch,
attachment fetch and label modification.
"""
import base64
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.exceptions import MailboxError, RateLimitedError
from dmarc_pipeline.mailbox.base import (
    Mailbox, MailAttachment, MailMessage, SearchPage, is_report_attachment
)

logger = logging.getLogger(__name__)

FALLBACK_QUERY = 'in:inbox has:attachment (subject:dmarc OR subject:"report domain")'
SEARCH_ATTEMPTS = 3


def decode_base64url(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class GmailMailbox(Mailbox):
    """Gmail mailbox authenticated with an OAuth access token"""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not access_token:
            raise ValueError("Gmail access token not configured")
        self.http = http_client or httpx.Client(
            base_url=base_url or get_settings().gmail_api_url,
            timeout=30.0,
        )
        self.http.headers["Authorization"] = f"Bearer {access_token}"
        self.sleep = sleep

    def build_query(self, domains: Iterable[str]) -> str:
        subjects = [f'subject:"{domain}"' for domain in domains]
        if not subjects:
            return FALLBACK_QUERY
        return f"in:inbox has:attachment ({' OR '.join(subjects)})"

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise MailboxError(f"Gmail {method} {path} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"Gmail rate limited {method} {path}")
        if response.status_code >= 400 and response.status_code != 409:
            raise MailboxError(
                f"Gmail {method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def search(self, query: str, page_token: Optional[str] = None, page_size: int = 50) -> SearchPage:
        params = {"q": query, "maxResults": page_size}
        if page_token:
            params["pageToken"] = page_token

        for attempt in range(1, SEARCH_ATTEMPTS + 1):
            try:
                response = self._request("GET", "/messages", params=params)
                break
            except RateLimitedError:
                if attempt == SEARCH_ATTEMPTS:
                    raise
                wait = 2 ** attempt
                logger.warning(f"Gmail search rate limited, retrying in {wait}s")
                self.sleep(wait)

        data = response.json()
        return SearchPage(
            message_ids=[m["id"] for m in data.get("messages", [])],
            next_page_token=data.get("nextPageToken"),
        )

    def get_message(self, message_id: str) -> MailMessage:
        data = self._request("GET", f"/messages/{message_id}", params={"format": "full"}).json()
        payload = data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

        attachments: List[MailAttachment] = []
        self._collect_attachments(payload, attachments)
        return MailMessage(
            id=message_id,
            subject=headers.get("subject", ""),
            attachments=attachments,
        )

    def _collect_attachments(self, part: Dict[str, Any], found: List[MailAttachment]) -> None:
        filename = part.get("filename") or ""
        mime_type = part.get("mimeType") or ""
        body = part.get("body") or {}

        if (filename or body.get("attachmentId")) and is_report_attachment(filename, mime_type):
            found.append(MailAttachment(
                filename=filename,
                mime_type=mime_type,
                attachment_id=body.get("attachmentId"),
                size=body.get("size", 0),
                data=decode_base64url(body["data"]) if body.get("data") else None,
            ))

        for child in part.get("parts") or []:
            self._collect_attachments(child, found)

    def get_attachment(self, message_id: str, attachment: MailAttachment) -> bytes:
        if attachment.data is not None:
            return attachment.data
        response = self._request(
            "GET", f"/messages/{message_id}/attachments/{attachment.attachment_id}"
        )
        return decode_base64url(response.json().get("data", ""))

    def ensure_archive_label(self, name: str) -> Optional[str]:
        response = self._request("POST", "/labels", json={
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        })
        if response.status_code != 409:
            return response.json()["id"]

        # Label already exists
        labels = self._request("GET", "/labels").json().get("labels", [])
        for label in labels:
            if label.get("name") == name:
                return label["id"]
        raise MailboxError(f"Gmail label {name} reported as existing but not listed")

    def archive(self, message_id: str, label: Optional[str]) -> None:
        body: Dict[str, Any] = {"removeLabelIds": ["INBOX"]}
        if label:
            body["addLabelIds"] = [label]
        self._request("POST", f"/messages/{message_id}/modify", json=body)

    def close(self) -> None:
        self.http.close()
