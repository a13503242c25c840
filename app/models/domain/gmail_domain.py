# app/models/domain/gmail_domain.py
"""
Gmail Domain Models
Parses raw Gmail API message resources (format=full) as stored by the sync stage.
Fields of the wrong type are treated as absent.
"""

import base64
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value) -> str:
    return value if isinstance(value, str) else ""


class GmailMessage:
    """Domain model for a Gmail message resource."""

    def __init__(self, data: dict):
        self.id = _as_str(data.get("id")) or None
        self.thread_id = _as_str(data.get("threadId")) or None
        labels = data.get("labelIds")
        self.label_ids = [label for label in labels if isinstance(label, str)] if isinstance(labels, list) else []
        self.snippet = _as_str(data.get("snippet"))
        self.internal_date = data.get("internalDate")
        self.payload = _as_dict(data.get("payload"))
        self.raw_data = data

        self._parse_headers()
        self._parse_body()

    def _parse_headers(self):
        """Parse email headers from payload."""
        headers = self.payload.get("headers")
        if not isinstance(headers, list):
            headers = []
        self.headers = {
            h["name"].lower(): _as_str(h.get("value"))
            for h in headers
            if isinstance(h, dict) and isinstance(h.get("name"), str)
        }

        self.subject = self.headers.get("subject", "")
        senders = self._parse_email_addresses(self.headers.get("from", ""))
        self.sender = senders[0] if senders else {"name": "", "email": ""}
        self.recipients = self._parse_email_addresses(self.headers.get("to", ""))
        self.cc = self._parse_email_addresses(self.headers.get("cc", ""))
        self.bcc = self._parse_email_addresses(self.headers.get("bcc", ""))
        self.date = self.headers.get("date", "")
        self.message_id = self.headers.get("message-id", "")

    def _parse_email_addresses(self, addresses_str: str) -> list[dict[str, str]]:
        """Parse a header value like 'Doe, Jane <jane@x.com>, bob@y.com'."""
        if not addresses_str:
            return []

        addresses = []
        for name, email in getaddresses([addresses_str]):
            email = email.strip()
            if email:
                addresses.append({"name": name.strip().strip('"'), "email": email})
        return addresses

    def _parse_body(self):
        """Parse the plain text body from payload."""
        self.body_text = ""
        self.body_html = ""

        if not self.payload:
            return

        data = _as_str(_as_dict(self.payload.get("body")).get("data"))
        if data:
            decoded = self._decode_base64_data(data)
            if self.payload.get("mimeType") == "text/html":
                self.body_html = decoded
            else:
                self.body_text = decoded
        elif isinstance(self.payload.get("parts"), list):
            self._parse_multipart_body(self.payload["parts"])

    def _parse_multipart_body(self, parts: list):
        for part in parts:
            if not isinstance(part, dict):
                continue
            mime_type = _as_str(part.get("mimeType"))
            body_data = _as_str(_as_dict(part.get("body")).get("data"))

            if mime_type == "text/plain" and body_data and not self.body_text:
                self.body_text = self._decode_base64_data(body_data)
            elif mime_type == "text/html" and body_data and not self.body_html:
                self.body_html = self._decode_base64_data(body_data)
            elif mime_type.startswith("multipart/") and isinstance(part.get("parts"), list):
                self._parse_multipart_body(part["parts"])

    def _decode_base64_data(self, data: str) -> str:
        """Decode base64 URL-safe encoded data."""
        try:
            decoded_bytes = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
            return decoded_bytes.decode("utf-8", errors="ignore")
        except (ValueError, TypeError):
            return ""

    def is_sent(self) -> bool:
        return "SENT" in self.label_ids

    def get_received_datetime(self) -> datetime | None:
        """Received time from internalDate (epoch ms), falling back to the Date header."""
        if self.internal_date:
            try:
                return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)
            except (ValueError, TypeError, OSError, OverflowError):
                pass

        if self.date:
            try:
                parsed = parsedate_to_datetime(self.date)
            except (TypeError, ValueError):
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed

        return None

    def get_body_excerpt(self, max_length: int = 2000) -> str:
        """Plain text body, or the snippet when the message has no text part."""
        body = (self.body_text or self.snippet).strip()
        return body[:max_length]
