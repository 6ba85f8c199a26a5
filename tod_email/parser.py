"""MIME parser: raw RFC 822 bytes → :class:`Email`.

Walks the whole message and concatenates the text of every inline part.
Attachments are skipped.  HTML parts are kept as markup (links live in
``href`` attributes) with entities unescaped so query strings read ``&``
rather than ``&amp;``.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import html
import re
from datetime import UTC, datetime

import structlog

from .errors import MessageParseError
from .models import Email

logger = structlog.get_logger()

SNIPPET_LENGTH = 200

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(style|script|head)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")


def strip_html(text: str) -> str:
    """Drop style/script blocks and tags, leaving visible text."""
    return _TAG_RE.sub(" ", _BLOCK_RE.sub(" ", text))


def make_snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    collapsed = _WS_RE.sub(" ", strip_html(text)).strip()
    if len(collapsed) > length:
        return collapsed[: length - 3] + "..."
    return collapsed


class MimeParser:
    """Stateless parser."""

    def parse(
        self,
        raw_bytes: bytes,
        *,
        uid: str,
        received_at: datetime | None = None,
    ) -> Email:
        """Parse one message.

        Raises :class:`MessageParseError` when the message has no readable
        structure at all; an unreadable individual part is skipped.
        """
        if not raw_bytes:
            raise MessageParseError(f"message {uid} has no body")
        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            subject = str(msg.get("Subject", "") or "")
            sender = str(msg.get("From", "") or "")
            recipients = self._parse_address_list(msg.get("To"))
        except (TypeError, ValueError, IndexError, AttributeError) as exc:
            raise MessageParseError(f"message {uid} could not be parsed: {exc}") from exc

        body = self._extract_text(msg, uid)
        if received_at is None:
            received_at = self._date_header(msg)

        return Email(
            id=uid,
            subject=subject,
            sender=sender,
            recipient=recipients[0] if recipients else "",
            body=body,
            received_at=received_at,
            snippet=make_snippet(body),
        )

    def _extract_text(self, msg: email.message.Message, uid: str) -> str:
        """Walk MIME parts and join the text of every inline text part."""
        chunks: list[str] = []

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_maintype() != "text":
                continue

            disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in disposition:
                logger.debug("mime_attachment_skipped", uid=uid, filename=part.get_filename())
                continue

            text = self._part_text(part)
            if text is None:
                logger.debug("mime_part_unreadable", uid=uid, content_type=part.get_content_type())
                continue
            if part.get_content_subtype() == "html":
                text = html.unescape(text)
            chunks.append(text)

        return "\n".join(chunks)

    def _part_text(self, part: email.message.Message) -> str | None:
        try:
            payload = part.get_content()
        except (LookupError, ValueError, UnicodeError, AttributeError):
            # Unknown or lying charset: fall back to a lenient decode
            raw = part.get_payload(decode=True)
            if not isinstance(raw, bytes):
                return None
            return raw.decode("utf-8", errors="replace")
        return payload if isinstance(payload, str) else None

    def _date_header(self, msg: email.message.Message) -> datetime:
        value = msg.get("Date")
        if value:
            try:
                parsed = email.utils.parsedate_to_datetime(str(value))
            except (TypeError, ValueError):
                parsed = None
            if parsed is not None:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                return parsed.astimezone(UTC)
        return datetime.now(UTC)

    def _parse_address_list(self, header_value: str | None) -> list[str]:
        if not header_value:
            return []
        return [addr for _, addr in email.utils.getaddresses([str(header_value)]) if addr]
