"""Shared test fixtures for the tod test suite."""

from __future__ import annotations

import asyncio
import imaplib
import os
from datetime import UTC, datetime, timedelta
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email import encoders
from unittest.mock import MagicMock, patch

import pytest

from tod_email.config import ImapConfig, RetryConfig

START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's own mailbox settings out of the tests."""
    for key in list(os.environ):
        if key.startswith(("IMAP_", "RETRY_", "TOD_AUTH_")):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        poll_interval_seconds=1.0,
        retry=RetryConfig(max_attempts=2, initial_wait_seconds=0, max_wait_seconds=0),
    )


# ------------------------------------------------------------------
# Virtual time
# ------------------------------------------------------------------


class VirtualClock:
    """Clock whose sleeps advance virtual time instantly.

    With ``frozen=True`` sleeps only yield to the event loop for a moment of
    real time and the virtual time stands still, which keeps background
    loops from racing ahead of the assertions made against them.
    """

    def __init__(self, start: datetime = START, *, frozen: bool = False) -> None:
        self._start = start
        self._elapsed = 0.0
        self._frozen = frozen
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        self._elapsed += seconds

    async def sleep(self, seconds: float, cancel: asyncio.Event | None = None) -> bool:
        self.sleeps.append(seconds)
        await asyncio.sleep(0.002 if self._frozen else 0)
        if cancel is not None and cancel.is_set():
            return True
        if not self._frozen:
            self._elapsed += max(seconds, 0.0)
        return False


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def frozen_clock() -> VirtualClock:
    return VirtualClock(frozen=True)


async def _eventually(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually():
    """Await until a predicate holds, polling in real time."""
    return _eventually


# ------------------------------------------------------------------
# Fake IMAP server
# ------------------------------------------------------------------


class FakeMailbox:
    """In-memory mailbox speaking just enough of imaplib's API.

    Every ``connection()`` is a fresh MagicMock over the same messages, so a
    reconnect sees whatever was delivered in the meantime.
    """

    def __init__(self, uid_validity: int = 1) -> None:
        self.uid_validity = uid_validity
        self.messages: dict[int, tuple[bytes, datetime]] = {}
        self.fetched: list[int] = []
        self.searches: list[str] = []
        self.broken: set[int] = set()
        self.dropped: set[int] = set()
        self.noop_error: Exception | None = None
        self.connections: list[MagicMock] = []

    def add(self, uid: int, raw: bytes, received_at: datetime = START) -> None:
        self.messages[uid] = (raw, received_at)

    def uid(self, command: str, *args):
        if command == "SEARCH":
            criteria = args[-1]
            self.searches.append(criteria)
            uids = sorted(self.messages)
            if criteria.startswith("UID "):
                low = int(criteria[4:].split(":")[0])
                matched = [u for u in uids if u >= low]
                # "n:*" always includes the highest UID
                if not matched and uids:
                    matched = [uids[-1]]
            else:
                matched = uids
            return ("OK", [" ".join(str(u) for u in matched).encode()])
        if command == "FETCH":
            uid = int(args[0])
            self.fetched.append(uid)
            if uid in self.dropped:
                # the connection dies once, a reconnect can fetch it
                self.dropped.discard(uid)
                raise imaplib.IMAP4.abort("connection reset by peer")
            if uid in self.broken or uid not in self.messages:
                return ("OK", [None])
            raw, when = self.messages[uid]
            stamp = when.astimezone(UTC).strftime("%d-%b-%Y %H:%M:%S +0000")
            meta = f'{uid} (UID {uid} INTERNALDATE "{stamp}" BODY[] {{{len(raw)}}}'.encode()
            return ("OK", [(meta, raw), b")"])
        return ("NO", [b"unsupported"])

    def connection(self) -> MagicMock:
        mock = MagicMock()
        mock.login.return_value = ("OK", [b"Logged in"])
        mock.select.return_value = ("OK", [str(len(self.messages)).encode()])
        mock.response.side_effect = lambda code: (code, [str(self.uid_validity).encode()])
        mock.close.return_value = ("OK", [b"Closed"])
        mock.logout.return_value = ("BYE", [b"Bye"])
        mock.noop.return_value = ("OK", [b""])
        if self.noop_error is not None:
            mock.noop.side_effect = self.noop_error
        mock.uid.side_effect = self.uid
        self.connections.append(mock)
        return mock


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def patched_imap(fake_mailbox: FakeMailbox):
    """Route ``imaplib.IMAP4_SSL`` to :class:`FakeMailbox`."""
    with patch("tod_email.imap_client.imaplib.IMAP4_SSL") as MockSSL:
        MockSSL.side_effect = lambda *args, **kwargs: fake_mailbox.connection()
        yield MockSSL


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "noreply@app.example.com",
    to_addr: str = "tester@example.com",
    body: str = "Hello, World!",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    subject: str = "Multipart Email",
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = "noreply@app.example.com"
    msg["To"] = "tester@example.com"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def build_plain_email():
    return _build_plain_email


@pytest.fixture
def build_multipart_email():
    return _build_multipart_email


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def magic_link_eml_bytes() -> bytes:
    return _build_multipart_email(
        subject="Your sign-in link",
        body_text="Click to verify: https://app.example.com/auth/verify?t=abc123 Thanks",
        body_html=(
            '<p><a href="https://app.example.com/auth/verify?t=abc123">Sign in</a></p>'
            '<p><a href="https://app.example.com/unsubscribe">Unsubscribe</a></p>'
        ),
    )


@pytest.fixture
def code_eml_bytes() -> bytes:
    return _build_plain_email(subject="Your verification code", body="Your code is 482913")
