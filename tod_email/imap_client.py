"""IMAP session wrapping stdlib imaplib with asyncio.to_thread.

An :class:`ImapSession` owns exactly one connection and its
:class:`MonitorState`.  It is not safe to share between tasks; whoever holds
the session is the only code allowed to issue commands on it.

Message positions are tracked by UID, which stays stable when other clients
delete messages (sequence numbers would shift).  If the server reports a new
``UIDVALIDITY`` after a reconnect the recorded position is meaningless and is
re-seeded.
"""

from __future__ import annotations

import asyncio
import imaplib
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from .config import ImapConfig
from .errors import MailboxConnectionError, MessageParseError
from .models import Email
from .parser import MimeParser

logger = structlog.get_logger()

FETCH_ITEMS = "(INTERNALDATE BODY.PEEK[])"


@dataclass
class MonitorState:
    """Polling position of one session.

    ``last_uid`` is ``None`` until the first successful connect; after that
    it is the highest UID already handed to the caller.
    """

    last_uid: int | None = None
    uid_validity: int | None = None
    connected: bool = False


@dataclass
class FetchBatch:
    """Result of one poll: parsed emails plus the UIDs that failed."""

    emails: list[Email] = field(default_factory=list)
    failed_uids: list[str] = field(default_factory=list)


class ImapSession:
    """Async-friendly IMAP session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.
    """

    def __init__(self, config: ImapConfig, parser: MimeParser | None = None) -> None:
        self._config = config
        self._parser = parser or MimeParser()
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._state = MonitorState()

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def last_uid(self) -> int | None:
        return self._state.last_uid

    @property
    def connected(self) -> bool:
        return self._state.connected

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, select the mailbox and seed the position if cold."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._state.connected = False
            raise MailboxConnectionError(
                f"cannot open {self._config.mailbox} on "
                f"{self._config.host}:{self._config.port}: {exc}"
            ) from exc
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
            last_uid=self._state.last_uid,
        )

    def _connect_sync(self) -> None:
        self._disconnect_sync()

        if self._config.use_ssl or self._config.port == 993:
            conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(
                self._config.host, self._config.port, timeout=self._config.timeout_seconds
            )
        else:
            conn = imaplib.IMAP4(
                self._config.host, self._config.port, timeout=self._config.timeout_seconds
            )

        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
            status, data = conn.select(self._config.mailbox)
            if status != "OK":
                raise imaplib.IMAP4.error(f"SELECT {self._config.mailbox} failed: {data!r}")
        except (imaplib.IMAP4.error, OSError):
            _logout_quietly(conn)
            raise

        self._conn = conn
        uid_validity = self._read_uid_validity()

        if self._state.last_uid is None:
            self._seed_position()
        elif (
            self._state.uid_validity is not None
            and uid_validity is not None
            and uid_validity != self._state.uid_validity
        ):
            logger.warning(
                "imap_uidvalidity_changed",
                previous=self._state.uid_validity,
                current=uid_validity,
            )
            self._seed_position()
        else:
            logger.debug("imap_reconnected", last_uid=self._state.last_uid)

        self._state.uid_validity = uid_validity
        self._state.connected = True

    def _read_uid_validity(self) -> int | None:
        assert self._conn is not None
        try:
            _, data = self._conn.response("UIDVALIDITY")
            return int(data[0]) if data and data[0] else None
        except (TypeError, ValueError):
            return None

    def _seed_position(self) -> None:
        """Position so the next poll sees the newest ``backlog_size`` messages.

        This catches an email that was sent just before monitoring began.
        """
        uids = self._search_uids("ALL")
        backlog = self._config.backlog_size
        if len(uids) > backlog:
            self._state.last_uid = uids[-backlog - 1]
        else:
            self._state.last_uid = 0
        logger.info(
            "imap_position_seeded",
            last_uid=self._state.last_uid,
            backlog=min(len(uids), backlog),
        )

    async def disconnect(self) -> None:
        """Close mailbox and logout.  The polling position is kept."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            logger.info("imap_disconnected", host=self._config.host)
        self._state.connected = False

    def _disconnect_sync(self) -> None:
        conn, self._conn = self._conn, None
        self._state.connected = False
        if conn is None:
            return
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        _logout_quietly(conn)

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
        except (imaplib.IMAP4.error, OSError):
            self._state.connected = False
            return False
        return status == "OK"

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def fetch_new(self) -> FetchBatch:
        """Fetch every message in (last_uid, highest].

        The position advances to the highest UID of the batch even when some
        of its messages fail to parse, so one malformed message cannot stall
        progress.  Raises :class:`MailboxConnectionError` if the server cannot
        be reached; the position then stays where it was.
        """
        return await self._run(self._fetch_new_sync)

    async def fetch_recent(self, limit: int) -> list[Email]:
        """Fetch the newest *limit* messages without moving the position."""
        return await self._run(self._fetch_recent_sync, limit)

    async def _run(self, fn, *args):
        if self._conn is None:
            raise MailboxConnectionError("not connected")
        try:
            return await asyncio.to_thread(fn, *args)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._state.connected = False
            raise MailboxConnectionError(f"lost connection to {self._config.host}: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_uids(self, criteria: str) -> list[int]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH {criteria} failed: {data!r}")
        if not data or not data[0]:
            return []
        return sorted(int(uid) for uid in data[0].split())

    def _fetch_new_sync(self) -> FetchBatch:
        last = self._state.last_uid or 0
        # "n:*" always matches the highest UID, even when it is below n
        uids = [uid for uid in self._search_uids(f"UID {last + 1}:*") if uid > last]

        batch = FetchBatch()
        if not uids:
            logger.debug("imap_no_new_messages", last_uid=last)
            return batch

        logger.debug("imap_fetching", first=uids[0], last=uids[-1], count=len(uids))
        # A dropped connection propagates with the position untouched, so the
        # whole range is fetched again after reconnect; BODY.PEEK leaves \Seen unset
        for uid in uids:
            try:
                batch.emails.append(self._fetch_one(uid))
            except MessageParseError as exc:
                logger.warning("imap_message_skipped", uid=uid, error=str(exc))
                batch.failed_uids.append(str(uid))

        self._state.last_uid = uids[-1]
        logger.debug(
            "imap_poll_complete",
            fetched=len(batch.emails),
            failed=len(batch.failed_uids),
            last_uid=self._state.last_uid,
        )
        return batch

    def _fetch_recent_sync(self, limit: int) -> list[Email]:
        uids = self._search_uids("ALL")[-limit:]
        emails: list[Email] = []
        for uid in uids:
            try:
                emails.append(self._fetch_one(uid))
            except MessageParseError as exc:
                logger.warning("imap_message_skipped", uid=uid, error=str(exc))
        return emails

    def _fetch_one(self, uid: int) -> Email:
        assert self._conn is not None
        try:
            status, msg_data = self._conn.uid("FETCH", str(uid), FETCH_ITEMS)
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            raise MessageParseError(f"FETCH {uid} failed: {exc}") from exc
        if status != "OK" or not msg_data:
            raise MessageParseError(f"FETCH {uid} returned {status}")

        for item in msg_data:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
                meta, raw_bytes = item[0], item[1]
                break
        else:
            raise MessageParseError(f"FETCH {uid} returned no body")

        return self._parser.parse(
            raw_bytes,
            uid=str(uid),
            received_at=_internal_date(meta),
        )


def _internal_date(meta: bytes | str) -> datetime | None:
    if isinstance(meta, str):
        meta = meta.encode()
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), UTC)


def _logout_quietly(conn: imaplib.IMAP4) -> None:
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        pass
