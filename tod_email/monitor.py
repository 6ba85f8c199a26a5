"""MailboxMonitor: background polling of one mailbox for auth artifacts.

The monitor holds two :class:`ImapSession` objects.  The *primary* session is
handed to the background task by :meth:`MailboxMonitor.start_background` and
from then on only that task issues commands on it.  One-shot scans
(:meth:`check_recent_emails`, and :meth:`recent_emails` while the loop is not
running) use a separate *scan* session.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from .clock import Clock, SystemClock
from .config import ImapConfig
from .errors import (
    MailboxConnectionError,
    MailboxNotConfiguredError,
    MonitorAlreadyRunningError,
)
from .extractor import ArtifactExtractor
from .imap_client import ImapSession
from .models import ArtifactType, Email, ExtractionResult
from .retry import with_retry

logger = structlog.get_logger()

ArtifactCallback = Callable[[ExtractionResult], Awaitable[None] | None]

HEARTBEAT_EVERY = 10


class MonitorHandle:
    """Cancellation handle for a running background loop.

    Stopping is cooperative: the loop notices the request before its next
    tick, lets an in-flight fetch finish, then releases the connection.
    """

    def __init__(self, task: asyncio.Task[None], stop_event: asyncio.Event) -> None:
        self._task = task
        self._stop_event = stop_event

    @property
    def running(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        """Request a stop without waiting for it."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Request a stop and wait until the loop has exited."""
        self._stop_event.set()
        await self._task


class MailboxMonitor:
    """Owns one mailbox and watches it for magic links and codes."""

    def __init__(
        self,
        config: ImapConfig,
        *,
        extractor: ArtifactExtractor | None = None,
        clock: Clock | None = None,
        session: ImapSession | None = None,
        scan_session: ImapSession | None = None,
    ) -> None:
        self._config = config
        self._extractor = extractor or ArtifactExtractor()
        self._clock = clock or SystemClock()
        self._session = session or ImapSession(config)
        self._scan_session = scan_session or ImapSession(config)
        self._observed: deque[Email] = deque(maxlen=config.observed_buffer_size)
        self._handle: MonitorHandle | None = None

        self._ticks = 0
        self._last_poll_time: datetime | None = None
        self._emails_observed = 0
        self._artifacts_found = 0

    @property
    def config(self) -> ImapConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.running

    @property
    def last_uid(self) -> int | None:
        return self._session.last_uid

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require_configured(self) -> None:
        if not self._config.is_configured:
            raise MailboxNotConfiguredError("mailbox credentials are not configured")

    async def connect(self) -> None:
        """Open the primary session, retrying with exponential backoff."""
        self._require_configured()
        if self.running:
            raise MonitorAlreadyRunningError("the background loop owns the connection")

        @with_retry(self._config.retry, retryable_exceptions=(MailboxConnectionError,))
        async def _connect() -> None:
            await self._session.connect()

        await _connect()

    async def start_background(
        self,
        on_artifact_found: ArtifactCallback | None = None,
    ) -> MonitorHandle:
        """Start the polling loop and return its handle.

        Connects first if needed, so a misconfigured mailbox fails here
        rather than silently inside the loop.
        """
        if self.running:
            raise MonitorAlreadyRunningError("email monitoring is already running")
        if not self._session.connected:
            await self.connect()

        stop_event = asyncio.Event()
        task = asyncio.create_task(
            self._run(self._session, on_artifact_found, stop_event),
            name=f"mailbox-monitor:{self._config.username}",
        )
        self._handle = MonitorHandle(task, stop_event)
        logger.info(
            "monitor_started",
            username=self._config.username,
            interval=self._config.poll_interval_seconds,
        )
        return self._handle

    async def close(self) -> None:
        """Stop the loop (if any) and release every connection."""
        if self._handle is not None:
            await self._handle.stop()
            self._handle = None
        await self._scan_session.disconnect()
        await self._session.disconnect()

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        session: ImapSession,
        callback: ArtifactCallback | None,
        stop_event: asyncio.Event,
    ) -> None:
        try:
            while True:
                stopped = await self._clock.sleep(self._config.poll_interval_seconds, stop_event)
                if stopped or stop_event.is_set():
                    break
                try:
                    await self._tick(session, callback)
                except Exception:
                    logger.exception("monitor_tick_error", ticks=self._ticks)
        finally:
            await session.disconnect()
            logger.info("monitor_stopped", ticks=self._ticks, emails=self._emails_observed)

    async def _tick(self, session: ImapSession, callback: ArtifactCallback | None) -> None:
        """One poll.  Server failures are logged and retried next tick."""
        self._ticks += 1
        if self._ticks % HEARTBEAT_EVERY == 0:
            logger.debug("monitor_heartbeat", ticks=self._ticks, last_uid=session.last_uid)

        if not session.connected:
            # A single attempt per tick; imaplib's socket timeout bounds it
            try:
                await session.connect()
            except MailboxConnectionError as exc:
                logger.warning("monitor_reconnect_failed", error=str(exc))
                return

        try:
            batch = await session.fetch_new()
        except MailboxConnectionError as exc:
            logger.error("monitor_tick_failed", error=str(exc), remedy=exc.remedy)
            return

        self._last_poll_time = self._clock.now()
        for email in batch.emails:
            self._observed.append(email)
            self._emails_observed += 1
            await self._dispatch(email, callback)

    async def _dispatch(self, email: Email, callback: ArtifactCallback | None) -> None:
        result = self._extractor.extract_any(email)
        if not result.success:
            logger.debug("monitor_no_artifact", email_id=email.id, subject=email.subject)
            return

        self._artifacts_found += 1
        logger.info(
            "artifact_detected",
            artifact_type=result.artifact_type.value,
            email_id=email.id,
            confidence=result.confidence,
        )
        if callback is None:
            return
        try:
            outcome = callback(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:  # caller code must not kill the loop
            logger.error("artifact_callback_failed", email_id=email.id, error=str(exc))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _scan(self) -> list[Email]:
        self._require_configured()
        if not self._scan_session.connected:
            await self._scan_session.connect()
        return await self._scan_session.fetch_recent(self._config.recent_scan_limit)

    async def recent_emails(self, window: timedelta) -> list[Email]:
        """Emails received within *window*.

        While the background loop runs this reads what the loop has already
        observed and sends no commands; otherwise it performs a one-shot scan.
        """
        cutoff = self._clock.now() - window
        if self.running:
            return [e for e in self._observed if e.received_at >= cutoff]
        return [e for e in await self._scan() if e.received_at >= cutoff]

    async def check_recent_emails(
        self,
        window: timedelta,
        artifact_type: ArtifactType = ArtifactType.MAGIC_LINK,
    ) -> ExtractionResult:
        """One-shot scan of the newest messages for an artifact.

        Does not need (or touch) the background loop.
        """
        minutes = max(1, int(window.total_seconds() // 60))
        logger.info("recent_scan_started", minutes=minutes, artifact_type=artifact_type.value)

        cutoff = self._clock.now() - window
        recent = [e for e in await self._scan() if e.received_at >= cutoff]
        if not recent:
            return ExtractionResult.not_found(
                artifact_type, f"no emails received in the last {minutes} minute(s)"
            )

        for email in reversed(recent):
            result = self._extractor.extract(artifact_type, email)
            if result.success:
                logger.info("recent_scan_found", email_id=email.id, confidence=result.confidence)
                return result

        return ExtractionResult.not_found(
            artifact_type,
            f"no {artifact_type.label} in {len(recent)} email(s) from the last {minutes} minute(s)",
        )

    async def test_connection(self) -> None:
        """Probe the server on the scan session with NOOP.

        A stale scan session gets one reconnect.  Raises
        :class:`MailboxConnectionError` (with its remedy) when the server
        cannot be reached or does not answer.
        """
        self._require_configured()
        if not await self._scan_session.is_connected():
            await self._scan_session.connect()
            if not await self._scan_session.is_connected():
                raise MailboxConnectionError(
                    f"{self._config.host} accepted the login but did not answer NOOP"
                )
        logger.info(
            "mailbox_connection_ok",
            host=self._config.host,
            username=self._config.username,
        )

    async def health_check(self) -> dict[str, object]:
        return {
            "imap_connected": self._session.connected,
            "imap_host": self._config.host,
            "imap_mailbox": self._config.mailbox,
            "running": self.running,
            "last_poll_time": (
                self._last_poll_time.isoformat() if self._last_poll_time else None
            ),
            "last_uid": self._session.last_uid,
            "emails_observed": self._emails_observed,
            "artifacts_found": self._artifacts_found,
        }
