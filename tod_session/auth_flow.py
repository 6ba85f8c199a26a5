"""AuthFlowOrchestrator: log a test user in, waiting on email when needed.

Auth types that deliver their last step by email (magic_link,
email_verification, 2fa, sms) go ``IDLE -> WAITING -> FOUND | TIMED_OUT``.
Everything else is resolved at once by :meth:`simulate_authentication`
without touching the mailbox.

Nothing here raises for an orchestration failure; callers always get an
:class:`AuthenticationResult`.
"""

from __future__ import annotations

import asyncio
import base64
from datetime import timedelta

import structlog

from tod_email.clock import Clock, SystemClock
from tod_email.errors import ArtifactWaitTimeout, MailboxNotConfiguredError, TodEmailError
from tod_email.extractor import ArtifactExtractor
from tod_email.models import ArtifactType, ExtractionResult
from tod_email.monitor import MailboxMonitor

from .config import AuthFlowConfig
from .errors import SessionError
from .models import AuthenticationResult, AuthFlowState, Cookie, EmailAccessResult, TestUser
from .store import SessionStore

logger = structlog.get_logger()

EMAIL_AUTH_ARTIFACTS: dict[str, ArtifactType] = {
    "magic_link": ArtifactType.MAGIC_LINK,
    "email_verification": ArtifactType.VERIFICATION_CODE,
    "2fa": ArtifactType.TWO_FACTOR_CODE,
    "sms": ArtifactType.SMS_CODE,
}

CONTEXT_HINTS: dict[ArtifactType, str] = {
    ArtifactType.MAGIC_LINK: (
        "User '{name}' just clicked 'Send Magic Link' button. Looking for magic link email."
    ),
    ArtifactType.VERIFICATION_CODE: (
        "User '{name}' just requested an email verification code. "
        "Looking for verification code email."
    ),
    ArtifactType.TWO_FACTOR_CODE: (
        "User '{name}' just triggered 2FA authentication. "
        "Looking for 2FA code email or SMS forwarded to email."
    ),
    ArtifactType.SMS_CODE: (
        "User '{name}' just requested an SMS code. Looking for an SMS forwarded to email."
    ),
}

FOUND_MESSAGES: dict[ArtifactType, str] = {
    ArtifactType.MAGIC_LINK: "Magic link authentication ready",
    ArtifactType.VERIFICATION_CODE: "Email verification code retrieved",
    ArtifactType.TWO_FACTOR_CODE: "2FA code retrieved from email",
    ArtifactType.SMS_CODE: "SMS code retrieved from email",
}

EMAIL_VERIFIED = "email_verified"


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


class AuthFlowOrchestrator:
    """Drives authentication for test users.

    *monitor* may be ``None`` when no mailbox is configured; email auth types
    then fail with a remedy instead of waiting.
    """

    def __init__(
        self,
        store: SessionStore,
        monitor: MailboxMonitor | None = None,
        *,
        extractor: ArtifactExtractor | None = None,
        config: AuthFlowConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self._extractor = extractor or ArtifactExtractor()
        self._config = config or AuthFlowConfig()
        self._clock = clock or SystemClock()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def email_configured(self) -> bool:
        return self._monitor is not None and self._monitor.config.is_configured

    @staticmethod
    def needs_email(auth_type: str) -> bool:
        return auth_type in EMAIL_AUTH_ARTIFACTS

    async def test_email_access(self) -> EmailAccessResult:
        """Check that the mailbox can be reached with the current settings."""
        if self._monitor is None or not self.email_configured:
            return EmailAccessResult(
                ok=False,
                message="mailbox not configured",
                remedy=MailboxNotConfiguredError.remedy,
            )

        config = self._monitor.config
        try:
            await self._monitor.test_connection()
        except TodEmailError as exc:
            logger.warning("email_access_failed", host=config.host, error=str(exc))
            return EmailAccessResult(
                ok=False,
                message=f"connection test failed: {exc}",
                host=config.host,
                username=config.username,
                remedy=exc.remedy,
            )
        return EmailAccessResult(
            ok=True,
            message=f"Mailbox {config.mailbox} on {config.host} is reachable",
            host=config.host,
            username=config.username,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def authenticate(self, user: TestUser) -> AuthenticationResult:
        artifact_type = EMAIL_AUTH_ARTIFACTS.get(user.auth_type)
        if artifact_type is None:
            return self.simulate_authentication(user)

        if not self.email_configured:
            logger.warning("auth_email_unavailable", user_id=user.id, auth_type=user.auth_type)
            return AuthenticationResult(
                success=False,
                message=(
                    f"Cannot wait for the {artifact_type.label} email: mailbox access "
                    f"is not configured. {MailboxNotConfiguredError.remedy}"
                ),
                error="mailbox not configured",
            )

        timeout = self._timeout_for(user)
        hint = CONTEXT_HINTS[artifact_type].format(name=user.name or user.id)
        logger.info(
            "auth_flow_waiting",
            user_id=user.id,
            artifact_type=artifact_type.value,
            timeout=timeout,
        )

        started = self._clock.monotonic()
        result = await self.wait_for_artifact(artifact_type, hint, timeout)
        elapsed = self._clock.monotonic() - started

        if not result.success:
            logger.warning(
                "auth_flow_timed_out",
                user_id=user.id,
                artifact_type=artifact_type.value,
                elapsed=round(elapsed, 1),
            )
            return AuthenticationResult(
                success=False,
                message=(
                    f"Timed out waiting for {artifact_type.label} email after "
                    f"{elapsed:.0f}s. {ArtifactWaitTimeout.remedy}"
                ),
                error=result.error,
                timed_out=True,
                state=AuthFlowState.TIMED_OUT,
            )

        return self._record_artifact(user, result)

    def _timeout_for(self, user: TestUser) -> float:
        if user.auth_config is not None and user.auth_config.email_timeout is not None:
            return float(user.auth_config.email_timeout)
        return self._config.default_timeout_seconds

    def _record_artifact(self, user: TestUser, result: ExtractionResult) -> AuthenticationResult:
        """FOUND: start the session and store the artifact in it."""
        try:
            session = self._store.start_session(user)
            session.session_data[result.artifact_type.value] = result.value
            session.session_data["auth_method"] = EMAIL_VERIFIED
            self._store.update_session(session)
        except SessionError as exc:
            logger.error("auth_session_failed", user_id=user.id, error=str(exc))
            return AuthenticationResult(
                success=False,
                message=f"Found the {result.artifact_type.label} but could not save the session: {exc}",
                error=str(exc),
                state=AuthFlowState.FOUND,
            )

        logger.info(
            "auth_flow_found",
            user_id=user.id,
            artifact_type=result.artifact_type.value,
            confidence=result.confidence,
        )
        return AuthenticationResult(
            success=True,
            message=FOUND_MESSAGES[result.artifact_type],
            session=session,
            redirect_url=result.value if result.artifact_type is ArtifactType.MAGIC_LINK else None,
            state=AuthFlowState.FOUND,
        )

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_for_artifact(
        self,
        artifact_type: ArtifactType,
        context_hint: str = "",
        timeout: float | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ExtractionResult:
        """Poll recent mail until an artifact is found or *timeout* elapses.

        Elapsed time is checked before every poll, so a zero (or already
        exceeded) timeout returns without touching the mailbox.  A poll that
        is already running is allowed to finish, so the wait can overrun by
        one round trip.  Setting *cancel* ends the wait as timed out.
        """
        if timeout is None:
            timeout = self._config.default_timeout_seconds
        window = timedelta(seconds=self._config.recent_window_seconds)
        started = self._clock.monotonic()
        attempts = 0

        while True:
            elapsed = self._clock.monotonic() - started
            if elapsed >= timeout or (cancel is not None and cancel.is_set()):
                return self._timed_out(artifact_type, elapsed, attempts)

            attempts += 1
            result = await self._poll(artifact_type, context_hint, window)
            if result is not None and result.success:
                return result

            remaining = timeout - (self._clock.monotonic() - started)
            if remaining <= 0:
                continue
            pause = min(self._config.retry_interval_seconds, remaining)
            if await self._clock.sleep(pause, cancel):
                return self._timed_out(
                    artifact_type, self._clock.monotonic() - started, attempts
                )

    async def _poll(
        self,
        artifact_type: ArtifactType,
        context_hint: str,
        window: timedelta,
    ) -> ExtractionResult | None:
        if self._monitor is None:
            return None
        try:
            emails = await self._monitor.recent_emails(window)
        except TodEmailError as exc:
            logger.warning("auth_wait_poll_failed", error=str(exc))
            return None
        return await self._extractor.extract_from_emails(emails, artifact_type, context_hint)

    def _timed_out(
        self, artifact_type: ArtifactType, elapsed: float, attempts: int
    ) -> ExtractionResult:
        logger.debug(
            "auth_wait_finished",
            artifact_type=artifact_type.value,
            elapsed=round(elapsed, 1),
            attempts=attempts,
        )
        return ExtractionResult(
            success=False,
            artifact_type=artifact_type,
            error=f"timeout waiting for {artifact_type.label} email after {elapsed:.0f}s",
            timed_out=True,
        )

    # ------------------------------------------------------------------
    # Short-circuit path
    # ------------------------------------------------------------------

    def simulate_authentication(self, user: TestUser) -> AuthenticationResult:
        """Resolve an auth type that needs no mailbox round-trip.

        On success a session is started carrying the produced cookies and
        headers.
        """
        auth = user.auth_config
        headers: dict[str, str] = {}
        cookies: list[Cookie] = []
        redirect_url: str | None = None

        if user.auth_type == "none":
            message = "No authentication required"
        elif user.auth_type == "basic":
            if auth is None or not auth.username or not auth.password:
                return self._failed("Missing basic auth credentials")
            headers["Authorization"] = basic_auth_header(auth.username, auth.password)
            message = "Basic authentication simulated"
        elif user.auth_type == "bearer":
            if auth is None or not auth.token:
                return self._failed("Missing bearer token")
            headers["Authorization"] = f"Bearer {auth.token}"
            message = "Bearer token authentication simulated"
        elif user.auth_type == "oauth":
            if auth is None or not auth.provider:
                return self._failed("Missing OAuth provider")
            redirect_url = f"/auth/{auth.provider}/callback"
            message = "OAuth authentication would be initiated"
        elif user.auth_type == "username_password":
            stamp = int(self._clock.now().timestamp())
            cookies.append(Cookie(name="session_id", value=f"sess_{stamp}", path="/"))
            message = "Form login simulated"
        elif user.auth_type in EMAIL_AUTH_ARTIFACTS:
            label = EMAIL_AUTH_ARTIFACTS[user.auth_type].label
            message = f"A {label} would be sent to {user.email or user.id}"
        else:
            return self._failed(f"Unknown auth type: {user.auth_type}")

        try:
            session = self._store.start_session(user)
            if cookies:
                session.cookies = cookies
            if headers:
                session.headers = dict(headers)
            self._store.update_session(session)
        except SessionError as exc:
            logger.error("auth_session_failed", user_id=user.id, error=str(exc))
            return self._failed(f"Failed to create session: {exc}", error=str(exc))

        logger.info("auth_simulated", user_id=user.id, auth_type=user.auth_type)
        return AuthenticationResult(
            success=True,
            message=message,
            session=session,
            cookies=cookies,
            headers=headers,
            redirect_url=redirect_url,
        )

    @staticmethod
    def _failed(message: str, *, error: str | None = None) -> AuthenticationResult:
        return AuthenticationResult(success=False, message=message, error=error or message)
