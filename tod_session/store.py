"""SessionStore: one JSON file per test user under ``.tod/sessions``.

Records are partitioned by user id, so operations on different users never
conflict.  Operations on the *same* user are not serialised here; callers
that share a user across tasks must serialise them.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from urllib.parse import quote

import structlog
from pydantic import ValidationError

from tod_email.clock import Clock, SystemClock

from .errors import SessionExpiredError, SessionNotFoundError, SessionStorageError
from .expiry import compute_expiry
from .models import TestUser, UserSession

logger = structlog.get_logger()

SESSIONS_DIR = Path(".tod") / "sessions"


def session_file_name(user_id: str) -> str:
    """Map a user id onto a file name inside the sessions dir.

    Percent-encoding keeps distinct ids on distinct files and leaves no path
    separator.  A leading dot is encoded too, so no id becomes a hidden file
    or a ``..`` component.  The empty id maps to a lone ``%``, which no
    encoded id produces.
    """
    encoded = quote(user_id, safe="")
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return f"{encoded or '%'}.json"


class SessionStore:
    def __init__(self, project_dir: str | Path, *, clock: Clock | None = None) -> None:
        self._dir = Path(project_dir) / SESSIONS_DIR
        self._clock = clock or SystemClock()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, user_id: str) -> Path:
        return self._dir / session_file_name(user_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self, session: UserSession) -> None:
        path = self.path_for(session.user_id)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a crash never leaves half a record
            fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(session.model_dump_json(indent=2))
            os.replace(tmp, path)
        except OSError as exc:
            raise SessionStorageError(f"failed to save session {path}: {exc}") from exc

    def _load(self, path: Path) -> UserSession:
        try:
            return UserSession.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise SessionStorageError(f"failed to read session {path}: {exc}") from exc

    def _load_user(self, user_id: str) -> UserSession:
        path = self.path_for(user_id)
        if not path.exists():
            raise SessionNotFoundError(user_id)
        session = self._load(path)
        if session.user_id != user_id:
            raise SessionStorageError(
                f"session file {path} belongs to {session.user_id!r}, not {user_id!r}"
            )
        return session

    def _records(self) -> list[tuple[Path, UserSession]]:
        """Every readable record; unreadable files are logged and skipped."""
        if not self._dir.is_dir():
            return []
        records = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                records.append((path, self._load(path)))
            except SessionStorageError as exc:
                logger.warning("session_file_skipped", path=str(path), error=str(exc))
        return records

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_session(self, user: TestUser) -> UserSession:
        """Create a fresh session, replacing any earlier record for *user*."""
        now = self._clock.now()
        session = UserSession(
            user_id=user.id,
            environment=user.environment,
            auth_type=user.auth_type,
            started_at=now,
            last_used_at=now,
            expires_at=compute_expiry(user, now),
            is_active=True,
        )
        self._save(session)
        logger.info(
            "session_started",
            user_id=user.id,
            auth_type=user.auth_type,
            expires_at=session.expires_at.isoformat() if session.expires_at else None,
        )
        return session

    def get_session(self, user_id: str) -> UserSession:
        """Load a session.

        Raises :class:`SessionNotFoundError` when there is no record, and
        :class:`SessionExpiredError` (carrying the now inactive session) when
        its expiry has passed.  The inactive flag is persisted first, so a
        later read never sees the session as active again.
        """
        session = self._load_user(user_id)
        if session.is_expired(self._clock.now()):
            if session.is_active:
                session.is_active = False
                self._save(session)
                logger.info("session_expired", user_id=user_id)
            raise SessionExpiredError(session)
        return session

    def update_session(self, session: UserSession) -> None:
        session.last_used_at = self._clock.now()
        self._save(session)

    def end_session(self, user_id: str) -> None:
        """Mark the session inactive.  The record is kept."""
        session = self._load_user(user_id)
        session.is_active = False
        self._save(session)
        logger.info("session_ended", user_id=user_id)

    def cleanup_expired_sessions(self) -> int:
        """Delete every expired record and return how many were removed."""
        now = self._clock.now()
        removed = 0
        for path, session in self._records():
            if not session.is_expired(now):
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("session_cleanup_failed", path=str(path), error=str(exc))
                continue
            removed += 1
        if removed:
            logger.info("sessions_cleaned", removed=removed)
        return removed

    def list_active_sessions(self) -> list[UserSession]:
        now = self._clock.now()
        return [s for _, s in self._records() if s.is_active and not s.is_expired(now)]
