"""Session store errors."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tod_email.errors import TodEmailError

if TYPE_CHECKING:
    from .models import UserSession


class SessionError(TodEmailError):
    """Base class for session store failures."""


class SessionNotFoundError(SessionError):
    remedy = "Authenticate the user first to create a session."

    def __init__(self, user_id: str) -> None:
        super().__init__(f"session not found for user: {user_id}")
        self.user_id = user_id


class SessionExpiredError(SessionError):
    """The session's expiry has passed.  It has been persisted as inactive."""

    remedy = "Re-authenticate the user to start a fresh session."

    def __init__(self, session: UserSession) -> None:
        super().__init__(f"session expired for user: {session.user_id}")
        self.session = session


class SessionStorageError(SessionError):
    """A session file could not be read or written."""

    remedy = "Check that the project's .tod/sessions directory is writable."
