"""Data models for test users, their sessions and authentication outcomes."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AuthFlowState(str, Enum):
    """Progress of one authentication request."""

    IDLE = "idle"
    WAITING = "waiting"
    FOUND = "found"
    TIMED_OUT = "timed_out"


class Cookie(BaseModel):
    """A browser cookie handed to the test driver."""

    name: str
    value: str
    domain: str = ""
    path: str = ""
    expires: datetime | None = None
    http_only: bool = False
    secure: bool = False


class TestUserAuthConfig(BaseModel):
    """Credentials and options that depend on the user's auth type."""

    __test__ = False  # not a pytest class

    # basic / username_password
    username: str = ""
    password: str = ""
    # bearer
    token: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    # oauth
    provider: str = ""
    client_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = Field(
        default=None,
        description="Provider-supplied token expiry; becomes the session expiry for oauth",
    )
    # email round-trips
    email_check_enabled: bool = False
    email_timeout: int | None = Field(
        default=None,
        ge=0,
        description="Seconds to wait for the auth email (orchestrator default when unset)",
    )

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class TestUser(BaseModel):
    """A user account the assistant can log in as."""

    __test__ = False

    id: str = Field(description="Stable identifier, also the session key")
    name: str = ""
    email: str = ""
    username: str = ""
    role: str = ""
    environment: str = ""
    auth_type: str = Field(
        default="none",
        description="none, basic, bearer, oauth, username_password, magic_link, "
        "email_verification, 2fa or sms",
    )
    auth_config: TestUserAuthConfig | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UserSession(BaseModel):
    """Persisted authentication state of one user."""

    user_id: str
    environment: str = ""
    auth_type: str = ""
    started_at: datetime
    last_used_at: datetime
    expires_at: datetime | None = None
    cookies: list[Cookie] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    local_storage: dict[str, str] = Field(default_factory=dict)
    session_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form values such as a retrieved magic link or code",
    )
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class EmailAccessResult(BaseModel):
    """Outcome of a mailbox access check."""

    ok: bool
    message: str
    host: str | None = None
    username: str | None = None
    remedy: str | None = Field(default=None, description="Next step when ``ok`` is false")


class AuthenticationResult(BaseModel):
    """What :meth:`AuthFlowOrchestrator.authenticate` returns.  Never raised."""

    success: bool
    message: str = ""
    session: UserSession | None = None
    cookies: list[Cookie] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    redirect_url: str | None = None
    error: str | None = None
    timed_out: bool = False
    state: AuthFlowState = AuthFlowState.IDLE
