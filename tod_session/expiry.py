"""Session lifetime policy, a pure function of the auth type."""

from __future__ import annotations

from datetime import datetime, timedelta

from .models import TestUser

DEFAULT_LIFETIME = timedelta(hours=24)
BEARER_LIFETIME = timedelta(hours=24)
OAUTH_LIFETIME = timedelta(hours=1)


def compute_expiry(user: TestUser, started_at: datetime) -> datetime:
    if user.auth_type == "bearer":
        return started_at + BEARER_LIFETIME
    if user.auth_type == "oauth":
        if user.auth_config is not None and user.auth_config.expires_at is not None:
            return user.auth_config.expires_at
        return started_at + OAUTH_LIFETIME
    return started_at + DEFAULT_LIFETIME
