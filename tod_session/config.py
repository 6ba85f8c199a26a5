"""Authentication flow settings (``TOD_AUTH_*`` environment variables)."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class AuthFlowConfig(BaseSettings):
    """Timing of the wait for an emailed artifact."""

    model_config = {"env_prefix": "TOD_AUTH_"}

    default_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Wait bound used when the user has no email_timeout",
    )
    retry_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Pause between mailbox checks while waiting",
    )
    recent_window_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How far back an email may have arrived and still count",
    )
