"""Mailbox configuration.

Every field can be set through ``IMAP_*`` environment variables.  Values read
from the project's ``.tod`` directory (see :func:`load_imap_config`) are passed
as init kwargs and therefore take precedence over the environment.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings

from .credentials import load_credentials

logger = structlog.get_logger()

TOD_DIR = ".tod"
CONFIG_FILE = "config.yaml"


class RetryConfig(BaseSettings):
    """Retry / backoff settings for the initial mailbox connection."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum connection attempts")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ImapConfig(BaseSettings):
    """IMAP server connection and polling settings."""

    model_config = {"env_prefix": "IMAP_", "populate_by_name": True}

    host: str = Field(default="imap.fastmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    username: str = Field(
        default="",
        validation_alias=AliasChoices("IMAP_USER", "IMAP_USERNAME"),
        description="IMAP login username",
    )
    password: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("IMAP_PASS", "IMAP_PASSWORD"),
        description="IMAP login password (app password for most providers)",
    )
    use_ssl: bool = Field(
        default=True,
        validation_alias=AliasChoices("IMAP_SECURE", "IMAP_USE_SSL"),
        description="Use SSL/TLS connection (always on for port 993)",
    )
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between background poll ticks",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Socket timeout and upper bound for one reconnect attempt",
    )
    backlog_size: int = Field(
        default=10,
        ge=0,
        description="Messages examined by the first poll after a cold start",
    )
    recent_scan_limit: int = Field(
        default=20,
        gt=0,
        description="Messages examined by a one-shot recent scan",
    )
    observed_buffer_size: int = Field(
        default=50,
        gt=0,
        description="Emails kept from the background loop for waiting callers",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password.get_secret_value())


def read_project_config(project_dir: str | Path) -> dict[str, Any]:
    """Load ``.tod/config.yaml``; a missing or unreadable file yields ``{}``."""
    path = Path(project_dir) / TOD_DIR / CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("project_config_unreadable", path=str(path), error=str(exc))
        return {}
    return data if isinstance(data, dict) else {}


def _imap_values_from_project(config_data: dict[str, Any]) -> dict[str, Any]:
    """Map the ``email:`` section onto :class:`ImapConfig` field names.

    Legacy ``smtp_*`` keys are honoured when the ``imap_*`` key is absent.
    """
    section = config_data.get("email")
    if not isinstance(section, dict):
        return {}

    keys = {
        "host": ("imap_host", "smtp_host"),
        "port": ("imap_port",),
        "username": ("imap_user", "smtp_user"),
        "password": ("imap_pass", "smtp_pass"),
        "use_ssl": ("imap_secure",),
        "mailbox": ("imap_mailbox",),
        "poll_interval_seconds": ("poll_interval",),
    }
    values: dict[str, Any] = {}
    for field_name, candidates in keys.items():
        for key in candidates:
            value = section.get(key)
            if value is not None and value != "":
                values[field_name] = value
                break
    return values


def load_imap_config(project_dir: str | Path = ".", **overrides: Any) -> ImapConfig:
    """Resolve mailbox settings for *project_dir*.

    Priority: explicit *overrides*, ``.tod/config.yaml``, the credentials file,
    ``IMAP_*`` environment variables, field defaults.
    """
    values: dict[str, Any] = {}
    stored = load_credentials(project_dir)
    if stored is not None:
        values.update({k: v for k, v in stored.items() if v not in (None, "")})
    values.update(_imap_values_from_project(read_project_config(project_dir)))
    values.update(overrides)
    return ImapConfig(**values)
