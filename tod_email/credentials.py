"""Mailbox credentials file (``.tod/credentials/email.json``).

The file is owner-readable only.  The password is never logged.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from .config import ImapConfig

logger = structlog.get_logger()

CREDENTIALS_DIR = Path(".tod") / "credentials"
CREDENTIALS_FILE = "email.json"


def credentials_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / CREDENTIALS_DIR / CREDENTIALS_FILE


def save_credentials(project_dir: str | Path, config: ImapConfig) -> Path:
    """Persist the connection fields of *config* with mode 0600."""
    path = credentials_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    os.chmod(path.parent, 0o700)

    payload = {
        "host": config.host,
        "port": config.port,
        "username": config.username,
        "password": config.password.get_secret_value(),
        "use_ssl": config.use_ssl,
    }
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    # O_CREAT's mode does not apply to a file that already existed
    os.chmod(path, 0o600)

    logger.info("credentials_saved", path=str(path), username=config.username)
    return path


def load_credentials(project_dir: str | Path) -> dict[str, Any] | None:
    """Return the stored credential fields, or ``None`` when absent/invalid."""
    path = credentials_path(project_dir)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("credentials_unreadable", path=str(path), error=str(exc))
        return None
    if not isinstance(data, dict):
        return None
    allowed = {"host", "port", "username", "password", "use_ssl"}
    return {k: v for k, v in data.items() if k in allowed}
