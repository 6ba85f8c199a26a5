"""Entry point for the mailbox monitor.

Usage::

    python -m tod_email monitor [project_dir]   # watch the inbox until Ctrl-C
    python -m tod_email check [project_dir]     # verify mailbox access once
"""

from __future__ import annotations

import asyncio
import sys

import structlog

from .config import load_imap_config
from .errors import MailboxConnectionError, MailboxNotConfiguredError
from .logging import setup_logging
from .models import ExtractionResult
from .monitor import MailboxMonitor
from .shutdown import install_signal_handlers

logger = structlog.get_logger()

USAGE = "Usage: python -m tod_email {monitor|check} [project_dir]"


def _report(result: ExtractionResult) -> None:
    subject = result.email.subject if result.email else ""
    print(f"[{result.artifact_type.label}] {result.value}  ({subject})", flush=True)


def _fail(exc: MailboxNotConfiguredError | MailboxConnectionError) -> int:
    print(f"error: {exc}\n{exc.remedy}", file=sys.stderr)
    return 1


async def run_monitor(project_dir: str) -> int:
    config = load_imap_config(project_dir)
    monitor = MailboxMonitor(config)
    shutdown_event = asyncio.Event()
    install_signal_handlers(shutdown_event)

    try:
        await monitor.start_background(_report)
    except (MailboxNotConfiguredError, MailboxConnectionError) as exc:
        logger.error("monitor_start_failed", host=config.host, error=str(exc))
        return _fail(exc)

    print(
        f"Monitoring {config.mailbox} on {config.host} as {config.username} "
        f"(every {config.poll_interval_seconds:g}s). Press Ctrl-C to stop.",
        flush=True,
    )
    try:
        await shutdown_event.wait()
    finally:
        await monitor.close()
    return 0


async def run_check(project_dir: str) -> int:
    config = load_imap_config(project_dir)
    monitor = MailboxMonitor(config)
    try:
        await monitor.test_connection()
    except (MailboxNotConfiguredError, MailboxConnectionError) as exc:
        logger.error("mailbox_check_failed", host=config.host, error=str(exc))
        return _fail(exc)
    finally:
        await monitor.close()

    print(f"Mailbox access OK: {config.username} on {config.host}", flush=True)
    return 0


def main() -> None:
    modes = {"monitor": run_monitor, "check": run_check}
    if len(sys.argv) < 2 or sys.argv[1] not in modes:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    project_dir = sys.argv[2] if len(sys.argv) > 2 else "."
    setup_logging()
    sys.exit(asyncio.run(modes[sys.argv[1]](project_dir)))


if __name__ == "__main__":
    main()
