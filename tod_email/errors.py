"""Error taxonomy for the mailbox side.

Each error carries a ``remedy`` string so callers can render an actionable
message instead of a protocol trace.
"""

from __future__ import annotations


class TodEmailError(Exception):
    """Base class for mailbox and extraction errors."""

    remedy: str = "Check the tod logs for details."

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        if remedy is not None:
            self.remedy = remedy


class MailboxNotConfiguredError(TodEmailError):
    """No username/password is available for the mailbox."""

    remedy = (
        "Configure mailbox access in .tod/config.yaml (email.imap_user, "
        "email.imap_pass) or set IMAP_USER and IMAP_PASS."
    )


class MailboxConnectionError(TodEmailError):
    """Dial, login or mailbox selection failed, or the connection dropped."""

    remedy = (
        "Reconfigure mailbox access: verify the IMAP host, port and app "
        "password, and that IMAP is enabled for the account."
    )


class MessageParseError(TodEmailError):
    """A single message could not be fetched or parsed."""


class MonitorAlreadyRunningError(TodEmailError):
    """``start_background`` was called on a monitor that is already polling."""

    remedy = "Stop the running monitor before starting a new one."


class ArtifactWaitTimeout(TodEmailError):
    """No artifact arrived before the wait deadline."""

    remedy = (
        "Make sure the application actually sent the email, then retry with "
        "a longer email_timeout."
    )
