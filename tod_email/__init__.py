"""tod mailbox monitoring: IMAP polling and auth artifact extraction."""

from .clock import Clock, SystemClock
from .config import ImapConfig, RetryConfig, load_imap_config
from .credentials import load_credentials, save_credentials
from .errors import (
    ArtifactWaitTimeout,
    MailboxConnectionError,
    MailboxNotConfiguredError,
    MessageParseError,
    MonitorAlreadyRunningError,
    TodEmailError,
)
from .extractor import (
    ArtifactClassifier,
    ArtifactExtractor,
    build_classifier_prompt,
    extract_code,
    extract_for_type,
    extract_magic_link,
)
from .imap_client import FetchBatch, ImapSession, MonitorState
from .logging import setup_logging
from .models import ArtifactType, Email, ExtractionResult
from .monitor import MailboxMonitor, MonitorHandle
from .parser import MimeParser
from .retry import with_retry
from .shutdown import install_signal_handlers

__all__ = [
    "ArtifactClassifier",
    "ArtifactExtractor",
    "ArtifactType",
    "ArtifactWaitTimeout",
    "Clock",
    "Email",
    "ExtractionResult",
    "FetchBatch",
    "ImapConfig",
    "ImapSession",
    "MailboxConnectionError",
    "MailboxMonitor",
    "MailboxNotConfiguredError",
    "MessageParseError",
    "MimeParser",
    "MonitorAlreadyRunningError",
    "MonitorHandle",
    "MonitorState",
    "RetryConfig",
    "SystemClock",
    "TodEmailError",
    "build_classifier_prompt",
    "extract_code",
    "extract_for_type",
    "extract_magic_link",
    "install_signal_handlers",
    "load_credentials",
    "load_imap_config",
    "save_credentials",
    "setup_logging",
    "with_retry",
]
