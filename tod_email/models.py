"""Data models for fetched email and extracted authentication artifacts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ArtifactType(str, Enum):
    """Kind of authentication value delivered by email."""

    MAGIC_LINK = "magic_link"
    VERIFICATION_CODE = "verification_code"
    TWO_FACTOR_CODE = "two_factor_code"
    SMS_CODE = "sms_code"

    @property
    def is_code(self) -> bool:
        return self is not ArtifactType.MAGIC_LINK

    @property
    def label(self) -> str:
        return {
            ArtifactType.MAGIC_LINK: "magic link",
            ArtifactType.VERIFICATION_CODE: "verification code",
            ArtifactType.TWO_FACTOR_CODE: "2FA code",
            ArtifactType.SMS_CODE: "SMS code",
        }[self]


class Email(BaseModel):
    """A message as fetched from the mailbox.  Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="IMAP UID of the message")
    subject: str = Field(default="", description="Decoded Subject header")
    sender: str = Field(default="", description="From address")
    recipient: str = Field(default="", description="First To address")
    body: str = Field(default="", description="Text of all inline MIME parts")
    received_at: datetime = Field(description="Server INTERNALDATE (UTC)")
    snippet: str = Field(default="", description="Short whitespace-collapsed preview")


class ExtractionResult(BaseModel):
    """Outcome of classifying email content.

    A failed result is a normal negative classification, not an error;
    ``error`` then explains why nothing was found.
    """

    success: bool
    artifact_type: ArtifactType
    value: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    tier: str | None = Field(default=None, description="Name of the matching pattern tier")
    email: Email | None = Field(default=None, description="Message the value came from")
    error: str | None = None
    timed_out: bool = Field(
        default=False,
        description="Set when a bounded wait gave up before anything was found",
    )

    @classmethod
    def not_found(cls, artifact_type: ArtifactType, reason: str) -> ExtractionResult:
        return cls(success=False, artifact_type=artifact_type, error=reason)
