"""Heuristic extraction of authentication artifacts from email text.

The module-level functions are pure: text in, :class:`ExtractionResult` out.
Pattern tiers are tried in a fixed order from most to least specific and the
first tier that matches wins, so a more specific match always carries a
higher confidence than a general one found in the same content.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

import structlog

from .models import ArtifactType, Email, ExtractionResult
from .parser import strip_html

logger = structlog.get_logger()

AUTH_KEYWORDS = ("verify", "auth", "login", "confirm", "activate", "magic", "token", "signin")
DENIED_URL_PARTS = (
    "unsubscribe",
    "privacy",
    "terms",
    "preferences",
    "email-settings",
    "support",
    "help",
)

AUTH_URL_CONFIDENCE = 0.9
HTTPS_URL_CONFIDENCE = 0.6

_URL_RE = re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE)

# Sentence punctuation that can trail a URL in prose.  "?", "=", "&" and "%"
# are query-string characters and are never trimmed.
_TRAILING = ".,;:!"


@dataclass(frozen=True)
class CodeTier:
    name: str
    pattern: re.Pattern[str]
    confidence: float


CODE_TIERS: tuple[CodeTier, ...] = (
    CodeTier("labeled_code", re.compile(r"\bcode\b[\s:]+(?:is[\s:]+)?(\d{4,8})\b", re.I), 0.95),
    CodeTier(
        "labeled_verification",
        re.compile(r"\bverification\b[\s:]+(?:is[\s:]+)?(\d{4,8})\b", re.I),
        0.9,
    ),
    CodeTier("labeled_token", re.compile(r"\btoken\b[\s:]+(?:is[\s:]+)?(\d{4,8})\b", re.I), 0.85),
    CodeTier("six_digit", re.compile(r"\b(\d{6})\b"), 0.8),
    CodeTier("four_digit", re.compile(r"\b(\d{4})\b"), 0.7),
    CodeTier("eight_digit", re.compile(r"\b(\d{8})\b"), 0.6),
)


def clean_url(url: str) -> str:
    """Trim trailing sentence punctuation and unbalanced closing brackets."""
    while url:
        last = url[-1]
        if last in _TRAILING:
            url = url[:-1]
        elif last == ")" and url.count(")") > url.count("("):
            url = url[:-1]
        elif last == "]" and url.count("]") > url.count("["):
            url = url[:-1]
        else:
            break
    return url


def find_urls(text: str) -> list[str]:
    return [u for u in (clean_url(m.group(0)) for m in _URL_RE.finditer(text)) if u]


def _has_auth_keyword(url: str) -> bool:
    parts = urlsplit(url)
    haystack = f"{parts.path}?{parts.query}".lower()
    return any(keyword in haystack for keyword in AUTH_KEYWORDS)


def _is_denied(url: str) -> bool:
    lowered = url.lower()
    return any(part in lowered for part in DENIED_URL_PARTS)


def extract_magic_link(text: str) -> ExtractionResult:
    """Find the URL most likely to be a single-use login link.

    Tier 1: an http(s) URL whose path or query mentions an auth keyword.
    Tier 2: any https URL that is not an unsubscribe/legal/support link.
    """
    urls = find_urls(text)

    for url in urls:
        if _has_auth_keyword(url):
            return ExtractionResult(
                success=True,
                artifact_type=ArtifactType.MAGIC_LINK,
                value=url,
                confidence=AUTH_URL_CONFIDENCE,
                tier="auth_keyword_url",
            )

    for url in urls:
        if url.lower().startswith("https://") and not _is_denied(url):
            return ExtractionResult(
                success=True,
                artifact_type=ArtifactType.MAGIC_LINK,
                value=url,
                confidence=HTTPS_URL_CONFIDENCE,
                tier="https_url",
            )

    reason = "no magic link URLs found"
    if urls:
        reason = f"no magic link among {len(urls)} URL(s); all were unsubscribe/legal/support links"
    return ExtractionResult.not_found(ArtifactType.MAGIC_LINK, reason)


def extract_code(
    text: str,
    artifact_type: ArtifactType = ArtifactType.VERIFICATION_CODE,
) -> ExtractionResult:
    """Find a numeric one-time code.  Markup is stripped first."""
    visible = strip_html(text)
    for tier in CODE_TIERS:
        match = tier.pattern.search(visible)
        if match:
            return ExtractionResult(
                success=True,
                artifact_type=artifact_type,
                value=match.group(1),
                confidence=tier.confidence,
                tier=tier.name,
            )
    return ExtractionResult.not_found(artifact_type, f"no {artifact_type.label} found")


def extract_for_type(artifact_type: ArtifactType, email: Email) -> ExtractionResult:
    """Dispatch on *artifact_type* and attach *email* as the source."""
    if artifact_type is ArtifactType.MAGIC_LINK:
        result = extract_magic_link(email.body)
    else:
        result = extract_code(f"{email.subject}\n{email.body}", artifact_type)
    return result.model_copy(update={"email": email})


def build_classifier_prompt(email: Email, artifact_type: ArtifactType, context_hint: str) -> str:
    """Prompt text for a language-model backed :class:`ArtifactClassifier`."""
    base = (
        "You are analyzing an email to extract authentication information.\n\n"
        f"Context: {context_hint}\n"
        f"Email Subject: {email.subject}\n"
        f"Email From: {email.sender}\n"
        f"Email Content: {email.body}\n\n"
        f"Task: Extract the {artifact_type.label} from this email.\n"
    )
    if artifact_type is ArtifactType.MAGIC_LINK:
        return base + (
            "Look for URLs in the email that are likely to be magic login links.\n"
            "Magic links typically contain words like 'verify', 'login', 'auth', "
            "'confirm', or 'activate'.\n"
            "Return only the complete URL, nothing else.\n"
            'If no magic link is found, return "NOT_FOUND".'
        )
    return base + (
        "Look for numeric verification codes in the email.\n"
        "These are usually 4-8 digit numbers, often labeled as \"code\", "
        "\"verification code\", \"token\", or similar.\n"
        "Return only the numeric code, nothing else.\n"
        'If no code is found, return "NOT_FOUND".'
    )


class ArtifactClassifier(Protocol):
    """Optional second opinion for low-confidence matches."""

    async def classify(
        self,
        email: Email,
        artifact_type: ArtifactType,
        context_hint: str,
        candidate: ExtractionResult,
    ) -> ExtractionResult | None: ...


class ArtifactExtractor:
    """Regex extraction with an optional classifier as confidence booster.

    The regex tiers are always authoritative when the classifier is absent,
    fails, or has no answer.
    """

    def __init__(
        self,
        classifier: ArtifactClassifier | None = None,
        *,
        classifier_threshold: float = 0.7,
    ) -> None:
        self._classifier = classifier
        self._threshold = classifier_threshold

    def extract(self, artifact_type: ArtifactType, email: Email) -> ExtractionResult:
        return extract_for_type(artifact_type, email)

    def extract_any(self, email: Email) -> ExtractionResult:
        """Classify an email without knowing what the caller waits for.

        Links are checked before codes: a login email often contains both a
        link and incidental numbers, rarely the reverse.
        """
        link = extract_for_type(ArtifactType.MAGIC_LINK, email)
        if link.success:
            return link
        code = extract_for_type(ArtifactType.VERIFICATION_CODE, email)
        if code.success:
            return code
        return ExtractionResult.not_found(
            ArtifactType.MAGIC_LINK, "no magic link or code found"
        ).model_copy(update={"email": email})

    async def extract_from_emails(
        self,
        emails: Sequence[Email],
        artifact_type: ArtifactType,
        context_hint: str = "",
    ) -> ExtractionResult:
        """Return the first artifact found, newest email first.

        With a classifier set, it sees every email whose regex result is
        missing or below the threshold, together with that result.
        """
        if not emails:
            return ExtractionResult.not_found(artifact_type, "no emails found")

        for email in sorted(emails, key=lambda e: e.received_at, reverse=True):
            result = self.extract(artifact_type, email)
            if self._classifier is not None and (
                not result.success or result.confidence < self._threshold
            ):
                boosted = await self._consult(email, artifact_type, context_hint, result)
                if boosted is not None:
                    return boosted
            if result.success:
                return result

        return ExtractionResult.not_found(
            artifact_type,
            f"no {artifact_type.label} found in {len(emails)} recent email(s)",
        )

    async def _consult(
        self,
        email: Email,
        artifact_type: ArtifactType,
        context_hint: str,
        candidate: ExtractionResult,
    ) -> ExtractionResult | None:
        assert self._classifier is not None
        try:
            answer = await self._classifier.classify(email, artifact_type, context_hint, candidate)
        except Exception as exc:  # the classifier is a pluggable third party
            logger.warning("classifier_failed", email_id=email.id, error=str(exc))
            return None
        if answer is None or not answer.success or answer.artifact_type is not artifact_type:
            return None
        logger.debug(
            "classifier_answer",
            email_id=email.id,
            regex_confidence=candidate.confidence,
            confidence=answer.confidence,
        )
        return answer.model_copy(update={"email": email})
