"""Tests for tod_email.extractor."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tod_email.extractor import (
    CODE_TIERS,
    ArtifactExtractor,
    build_classifier_prompt,
    clean_url,
    extract_code,
    extract_for_type,
    extract_magic_link,
)
from tod_email.models import ArtifactType, Email, ExtractionResult

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _email(body: str, *, subject: str = "", uid: str = "1", age: int = 0) -> Email:
    return Email(
        id=uid,
        subject=subject,
        sender="noreply@app.example.com",
        body=body,
        received_at=NOW - timedelta(seconds=age),
    )


class TestExtractMagicLink:
    def test_query_string_preserved(self):
        result = extract_magic_link(
            "Click to verify: https://app.example.com/auth/verify?t=abc123 Thanks"
        )
        assert result.success is True
        assert result.value == "https://app.example.com/auth/verify?t=abc123"
        assert result.confidence == 0.9
        assert result.tier == "auth_keyword_url"

    def test_keyword_url_beats_plain_https(self):
        text = (
            "Visit https://app.example.com/welcome or sign in at "
            "http://app.example.com/login?next=%2Fhome&ref=mail"
        )
        result = extract_magic_link(text)
        assert result.value == "http://app.example.com/login?next=%2Fhome&ref=mail"
        assert result.confidence > 0.6

    def test_plain_https_fallback(self):
        result = extract_magic_link("Open https://app.example.com/s/9f8e7d to continue.")
        assert result.success is True
        assert result.value == "https://app.example.com/s/9f8e7d"
        assert result.confidence == 0.6
        assert result.tier == "https_url"

    def test_deny_listed_urls_ignored(self):
        text = (
            "https://app.example.com/unsubscribe?u=1 "
            "https://app.example.com/privacy https://help.example.com/faq"
        )
        result = extract_magic_link(text)
        assert result.success is False
        assert "3 URL(s)" in (result.error or "")

    def test_plain_http_only_counts_with_keyword(self):
        assert extract_magic_link("see http://example.com/page").success is False

    def test_keyword_in_host_only_does_not_count(self):
        result = extract_magic_link("https://auth.example.com/x/1")
        assert result.tier == "https_url"

    def test_no_urls(self):
        result = extract_magic_link("Thanks for signing up!")
        assert result.success is False
        assert result.error == "no magic link URLs found"

    def test_href_in_html(self):
        html = '<a href="https://app.example.com/magic?token=x-y_z">Sign in</a>'
        assert extract_magic_link(html).value == "https://app.example.com/magic?token=x-y_z"


class TestCleanUrl:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("https://a.com/verify?t=1.", "https://a.com/verify?t=1"),
            ("https://a.com/verify?t=1),", "https://a.com/verify?t=1"),
            ("https://a.com/wiki/Foo_(bar)", "https://a.com/wiki/Foo_(bar)"),
            ("https://a.com/login?next=/x&y=", "https://a.com/login?next=/x&y="),
            ("https://a.com/login#frag?", "https://a.com/login#frag?"),
        ],
    )
    def test_only_sentence_punctuation_trimmed(self, raw: str, expected: str):
        assert clean_url(raw) == expected


class TestExtractCode:
    def test_bare_six_digit(self):
        result = extract_code("Your code is 482913")
        assert result.success is True
        assert result.value == "482913"

    def test_labeled_code_wins(self):
        result = extract_code("Order 123456. Code: 9071")
        assert result.value == "9071"
        assert result.tier == "labeled_code"
        assert result.confidence == 0.95

    def test_labeled_verification(self):
        result = extract_code("Verification: 55501234")
        assert result.value == "55501234"
        assert result.tier == "labeled_verification"

    def test_labels_case_insensitive(self):
        assert extract_code("TOKEN: 7788").tier == "labeled_token"

    def test_six_digit_before_four(self):
        result = extract_code("Room 1204, use 650321")
        assert result.value == "650321"
        assert result.tier == "six_digit"

    def test_eight_digit_last(self):
        result = extract_code("Reference 12345678")
        assert result.value == "12345678"
        assert result.confidence == 0.6

    def test_css_colour_not_a_code(self):
        html = "<style>p { color: #123456; }</style><p>Your PIN: 4821</p>"
        result = extract_code(html)
        assert result.value == "4821"

    def test_artifact_type_carried(self):
        result = extract_code("482913", ArtifactType.TWO_FACTOR_CODE)
        assert result.artifact_type is ArtifactType.TWO_FACTOR_CODE

    def test_no_code(self):
        result = extract_code("Welcome aboard!")
        assert result.success is False
        assert result.error == "no verification code found"

    def test_tier_confidence_strictly_decreasing(self):
        confidences = [tier.confidence for tier in CODE_TIERS]
        assert confidences == sorted(confidences, reverse=True)
        assert len(set(confidences)) == len(confidences)


class TestExtractForType:
    def test_code_found_in_subject(self):
        email = _email("See subject.", subject="482913 is your login code")
        result = extract_for_type(ArtifactType.VERIFICATION_CODE, email)
        assert result.value == "482913"
        assert result.email == email

    def test_magic_link_ignores_subject(self):
        email = _email("no link here", subject="https://app.example.com/login")
        assert extract_for_type(ArtifactType.MAGIC_LINK, email).success is False


class _StubClassifier:
    def __init__(self, answer: ExtractionResult | None = None, error: Exception | None = None):
        self.answer = answer
        self.error = error
        self.calls = 0

    async def classify(self, email, artifact_type, context_hint, candidate):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.answer


class TestArtifactExtractor:
    def test_extract_any_prefers_link(self):
        email = _email("Code 482913 or https://app.example.com/auth/verify?t=1")
        result = ArtifactExtractor().extract_any(email)
        assert result.artifact_type is ArtifactType.MAGIC_LINK

    def test_extract_any_falls_back_to_code(self):
        result = ArtifactExtractor().extract_any(_email("Your code is 482913"))
        assert result.artifact_type is ArtifactType.VERIFICATION_CODE
        assert result.value == "482913"

    def test_extract_any_nothing(self):
        result = ArtifactExtractor().extract_any(_email("hello"))
        assert result.success is False
        assert result.email is not None

    @pytest.mark.asyncio
    async def test_newest_email_first(self):
        old = _email("Your code is 111111", uid="1", age=50)
        new = _email("Your code is 222222", uid="2", age=5)
        result = await ArtifactExtractor().extract_from_emails(
            [old, new], ArtifactType.VERIFICATION_CODE
        )
        assert result.value == "222222"
        assert result.email is not None and result.email.id == "2"

    @pytest.mark.asyncio
    async def test_empty_list(self):
        result = await ArtifactExtractor().extract_from_emails([], ArtifactType.MAGIC_LINK)
        assert result.success is False
        assert result.error == "no emails found"

    @pytest.mark.asyncio
    async def test_classifier_not_consulted_when_confident(self):
        classifier = _StubClassifier()
        extractor = ArtifactExtractor(classifier)
        result = await extractor.extract_from_emails(
            [_email("Your code is 482913")], ArtifactType.VERIFICATION_CODE
        )
        assert result.value == "482913"
        assert classifier.calls == 0

    @pytest.mark.asyncio
    async def test_classifier_boosts_low_confidence(self):
        answer = ExtractionResult(
            success=True,
            artifact_type=ArtifactType.MAGIC_LINK,
            value="https://app.example.com/s/real",
            confidence=0.95,
        )
        classifier = _StubClassifier(answer=answer)
        extractor = ArtifactExtractor(classifier)
        result = await extractor.extract_from_emails(
            [_email("https://app.example.com/s/first https://app.example.com/s/real")],
            ArtifactType.MAGIC_LINK,
            "user clicked send link",
        )
        assert classifier.calls == 1
        assert result.value == "https://app.example.com/s/real"
        assert result.email is not None

    @pytest.mark.asyncio
    async def test_classifier_consulted_when_regex_finds_nothing(self):
        answer = ExtractionResult(
            success=True,
            artifact_type=ArtifactType.VERIFICATION_CODE,
            value="FX-7731",
            confidence=0.9,
        )
        classifier = _StubClassifier(answer=answer)
        extractor = ArtifactExtractor(classifier)
        result = await extractor.extract_from_emails(
            [_email("Use the token shown below to continue", uid="9")],
            ArtifactType.VERIFICATION_CODE,
        )
        assert classifier.calls == 1
        assert result.success is True
        assert result.value == "FX-7731"
        assert result.email is not None and result.email.id == "9"

    @pytest.mark.asyncio
    async def test_classifier_without_answer_keeps_not_found(self):
        classifier = _StubClassifier()
        extractor = ArtifactExtractor(classifier)
        result = await extractor.extract_from_emails(
            [_email("hello", uid="1"), _email("hi again", uid="2")],
            ArtifactType.MAGIC_LINK,
        )
        assert classifier.calls == 2
        assert result.success is False

    @pytest.mark.asyncio
    async def test_classifier_failure_keeps_regex_result(self):
        classifier = _StubClassifier(error=RuntimeError("model unavailable"))
        extractor = ArtifactExtractor(classifier)
        result = await extractor.extract_from_emails(
            [_email("https://app.example.com/s/first")], ArtifactType.MAGIC_LINK
        )
        assert result.success is True
        assert result.value == "https://app.example.com/s/first"
        assert result.confidence == 0.6


class TestClassifierPrompt:
    def test_magic_link_prompt(self):
        prompt = build_classifier_prompt(
            _email("body", subject="Sign in"), ArtifactType.MAGIC_LINK, "hint"
        )
        assert "Context: hint" in prompt
        assert "Email Subject: Sign in" in prompt
        assert "magic login links" in prompt

    def test_code_prompt(self):
        prompt = build_classifier_prompt(_email("body"), ArtifactType.TWO_FACTOR_CODE, "")
        assert "Extract the 2FA code" in prompt
        assert "NOT_FOUND" in prompt
