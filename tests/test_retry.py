"""
Tests for the bounded self-correction loop.

A scripted fake extractor replays payloads (or raises) in order, so every
scenario is deterministic and needs no network.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from invoice_gatekeeper.audit import audit_extraction
from invoice_gatekeeper.exceptions import (
    ConfigurationError,
    ExtractionCancelledError,
    ExtractionError,
    ExtractionTimeoutError,
)
from invoice_gatekeeper.models import (
    CorrectedOnRetry,
    DocumentType,
    FinancialExtraction,
    StillFailing,
)
from invoice_gatekeeper.retry import RetryController, call_extractor


def _make_extraction(**overrides: Any) -> FinancialExtraction:
    kwargs: dict[str, Any] = {
        "document_type": DocumentType.INVOICE,
        "vendor_name": "Acme Consulting BV",
        "subtotal": Decimal("100.00"),
        "vat_amount": Decimal("21.00"),
        "total_amount": Decimal("121.00"),
        "iban": "BE68539007547034",
        "payment_reference": "+++012/3456/78939+++",
        "confidence": 0.9,
    }
    kwargs.update(overrides)
    return FinancialExtraction(**kwargs)


GOOD = _make_extraction()
BAD_TOTAL = _make_extraction(total_amount=Decimal("130.00"))
BAD_TOTAL_AND_OGM = _make_extraction(
    total_amount=Decimal("130.00"), payment_reference="+++012/3456/78940+++"
)


class ScriptedExtractor:
    """Returns (or raises) the scripted items in order and records feedback."""

    def __init__(self, *script: FinancialExtraction | BaseException):
        self.script = list(script)
        self.feedback: list[str | None] = []

    @property
    def calls(self) -> int:
        return len(self.feedback)

    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction:
        self.feedback.append(feedback)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class SlowExtractor:
    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction:
        await asyncio.sleep(5)
        return GOOD


def _run(controller: RetryController, extraction: FinancialExtraction):
    return asyncio.run(controller.run("document", extraction, audit_extraction(extraction)))


# ═══════════════════════════════════════════════════════════════════
# Outcomes
# ═══════════════════════════════════════════════════════════════════


class TestRetryOutcomes:
    def test_corrected_on_second_attempt(self) -> None:
        extractor = ScriptedExtractor(GOOD)
        result = _run(RetryController(extractor, audit_extraction, max_retries=3), BAD_TOTAL)

        assert isinstance(result, CorrectedOnRetry)
        assert result.attempt == 2
        assert result.corrected_fields == ("total_amount",)
        assert result.data == GOOD
        assert result.report.is_passable
        assert [c.field for c in result.original_failures] == ["total_amount"]
        assert extractor.calls == 1

    def test_still_failing_exhausts_budget(self) -> None:
        extractor = ScriptedExtractor(BAD_TOTAL, BAD_TOTAL)
        result = _run(RetryController(extractor, audit_extraction, max_retries=3), BAD_TOTAL)

        assert isinstance(result, StillFailing)
        assert result.attempts == 3
        assert extractor.calls == 2
        assert [c.field for c in result.remaining_failures] == ["total_amount"]

    def test_budget_of_one_makes_no_calls(self) -> None:
        extractor = ScriptedExtractor()
        result = _run(RetryController(extractor, audit_extraction, max_retries=1), BAD_TOTAL)
        assert isinstance(result, StillFailing)
        assert result.attempts == 1
        assert extractor.calls == 0

    def test_partial_then_full_correction(self) -> None:
        partially_fixed = _make_extraction(payment_reference="+++012/3456/78940+++")
        extractor = ScriptedExtractor(partially_fixed, GOOD)
        result = _run(RetryController(extractor, audit_extraction, max_retries=3), BAD_TOTAL_AND_OGM)

        assert isinstance(result, CorrectedOnRetry)
        assert result.attempt == 3
        assert result.corrected_fields == ("total_amount", "payment_reference")

    def test_passing_report_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            _run(RetryController(ScriptedExtractor(), audit_extraction), GOOD)


# ═══════════════════════════════════════════════════════════════════
# Feedback passed to the extractor
# ═══════════════════════════════════════════════════════════════════


class TestRetryFeedback:
    def test_feedback_names_the_failure(self) -> None:
        extractor = ScriptedExtractor(GOOD)
        _run(RetryController(extractor, audit_extraction, max_retries=3), BAD_TOTAL)
        feedback = extractor.feedback[0]
        assert feedback is not None
        assert "CORRECTION REQUIRED (Attempt 2 of 3)" in feedback
        assert "MATH ERROR" in feedback
        assert "FINAL attempt" not in feedback

    def test_last_attempt_is_marked_final(self) -> None:
        extractor = ScriptedExtractor(BAD_TOTAL)
        _run(RetryController(extractor, audit_extraction, max_retries=2), BAD_TOTAL)
        assert "FINAL attempt" in (extractor.feedback[0] or "")


# ═══════════════════════════════════════════════════════════════════
# Collaborator failures
# ═══════════════════════════════════════════════════════════════════


class TestRetryErrors:
    def test_extraction_error_propagates(self) -> None:
        extractor = ScriptedExtractor(ExtractionError("model down", is_retryable=True))
        with pytest.raises(ExtractionError) as exc_info:
            _run(RetryController(extractor, audit_extraction), BAD_TOTAL)
        assert exc_info.value.is_retryable

    def test_unexpected_error_is_wrapped(self) -> None:
        extractor = ScriptedExtractor(RuntimeError("boom"))
        with pytest.raises(ExtractionError) as exc_info:
            _run(RetryController(extractor, audit_extraction), BAD_TOTAL)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.details["attempt"] == 2

    def test_timeout(self) -> None:
        controller = RetryController(SlowExtractor(), audit_extraction, attempt_timeout=0.01)
        with pytest.raises(ExtractionTimeoutError) as exc_info:
            _run(controller, BAD_TOTAL)
        assert exc_info.value.is_retryable
        assert exc_info.value.code == "EXTRACTION_TIMEOUT"

    def test_collaborator_cancellation(self) -> None:
        extractor = ScriptedExtractor(asyncio.CancelledError())
        with pytest.raises(ExtractionCancelledError):
            _run(RetryController(extractor, audit_extraction), BAD_TOTAL)

    def test_job_cancellation_propagates(self) -> None:
        async def scenario() -> None:
            task = asyncio.create_task(call_extractor(SlowExtractor(), "document"))
            await asyncio.sleep(0.01)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scenario())


class TestRetryConfiguration:
    @pytest.mark.parametrize("max_retries", [0, -1])
    def test_invalid_budget(self, max_retries: int) -> None:
        with pytest.raises(ConfigurationError):
            RetryController(ScriptedExtractor(), audit_extraction, max_retries=max_retries)

    def test_invalid_timeout(self) -> None:
        with pytest.raises(ConfigurationError):
            RetryController(ScriptedExtractor(), audit_extraction, attempt_timeout=0)
