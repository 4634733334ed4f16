"""
Bounded self-correction loop.

When the audit finds critical failures, we tell the extraction model exactly
what went wrong and ask it again, up to a fixed attempt budget:

  attempt 1 (original) ──audit──► critical? ──feedback──► attempt 2 ──audit──► ...

Rules:
  - Attempts are counted explicitly; the loop ALWAYS terminates.
  - A collaborator failure (transport error, timeout, cancellation) aborts the
    loop with an ExtractionError. It is NEVER counted as a failed attempt.
  - The outcome is a RetryResult: CorrectedOnRetry or StillFailing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from .exceptions import (
    ConfigurationError,
    ExtractionCancelledError,
    ExtractionError,
    ExtractionTimeoutError,
)
from .feedback import build_feedback_prompt
from .models import (
    AuditCheck,
    AuditReport,
    CorrectedOnRetry,
    FinancialExtraction,
    RetryResult,
    StillFailing,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class Extractor(Protocol):
    """An extraction source: document text (+ optional feedback) → payload.

    Implementations raise ExtractionError on transport or model failure.
    """

    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction: ...


def validate_retry_budget(max_retries: int, attempt_timeout: float | None) -> None:
    """Fail fast on an attempt budget that makes no sense."""
    if max_retries < 1:
        raise ConfigurationError(
            f"max_retries must be at least 1, got {max_retries}",
            {"max_retries": max_retries},
        )
    if attempt_timeout is not None and attempt_timeout <= 0:
        raise ConfigurationError(
            f"attempt_timeout must be positive, got {attempt_timeout}",
            {"attempt_timeout": attempt_timeout},
        )


async def call_extractor(
    extractor: Extractor,
    document_text: str,
    feedback: str | None = None,
    *,
    timeout: float | None = None,
    attempt: int = 1,
) -> FinancialExtraction:
    """One collaborator call under the per-attempt timeout.

    Every failure comes out as an ExtractionError subclass:
      - timeout               → ExtractionTimeoutError (retryable)
      - attempt cancelled     → ExtractionCancelledError (retryable)
      - anything else         → ExtractionError

    If the calling task itself is being cancelled, CancelledError propagates
    unchanged so asyncio cancellation keeps working.
    """
    details = {"attempt": attempt, "extractor": type(extractor).__name__}
    try:
        return await asyncio.wait_for(extractor.extract(document_text, feedback), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ExtractionTimeoutError(f"Extraction attempt {attempt} exceeded {timeout}s", details) from e
    except asyncio.CancelledError as e:
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise
        raise ExtractionCancelledError(f"Extraction attempt {attempt} was cancelled", details) from e
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Extraction attempt {attempt} failed: {e}", details) from e


class RetryController:
    """Re-invokes an extractor with targeted feedback until the audit passes.

    Usage:
        controller = RetryController(extractor, auditor=audit_extraction, max_retries=3)
        result = await controller.run(text, extraction, report)
    """

    def __init__(
        self,
        extractor: Extractor,
        auditor: Callable[[FinancialExtraction], AuditReport],
        max_retries: int = DEFAULT_MAX_RETRIES,
        attempt_timeout: float | None = None,
    ):
        validate_retry_budget(max_retries, attempt_timeout)
        self.extractor = extractor
        self.auditor = auditor
        self.max_retries = max_retries
        self.attempt_timeout = attempt_timeout

    async def run(
        self,
        document_text: str,
        extraction: FinancialExtraction,
        report: AuditReport,
    ) -> RetryResult:
        """Drive the retry loop starting from the original (attempt 1) extraction.

        Raises:
            ValueError: The original report has no critical failures.
            ExtractionError: The extractor failed, timed out or was cancelled.
        """
        if report.is_passable:
            raise ValueError("Report has no critical failures: nothing to retry")

        original_failures = report.critical_failures
        current, current_report = extraction, report
        attempt = 1

        while not current_report.is_passable and attempt < self.max_retries:
            next_attempt = attempt + 1
            logger.info(
                "Retry attempt %d/%d: %d critical failure(s) to correct",
                next_attempt,
                self.max_retries,
                len(current_report.critical_failures),
            )
            feedback = build_feedback_prompt(current_report, next_attempt, self.max_retries)
            current = await call_extractor(
                self.extractor,
                document_text,
                feedback,
                timeout=self.attempt_timeout,
                attempt=next_attempt,
            )
            current_report = self.auditor(current)
            attempt = next_attempt

        if current_report.is_passable:
            corrected = _corrected_fields(original_failures, current_report)
            logger.info("Corrected on attempt %d: %s", attempt, ", ".join(corrected))
            return CorrectedOnRetry(
                data=current,
                attempt=attempt,
                corrected_fields=corrected,
                original_failures=original_failures,
                report=current_report,
            )

        logger.warning(
            "Still failing after %d attempt(s): %d critical failure(s) remain",
            attempt,
            len(current_report.critical_failures),
        )
        return StillFailing(
            data=current,
            attempts=attempt,
            remaining_failures=current_report.critical_failures,
            report=current_report,
        )


def _corrected_fields(original: tuple[AuditCheck, ...], current: AuditReport) -> tuple[str, ...]:
    """Fields whose original critical failure no longer appears, in original order."""
    still_failing = {c.field for c in current.critical_failures}
    corrected: list[str] = []
    for check in original:
        if check.field not in still_failing and check.field not in corrected:
            corrected.append(check.field)
    return tuple(corrected)
