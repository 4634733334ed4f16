"""
Judgment engine — turns everything we know into ONE decision.

  AUTO_APPROVE  → applied silently, the user never sees it
  NEEDS_REVIEW  → shown to a human with the issues highlighted
  REJECT        → cannot be processed automatically

The rules are an ordered table; the FIRST rule that applies decides.
Hard failures (missing data, persistent critical errors, untrustworthy
confidence) come before soft ones (disagreement, warnings, borderline
confidence), so a document is never approved past a fatal problem.

evaluate() is a pure function of (context, config).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, assert_never

from .models import (
    CorrectedOnRetry,
    DocumentType,
    JudgmentConfig,
    JudgmentContext,
    JudgmentDecision,
    JudgmentOutcome,
    RetryResult,
    StillFailing,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JudgmentRule:
    """One row of the decision table."""

    name: str
    applies: Callable[[JudgmentContext, JudgmentConfig], bool]
    decide: Callable[[JudgmentContext, JudgmentConfig], JudgmentDecision]


# ─── Shared Decision Builder ─────────────────────────────────────────


def _retry_summary(result: RetryResult | None) -> tuple[int, tuple[str, ...]]:
    if result is None:
        return 0, ()
    if isinstance(result, CorrectedOnRetry):
        return result.attempt, result.corrected_fields
    if isinstance(result, StillFailing):
        return result.attempts, ()
    assert_never(result)


def _has_model_consensus(context: JudgmentContext, config: JudgmentConfig) -> bool:
    report = context.consensus_report
    if report is None or not config.require_consensus_for_auto_approve:
        return True
    return not report.critical_conflicts


def _decision(
    context: JudgmentContext,
    config: JudgmentConfig,
    rule: str,
    outcome: JudgmentOutcome,
    reasoning: str,
    issues: list[str] | tuple[str, ...] = (),
) -> JudgmentDecision:
    attempts, corrected = _retry_summary(context.retry_result)
    return JudgmentDecision(
        outcome=outcome,
        confidence=context.extraction_confidence,
        all_critical_checks_passed=context.audit_report.is_passable,
        has_model_consensus=_has_model_consensus(context, config),
        retry_attempts=attempts,
        corrected_fields=corrected,
        reasoning=reasoning,
        issues_for_user=tuple(issues),
        rule=rule,
    )


# ─── Rules ───────────────────────────────────────────────────────────


def _is_unknown_type(context: JudgmentContext, config: JudgmentConfig) -> bool:
    # Anything outside the DocumentType vocabulary counts as unknown
    try:
        document_type = DocumentType(context.document_type.strip().upper())
    except ValueError:
        return True
    return document_type is DocumentType.UNKNOWN


def _reject_unknown_type(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    return _decision(
        context,
        config,
        "unknown_document_type",
        JudgmentOutcome.REJECT,
        "Rejected: unknown document type, document-specific rules cannot be applied",
        ["The document type could not be determined (invoice, bill, receipt, ...)"],
    )


def _lacks_essential_fields(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return not context.has_essential_fields


def _reject_missing_fields(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    missing = context.missing_essential_fields
    issues = [f"Missing essential field: {name}" for name in missing]
    return _decision(
        context,
        config,
        "missing_essential_fields",
        JudgmentOutcome.REJECT,
        f"Rejected: Essential fields missing ({', '.join(missing) or 'unspecified'})",
        issues or ["Essential fields are missing from the extraction"],
    )


def _retry_exhausted(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return isinstance(context.retry_result, StillFailing)


def _reject_retry_exhausted(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    result = context.retry_result
    assert isinstance(result, StillFailing)
    issues = [f"{check.kind.label}: {check.message}" for check in result.remaining_failures]
    return _decision(
        context,
        config,
        "retry_exhausted",
        JudgmentOutcome.REJECT,
        (
            f"Rejected: critical failures persisted after {result.attempts} attempt(s); "
            "retry budget exhausted"
        ),
        issues or ["Critical validation failures could not be corrected by retry"],
    )


def _below_floor(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return context.extraction_confidence < config.min_confidence_floor


def _reject_below_floor(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    return _decision(
        context,
        config,
        "confidence_below_floor",
        JudgmentOutcome.REJECT,
        (
            f"Rejected: extraction confidence {context.extraction_confidence:.2f} is below "
            f"the minimum floor {config.min_confidence_floor:.2f}"
        ),
        [f"Extraction confidence too low ({context.extraction_confidence:.0%})"],
    )


def _has_critical_failures(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return not context.audit_report.is_passable


def _reject_critical_failures(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    failures = context.audit_report.critical_failures
    return _decision(
        context,
        config,
        "critical_failures",
        JudgmentOutcome.REJECT,
        f"Rejected: {len(failures)} critical validation failure(s) remain",
        [f"{check.kind.label}: {check.message}" for check in failures],
    )


def _has_critical_conflict(context: JudgmentContext, config: JudgmentConfig) -> bool:
    report = context.consensus_report
    return (
        config.require_consensus_for_auto_approve
        and report is not None
        and bool(report.critical_conflicts)
    )


def _review_conflicts(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    assert context.consensus_report is not None
    conflicts = context.consensus_report.critical_conflicts
    return _decision(
        context,
        config,
        "critical_conflict",
        JudgmentOutcome.NEEDS_REVIEW,
        f"Needs review: extraction sources disagree on {len(conflicts)} critical field(s)",
        [
            f"Sources disagree on {c.field}: '{c.fast_value}' vs '{c.expert_value}' "
            f"(using '{c.chosen_value}')"
            for c in conflicts
        ],
    )


def _too_many_warnings(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return (
        len(context.audit_report.warnings) > config.max_warnings_for_auto_approve
        and not config.auto_approve_with_warnings
    )


def _review_warnings(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    warnings = context.audit_report.warnings
    return _decision(
        context,
        config,
        "too_many_warnings",
        JudgmentOutcome.NEEDS_REVIEW,
        (
            f"Needs review: {len(warnings)} warning(s) exceed the limit of "
            f"{config.max_warnings_for_auto_approve}"
        ),
        [f"{check.kind.label}: {check.message}" for check in warnings],
    )


def _below_threshold(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return context.extraction_confidence < config.auto_approve_threshold


def _review_low_confidence(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    return _decision(
        context,
        config,
        "confidence_below_threshold",
        JudgmentOutcome.NEEDS_REVIEW,
        (
            f"Needs review: extraction confidence {context.extraction_confidence:.2f} is below "
            f"the auto-approve threshold {config.auto_approve_threshold:.2f}"
        ),
        [
            f"Extraction confidence {context.extraction_confidence:.0%} is below "
            f"{config.auto_approve_threshold:.0%}: please verify the extracted values"
        ],
    )


def _always(context: JudgmentContext, config: JudgmentConfig) -> bool:
    return True


def _auto_approve(context: JudgmentContext, config: JudgmentConfig) -> JudgmentDecision:
    reasoning = (
        f"Auto-approved: all critical checks passed, confidence "
        f"{context.extraction_confidence:.2f} >= {config.auto_approve_threshold:.2f}"
    )
    result = context.retry_result
    if isinstance(result, CorrectedOnRetry):
        reasoning += (
            f"; corrected on attempt {result.attempt} ({', '.join(result.corrected_fields)})"
        )
    return _decision(context, config, "auto_approve", JudgmentOutcome.AUTO_APPROVE, reasoning)


JUDGMENT_RULES: tuple[JudgmentRule, ...] = (
    JudgmentRule("unknown_document_type", _is_unknown_type, _reject_unknown_type),
    JudgmentRule("missing_essential_fields", _lacks_essential_fields, _reject_missing_fields),
    JudgmentRule("retry_exhausted", _retry_exhausted, _reject_retry_exhausted),
    JudgmentRule("confidence_below_floor", _below_floor, _reject_below_floor),
    JudgmentRule("critical_failures", _has_critical_failures, _reject_critical_failures),
    JudgmentRule("critical_conflict", _has_critical_conflict, _review_conflicts),
    JudgmentRule("too_many_warnings", _too_many_warnings, _review_warnings),
    JudgmentRule("confidence_below_threshold", _below_threshold, _review_low_confidence),
    JudgmentRule("auto_approve", _always, _auto_approve),
)


# ─── Engine ──────────────────────────────────────────────────────────


class JudgmentEngine:
    """Walks JUDGMENT_RULES in order and returns the first rule's decision.

    Usage:
        engine = JudgmentEngine(JudgmentConfig.STRICT)
        decision = engine.evaluate(context)
    """

    def __init__(
        self,
        config: JudgmentConfig = JudgmentConfig.DEFAULT,
        rules: tuple[JudgmentRule, ...] = JUDGMENT_RULES,
    ):
        self.config = config
        self.rules = rules

    def evaluate(self, context: JudgmentContext) -> JudgmentDecision:
        for rule in self.rules:
            if rule.applies(context, self.config):
                decision = rule.decide(context, self.config)
                logger.info(
                    "Judgment %s by rule '%s' (confidence %.2f)",
                    decision.outcome.value,
                    rule.name,
                    decision.confidence,
                )
                return decision
        raise LookupError("No judgment rule applied; the rule table must end with a catch-all")


def can_potentially_auto_approve(context: JudgmentContext) -> bool:
    """Cheap pre-check: True iff the audit has no critical failure."""
    return context.audit_report.is_passable
