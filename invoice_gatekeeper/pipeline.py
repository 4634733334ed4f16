"""
Main gatekeeper pipeline — orchestrates the full workflow.

Flow:
  ┌───────────────┐
  │ Document text │
  └───────┬───────┘
          │
  ┌───────▼───────┐     ┌──────────┐
  │  Fast (regex) │     │  Expert  │   ← Concurrent extraction
  │   Extract     │     │  (LLM)   │
  └───────┬───────┘     └────┬─────┘
          │                  │
          └────────┬─────────┘
                   │
            ┌──────▼──────┐
            │  Ensemble   │   ← Flag disagreements, merge
            └──────┬──────┘
                   │
            ┌──────▼──────┐
            │    Audit    │   ← Pure code checks
            └──────┬──────┘
                   │ critical failures?
            ┌──────▼──────┐
            │    Retry    │   ← Targeted feedback, bounded attempts
            └──────┬──────┘
                   │
            ┌──────▼──────┐
            │  Judgment   │   ← AUTO_APPROVE / NEEDS_REVIEW / REJECT
            └─────────────┘

Design principles:
  - The expert extractor is mandatory; the fast one is optional.
  - If one ensemble source fails, the other is used alone (graceful degradation).
  - In ensemble mode every corrected payload is merged with the fast payload
    again, and the conflict report is rebuilt from the final expert payload.
  - A correction that changes the VAT number is checked against the registry
    again before it is audited.
  - Every collaborator call runs under the per-attempt timeout.
  - The pipeline holds configuration only; every result is a frozen model,
    so one pipeline can serve many concurrent jobs.
  - The original document text is SHA-256 hashed for the audit trail.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import Awaitable, Callable, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .audit import audit_extraction
from .ensemble import merge, merged_confidence, reconcile
from .exceptions import ConfigurationError
from .extractor_llm import LlmExtractor
from .extractor_regex import RegexExtractor
from .judgment import JudgmentEngine
from .models import (
    AuditReport,
    ConflictReport,
    CorrectedOnRetry,
    DocumentType,
    FieldWeight,
    FinancialExtraction,
    JudgmentConfig,
    JudgmentContext,
    JudgmentDecision,
    RegistryVerdict,
    RetryResult,
)
from .registry import RegistryClient, normalize_vat_number, resolve_registry_verdict
from .retry import (
    DEFAULT_MAX_RETRIES,
    Extractor,
    RetryController,
    call_extractor,
    validate_retry_budget,
)

logger = logging.getLogger(__name__)

# Without these, nothing can be booked: there is no amount or no counterparty.
_CORE_FIELDS: tuple[str, ...] = ("total_amount", "vendor_name")

ESSENTIAL_FIELDS: dict[DocumentType, tuple[str, ...]] = {
    doc_type: _CORE_FIELDS for doc_type in DocumentType if doc_type != DocumentType.UNKNOWN
}


class PipelineResult(BaseModel):
    """The decision plus the internal trail, kept for debugging and audit.

    Downstream consumers should only read ``decision``.
    """

    model_config = ConfigDict(frozen=True)

    decision: JudgmentDecision
    extraction: FinancialExtraction
    audit_report: AuditReport
    retry_result: Optional[RetryResult] = None
    conflict_report: Optional[ConflictReport] = None
    registry_verdict: RegistryVerdict = Field(default_factory=RegistryVerdict.unknown)
    extraction_method: str
    original_hash: str


def missing_essential_fields(extraction: FinancialExtraction) -> tuple[str, ...]:
    """Essential fields for the document type that were not extracted."""
    required = ESSENTIAL_FIELDS.get(extraction.document_type, _CORE_FIELDS)
    missing: list[str] = []
    for name in required:
        value = getattr(extraction, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return tuple(missing)


class FinancialExtractionPipeline:
    """Orchestrates extraction, audit, self-correction and judgment.

    Usage:
        pipeline = FinancialExtractionPipeline(LlmExtractor.from_env(), fast_extractor=RegexExtractor())
        result = await pipeline.run(document_text)
        if result.decision.outcome is JudgmentOutcome.AUTO_APPROVE:
            book(result.extraction)
    """

    def __init__(
        self,
        extractor: Extractor,
        fast_extractor: Extractor | None = None,
        registry: RegistryClient | None = None,
        config: JudgmentConfig = JudgmentConfig.DEFAULT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        attempt_timeout: float | None = None,
        field_weights: Mapping[str, FieldWeight] | None = None,
    ):
        validate_retry_budget(max_retries, attempt_timeout)
        self.extractor = extractor
        self.fast_extractor = fast_extractor
        self.field_weights = field_weights
        self.registry = registry
        self.config = _revalidate(config)
        self.engine = JudgmentEngine(self.config)
        self.max_retries = max_retries
        self.attempt_timeout = attempt_timeout

    @classmethod
    def from_env(cls, registry: RegistryClient | None = None) -> FinancialExtractionPipeline:
        """Build from environment variables.

        With OPENAI_API_KEY set: LLM expert + regex fast source.
        Without it: regex only (no LLM API key).
        """
        config = JudgmentConfig.from_preset(os.environ.get("GATEKEEPER_JUDGMENT_PRESET", "default"))
        max_retries = _env_int("GATEKEEPER_MAX_RETRIES", DEFAULT_MAX_RETRIES)
        attempt_timeout = _env_float("GATEKEEPER_ATTEMPT_TIMEOUT")

        extractor: Extractor
        fast_extractor: Extractor | None
        if os.environ.get("OPENAI_API_KEY"):
            extractor, fast_extractor = LlmExtractor.from_env(), RegexExtractor()
        else:
            logger.info("No OPENAI_API_KEY set, running regex-only")
            extractor, fast_extractor = RegexExtractor(), None

        return cls(
            extractor,
            fast_extractor=fast_extractor,
            registry=registry,
            config=config,
            max_retries=max_retries,
            attempt_timeout=attempt_timeout,
        )

    async def run(self, document_text: str) -> PipelineResult:
        """Execute the full pipeline on one document.

        Raises:
            ExtractionError: The extraction collaborator failed (both sources,
                in ensemble mode) or a retry attempt failed.
        """
        # ── Step 0: Audit hash of original input ────────────────────
        doc_hash = hashlib.sha256(document_text.encode("utf-8")).hexdigest()

        # ── Step 1: Extraction (ensemble when a fast source exists) ─
        outcome = await self._extract(document_text)
        extraction, conflict_report = outcome.extraction, outcome.conflicts
        logger.info("Extraction done via %s (confidence %.2f)", outcome.method, extraction.confidence)

        # ── Step 2: Registry verdict (unknown on any failure) ───────
        source = _CorrectionSource(
            outcome.source, outcome.fast, lookup=self._lookup_registry, weights=self.field_weights
        )
        await source.resolve_registry(extraction)

        # ── Step 3: Audit ───────────────────────────────────────────
        report = source.audit(extraction)
        logger.info(
            "Audit: %s (%d critical, %d warning(s))",
            report.overall_status.value,
            len(report.critical_failures),
            len(report.warnings),
        )

        # ── Step 4: Self-correction on critical failures ────────────
        retry_result: RetryResult | None = None
        if not report.is_passable:
            controller = RetryController(source, source.audit, self.max_retries, self.attempt_timeout)
            retry_result = await controller.run(document_text, extraction, report)
            extraction, report = retry_result.data, retry_result.report
            if outcome.fast is not None and source.last_expert is not None:
                extraction, conflict_report = self._reconcile_after_retry(
                    outcome.fast, source.last_expert, extraction, retry_result
                )

        # ── Step 5: Judgment ────────────────────────────────────────
        missing = _unresolved_essentials(extraction, conflict_report)
        context = JudgmentContext(
            extraction_confidence=extraction.confidence,
            audit_report=report,
            retry_result=retry_result,
            consensus_report=conflict_report,
            document_type=extraction.document_type.value,
            has_essential_fields=not missing,
            missing_essential_fields=missing,
        )
        decision = self.engine.evaluate(context)

        return PipelineResult(
            decision=decision,
            extraction=extraction,
            audit_report=report,
            retry_result=retry_result,
            conflict_report=conflict_report,
            registry_verdict=source.verdict_for(extraction.vendor_vat_number),
            extraction_method=outcome.method,
            original_hash=doc_hash,
        )

    def run_sync(self, document_text: str) -> PipelineResult:
        """Blocking wrapper for callers without an event loop."""
        return asyncio.run(self.run(document_text))

    # ─── Extraction ─────────────────────────────────────────────────

    async def _extract(self, document_text: str) -> _Extraction:
        """Run the sources; the expert is the retry source unless it failed."""
        if self.fast_extractor is None:
            extraction = await call_extractor(self.extractor, document_text, timeout=self.attempt_timeout)
            return _Extraction(extraction, None, self.extractor, None, "expert only")

        fast_result, expert_result = await asyncio.gather(
            call_extractor(self.fast_extractor, document_text, timeout=self.attempt_timeout),
            call_extractor(self.extractor, document_text, timeout=self.attempt_timeout),
            return_exceptions=True,
        )

        # Anything that is not an Exception (cancellation, interrupts) propagates as-is
        for result in (fast_result, expert_result):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        if isinstance(expert_result, Exception):
            if isinstance(fast_result, Exception):
                logger.error("Both extraction sources failed: fast=%s, expert=%s", fast_result, expert_result)
                raise expert_result
            logger.warning("Expert extraction failed, using fast source only: %s", expert_result)
            return _Extraction(fast_result, None, self.fast_extractor, None, "fast only (expert failed)")

        if isinstance(fast_result, Exception):
            logger.warning("Fast extraction failed, using expert source only: %s", fast_result)
            return _Extraction(expert_result, None, self.extractor, None, "expert only (fast failed)")

        merged, conflicts = merge(fast_result, expert_result, self.field_weights)
        return _Extraction(merged, conflicts, self.extractor, fast_result, "ensemble (fast + expert)")

    def _reconcile_after_retry(
        self,
        fast: FinancialExtraction,
        expert: FinancialExtraction,
        merged: FinancialExtraction,
        retry_result: RetryResult,
    ) -> tuple[FinancialExtraction, ConflictReport]:
        """Conflicts between the fast source and the final expert payload.

        A field the audit proved corrected is settled: the fast value on it is
        the one that failed the check, so it no longer counts as disagreement.
        """
        report = reconcile(fast, expert, self.field_weights)
        if isinstance(retry_result, CorrectedOnRetry):
            settled = set(retry_result.corrected_fields)
            report = ConflictReport(conflicts=tuple(c for c in report.conflicts if c.field not in settled))
        confidence = merged_confidence(fast.confidence, expert.confidence, len(report.conflicts))
        return merged.model_copy(update={"confidence": confidence}), report

    # ─── Registry ───────────────────────────────────────────────────

    async def _lookup_registry(self, vat_number: str | None) -> RegistryVerdict:
        if self.registry is None or not vat_number:
            return RegistryVerdict.unknown()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(resolve_registry_verdict, self.registry, vat_number),
                timeout=self.attempt_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Registry lookup for %s timed out, treating as unknown", vat_number)
            return RegistryVerdict.unknown()


class _Extraction(NamedTuple):
    extraction: FinancialExtraction
    conflicts: ConflictReport | None
    source: Extractor  # Where retries go
    fast: FinancialExtraction | None  # Set in ensemble mode only
    method: str


class _CorrectionSource:
    """The retry loop's view of one job's extraction source.

    Each re-extraction is merged with the fast payload again (ensemble mode),
    so fields only the fast source found survive a correction. Registry
    verdicts are cached per VAT number; a correction that changes the VAT
    number gets a fresh lookup before it is audited.
    """

    def __init__(
        self,
        source: Extractor,
        fast: FinancialExtraction | None,
        *,
        lookup: Callable[[str | None], Awaitable[RegistryVerdict]],
        weights: Mapping[str, FieldWeight] | None = None,
    ):
        self.source = source
        self.fast = fast
        self.lookup = lookup
        self.weights = weights
        self.last_expert: FinancialExtraction | None = None
        self._verdicts: dict[str, RegistryVerdict] = {}

    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction:
        extraction = await self.source.extract(document_text, feedback)
        if self.fast is not None:
            self.last_expert = extraction
            extraction, _ = merge(self.fast, extraction, self.weights)
        await self.resolve_registry(extraction)
        return extraction

    async def resolve_registry(self, extraction: FinancialExtraction) -> None:
        key = _registry_key(extraction.vendor_vat_number)
        if key is not None and key not in self._verdicts:
            self._verdicts[key] = await self.lookup(extraction.vendor_vat_number)

    def verdict_for(self, vat_number: str | None) -> RegistryVerdict:
        key = _registry_key(vat_number)
        if key is None:
            return RegistryVerdict.unknown()
        return self._verdicts.get(key, RegistryVerdict.unknown())

    def audit(self, extraction: FinancialExtraction) -> AuditReport:
        return audit_extraction(extraction, registry=self.verdict_for(extraction.vendor_vat_number))


def _registry_key(vat_number: str | None) -> str | None:
    if not vat_number or not vat_number.strip():
        return None
    return normalize_vat_number(vat_number)


def _unresolved_essentials(
    extraction: FinancialExtraction, conflicts: ConflictReport | None
) -> tuple[str, ...]:
    """Missing essential fields, minus those emptied by a must-match conflict.

    Such a field is not missing from the document; the sources read it
    differently, and the critical conflict sends the job to review.
    """
    missing = missing_essential_fields(extraction)
    if conflicts is None:
        return missing
    disputed = {c.field for c in conflicts.conflicts if c.chosen_source == "none"}
    return tuple(name for name in missing if name not in disputed)


# ─── Configuration Helpers ───────────────────────────────────────────


def _revalidate(config: JudgmentConfig) -> JudgmentConfig:
    """Configs built with model_construct() skip validation; catch them here."""
    try:
        return JudgmentConfig.model_validate(config.model_dump())
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid judgment configuration: {e.error_count()} error(s)",
            {"errors": [err["msg"] for err in e.errors()]},
        ) from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'", {name: raw}) from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'", {name: raw}) from None
