"""
Pydantic models for the gatekeeper — strict typing as our first line of defense.

Every model that crosses a pipeline stage is frozen. Audit reports, retry
results and judgment decisions are created once and never mutated, so jobs can
run concurrently without sharing anything mutable.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import ConfigurationError

T = TypeVar("T")


# ─── Audit Vocabulary ───────────────────────────────────────────────


class CheckKind(str, Enum):
    """The closed set of deterministic checks the audit engine knows."""

    MATH = "MATH"
    CHECKSUM_OGM = "CHECKSUM_OGM"
    CHECKSUM_IBAN = "CHECKSUM_IBAN"
    VAT_RATE = "VAT_RATE"
    COMPANY_EXISTS = "COMPANY_EXISTS"
    COMPANY_NAME = "COMPANY_NAME"

    @property
    def label(self) -> str:
        """Human-readable category for reports and feedback headers."""
        return _CHECK_LABELS[self]


_CHECK_LABELS: dict[CheckKind, str] = {
    CheckKind.MATH: "Mathematical Verification",
    CheckKind.CHECKSUM_OGM: "OGM Payment Reference",
    CheckKind.CHECKSUM_IBAN: "IBAN Bank Account",
    CheckKind.VAT_RATE: "VAT Rate",
    CheckKind.COMPANY_EXISTS: "Company Registry",
    CheckKind.COMPANY_NAME: "Company Name",
}


class CheckStatus(str, Enum):
    """Outcome of a single check."""

    PASSED = "PASSED"
    WARNING = "WARNING"  # Suspicious, a human may want to look
    CRITICAL_FAILURE = "CRITICAL_FAILURE"  # The extraction is wrong


class AuditCheck(BaseModel):
    """One validation outcome. Produced only by the audit engine."""

    model_config = ConfigDict(frozen=True)

    kind: CheckKind
    field: str  # Which extracted field this relates to
    status: CheckStatus
    message: str  # Human-readable explanation
    expected: Optional[str] = None
    actual: Optional[str] = None
    hint: Optional[str] = None  # e.g. which OCR confusions were corrected

    @classmethod
    def passed(cls, kind: CheckKind, field: str, message: str) -> AuditCheck:
        return cls(kind=kind, field=field, status=CheckStatus.PASSED, message=message)

    @classmethod
    def warning(
        cls,
        kind: CheckKind,
        field: str,
        message: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
        hint: str | None = None,
    ) -> AuditCheck:
        return cls(
            kind=kind,
            field=field,
            status=CheckStatus.WARNING,
            message=message,
            expected=expected,
            actual=actual,
            hint=hint,
        )

    @classmethod
    def critical_failure(
        cls,
        kind: CheckKind,
        field: str,
        message: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
        hint: str | None = None,
    ) -> AuditCheck:
        return cls(
            kind=kind,
            field=field,
            status=CheckStatus.CRITICAL_FAILURE,
            message=message,
            expected=expected,
            actual=actual,
            hint=hint,
        )


class AuditReport(BaseModel):
    """All checks run against one extraction attempt, in stable order."""

    model_config = ConfigDict(frozen=True)

    EMPTY: ClassVar[AuditReport]

    checks: tuple[AuditCheck, ...] = ()

    @property
    def critical_failures(self) -> tuple[AuditCheck, ...]:
        return tuple(c for c in self.checks if c.status == CheckStatus.CRITICAL_FAILURE)

    @property
    def warnings(self) -> tuple[AuditCheck, ...]:
        return tuple(c for c in self.checks if c.status == CheckStatus.WARNING)

    @property
    def passed_checks(self) -> tuple[AuditCheck, ...]:
        return tuple(c for c in self.checks if c.status == CheckStatus.PASSED)

    @property
    def is_passable(self) -> bool:
        """A report with no critical failure can still be approved."""
        return not self.critical_failures

    @property
    def overall_status(self) -> CheckStatus:
        if self.critical_failures:
            return CheckStatus.CRITICAL_FAILURE
        if self.warnings:
            return CheckStatus.WARNING
        return CheckStatus.PASSED


AuditReport.EMPTY = AuditReport()


# ─── Extraction Payload ─────────────────────────────────────────────


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    PRO_FORMA = "PRO_FORMA"
    BILL = "BILL"
    RECEIPT = "RECEIPT"
    EXPENSE = "EXPENSE"
    UNKNOWN = "UNKNOWN"


class LineItem(BaseModel):
    """One row of an itemized table. ``total`` is the line total excluding VAT."""

    model_config = ConfigDict(frozen=True)

    description: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    total: Optional[Decimal] = None


class FinancialExtraction(BaseModel):
    """What an extraction source (regex or LLM) returns for one document.

    Fields are Optional because extraction may fail for individual fields.
    Completeness is judged later; amounts are Decimal, never float.
    """

    model_config = ConfigDict(frozen=True)

    document_type: DocumentType = DocumentType.UNKNOWN
    vendor_name: Optional[str] = None
    vendor_vat_number: Optional[str] = None
    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    iban: Optional[str] = None
    bic: Optional[str] = None
    payment_reference: Optional[str] = None
    line_items: tuple[LineItem, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)  # Self-reported by the source


class RegistryVerdict(BaseModel):
    """An already-resolved company registry lookup.

    ``exists=None`` means the registry could not answer; that is "unknown",
    never a failure.
    """

    model_config = ConfigDict(frozen=True)

    exists: Optional[bool] = None
    legal_name: Optional[str] = None

    @classmethod
    def unknown(cls) -> RegistryVerdict:
        return cls()

    @property
    def is_known(self) -> bool:
        return self.exists is not None


# ─── Retry Outcomes ─────────────────────────────────────────────────


class CorrectedOnRetry(BaseModel, Generic[T]):
    """Critical failures disappeared after feedback-driven re-extraction."""

    model_config = ConfigDict(frozen=True)

    outcome: Literal["CORRECTED_ON_RETRY"] = "CORRECTED_ON_RETRY"
    data: T
    attempt: int = Field(ge=1)  # Attempt number that passed (1 = original extraction)
    corrected_fields: tuple[str, ...] = ()
    original_failures: tuple[AuditCheck, ...] = ()
    report: AuditReport = Field(default_factory=lambda: AuditReport.EMPTY)


class StillFailing(BaseModel, Generic[T]):
    """The retry budget ran out with critical failures still present."""

    model_config = ConfigDict(frozen=True)

    outcome: Literal["STILL_FAILING"] = "STILL_FAILING"
    data: T
    attempts: int = Field(ge=1)
    remaining_failures: tuple[AuditCheck, ...] = ()
    report: AuditReport = Field(default_factory=lambda: AuditReport.EMPTY)


RetryResult = Union[CorrectedOnRetry, StillFailing]


# ─── Ensemble Conflicts ─────────────────────────────────────────────


class ConflictSeverity(str, Enum):
    CRITICAL = "CRITICAL"  # Money or payment routing disagrees
    WARNING = "WARNING"


class FieldWeight(str, Enum):
    """Which source wins when the two disagree on a field."""

    PREFER_EXPERT = "PREFER_EXPERT"
    PREFER_FAST = "PREFER_FAST"
    REQUIRE_MATCH = "REQUIRE_MATCH"  # Neither: the field stays empty


class FieldConflict(BaseModel):
    """One field on which the fast and expert sources disagree."""

    model_config = ConfigDict(frozen=True)

    field: str
    fast_value: Optional[str] = None
    expert_value: Optional[str] = None
    chosen_value: Optional[str] = None
    chosen_source: Literal["expert", "fast", "none"] = "expert"
    severity: ConflictSeverity = ConflictSeverity.WARNING


class ConflictReport(BaseModel):
    """Ordered conflicts between two sources. Empty means full consensus."""

    model_config = ConfigDict(frozen=True)

    conflicts: tuple[FieldConflict, ...] = ()

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def critical_conflicts(self) -> tuple[FieldConflict, ...]:
        return tuple(c for c in self.conflicts if c.severity == ConflictSeverity.CRITICAL)


# ─── Judgment ───────────────────────────────────────────────────────


class JudgmentOutcome(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"  # Applied silently, user never sees it
    NEEDS_REVIEW = "NEEDS_REVIEW"  # Shown to a human with issues highlighted
    REJECT = "REJECT"  # Cannot be processed automatically


class JudgmentConfig(BaseModel):
    """Tunable thresholds for the judgment engine.

    Invalid combinations fail at construction time, never at evaluation time.
    """

    model_config = ConfigDict(frozen=True)

    DEFAULT: ClassVar[JudgmentConfig]
    STRICT: ClassVar[JudgmentConfig]
    LENIENT: ClassVar[JudgmentConfig]

    auto_approve_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    min_confidence_floor: float = Field(default=0.50, ge=0.0, le=1.0)
    auto_approve_with_warnings: bool = False
    max_warnings_for_auto_approve: int = Field(default=2, ge=0)
    require_consensus_for_auto_approve: bool = True

    @model_validator(mode="after")
    def _floor_below_threshold(self) -> JudgmentConfig:
        if self.min_confidence_floor > self.auto_approve_threshold:
            raise ValueError(
                f"min_confidence_floor ({self.min_confidence_floor}) must not exceed "
                f"auto_approve_threshold ({self.auto_approve_threshold})"
            )
        return self

    @classmethod
    def from_preset(cls, name: str) -> JudgmentConfig:
        """Look up a named preset: 'default', 'strict' or 'lenient'."""
        presets = {"default": cls.DEFAULT, "strict": cls.STRICT, "lenient": cls.LENIENT}
        try:
            return presets[name.strip().lower()]
        except KeyError:
            raise ConfigurationError(
                f"Unknown judgment preset '{name}'. Expected one of: {', '.join(presets)}",
                {"preset": name},
            ) from None


JudgmentConfig.DEFAULT = JudgmentConfig()
JudgmentConfig.STRICT = JudgmentConfig(
    auto_approve_threshold=0.90,
    min_confidence_floor=0.60,
    auto_approve_with_warnings=False,
    max_warnings_for_auto_approve=0,
    require_consensus_for_auto_approve=True,
)
JudgmentConfig.LENIENT = JudgmentConfig(
    auto_approve_threshold=0.70,
    min_confidence_floor=0.40,
    auto_approve_with_warnings=True,
    max_warnings_for_auto_approve=5,
    require_consensus_for_auto_approve=False,
)


class JudgmentContext(BaseModel):
    """Read-only snapshot of everything the judgment engine may look at."""

    model_config = ConfigDict(frozen=True)

    extraction_confidence: float = Field(ge=0.0, le=1.0)
    audit_report: AuditReport = Field(default_factory=lambda: AuditReport.EMPTY)
    retry_result: Optional[RetryResult] = None
    consensus_report: Optional[ConflictReport] = None
    document_type: str = DocumentType.UNKNOWN.value
    has_essential_fields: bool = True
    missing_essential_fields: tuple[str, ...] = ()


class JudgmentDecision(BaseModel):
    """The pipeline's final artifact — the only thing downstream consumers see.

    Flat on purpose: no references into audit or retry internals.
    """

    model_config = ConfigDict(frozen=True)

    outcome: JudgmentOutcome
    confidence: float
    all_critical_checks_passed: bool
    has_model_consensus: bool
    retry_attempts: int = 0
    corrected_fields: tuple[str, ...] = ()
    reasoning: str
    issues_for_user: tuple[str, ...] = ()
    rule: str = ""  # Name of the judgment rule that fired

    def to_record(self) -> dict[str, Any]:
        """Flat, JSON-ready record for storage or review queues."""
        return self.model_dump(mode="json")
