"""
Deterministic audit engine — the "paranoid" layer.

These checks run PURE CODE over an extracted financial document.
They NEVER call an LLM.  They NEVER query a registry.  They catch what the AI missed.

Each check function:
  - Takes a FinancialExtraction (and, for company checks, a RegistryVerdict)
  - Returns exactly ONE AuditCheck (Passed / Warning / CriticalFailure)
  - Is independently testable

audit_extraction() runs every check applicable to the document type, in a
fixed kind order, without early exit. Same input → identical report, so
reports from successive retry attempts can be diffed.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable

from .formats import looks_like_ogm, validate_iban, validate_ogm
from .models import (
    AuditCheck,
    AuditReport,
    CheckKind,
    CheckStatus,
    DocumentType,
    FinancialExtraction,
    RegistryVerdict,
)
from .registry import NAME_MATCH_THRESHOLD, name_similarity

logger = logging.getLogger(__name__)


# ─── Constants ───────────────────────────────────────────────────────

# Absorbs per-line rounding on invoices with many lines
MATH_TOLERANCE = Decimal("0.02")

# Percentage points between the implied and the nearest legal rate
VAT_RATE_TOLERANCE = Decimal("1")

BELGIAN_VAT_RATES: tuple[Decimal, ...] = (
    Decimal("0"),
    Decimal("6"),
    Decimal("12"),
    Decimal("21"),
)

CHECK_ORDER: tuple[CheckKind, ...] = (
    CheckKind.MATH,
    CheckKind.CHECKSUM_OGM,
    CheckKind.CHECKSUM_IBAN,
    CheckKind.VAT_RATE,
    CheckKind.COMPANY_EXISTS,
    CheckKind.COMPANY_NAME,
)

_ALL_CHECKS = frozenset(CHECK_ORDER)

# Receipts and expenses are already paid: nothing to route, nothing to check.
APPLICABLE_CHECKS: dict[DocumentType, frozenset[CheckKind]] = {
    DocumentType.INVOICE: _ALL_CHECKS,
    DocumentType.CREDIT_NOTE: _ALL_CHECKS,
    DocumentType.PRO_FORMA: _ALL_CHECKS,
    DocumentType.BILL: _ALL_CHECKS - {CheckKind.CHECKSUM_OGM},
    DocumentType.RECEIPT: frozenset({
        CheckKind.MATH, CheckKind.VAT_RATE, CheckKind.COMPANY_EXISTS, CheckKind.COMPANY_NAME,
    }),
    DocumentType.EXPENSE: frozenset({
        CheckKind.MATH, CheckKind.VAT_RATE, CheckKind.COMPANY_EXISTS, CheckKind.COMPANY_NAME,
    }),
    DocumentType.UNKNOWN: _ALL_CHECKS,
}

Auditor = Callable[[FinancialExtraction], AuditReport]


# ─── Orchestrator ────────────────────────────────────────────────────


def audit_extraction(
    extraction: FinancialExtraction,
    registry: RegistryVerdict | None = None,
) -> AuditReport:
    """Run ALL applicable checks and collect one AuditCheck per check.

    Args:
        extraction: The payload to audit. Never mutated.
        registry: Already-resolved registry verdict. None means "unknown".
    """
    verdict = registry if registry is not None else RegistryVerdict.unknown()
    applicable = APPLICABLE_CHECKS[extraction.document_type]

    checks: list[AuditCheck] = []
    for kind in CHECK_ORDER:
        if kind in applicable:
            checks.append(_CHECKS[kind](extraction, verdict))

    report = AuditReport(checks=tuple(checks))
    logger.debug(
        "Audit of %s: %d passed, %d warning(s), %d critical",
        extraction.document_type.value,
        len(report.passed_checks),
        len(report.warnings),
        len(report.critical_failures),
    )
    return report


# ─── Individual Checks ───────────────────────────────────────────────


def audit_math(extraction: FinancialExtraction) -> AuditCheck:
    """Subtotal + VAT MUST equal total, and itemized lines MUST add up.

    Invoices print all three numbers, so a disagreement means at least one
    was misread. We check with Decimal arithmetic, NOT by asking an LLM.
    When line items were extracted, each line must satisfy
    quantity × unit price = line total, and the line totals must sum to the
    subtotal. Totals are checked first; a line failure is only reported
    when the totals themselves agree.
    """
    totals = _audit_totals(extraction)
    if totals.status == CheckStatus.CRITICAL_FAILURE or not extraction.line_items:
        return totals

    line_failure = _audit_line_items(extraction)
    if line_failure is not None:
        return line_failure
    return totals.model_copy(
        update={"message": f"{totals.message}; {len(extraction.line_items)} line item(s) add up"}
    )


def _audit_totals(extraction: FinancialExtraction) -> AuditCheck:
    subtotal, vat, total = extraction.subtotal, extraction.vat_amount, extraction.total_amount

    if total is None:
        return AuditCheck.passed(
            CheckKind.MATH, "total_amount", "Insufficient data: total amount not extracted"
        )
    if vat is None:
        return AuditCheck.passed(
            CheckKind.MATH, "total_amount", "Insufficient data: VAT amount not extracted"
        )
    if subtotal is None:
        # Expense / receipt style: only total and VAT are printed
        derived = total - vat
        return AuditCheck.passed(
            CheckKind.MATH,
            "subtotal",
            f"Subtotal derived as total - VAT = {derived:.2f}",
        )

    expected = subtotal + vat
    difference = abs(expected - total)
    if difference > MATH_TOLERANCE:
        return AuditCheck.critical_failure(
            CheckKind.MATH,
            "total_amount",
            (
                f"Subtotal ({subtotal:.2f}) + VAT ({vat:.2f}) = {expected:.2f}, "
                f"but total is {total:.2f} (difference {difference:.2f})"
            ),
            expected=f"{expected:.2f}",
            actual=f"{total:.2f}",
        )

    return AuditCheck.passed(
        CheckKind.MATH,
        "total_amount",
        f"Subtotal + VAT = total ({total:.2f})",
    )


def _audit_line_items(extraction: FinancialExtraction) -> AuditCheck | None:
    """First arithmetic failure among the line items, or None."""
    for number, item in enumerate(extraction.line_items, start=1):
        if item.quantity is None or item.unit_price is None or item.total is None:
            continue
        expected = item.quantity * item.unit_price
        if abs(expected - item.total) > MATH_TOLERANCE:
            return AuditCheck.critical_failure(
                CheckKind.MATH,
                "line_items",
                (
                    f"Line {number}: quantity ({item.quantity}) × unit price ({item.unit_price:.2f}) "
                    f"= {expected:.2f}, but line total is {item.total:.2f}"
                ),
                expected=f"{expected:.2f}",
                actual=f"{item.total:.2f}",
            )

    subtotal = _effective_subtotal(extraction)
    line_totals = [item.total for item in extraction.line_items]
    if subtotal is None or any(t is None for t in line_totals):
        return None

    lines_sum = sum(line_totals, Decimal("0"))
    if abs(lines_sum - subtotal) > MATH_TOLERANCE:
        return AuditCheck.critical_failure(
            CheckKind.MATH,
            "line_items",
            (
                f"Line totals sum to {lines_sum:.2f} over {len(line_totals)} line(s), "
                f"but subtotal is {subtotal:.2f}"
            ),
            expected=f"{subtotal:.2f}",
            actual=f"{lines_sum:.2f}",
        )
    return None


def audit_ogm(extraction: FinancialExtraction) -> AuditCheck:
    """Structured communications carry a mod-97 check; free text does not."""
    reference = extraction.payment_reference

    if not reference:
        return AuditCheck.passed(
            CheckKind.CHECKSUM_OGM, "payment_reference", "No payment reference provided"
        )
    if not looks_like_ogm(reference):
        return AuditCheck.passed(
            CheckKind.CHECKSUM_OGM,
            "payment_reference",
            "Free-form payment communication, no checksum to verify",
        )

    result = validate_ogm(reference)
    if result.valid:
        return AuditCheck.passed(
            CheckKind.CHECKSUM_OGM, "payment_reference", f"OGM {result.normalized} is valid"
        )

    # For checksum errors, surface the check digits that were actually read
    actual = result.normalized[-5:-3] if result.expected_check_digit else reference
    return AuditCheck.critical_failure(
        CheckKind.CHECKSUM_OGM,
        "payment_reference",
        result.message,
        expected=result.expected_check_digit,
        actual=actual,
        hint=_corrections_hint(result.corrections),
    )


def audit_iban(extraction: FinancialExtraction) -> AuditCheck:
    """A bad IBAN sends money to the wrong account: always critical."""
    if not extraction.iban:
        return AuditCheck.passed(CheckKind.CHECKSUM_IBAN, "iban", "No IBAN provided")

    result = validate_iban(extraction.iban)
    if result.valid:
        return AuditCheck.passed(CheckKind.CHECKSUM_IBAN, "iban", f"IBAN {result.formatted} is valid")

    return AuditCheck.critical_failure(
        CheckKind.CHECKSUM_IBAN,
        "iban",
        result.message,
        actual=extraction.iban,
        hint=_corrections_hint(result.corrections),
    )


def audit_vat_rate(extraction: FinancialExtraction) -> AuditCheck:
    """The implied rate should be one of Belgium's legal rates.

    Only a WARNING: foreign suppliers and mixed-rate invoices are legitimate.
    Expenses and receipts often print only total and VAT; the rate is then
    computed against the derived subtotal (total - VAT).
    """
    subtotal, vat = _effective_subtotal(extraction), extraction.vat_amount

    if subtotal is None or vat is None or subtotal == 0:
        return AuditCheck.passed(
            CheckKind.VAT_RATE, "vat_amount", "Insufficient data to compute the VAT rate"
        )

    rate = abs(vat / subtotal * 100)
    nearest = min(BELGIAN_VAT_RATES, key=lambda legal: abs(rate - legal))

    if abs(rate - nearest) <= VAT_RATE_TOLERANCE:
        return AuditCheck.passed(
            CheckKind.VAT_RATE,
            "vat_amount",
            f"Implied VAT rate {rate:.2f}% matches the {nearest}% rate",
        )

    return AuditCheck.warning(
        CheckKind.VAT_RATE,
        "vat_amount",
        f"Implied VAT rate {rate:.2f}% is not a Belgian legal rate (0/6/12/21%)",
        expected=f"{nearest}%",
        actual=f"{rate:.2f}%",
    )


def audit_company_exists(extraction: FinancialExtraction, verdict: RegistryVerdict) -> AuditCheck:
    """Unregistered VAT number → WARNING. Unknown registry status → pass."""
    vat_number = extraction.vendor_vat_number

    if not vat_number:
        return AuditCheck.passed(
            CheckKind.COMPANY_EXISTS, "vendor_vat_number", "No VAT number provided"
        )
    if not verdict.is_known:
        return AuditCheck.passed(
            CheckKind.COMPANY_EXISTS,
            "vendor_vat_number",
            "Registry status unknown, not treated as a failure",
        )
    if verdict.exists:
        return AuditCheck.passed(
            CheckKind.COMPANY_EXISTS, "vendor_vat_number", f"VAT number {vat_number} is registered"
        )

    return AuditCheck.warning(
        CheckKind.COMPANY_EXISTS,
        "vendor_vat_number",
        f"VAT number {vat_number} was not found in the company registry",
        actual=vat_number,
    )


def audit_company_name(extraction: FinancialExtraction, verdict: RegistryVerdict) -> AuditCheck:
    """The extracted vendor name should resemble the registered legal name."""
    vendor_name = extraction.vendor_name
    legal_name = verdict.legal_name

    if not vendor_name:
        return AuditCheck.passed(CheckKind.COMPANY_NAME, "vendor_name", "No vendor name provided")
    if not legal_name:
        return AuditCheck.passed(
            CheckKind.COMPANY_NAME, "vendor_name", "No registered legal name to compare against"
        )

    score = name_similarity(vendor_name, legal_name)
    if score >= NAME_MATCH_THRESHOLD:
        return AuditCheck.passed(
            CheckKind.COMPANY_NAME,
            "vendor_name",
            f"Vendor name matches registered name '{legal_name}' (similarity {score:.2f})",
        )

    return AuditCheck.warning(
        CheckKind.COMPANY_NAME,
        "vendor_name",
        (
            f"Vendor name '{vendor_name}' does not match registered legal name "
            f"'{legal_name}' (similarity {score:.2f})"
        ),
        expected=legal_name,
        actual=vendor_name,
    )


# ─── Dispatch ────────────────────────────────────────────────────────

_CHECKS: dict[CheckKind, Callable[[FinancialExtraction, RegistryVerdict], AuditCheck]] = {
    CheckKind.MATH: lambda extraction, _verdict: audit_math(extraction),
    CheckKind.CHECKSUM_OGM: lambda extraction, _verdict: audit_ogm(extraction),
    CheckKind.CHECKSUM_IBAN: lambda extraction, _verdict: audit_iban(extraction),
    CheckKind.VAT_RATE: lambda extraction, _verdict: audit_vat_rate(extraction),
    CheckKind.COMPANY_EXISTS: audit_company_exists,
    CheckKind.COMPANY_NAME: audit_company_name,
}


def _corrections_hint(corrections: tuple[str, ...]) -> str | None:
    if not corrections:
        return None
    return "OCR corrections applied before checksum: " + ", ".join(corrections)


def _effective_subtotal(extraction: FinancialExtraction) -> Decimal | None:
    """The printed subtotal, or total - VAT when only those two were extracted."""
    if extraction.subtotal is not None:
        return extraction.subtotal
    if extraction.total_amount is not None and extraction.vat_amount is not None:
        return extraction.total_amount - extraction.vat_amount
    return None
