"""
Corrective feedback for re-extraction attempts.

Turns audit failures into SPECIFIC instructions for the extraction model:
which section of the document to re-read, what we expected vs. what it
returned, which scan misreads are typical for that kind of field, and one
concrete action. Vague feedback ("please try again") does not fix anything.

Pure text generation: no side effects, no network access.
"""

from __future__ import annotations

from typing import Callable, Sequence

from .formats import IBAN_COUNTRY_NAMES, IBAN_LENGTHS, validate_iban
from .models import AuditCheck, AuditReport, CheckKind, CheckStatus


# ─── Public API ──────────────────────────────────────────────────────


def build_feedback_prompt(report: AuditReport, attempt: int, max_retries: int) -> str:
    """Build the full corrective message for an upcoming attempt.

    Critical failures come first, then warnings. Each failed check gets its
    own section, built by the strategy registered for its kind.

    Args:
        report: Audit of the previous attempt.
        attempt: Number of the attempt this feedback is for (1-based).
        max_retries: Total attempt budget.
    """
    failures = report.critical_failures + report.warnings
    if not failures:
        return "No specific failures to address."

    lines = [
        f"CORRECTION REQUIRED (Attempt {attempt} of {max_retries})",
        "",
        f"Your previous extraction failed validation. Found {len(failures)} issue(s):",
    ]

    for index, check in enumerate(failures, start=1):
        severity = "CRITICAL" if check.status == CheckStatus.CRITICAL_FAILURE else "WARNING"
        lines.append("")
        lines.append(f"─── Issue {index}: {check.kind.label} [{severity}] ───")
        lines.append(build_check_feedback(check))

    lines.append("")
    lines.append("Re-extract the document and return the complete JSON again, not only the fixed fields.")

    if attempt >= max_retries:
        lines.append("")
        lines.append(
            "⚠ This is your FINAL attempt. If these values are still wrong, the document "
            "will be rejected and sent to a human. Read every digit character by character."
        )

    return "\n".join(lines)


def build_check_feedback(check: AuditCheck) -> str:
    """Feedback section for a single failed check."""
    lines = _BUILDERS[check.kind](check)
    if check.hint:
        lines.append(f"SPECIFIC HINT: {check.hint}")
    return "\n".join(lines)


def build_correction_summary(failures: Sequence[AuditCheck]) -> str:
    """One line per check category, listing the fields that were corrected.

    Example:
        Corrections made:
          - Mathematical Verification: subtotal, total_amount
          - OGM Payment Reference: payment_reference
    """
    if not failures:
        return "No corrections needed."

    grouped: dict[CheckKind, list[str]] = {}
    for check in failures:
        fields = grouped.setdefault(check.kind, [])
        if check.field not in fields:
            fields.append(check.field)

    lines = ["Corrections made:"]
    for kind, fields in grouped.items():
        lines.append(f"  - {kind.label}: {', '.join(fields)}")
    return "\n".join(lines)


# ─── Per-Kind Builders ───────────────────────────────────────────────


def _math_feedback(check: AuditCheck) -> list[str]:
    if check.field == "line_items":
        lines = [
            f"MATH ERROR: {check.message}",
            "Re-read: the LINE ITEMS table (quantity, unit price and line total columns).",
        ]
        if check.expected is not None and check.actual is not None:
            lines.append(f"Expected: {check.expected} | Extracted: {check.actual}")
        lines.append("Action: re-extract every line exactly as printed, including lines on later pages.")
        return lines

    lines = [
        f"MATH ERROR: {check.message}",
        "Re-read: the TOTALS section at the bottom of the document (subtotal, VAT, total).",
    ]
    if check.expected is not None and check.actual is not None:
        lines.append(f"Expected total: {check.expected} | Extracted total: {check.actual}")
    lines += [
        "Common misreads in amounts: 1↔7, 0↔6, 5↔6, 3↔8, and a misplaced decimal "
        "separator (1.234,56 vs 1,234.56).",
        "Action: re-extract subtotal, VAT amount and total amount exactly as printed.",
    ]
    return lines


def _ogm_feedback(check: AuditCheck) -> list[str]:
    lines = [
        f"OGM CHECKSUM ERROR: {check.message}",
        "Re-read: the PAYMENT SECTION, structured communication in the form +++XXX/XXXX/XXXXX+++.",
    ]
    if check.expected is not None and check.actual is not None:
        lines.append(f"Expected check digits: {check.expected} | Extracted check digits: {check.actual}")
    lines += [
        "Common misreads: 0 ↔ O, 1 ↔ I, 1 ↔ l, 8 ↔ B, 5 ↔ S, 6 ↔ G.",
        "Action: re-extract all 12 digits one by one; the last two are check digits "
        "(first 10 digits mod 97).",
    ]
    return lines


def _iban_feedback(check: AuditCheck) -> list[str]:
    lines = [
        f"IBAN CHECKSUM ERROR: {check.message}",
        "Re-read: the PAYMENT SECTION or bank details, usually next to the BIC.",
    ]
    country = ""
    if check.actual is not None:
        compact = "".join(check.actual.split())
        lines.append(f"Extracted: {compact} ({len(compact)} characters)")
        country = validate_iban(check.actual).normalized[:2]
    lines.append(_iban_length_hint(country, "format" in check.message))
    lines += [
        "Common misreads: 0 ↔ O, 1 ↔ I, 8 ↔ B, 5 ↔ S, 6 ↔ G, 1↔7.",
        "Action: re-extract the IBAN of the vendor (the payee), not the customer's account.",
    ]
    return lines


def _iban_length_hint(country: str, is_format_error: bool) -> str:
    length = IBAN_LENGTHS.get(country)
    if length is None:
        if is_format_error:
            return "IBAN length is fixed per country: look for a dropped or duplicated character."
        return "At least one character of the IBAN was misread."
    name = IBAN_COUNTRY_NAMES.get(country, country)
    if is_format_error:
        return (
            f"A {name} IBAN is {country} + {length - 2} characters ({length} in total): "
            "look for a dropped or duplicated digit."
        )
    return (
        f"The length looks right (a {name} IBAN has {length} characters), "
        "so at least one digit was misread."
    )


def _vat_rate_feedback(check: AuditCheck) -> list[str]:
    lines = [
        f"VAT RATE WARNING: {check.message}",
        "Re-read: the VAT breakdown (rate column next to the VAT amount).",
    ]
    if check.expected is not None and check.actual is not None:
        lines.append(f"Nearest legal rate: {check.expected} | Implied rate: {check.actual}")
    lines += [
        "Belgian VAT rates are 0%, 6%, 12% and 21%.",
        "Common misreads: 21% ↔ 12%, 6% ↔ 8%, and a per-line VAT amount taken for the total VAT.",
        "Action: re-extract the VAT amount and the subtotal it applies to.",
    ]
    return lines


def _company_exists_feedback(check: AuditCheck) -> list[str]:
    lines = [
        f"COMPANY NOT FOUND: {check.message}",
        "Re-read: the vendor header, VAT number under the vendor's address.",
    ]
    if check.actual is not None:
        lines.append(f"Extracted VAT number: {check.actual}")
    lines += [
        "A Belgian VAT number is BE + 10 digits (e.g. BE0123.456.749) and must be "
        "registered in the KBO/BCE.",
        "Common misreads: 0 ↔ 8, 1 ↔ 7, and the customer's VAT number taken for the vendor's.",
        "Action: re-extract the VAT number of the issuing company.",
    ]
    return lines


def _company_name_feedback(check: AuditCheck) -> list[str]:
    lines = [
        f"COMPANY NAME MISMATCH: {check.message}",
        "Re-read: the vendor letterhead and the legal footer.",
    ]
    if check.expected is not None and check.actual is not None:
        lines.append(f"Registered name: {check.expected} | Extracted name: {check.actual}")
    lines += [
        "Common variants: legal forms (NV/SA, BV/SRL, BVBA/SPRL), trade name vs. legal "
        "name, dropped accents (é, è, ë).",
        "Action: use the full legal name as printed next to the VAT number.",
    ]
    return lines


_BUILDERS: dict[CheckKind, Callable[[AuditCheck], list[str]]] = {
    CheckKind.MATH: _math_feedback,
    CheckKind.CHECKSUM_OGM: _ogm_feedback,
    CheckKind.CHECKSUM_IBAN: _iban_feedback,
    CheckKind.VAT_RATE: _vat_rate_feedback,
    CheckKind.COMPANY_EXISTS: _company_exists_feedback,
    CheckKind.COMPANY_NAME: _company_name_feedback,
}
