"""
Tests for corrective feedback generation.

The feedback must name the document section, the expected vs. extracted
values and the typical scan misreads for each failed check.
"""

from __future__ import annotations

from invoice_gatekeeper.feedback import (
    build_check_feedback,
    build_correction_summary,
    build_feedback_prompt,
)
from invoice_gatekeeper.models import AuditCheck, AuditReport, CheckKind

MATH_FAILURE = AuditCheck.critical_failure(
    CheckKind.MATH,
    "total_amount",
    "Subtotal + VAT = 121.00 but total is 130.00",
    expected="121.00",
    actual="130.00",
)
OGM_FAILURE = AuditCheck.critical_failure(
    CheckKind.CHECKSUM_OGM,
    "payment_reference",
    "OGM checksum error: check digits are 40, expected 39",
    expected="39",
    actual="40",
)
IBAN_FAILURE = AuditCheck.critical_failure(
    CheckKind.CHECKSUM_IBAN,
    "iban",
    "IBAN checksum error: mod-97 remainder is 2, expected 1",
    actual="BE68 5390 0754 7035",
)
VAT_WARNING = AuditCheck.warning(
    CheckKind.VAT_RATE,
    "vat_amount",
    "Implied VAT rate 15.00% is not a Belgian rate",
    expected="12%",
    actual="15.00%",
)


# ═══════════════════════════════════════════════════════════════════
# Per-check sections
# ═══════════════════════════════════════════════════════════════════


class TestCheckFeedback:
    def test_math_feedback(self) -> None:
        text = build_check_feedback(MATH_FAILURE)
        assert "MATH ERROR" in text
        assert "TOTALS" in text
        assert "Expected total: 121.00 | Extracted total: 130.00" in text
        assert "1↔7, 0↔6" in text

    def test_line_item_feedback_points_at_the_table(self) -> None:
        check = AuditCheck.critical_failure(
            CheckKind.MATH,
            "line_items",
            "Line totals sum to 80.00 over 1 line(s), but subtotal is 100.00",
            expected="100.00",
            actual="80.00",
        )
        text = build_check_feedback(check)
        assert "LINE ITEMS table" in text
        assert "Expected: 100.00 | Extracted: 80.00" in text
        assert "TOTALS" not in text

    def test_ogm_feedback(self) -> None:
        text = build_check_feedback(OGM_FAILURE)
        assert "OGM CHECKSUM ERROR" in text
        assert "PAYMENT SECTION" in text
        assert "Expected check digits: 39 | Extracted check digits: 40" in text
        assert "0 ↔ O" in text

    def test_iban_feedback_reports_length(self) -> None:
        text = build_check_feedback(IBAN_FAILURE)
        assert "IBAN CHECKSUM ERROR" in text
        assert "Extracted: BE68539007547035 (16 characters)" in text
        assert "Belgian" in text

    def test_iban_format_feedback(self) -> None:
        check = AuditCheck.critical_failure(
            CheckKind.CHECKSUM_IBAN,
            "iban",
            "IBAN format error: Belgian IBAN must be 16 characters, got 15",
            actual="BE6853900754703",
        )
        text = build_check_feedback(check)
        assert "(15 characters)" in text
        assert "dropped or duplicated digit" in text
        assert "A Belgian IBAN is BE + 14 characters (16 in total)" in text

    def test_iban_length_follows_country(self) -> None:
        check = AuditCheck.critical_failure(
            CheckKind.CHECKSUM_IBAN,
            "iban",
            "IBAN format error: German IBAN must be 22 characters, got 21",
            actual="DE89 3704 0044 0532 0130 0",
        )
        text = build_check_feedback(check)
        assert "A German IBAN is DE + 20 characters (22 in total)" in text
        assert "Belgian" not in text

    def test_iban_feedback_for_unlisted_country(self) -> None:
        check = AuditCheck.critical_failure(
            CheckKind.CHECKSUM_IBAN,
            "iban",
            "IBAN checksum error: mod-97 remainder is 5, expected 1",
            actual="XK05 1212 0123 4567 8906",
        )
        text = build_check_feedback(check)
        assert "At least one character of the IBAN was misread." in text

    def test_vat_rate_feedback(self) -> None:
        text = build_check_feedback(VAT_WARNING)
        assert "VAT RATE WARNING" in text
        assert "0%, 6%, 12% and 21%" in text

    def test_company_feedback(self) -> None:
        missing = AuditCheck.warning(
            CheckKind.COMPANY_EXISTS, "vendor_vat_number", "Not registered", actual="BE0123456749"
        )
        mismatch = AuditCheck.warning(
            CheckKind.COMPANY_NAME,
            "vendor_name",
            "Name does not match",
            expected="Globex Trading NV",
            actual="Acme Consulting BV",
        )
        missing_text = build_check_feedback(missing)
        assert "COMPANY NOT FOUND" in missing_text
        assert "KBO/BCE" in missing_text
        mismatch_text = build_check_feedback(mismatch)
        assert "COMPANY NAME MISMATCH" in mismatch_text
        assert "Globex Trading NV" in mismatch_text
        assert "Acme Consulting BV" in mismatch_text

    def test_every_check_kind_has_feedback(self) -> None:
        for kind in CheckKind:
            check = AuditCheck.critical_failure(kind, "field", "something failed")
            assert build_check_feedback(check)

    def test_hint_is_appended(self) -> None:
        check = AuditCheck.critical_failure(
            CheckKind.CHECKSUM_OGM, "payment_reference", "bad", hint="Corrected O→0 at position 1"
        )
        assert "SPECIFIC HINT: Corrected O→0 at position 1" in build_check_feedback(check)


# ═══════════════════════════════════════════════════════════════════
# Full prompt
# ═══════════════════════════════════════════════════════════════════


class TestFeedbackPrompt:
    def test_no_failures(self) -> None:
        assert build_feedback_prompt(AuditReport(), 2, 3) == "No specific failures to address."

    def test_header_and_count(self) -> None:
        prompt = build_feedback_prompt(AuditReport(checks=(MATH_FAILURE, OGM_FAILURE)), 2, 3)
        assert "CORRECTION REQUIRED (Attempt 2 of 3)" in prompt
        assert "Found 2 issue(s)" in prompt
        assert "[CRITICAL]" in prompt

    def test_criticals_before_warnings(self) -> None:
        prompt = build_feedback_prompt(AuditReport(checks=(VAT_WARNING, MATH_FAILURE)), 2, 3)
        assert prompt.index("MATH ERROR") < prompt.index("VAT RATE WARNING")
        assert "Issue 1: Mathematical Verification [CRITICAL]" in prompt
        assert "Issue 2: VAT Rate [WARNING]" in prompt

    def test_final_attempt_warning(self) -> None:
        report = AuditReport(checks=(MATH_FAILURE,))
        assert "FINAL attempt" in build_feedback_prompt(report, 3, 3)
        assert "FINAL attempt" not in build_feedback_prompt(report, 2, 3)


class TestCorrectionSummary:
    def test_empty(self) -> None:
        assert build_correction_summary([]) == "No corrections needed."

    def test_grouped_by_kind(self) -> None:
        subtotal_failure = MATH_FAILURE.model_copy(update={"field": "subtotal"})
        summary = build_correction_summary([subtotal_failure, MATH_FAILURE, OGM_FAILURE, MATH_FAILURE])
        assert summary.splitlines() == [
            "Corrections made:",
            "  - Mathematical Verification: subtotal, total_amount",
            "  - OGM Payment Reference: payment_reference",
        ]
