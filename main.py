#!/usr/bin/env python3
"""
Invoice Gatekeeper — Entry Point
=================================

Runs the full pipeline on sample invoices (or on a file) and prints the
decision trail.

Usage:
    python main.py                          # Regex-only mode (no API key needed)
    python main.py invoice.txt              # Judge a text file
    OPENAI_API_KEY=sk-... python main.py    # LLM + regex ensemble
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from invoice_gatekeeper.exceptions import GatekeeperError
from invoice_gatekeeper.models import CheckStatus, JudgmentOutcome
from invoice_gatekeeper.pipeline import FinancialExtractionPipeline, PipelineResult
from invoice_gatekeeper.registry import StaticRegistry

load_dotenv()


# ─── Sample Documents ────────────────────────────────────────────────

CLEAN_INVOICE = """\
INVOICE
Vendor: Acme Consulting BV
VAT: BE0123.456.749
Invoice No: INV-2024-0117
Date: 15/03/2024
Due Date: 14/04/2024
Subtotal: € 1.250,00
VAT 21%: € 262,50
Total: € 1.512,50
IBAN: BE68 5390 0754 7034   BIC: GKCCBEBB
Communication: +++012/3456/78939+++"""

# Total misread (1.572,50) and a check digit off by one: both are critical
BROKEN_INVOICE = """\
INVOICE
Vendor: Acme Consulting BV
VAT: BE0123.456.749
Invoice No: INV-2024-0118
Date: 16/03/2024
Subtotal: € 1.250,00
VAT 21%: € 262,50
Total: € 1.572,50
IBAN: BE68 5390 0754 7034
Communication: +++012/3456/78940+++"""

DEMO_REGISTRY = StaticRegistry({"BE0123456749": "ACME CONSULTING BV"})


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_OUTCOME_COLORS = {
    JudgmentOutcome.AUTO_APPROVE: _GREEN,
    JudgmentOutcome.NEEDS_REVIEW: _YELLOW,
    JudgmentOutcome.REJECT: _RED,
}

_STATUS_MARKS = {
    CheckStatus.PASSED: f"{_GREEN}✓{_RESET}",
    CheckStatus.WARNING: f"{_YELLOW}!{_RESET}",
    CheckStatus.CRITICAL_FAILURE: f"{_RED}✗{_RESET}",
}


# ─── Pretty Printer ─────────────────────────────────────────────────


def _print_extraction(result: PipelineResult) -> None:
    e = result.extraction
    print(f"  Type:        {e.document_type.value}")
    print(f"  Vendor:      {e.vendor_name}  {_DIM}{e.vendor_vat_number or ''}{_RESET}")
    print(f"  Number:      {e.document_number}")
    print(f"  Dates:       {e.issue_date} → due {e.due_date}")
    print(f"  Amounts:     {e.subtotal} + {e.vat_amount} = {e.total_amount} {e.currency or ''}")
    print(f"  IBAN:        {e.iban}")
    print(f"  Reference:   {e.payment_reference}")
    print(f"  Confidence:  {e.confidence:.0%}")


def _print_checks(result: PipelineResult) -> None:
    for check in result.audit_report.checks:
        print(f"    {_STATUS_MARKS[check.status]} {check.kind.label:<28} {_DIM}{check.message}{_RESET}")
    if result.conflict_report and result.conflict_report.conflicts:
        print(f"\n  {_YELLOW}{_BOLD}CONFLICTS ({len(result.conflict_report.conflicts)}){_RESET}")
        for c in result.conflict_report.conflicts:
            print(f"    [{c.severity.value}] {c.field}: fast='{c.fast_value}' expert='{c.expert_value}'")


def print_report(result: PipelineResult) -> int:
    """Pretty-print the decision trail with ANSI color codes.

    Returns:
        0 if auto-approved, 1 otherwise.
    """
    decision = result.decision
    color = _OUTCOME_COLORS[decision.outcome]

    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  INVOICE GATEKEEPER REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Audit Hash:  {_DIM}{result.original_hash[:16]}...{_RESET}")
    print(f"  Extraction:  {result.extraction_method}")
    print(f"{'─' * _WIDTH}")
    _print_extraction(result)
    print(f"{'─' * _WIDTH}")
    _print_checks(result)
    print(f"{'─' * _WIDTH}")
    if decision.retry_attempts:
        print(f"  Attempts:    {decision.retry_attempts}")
    print(f"  Reasoning:   {decision.reasoning}")
    for issue in decision.issues_for_user:
        print(f"    {color}•{_RESET} {issue}")
    print(f"{'=' * _WIDTH}")
    print(f"  {color}{_BOLD}{decision.outcome.value}{_RESET}  {_DIM}(rule: {decision.rule}){_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return 0 if decision.outcome is JudgmentOutcome.AUTO_APPROVE else 1


# ─── Main ────────────────────────────────────────────────────────────


def main() -> None:
    """Judge the given file, or both sample invoices, and print the reports."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    if len(sys.argv) > 1:
        documents = [Path(sys.argv[1]).read_text(encoding="utf-8")]
    else:
        documents = [CLEAN_INVOICE, BROKEN_INVOICE]

    print("\n  Starting Invoice Gatekeeper...")
    try:
        pipeline = FinancialExtractionPipeline.from_env(registry=DEMO_REGISTRY)
        exit_codes = [print_report(pipeline.run_sync(text)) for text in documents]
    except GatekeeperError as e:
        print(f"  {_RED}{_BOLD}[{e.code}]{_RESET} {e}")
        sys.exit(2)

    sys.exit(max(exit_codes))


if __name__ == "__main__":
    main()
