"""
Ensemble reconciliation — compare a fast and an expert extraction.

Two independent sources reading the same document should agree. Where they
don't, we record a FieldConflict instead of silently picking one:

  - Amounts, IBAN, payment reference and VAT number move money → CRITICAL
  - Everything else (names, dates, document number) → WARNING

Each field has a weight that settles its conflicts:

  PREFER_EXPERT  → the expert value wins (the default for every field)
  PREFER_FAST    → the fast value wins
  REQUIRE_MATCH  → nobody wins; the field is left empty and the conflict
                   is always CRITICAL, so a human has to look

A value that only one source found is not a conflict; the merged payload
simply keeps it.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from .models import (
    ConflictReport,
    ConflictSeverity,
    DocumentType,
    FieldConflict,
    FieldWeight,
    FinancialExtraction,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

# Merged confidence drops this much per conflict, up to the cap
CONFLICT_PENALTY = 0.05
MAX_CONFLICT_PENALTY = 0.25

_AMOUNT_FIELDS = ("subtotal", "vat_amount", "total_amount")
_IDENTIFIER_FIELDS = ("vendor_vat_number", "document_number", "iban", "bic", "payment_reference")
_TEXT_FIELDS = ("vendor_name", "currency")
_DATE_FIELDS = ("issue_date", "due_date")

# Stable comparison order = field order of FinancialExtraction
COMPARED_FIELDS: tuple[str, ...] = tuple(
    name
    for name in FinancialExtraction.model_fields
    if name in _AMOUNT_FIELDS + _IDENTIFIER_FIELDS + _TEXT_FIELDS + _DATE_FIELDS
)

CRITICAL_FIELDS: frozenset[str] = frozenset({
    "subtotal", "vat_amount", "total_amount", "iban", "payment_reference", "vendor_vat_number",
})

DEFAULT_FIELD_WEIGHTS: Mapping[str, FieldWeight] = {
    name: FieldWeight.PREFER_EXPERT for name in COMPARED_FIELDS
}


# ─── Public API ──────────────────────────────────────────────────────


def reconcile(
    fast: FinancialExtraction,
    expert: FinancialExtraction,
    weights: Mapping[str, FieldWeight] | None = None,
) -> ConflictReport:
    """Compare both extractions field-by-field.

    Args:
        weights: Per-field conflict policy; fields not listed prefer the expert.

    Returns:
        ConflictReport, empty when the sources agree on every field both found.
    """
    _, report = _resolve_conflicts(fast, expert, weights)
    return report


def merge(
    fast: FinancialExtraction,
    expert: FinancialExtraction,
    weights: Mapping[str, FieldWeight] | None = None,
) -> tuple[FinancialExtraction, ConflictReport]:
    """Build the consensus payload.

    Conflicting fields take the value their weight chose; every other field
    takes the expert value, with gaps filled from the fast source. Line
    items are never compared: the expert's table wins unless it is empty.
    """
    chosen, report = _resolve_conflicts(fast, expert, weights)

    merged: dict[str, Any] = {}
    for name in FinancialExtraction.model_fields:
        if name == "confidence":
            continue
        if name in chosen:
            merged[name] = chosen[name]
            continue
        expert_value = getattr(expert, name)
        fast_value = getattr(fast, name)
        merged[name] = fast_value if _is_empty(expert_value) else expert_value

    if expert.document_type == DocumentType.UNKNOWN:
        merged["document_type"] = fast.document_type

    merged["confidence"] = merged_confidence(fast.confidence, expert.confidence, len(report.conflicts))
    return FinancialExtraction(**merged), report


def merged_confidence(fast: float, expert: float, conflict_count: int) -> float:
    """Expert-weighted average, penalized per conflict."""
    weighted = (fast + 2 * expert) / 3
    penalty = min(CONFLICT_PENALTY * conflict_count, MAX_CONFLICT_PENALTY)
    return round(min(max(weighted - penalty, 0.0), 1.0), 4)


def has_consensus(report: ConflictReport | None) -> bool:
    """No report (single source) or an empty report both mean consensus."""
    return report is None or not report.has_conflicts


# ─── Conflict Resolution ─────────────────────────────────────────────


def _resolve_conflicts(
    fast: FinancialExtraction,
    expert: FinancialExtraction,
    weights: Mapping[str, FieldWeight] | None,
) -> tuple[dict[str, Any], ConflictReport]:
    """Chosen value per conflicting field, plus the report describing them."""
    policy = DEFAULT_FIELD_WEIGHTS if weights is None else weights
    chosen: dict[str, Any] = {}
    conflicts: list[FieldConflict] = []

    for name in COMPARED_FIELDS:
        fast_value = getattr(fast, name)
        expert_value = getattr(expert, name)

        if _is_empty(fast_value) or _is_empty(expert_value):
            continue
        if _values_agree(name, fast_value, expert_value):
            continue

        weight = policy.get(name, FieldWeight.PREFER_EXPERT)
        if weight is FieldWeight.PREFER_FAST:
            value, source = fast_value, "fast"
        elif weight is FieldWeight.PREFER_EXPERT:
            value, source = expert_value, "expert"
        else:
            value, source = None, "none"

        critical = name in CRITICAL_FIELDS or weight is FieldWeight.REQUIRE_MATCH
        chosen[name] = value
        conflicts.append(
            FieldConflict(
                field=name,
                fast_value=_as_text(fast_value),
                expert_value=_as_text(expert_value),
                chosen_value=_as_text(value),
                chosen_source=source,
                severity=ConflictSeverity.CRITICAL if critical else ConflictSeverity.WARNING,
            )
        )

    if conflicts:
        logger.warning(
            "Ensemble disagreement on %d field(s): %s",
            len(conflicts),
            ", ".join(c.field for c in conflicts),
        )
    return chosen, ConflictReport(conflicts=tuple(conflicts))


# ─── Comparison Helpers ──────────────────────────────────────────────


def _values_agree(name: str, fast: Any, expert: Any) -> bool:
    if name in _AMOUNT_FIELDS:
        return abs(Decimal(fast) - Decimal(expert)) <= AMOUNT_TOLERANCE
    if name in _IDENTIFIER_FIELDS:
        return _compact(fast) == _compact(expert)
    if name in _DATE_FIELDS:
        return fast == expert
    return _normalize_text(fast) == _normalize_text(expert)


def _compact(value: Any) -> str:
    """Separator-insensitive form: 'BE68 5390-0754.7034' → 'BE68539007547034'."""
    return re.sub(r"[\s\-./+*]", "", str(value)).upper()


def _normalize_text(value: Any) -> str:
    return " ".join(str(value).split()).casefold()


def _is_empty(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, tuple):
        return not value
    return value is None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
