"""
Deterministic regex-based extraction from invoice text.

This module extracts financial fields using PURE REGEX — no AI, no guessing.
It is the "fast" source of the ensemble: cheap, reproducible, and the
baseline the LLM output is compared against.

Philosophy: It's better to extract nothing than to extract wrong data.
              Every pattern is conservative; we'd rather return None than a bad value.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from .models import DocumentType, FinancialExtraction

# Fields that count towards the self-reported confidence
_TRACKED_FIELDS: tuple[str, ...] = (
    "vendor_name",
    "vendor_vat_number",
    "document_number",
    "issue_date",
    "due_date",
    "currency",
    "subtotal",
    "vat_amount",
    "total_amount",
    "iban",
    "bic",
    "payment_reference",
)

# Checked in order: "Credit note" must win over "Invoice" on a credit note header.
_DOCUMENT_TYPE_KEYWORDS: tuple[tuple[DocumentType, str], ...] = (
    (DocumentType.CREDIT_NOTE, r"credit\s*note|creditnota|note\s+de\s+cr[ée]dit"),
    (DocumentType.PRO_FORMA, r"pro[\s-]?forma"),
    (DocumentType.RECEIPT, r"\breceipt\b|kasticket|\bre[çc]u\b|ticket\s+de\s+caisse"),
    (DocumentType.EXPENSE, r"expense\s+(?:claim|report)|onkostennota"),
    (DocumentType.BILL, r"\bbill\b"),
    (DocumentType.INVOICE, r"invoice|factuur|facture"),
)


class RegexExtractor:
    """Extractor-protocol adapter around extract_with_regex.

    Regex cannot act on corrective feedback, so feedback is ignored and a
    retry yields the same payload again.
    """

    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction:
        return extract_with_regex(document_text)


def extract_with_regex(raw_text: str) -> FinancialExtraction:
    """Extract invoice fields from raw text using regex patterns.

    Returns:
        FinancialExtraction with every field that could be deterministically
        extracted. Confidence = share of tracked fields found.
    """
    amounts = _extract_amounts(raw_text)
    fields = {
        "vendor_name": _extract_labeled_field(raw_text, r"Vendor|Supplier|From|Leverancier|Fournisseur"),
        "vendor_vat_number": _extract_vat_number(raw_text),
        "document_number": _extract_document_number(raw_text),
        "issue_date": _extract_date(raw_text, r"(?:Invoice\s+|Issue\s+)?Date|Factuurdatum|Date\s+de\s+facture"),
        "due_date": _extract_date(raw_text, r"Due\s+Date|Vervaldatum|[ÉE]ch[ée]ance"),
        "currency": _extract_currency(raw_text),
        "subtotal": amounts.get("subtotal"),
        "vat_amount": amounts.get("vat_amount"),
        "total_amount": amounts.get("total_amount"),
        "iban": _extract_iban(raw_text),
        "bic": _extract_bic(raw_text),
        "payment_reference": _extract_payment_reference(raw_text),
    }

    found = sum(1 for name in _TRACKED_FIELDS if fields[name] is not None)
    return FinancialExtraction(
        document_type=_extract_document_type(raw_text),
        confidence=round(found / len(_TRACKED_FIELDS), 2),
        **fields,
    )


# ─── Individual Field Extractors ─────────────────────────────────────


def _extract_document_type(text: str) -> DocumentType:
    """Classify by the first header keyword; UNKNOWN when nothing matches."""
    header = "\n".join(text.strip().splitlines()[:5]).lower()
    for doc_type, pattern in _DOCUMENT_TYPE_KEYWORDS:
        if re.search(pattern, header):
            return doc_type
    return DocumentType.UNKNOWN


def _extract_labeled_field(text: str, label: str) -> str | None:
    """Generic extractor for 'Label:  value' lines.

    Captures everything after the colon until end-of-line, then normalizes
    excessive whitespace (common in OCR output).
    """
    match = re.search(rf"^\s*(?:{label})\s*:\s*(.+?)\s*$", text, re.MULTILINE | re.IGNORECASE)
    if match:
        return re.sub(r"\s+", " ", match.group(1))
    return None


def _extract_vat_number(text: str) -> str | None:
    """Match 'VAT: BE0123.456.749' / 'BTW-nr: BE 0123 456 749'."""
    match = re.search(
        r"(?:VAT|BTW|TVA)(?:[\s-]*(?:No\.?|Number|nr\.?|n°))?\s*:\s*([A-Z]{2} ?[0-9][0-9. ]{7,13}[0-9])",
        text,
        re.IGNORECASE,
    )
    return re.sub(r"\s+", " ", match.group(1)).strip() if match else None


def _extract_document_number(text: str) -> str | None:
    """Match 'Invoice No: INV-2024-0117' and its Dutch/French variants."""
    match = re.search(
        r"(?:Invoice|Credit\s+Note|Document|Factuur|Facture|Receipt)\s*"
        r"(?:No\.?|Number|nr\.?|n°|#)\s*:?\s*([A-Z0-9][A-Z0-9\-/.]*)",
        text,
        re.IGNORECASE,
    )
    return match.group(1).rstrip(".") if match else None


def _extract_date(text: str, label: str) -> date | None:
    """Match 'Date: 2024-03-15' or 'Date: 15/03/2024' (day first, Belgian style).

    Malformed dates return None rather than a guess.
    """
    match = re.search(
        rf"^\s*(?:{label})\s*:\s*(\d{{4}}-\d{{2}}-\d{{2}}|\d{{1,2}}[/.\-]\d{{1,2}}[/.\-]\d{{4}})",
        text,
        re.MULTILINE | re.IGNORECASE,
    )
    if not match:
        return None
    raw = match.group(1)
    try:
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", raw):
            return date.fromisoformat(raw)
        day, month, year = (int(part) for part in re.split(r"[/.\-]", raw))
        return date(year, month, day)
    except ValueError:
        return None


def _extract_currency(text: str) -> str | None:
    if "€" in text:
        return "EUR"
    match = re.search(r"\b(EUR|USD|GBP|CHF)\b", text)
    return match.group(1) if match else None


def _extract_amounts(text: str) -> dict[str, Decimal]:
    """Classify 'Label: amount' lines into subtotal / VAT / total.

    The first line of each kind wins; later lines (e.g. per-rate breakdowns)
    never overwrite it.
    """
    amounts: dict[str, Decimal] = {}
    for match in re.finditer(r"^\s*([^:\n]{2,40}?)\s*:\s*(.+?)\s*$", text, re.MULTILINE):
        label = match.group(1).lower()
        kind = _classify_amount_label(label)
        if kind is None or kind in amounts:
            continue
        if re.match(r"[A-Za-z]{2} ?\d", match.group(2)):
            continue  # An identifier such as 'VAT: BE0123.456.749'
        value = _parse_amount(match.group(2))
        if value is not None:
            amounts[kind] = value
    return amounts


def _classify_amount_label(label: str) -> str | None:
    if re.search(r"\b(?:no|nr|number|n°)\b", label):
        return None  # "VAT No", "Invoice Number"
    if re.search(r"subtotal|sub-total|excl|net\s+amount|maatstaf|base", label):
        return "subtotal"
    if re.match(r"(?:vat|btw|tva)\b", label):
        return "vat_amount"
    if re.search(r"total|amount\s+due|te\s+betalen|à\s+payer", label):
        return "total_amount"
    return None


def _parse_amount(raw: str) -> Decimal | None:
    """'€ 1.234,56' / '1,234.56 EUR' / '(10.00)' → Decimal. Never float!"""
    match = re.search(r"(-|\()?\s*[€$£]?\s*(\d[\d.,\s]*\d|\d)", raw)
    if not match:
        return None
    number = re.sub(r"\s", "", match.group(2))

    if "," in number and "." in number:
        # The last separator is the decimal one
        if number.rfind(",") > number.rfind("."):
            number = number.replace(".", "").replace(",", ".")
        else:
            number = number.replace(",", "")
    elif "," in number:
        number = number.replace(",", ".") if re.search(r",\d{1,2}$", number) else number.replace(",", "")
    elif "." in number and not re.search(r"\.\d{1,2}$", number):
        number = number.replace(".", "")  # 1.250 → thousands separator

    try:
        value = Decimal(number)
    except InvalidOperation:
        return None
    return -value if match.group(1) else value


def _extract_iban(text: str) -> str | None:
    """Match 'IBAN: BE68 5390 0754 7034', stopping at BIC or a column gap."""
    match = re.search(r"IBAN\s*:?\s*([A-Za-z]{2}[^\n|]*)", text)
    if not match:
        return None
    value = re.split(r"\s{2,}|\b(?:BIC|SWIFT)\b", match.group(1))[0]
    return value.strip() or None


def _extract_bic(text: str) -> str | None:
    match = re.search(r"(?:BIC|SWIFT)\s*:?\s*([A-Z]{6}[A-Z0-9]{2}(?:[A-Z0-9]{3})?)\b", text)
    return match.group(1) if match else None


def _extract_payment_reference(text: str) -> str | None:
    """Prefer a wrapped structured communication; fall back to a labeled reference."""
    match = re.search(
        r"(?:\+\+\+|\*\*\*)\s*[0-9OIlBSG]{3}\s*/\s*[0-9OIlBSG]{4}\s*/\s*[0-9OIlBSG]{5}\s*(?:\+\+\+|\*\*\*)",
        text,
    )
    if match:
        return re.sub(r"\s+", "", match.group(0))
    return _extract_labeled_field(
        text, r"(?:Structured\s+)?Communication|Payment\s+Reference|Mededeling|Reference"
    )
