"""
Tests for the regex (fast) and LLM (expert) extraction sources.

The LLM extractor is tested against a fake client object; no API key and
no network access are needed.
"""

from __future__ import annotations

import asyncio
import json
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from invoice_gatekeeper.exceptions import ConfigurationError, ExtractionError
from invoice_gatekeeper.extractor_llm import LlmExtractor, parse_llm_payload
from invoice_gatekeeper.extractor_regex import RegexExtractor, _parse_amount, extract_with_regex
from invoice_gatekeeper.models import DocumentType

SAMPLE_INVOICE = """\
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


# ═══════════════════════════════════════════════════════════════════
# Regex extraction
# ═══════════════════════════════════════════════════════════════════


class TestRegexExtraction:
    def test_full_sample(self) -> None:
        e = extract_with_regex(SAMPLE_INVOICE)
        assert e.document_type == DocumentType.INVOICE
        assert e.vendor_name == "Acme Consulting BV"
        assert e.vendor_vat_number == "BE0123.456.749"
        assert e.document_number == "INV-2024-0117"
        assert e.issue_date == date(2024, 3, 15)
        assert e.due_date == date(2024, 4, 14)
        assert e.currency == "EUR"
        assert e.subtotal == Decimal("1250.00")
        assert e.vat_amount == Decimal("262.50")
        assert e.total_amount == Decimal("1512.50")
        assert e.iban == "BE68 5390 0754 7034"
        assert e.bic == "GKCCBEBB"
        assert e.payment_reference == "+++012/3456/78939+++"
        assert e.confidence == 1.0

    def test_confidence_is_share_of_fields_found(self) -> None:
        e = extract_with_regex("INVOICE\nVendor: Acme Consulting BV\nTotal: € 121,00")
        assert e.confidence == round(3 / 12, 2)  # vendor, currency, total
        assert e.total_amount == Decimal("121.00")

    def test_empty_text(self) -> None:
        e = extract_with_regex("")
        assert e.document_type == DocumentType.UNKNOWN
        assert e.confidence == 0.0

    @pytest.mark.parametrize(
        "header, expected",
        [
            ("CREDIT NOTE\nRef: INV-2024-0117", DocumentType.CREDIT_NOTE),
            ("Creditnota", DocumentType.CREDIT_NOTE),
            ("PRO-FORMA INVOICE", DocumentType.PRO_FORMA),
            ("Kasticket", DocumentType.RECEIPT),
            ("Expense claim", DocumentType.EXPENSE),
            ("Electricity bill", DocumentType.BILL),
            ("FACTUUR", DocumentType.INVOICE),
            ("Facture", DocumentType.INVOICE),
            ("Meeting notes", DocumentType.UNKNOWN),
        ],
    )
    def test_document_type(self, header: str, expected: DocumentType) -> None:
        assert extract_with_regex(header).document_type == expected

    def test_vat_number_is_not_an_amount(self) -> None:
        e = extract_with_regex("INVOICE\nVAT: BE0123.456.749\nVAT 21%: € 21,00")
        assert e.vat_amount == Decimal("21.00")

    def test_invalid_date_is_none(self) -> None:
        assert extract_with_regex("INVOICE\nDate: 31/02/2024").issue_date is None

    def test_regex_extractor_ignores_feedback(self) -> None:
        extractor = RegexExtractor()
        first = asyncio.run(extractor.extract(SAMPLE_INVOICE))
        second = asyncio.run(extractor.extract(SAMPLE_INVOICE, feedback="CORRECTION REQUIRED"))
        assert first == second


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("€ 1.234,56", "1234.56"),
            ("1,234.56 EUR", "1234.56"),
            ("€ 1.250", "1250"),
            ("121,00", "121.00"),
            ("121.5", "121.5"),
            ("-10,00", "-10.00"),
            ("(10.00)", "-10.00"),
            ("€ 1 512,50", "1512.50"),
        ],
    )
    def test_formats(self, raw: str, expected: str) -> None:
        assert _parse_amount(raw) == Decimal(expected)

    def test_no_number(self) -> None:
        assert _parse_amount("n/a") is None


# ═══════════════════════════════════════════════════════════════════
# LLM extraction (fake client)
# ═══════════════════════════════════════════════════════════════════


class FakeCompletions:
    def __init__(self, content: str | None = None, error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(completions: FakeCompletions) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


LLM_PAYLOAD = {
    "document_type": "invoice",
    "vendor_name": "Acme Consulting BV",
    "vendor_vat_number": "BE0123456749",
    "issue_date": "2024-03-15",
    "subtotal": 1250.0,
    "vat_amount": "262.50",
    "total_amount": 1512.5,
    "iban": "BE68 5390 0754 7034",
    "payment_reference": "+++012/3456/78939+++",
    "confidence": 0.93,
}


class TestLlmExtractor:
    def test_successful_extraction(self) -> None:
        completions = FakeCompletions(json.dumps(LLM_PAYLOAD))
        extractor = LlmExtractor(_fake_client(completions), model="test-model")
        e = asyncio.run(extractor.extract("INVOICE ..."))

        assert e.document_type == DocumentType.INVOICE
        assert e.total_amount == Decimal("1512.5")
        assert e.confidence == 0.93
        call = completions.calls[0]
        assert call["model"] == "test-model"
        assert call["response_format"] == {"type": "json_object"}

    def test_feedback_is_appended_to_user_message(self) -> None:
        completions = FakeCompletions(json.dumps(LLM_PAYLOAD))
        extractor = LlmExtractor(_fake_client(completions))
        asyncio.run(extractor.extract("INVOICE ...", feedback="CORRECTION REQUIRED (Attempt 2 of 3)"))
        user_message = completions.calls[0]["messages"][1]["content"]
        assert user_message.endswith("CORRECTION REQUIRED (Attempt 2 of 3)")
        assert "INVOICE ..." in user_message

    def test_invalid_json(self) -> None:
        extractor = LlmExtractor(_fake_client(FakeCompletions("not json {")))
        with pytest.raises(ExtractionError) as exc_info:
            asyncio.run(extractor.extract("INVOICE ..."))
        assert exc_info.value.is_retryable

    def test_empty_content(self) -> None:
        extractor = LlmExtractor(_fake_client(FakeCompletions(None)))
        with pytest.raises(ExtractionError):
            asyncio.run(extractor.extract("INVOICE ..."))

    def test_non_object_json(self) -> None:
        extractor = LlmExtractor(_fake_client(FakeCompletions("[1, 2, 3]")))
        with pytest.raises(ExtractionError) as exc_info:
            asyncio.run(extractor.extract("INVOICE ..."))
        assert not exc_info.value.is_retryable

    def test_connection_error_is_retryable(self) -> None:
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        extractor = LlmExtractor(_fake_client(FakeCompletions(error=error)))
        with pytest.raises(ExtractionError) as exc_info:
            asyncio.run(extractor.extract("INVOICE ..."))
        assert exc_info.value.is_retryable
        assert exc_info.value.code == "EXTRACTION_FAILED"
        assert exc_info.value.__cause__ is error

    def test_from_env_without_key(self) -> None:
        with pytest.raises(ConfigurationError):
            LlmExtractor.from_env()

    def test_from_env_with_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("GATEKEEPER_MODEL", "gpt-test")
        assert LlmExtractor.from_env().model == "gpt-test"


class TestParseLlmPayload:
    def test_bad_values_become_none(self) -> None:
        e = parse_llm_payload(
            {
                "document_type": "letter",
                "issue_date": "15th of March",
                "total_amount": "about 1500",
                "subtotal": True,
                "vendor_name": "   ",
                "confidence": "high",
            }
        )
        assert e.document_type == DocumentType.UNKNOWN
        assert e.issue_date is None
        assert e.total_amount is None
        assert e.subtotal is None
        assert e.vendor_name is None
        assert e.confidence == 0.0

    def test_confidence_is_clamped(self) -> None:
        assert parse_llm_payload({"confidence": 1.7}).confidence == 1.0
        assert parse_llm_payload({"confidence": -0.2}).confidence == 0.0
        assert parse_llm_payload({}).confidence == 0.0

    def test_credit_note_with_space(self) -> None:
        assert parse_llm_payload({"document_type": "credit note"}).document_type == DocumentType.CREDIT_NOTE

    def test_line_items(self) -> None:
        e = parse_llm_payload(
            {
                "line_items": [
                    {"description": "Consulting", "quantity": 8, "unit_price": "125.00", "total": 1000},
                    {"description": "Travel", "quantity": "n/a", "unit_price": None, "total": 25.5},
                    "not a row",
                    {},
                ]
            }
        )
        assert [item.description for item in e.line_items] == ["Consulting", "Travel"]
        assert e.line_items[0].unit_price == Decimal("125.00")
        assert e.line_items[0].total == Decimal("1000")
        assert e.line_items[1].quantity is None
        assert e.line_items[1].total == Decimal("25.5")

    @pytest.mark.parametrize("value", [None, "none", {"total": 10}])
    def test_malformed_line_items_are_dropped(self, value: Any) -> None:
        assert parse_llm_payload({"line_items": value}).line_items == ()
