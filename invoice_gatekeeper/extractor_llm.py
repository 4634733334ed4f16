"""
LLM-based extraction from invoice text using OpenAI structured output.

The LLM is the "expert" source: it understands layout and context far better
than regex. BUT we never trust it blindly. Every field it returns is audited
by deterministic code, and on critical failures it is asked again with
targeted feedback appended to the prompt.

Design:
  - JSON mode enforced (structured output, not free text)
  - The model self-reports a confidence in [0, 1]
  - Transport and model errors RAISE ExtractionError; the caller decides
    whether to degrade (ensemble) or abort (retry loop)
"""

from __future__ import annotations

import json
import logging
import os
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import openai
from openai import AsyncOpenAI

from .exceptions import ConfigurationError, ExtractionError
from .models import DocumentType, FinancialExtraction, LineItem

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5"


# ─── System Prompt ───────────────────────────────────────────────────

SYSTEM_PROMPT = """\
You are a financial document data extractor specializing in Belgian invoices,
bills, credit notes and receipts. Parse the given document text into a
structured JSON object.

CRITICAL RULES:
1. Extract EXACTLY what is printed. Do NOT recompute totals or fix check digits.
2. Do not infer or hallucinate values for missing fields; use null.
3. Amounts are plain numbers with a dot as decimal separator (1234.56).
4. Keep the payment reference exactly as printed, including +++ or *** wrappers.
5. List every row of an itemized table in line_items; use [] when there is none.

Return a JSON object with these exact keys:
{
    "document_type": "INVOICE | CREDIT_NOTE | PRO_FORMA | BILL | RECEIPT | EXPENSE | UNKNOWN",
    "vendor_name": "string or null",
    "vendor_vat_number": "string or null",
    "document_number": "string or null",
    "issue_date": "YYYY-MM-DD or null",
    "due_date": "YYYY-MM-DD or null",
    "currency": "ISO 4217 code or null",
    "subtotal": number or null,
    "vat_amount": number or null,
    "total_amount": number or null,
    "iban": "string or null",
    "bic": "string or null",
    "payment_reference": "string or null",
    "line_items": [
        {"description": "string or null", "quantity": number or null,
         "unit_price": number or null, "total": number or null (line total excl. VAT)}
    ],
    "confidence": number between 0 and 1 (how sure you are of the whole extraction)
}

IMPORTANT: Extract raw data only. Validation happens in a separate step.
"""

# Errors worth re-submitting the job for later
_TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class LlmExtractor:
    """Extractor backed by an OpenAI chat model in JSON mode.

    Usage:
        extractor = LlmExtractor.from_env()
        extraction = await extractor.extract(text)
        extraction = await extractor.extract(text, feedback=prompt)
    """

    def __init__(self, client: AsyncOpenAI, model: str = DEFAULT_MODEL):
        self.client = client
        self.model = model

    @classmethod
    def from_env(cls) -> LlmExtractor:
        """Build from OPENAI_API_KEY / GATEKEEPER_MODEL.

        Raises:
            ConfigurationError: OPENAI_API_KEY is not set.
        """
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set; the LLM extractor is unavailable")
        return cls(AsyncOpenAI(api_key=api_key), model=os.environ.get("GATEKEEPER_MODEL", DEFAULT_MODEL))

    async def extract(self, document_text: str, feedback: str | None = None) -> FinancialExtraction:
        user_content = f"Extract structured data from this financial document:\n\n{document_text}"
        if feedback:
            user_content += f"\n\n{feedback}"

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                response_format={"type": "json_object"},
            )
        except _TRANSIENT_ERRORS as e:
            logger.error("LLM extraction failed (transient): %s", e)
            raise ExtractionError(f"LLM request failed: {e}", {"model": self.model}, is_retryable=True) from e
        except openai.OpenAIError as e:
            logger.error("LLM extraction failed: %s", e)
            raise ExtractionError(f"LLM request failed: {e}", {"model": self.model}) from e

        content = response.choices[0].message.content
        if not content:
            raise ExtractionError("LLM returned empty content", {"model": self.model}, is_retryable=True)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ExtractionError(
                "LLM returned invalid JSON", {"model": self.model}, is_retryable=True
            ) from e
        if not isinstance(data, dict):
            raise ExtractionError("LLM returned JSON that is not an object", {"model": self.model})

        logger.info("LLM extraction succeeded (%s)", self.model)
        return parse_llm_payload(data)


def parse_llm_payload(data: dict[str, Any]) -> FinancialExtraction:
    """Convert the model's JSON object into a FinancialExtraction.

    Unparseable individual values become None: a bad date is a missing date,
    and missing data is caught later by the audit and the essential-field check.
    """
    return FinancialExtraction(
        document_type=_safe_document_type(data.get("document_type")),
        vendor_name=_safe_str(data.get("vendor_name")),
        vendor_vat_number=_safe_str(data.get("vendor_vat_number")),
        document_number=_safe_str(data.get("document_number")),
        issue_date=_safe_date(data.get("issue_date")),
        due_date=_safe_date(data.get("due_date")),
        currency=_safe_str(data.get("currency")),
        subtotal=_safe_decimal(data.get("subtotal")),
        vat_amount=_safe_decimal(data.get("vat_amount")),
        total_amount=_safe_decimal(data.get("total_amount")),
        iban=_safe_str(data.get("iban")),
        bic=_safe_str(data.get("bic")),
        payment_reference=_safe_str(data.get("payment_reference")),
        line_items=_safe_line_items(data.get("line_items")),
        confidence=_safe_confidence(data.get("confidence")),
    )


# ─── Safe Type Converters ────────────────────────────────────────────


def _safe_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _safe_document_type(value: object) -> DocumentType:
    try:
        return DocumentType(str(value).strip().upper().replace(" ", "_"))
    except ValueError:
        return DocumentType.UNKNOWN


def _safe_date(value: object) -> date | None:
    """Safely convert an LLM output to a date. Returns None on failure."""
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        return None


def _safe_decimal(value: object) -> Decimal | None:
    """Safely convert an LLM output to Decimal. Returns None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _safe_line_items(value: object) -> tuple[LineItem, ...]:
    """Keep well-formed rows; anything that is not a list of objects is no items."""
    if not isinstance(value, list):
        return ()
    items: list[LineItem] = []
    for row in value:
        if not isinstance(row, dict):
            continue
        item = LineItem(
            description=_safe_str(row.get("description")),
            quantity=_safe_decimal(row.get("quantity")),
            unit_price=_safe_decimal(row.get("unit_price")),
            total=_safe_decimal(row.get("total")),
        )
        if item != LineItem():
            items.append(item)
    return tuple(items)


def _safe_confidence(value: object) -> float:
    """Clamp to [0, 1]; a missing confidence counts as none at all."""
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(max(confidence, 0.0), 1.0)
