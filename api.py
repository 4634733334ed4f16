"""
Invoice Gatekeeper — FastAPI Server
====================================

RESTful API deciding whether an extracted invoice can be auto-applied.

Endpoints:
    POST /judge             Run the full pipeline on document text
    POST /judge/file        Upload a text file and run the pipeline
    POST /validate/iban     Validate a single IBAN (checksum + format)
    POST /validate/ogm      Validate a Belgian structured communication
    GET  /health            Health check / readiness probe

Configuration (environment or .env):
    OPENAI_API_KEY               enables the LLM expert extractor
    GATEKEEPER_MODEL             OpenAI model name (default: gpt-5)
    GATEKEEPER_JUDGMENT_PRESET   default | strict | lenient
    GATEKEEPER_MAX_RETRIES       attempt budget (default: 3)
    GATEKEEPER_ATTEMPT_TIMEOUT   seconds per extraction attempt

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, UploadFile
from pydantic import BaseModel, Field

from invoice_gatekeeper import __version__
from invoice_gatekeeper.exceptions import CollaboratorError
from invoice_gatekeeper.formats import IbanResult, OgmResult, validate_iban, validate_ogm
from invoice_gatekeeper.models import (
    AuditCheck,
    CheckStatus,
    FieldConflict,
    FinancialExtraction,
    JudgmentDecision,
)
from invoice_gatekeeper.pipeline import FinancialExtractionPipeline, PipelineResult

load_dotenv()

logger = logging.getLogger(__name__)

_MAX_UPLOAD_BYTES = 1_048_576


# ─── Application Lifespan (pre-warm pipeline) ───────────────────────

_pipeline: FinancialExtractionPipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline from the environment on startup; bad config fails fast."""
    global _pipeline  # noqa: PLW0603
    _pipeline = FinancialExtractionPipeline.from_env()
    yield
    _pipeline = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Invoice Gatekeeper API",
    description=(
        "Decides whether an LLM extraction of a financial document can be trusted. "
        "Ensemble extraction, deterministic IBAN/OGM/math audit, feedback-driven "
        "self-correction and a rule-based judgment."
    ),
    version=__version__,
    lifespan=lifespan,
)


# ─── Request / Response Schemas ─────────────────────────────────────

SAMPLE_INVOICE = (
    "INVOICE\n"
    "Vendor: Acme Consulting BV\n"
    "VAT: BE0123.456.749\n"
    "Invoice No: INV-2024-0117\n"
    "Date: 15/03/2024\n"
    "Due Date: 14/04/2024\n"
    "Subtotal: € 1.250,00\n"
    "VAT 21%: € 262,50\n"
    "Total: € 1.512,50\n"
    "IBAN: BE68 5390 0754 7034   BIC: GKCCBEBB\n"
    "Communication: +++012/3456/78939+++\n"
)


class JudgeRequest(BaseModel):
    """Request body for the /judge endpoint."""

    document_text: str = Field(
        ...,
        min_length=10,
        description="Raw text of the invoice, bill, credit note or receipt.",
        json_schema_extra={"example": SAMPLE_INVOICE},
    )


class ValueRequest(BaseModel):
    value: str = Field(..., min_length=1, json_schema_extra={"example": "BE68 5390 0754 7034"})


class JudgeResponse(BaseModel):
    """The decision plus the trail that led to it."""

    decision: JudgmentDecision
    extraction_method: str
    original_hash: str = Field(description="SHA-256 hash of the document text")
    audit_status: CheckStatus
    critical_count: int
    warning_count: int
    checks: list[AuditCheck]
    conflicts: list[FieldConflict]
    extraction: FinancialExtraction


class HealthResponse(BaseModel):
    status: str
    version: str
    extraction_mode: str
    auto_approve_threshold: float
    min_confidence_floor: float
    max_retries: int
    attempt_timeout: Optional[float] = None


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_pipeline() -> FinancialExtractionPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


async def _judge(text: str) -> JudgeResponse:
    """Run the pipeline; collaborator failures map to 503 (retryable) or 502."""
    pipeline = _get_pipeline()
    try:
        result = await pipeline.run(text)
    except CollaboratorError as e:
        logger.error("Pipeline aborted: [%s] %s", e.code, e)
        raise HTTPException(
            status_code=503 if e.is_retryable else 502,
            detail={"code": e.code, "message": str(e), "is_retryable": e.is_retryable},
        ) from e
    return _build_response(result)


def _build_response(result: PipelineResult) -> JudgeResponse:
    """Convert the internal PipelineResult to the API response schema."""
    report = result.audit_report
    conflicts = result.conflict_report.conflicts if result.conflict_report else ()
    return JudgeResponse(
        decision=result.decision,
        extraction_method=result.extraction_method,
        original_hash=result.original_hash,
        audit_status=report.overall_status,
        critical_count=len(report.critical_failures),
        warning_count=len(report.warnings),
        checks=list(report.checks),
        conflicts=list(conflicts),
        extraction=result.extraction,
    )


# ─── Endpoints ───────────────────────────────────────────────────────


@app.post(
    "/judge",
    summary="Judge an extraction from document text",
    tags=["Judgment"],
    responses={
        502: {"description": "Extraction collaborator failed permanently"},
        503: {"description": "Pipeline not initialised, or a transient collaborator failure"},
    },
)
async def judge_document(request: JudgeRequest) -> JudgeResponse:
    """Run extraction, audit, self-correction and judgment on one document.

    Returns:
    - **decision**: AUTO_APPROVE, NEEDS_REVIEW or REJECT, with issues for the user
    - **checks**: every audit check of the final attempt
    - **conflicts**: fields on which the two extraction sources disagreed
    - **original_hash**: SHA-256 of the input for audit trail
    """
    return await _judge(request.document_text)


@app.post(
    "/judge/file",
    summary="Judge an extraction from an uploaded text file",
    tags=["Judgment"],
    responses={
        413: {"description": "File too large (max 1 MB)"},
        400: {"description": "File is not valid UTF-8 text"},
        422: {"description": "File content too short to be a financial document"},
        503: {"description": "Pipeline not initialised, or a transient collaborator failure"},
    },
)
async def judge_document_file(file: UploadFile) -> JudgeResponse:
    """Upload a `.txt` file containing the document text. Accepts up to 1 MB."""
    if file.size and file.size > _MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large (max 1 MB)")

    content = await file.read()
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded text") from None

    if len(text.strip()) < 10:
        raise HTTPException(status_code=422, detail="File content too short to be a financial document")

    return await _judge(text)


@app.post("/validate/iban", summary="Validate an IBAN", tags=["Validation"])
def check_iban(request: ValueRequest) -> IbanResult:
    """Normalize (separators, OCR misreads) and verify the mod-97 checksum."""
    return validate_iban(request.value)


@app.post("/validate/ogm", summary="Validate a structured communication", tags=["Validation"])
def check_ogm(request: ValueRequest) -> OgmResult:
    """Normalize to +++BBB/BBBB/BBCCC+++ and verify the mod-97 check digits."""
    return validate_ogm(request.value)


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    """Returns service status and configuration info."""
    pipeline = _get_pipeline()
    return HealthResponse(
        status="healthy",
        version=__version__,
        extraction_mode="ensemble" if pipeline.fast_extractor is not None else "single source",
        auto_approve_threshold=pipeline.config.auto_approve_threshold,
        min_confidence_floor=pipeline.config.min_confidence_floor,
        max_retries=pipeline.max_retries,
        attempt_timeout=pipeline.attempt_timeout,
    )
