"""Pytest configuration — ensures the project root is importable."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def _no_llm_calls(monkeypatch: pytest.MonkeyPatch):
    """Prevent real LLM API calls during tests — keeps the suite fast and free.

    Without OPENAI_API_KEY, FinancialExtractionPipeline.from_env() builds a
    regex-only pipeline.
    """
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    for name in ("GATEKEEPER_JUDGMENT_PRESET", "GATEKEEPER_MAX_RETRIES", "GATEKEEPER_ATTEMPT_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    yield
