"""
Invoice Gatekeeper — decides whether an LLM extraction of a financial document can be trusted.

Architecture: Extraction (fast + expert) → Consensus → Audit → Self-correction → Judgment
Philosophy:  Trust the AI to parse. Trust only code to decide.
"""

__version__ = "1.0.0"
