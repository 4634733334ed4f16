"""
Custom exception hierarchy for the gatekeeper pipeline.

Validation failures are NOT exceptions — they are AuditChecks.
Exceptions are reserved for broken configuration and failing collaborators
(the extraction model, the company registry), so callers can tell
"the document is bad" apart from "the pipeline could not run".
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(GatekeeperError):
    """Thresholds, presets or retry budgets that make no sense."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_CONFIGURATION", message, details)


# ─── Collaborator Failures ──────────────────────────────────────────


class CollaboratorError(GatekeeperError):
    """An external collaborator failed (transport, model or registry error).

    ``is_retryable`` tells the caller whether re-submitting the same job later
    has a reasonable chance of succeeding.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
        *,
        is_retryable: bool = False,
    ):
        self.is_retryable = is_retryable
        super().__init__(code, message, details)


class ExtractionError(CollaboratorError):
    """The extraction collaborator failed to produce a payload."""

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        *,
        is_retryable: bool = False,
        code: str = "EXTRACTION_FAILED",
    ):
        super().__init__(code, message, details, is_retryable=is_retryable)


class ExtractionTimeoutError(ExtractionError):
    """A single extraction attempt exceeded its time budget."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details, is_retryable=True, code="EXTRACTION_TIMEOUT")


class ExtractionCancelledError(ExtractionError):
    """The job was cancelled while an extraction attempt was in flight."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details, is_retryable=True, code="EXTRACTION_CANCELLED")


class RegistryLookupError(CollaboratorError):
    """The company registry could not be reached or answered garbage."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("REGISTRY_LOOKUP_FAILED", message, details, is_retryable=True)
