"""
Company registry verdicts and vendor-name matching.

The gatekeeper does NOT query business registries itself. A caller-supplied
RegistryClient answers "does this VAT number exist, and under which name?";
this module turns that answer into a RegistryVerdict the audit engine consumes.

Rules:
  1. A registry that cannot answer yields an UNKNOWN verdict, never a failure
  2. Names are compared after stripping legal forms (NV, BV, SRL, ...)
  3. Matching is fuzzy (SequenceMatcher), because invoices abbreviate and OCR mangles
"""

from __future__ import annotations

import logging
import re
from difflib import SequenceMatcher
from typing import Protocol

from .models import RegistryVerdict

logger = logging.getLogger(__name__)

# Minimum similarity for an extracted vendor name to count as the registered one
NAME_MATCH_THRESHOLD = 0.85

# ─── Legal Forms ─────────────────────────────────────────────────────
# Belgian forms (old and post-2019 code) plus the common neighbours.
# Compared after dots and spaces are removed, so "B.V.B.A." and "bvba" are equal.

_LEGAL_FORMS: frozenset[str] = frozenset({
    "nv", "sa", "bv", "bvba", "srl", "sprl", "cv", "cvba", "sc", "scrl",
    "commv", "scomm", "vof", "snc", "vzw", "asbl", "gmbh", "ag", "sarl",
    "sas", "ltd", "llc", "inc", "plc",
})


# ─── Collaborator Protocol ───────────────────────────────────────────


class RegistryClient(Protocol):
    """Anything that can look a VAT number up in a business registry.

    Implementations raise RegistryLookupError (or any transport error)
    when the registry cannot answer.
    """

    def lookup_company(self, vat_number: str) -> RegistryVerdict: ...


class StaticRegistry:
    """Registry backed by an in-memory mapping of VAT number → legal name.

    Useful for demos, tests and small deployments with a known vendor list.
    """

    def __init__(self, companies: dict[str, str]):
        self._companies = {normalize_vat_number(k): v for k, v in companies.items()}

    def lookup_company(self, vat_number: str) -> RegistryVerdict:
        name = self._companies.get(normalize_vat_number(vat_number))
        if name is None:
            return RegistryVerdict(exists=False)
        return RegistryVerdict(exists=True, legal_name=name)


# ─── Public API ──────────────────────────────────────────────────────


def resolve_registry_verdict(client: RegistryClient | None, vat_number: str | None) -> RegistryVerdict:
    """Ask the registry about a VAT number, degrading to UNKNOWN on any failure.

    A registry outage must not block invoices, so lookup errors are logged
    and reported as "we don't know".
    """
    if client is None or not vat_number:
        return RegistryVerdict.unknown()

    try:
        return client.lookup_company(normalize_vat_number(vat_number))
    except Exception as e:
        logger.warning("Registry lookup failed for %s, treating as unknown: %s", vat_number, e)
        return RegistryVerdict.unknown()


def normalize_vat_number(raw: str) -> str:
    """'BE 0123.456.749' → 'BE0123456749'."""
    return re.sub(r"[\s.\-/]", "", raw).upper()


def normalize_company_name(name: str) -> str:
    """Lower-case, drop punctuation and legal-form tokens.

    Example:
        "Acme Consulting B.V.B.A." → "acme consulting"
        "ACME CONSULTING SRL"      → "acme consulting"
    """
    kept: list[str] = []
    for token in re.split(r"[\s,;&()\"']+", name.lower()):
        bare = token.replace(".", "").strip("-")
        if bare and bare not in _LEGAL_FORMS:
            kept.append(bare)
    return " ".join(kept)


def name_similarity(extracted: str, registered: str) -> float:
    """Fuzzy similarity (0.0-1.0) of two company names after normalization."""
    a = normalize_company_name(extracted)
    b = normalize_company_name(registered)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return round(SequenceMatcher(None, a, b).ratio(), 3)


def names_match(extracted: str, registered: str) -> bool:
    return name_similarity(extracted, registered) >= NAME_MATCH_THRESHOLD
