"""
Payment identifier normalization and checksum validation.

Handles the two identifiers that route money on Belgian documents:
  - IBAN: ISO 13616 mod-97 rearrangement check, country lengths enforced
  - OGM:  Belgian structured communication (+++BBB/BBBB/BBCCC+++), mod-97 check

Both validators first strip separators and undo the usual scan misreads
(O→0, I/l→1, B→8, S→5, G→6), but ONLY in positions that must hold digits,
and always BEFORE the checksum is computed.

Failure messages always name the failure class ("format" or "checksum") so
feedback building can tell a truncated value from a misread digit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# ─── OCR Confusion Map ───────────────────────────────────────────────
# Applied after upper-casing, so a lowercase 'l' arrives here as 'L'.

OCR_DIGIT_CONFUSIONS: dict[str, str] = {
    "O": "0",
    "I": "1",
    "L": "1",
    "B": "8",
    "S": "5",
    "G": "6",
}

# ─── IBAN Reference Data ─────────────────────────────────────────────

IBAN_LENGTHS: dict[str, int] = {
    "AT": 20, "BE": 16, "BG": 22, "CH": 21, "CY": 28, "CZ": 24, "DE": 22,
    "DK": 18, "EE": 20, "ES": 24, "FI": 18, "FR": 27, "GB": 22, "GR": 27,
    "HR": 21, "HU": 28, "IE": 22, "IS": 26, "IT": 27, "LI": 21, "LT": 20,
    "LU": 20, "LV": 21, "MC": 27, "MT": 31, "NL": 18, "NO": 15, "PL": 28,
    "PT": 25, "RO": 24, "SE": 24, "SI": 19, "SK": 24,
}

IBAN_COUNTRY_NAMES: dict[str, str] = {
    "BE": "Belgian",
    "DE": "German",
    "NL": "Dutch",
    "FR": "French",
    "LU": "Luxembourg",
}

# BBAN positions (0-based, in the compact IBAN) that are digits by definition.
# Countries not listed only get their two check digits corrected.
_NUMERIC_BBAN_POSITIONS: dict[str, range] = {
    "BE": range(4, 16),
    "DE": range(4, 22),
    "NL": range(8, 18),  # NLkk AAAA nnnnnnnnnn, bank code is letters
}

_SEPARATORS = re.compile(r"[\s\-./]")

# ─── OGM Layout ──────────────────────────────────────────────────────

_OGM_WRAPPED = re.compile(r"[+*]{3}\s*(.+?)\s*[+*]{3}")
_OGM_GROUPED = re.compile(r"(\w{3})\s*/\s*(\w{4})\s*/\s*(\w{5})")


# ─── Results ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class IbanResult:
    """Outcome of an IBAN validation."""

    normalized: str  # Compact, upper-case, OCR-corrected
    valid: bool
    message: str
    formatted: str = ""  # Grouped in blocks of 4 for display
    corrections: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class OgmResult:
    """Outcome of an OGM (structured communication) validation."""

    normalized: str  # +++BBB/BBBB/BBCCC+++ when 12 digits were found
    valid: bool
    message: str
    expected_check_digit: str | None = None
    corrections: tuple[str, ...] = field(default_factory=tuple)


# ─── IBAN ────────────────────────────────────────────────────────────


def validate_iban(raw: str | None) -> IbanResult:
    """Validate an IBAN from free-form text.

    Args:
        raw: e.g. "BE68 5390 0754 7034", "be68-5390-0754-7034", "IBAN: BE68…"

    Returns:
        IbanResult; ``message`` starts with "IBAN format error" or
        "IBAN checksum error" on failure.
    """
    if raw is None or not raw.strip():
        return IbanResult(normalized="", valid=False, message="IBAN format error: value is empty")

    compact = _SEPARATORS.sub("", raw).upper()
    compact = re.sub(r"^IBAN:?", "", compact)

    country = compact[:2]
    if not re.fullmatch(r"[A-Z]{2}", country):
        return IbanResult(
            normalized=compact,
            valid=False,
            message=f"IBAN format error: '{raw.strip()}' does not start with a country code",
        )

    digit_positions = set(range(2, 4)) | set(_NUMERIC_BBAN_POSITIONS.get(country, ()))
    iban, corrections = _correct_ocr(compact, digit_positions)

    if not re.fullmatch(r"[A-Z]{2}[0-9]{2}[A-Z0-9]+", iban):
        return IbanResult(
            normalized=iban,
            valid=False,
            message=f"IBAN format error: '{iban}' contains characters that cannot appear in an IBAN",
            corrections=corrections,
        )

    expected_length = IBAN_LENGTHS.get(country)
    if expected_length is not None and len(iban) != expected_length:
        country_name = IBAN_COUNTRY_NAMES.get(country, country)
        return IbanResult(
            normalized=iban,
            valid=False,
            message=(
                f"IBAN format error: {country_name} IBAN must be {expected_length} "
                f"characters, got {len(iban)}"
            ),
            formatted=format_iban(iban),
            corrections=corrections,
        )
    if expected_length is None and not 15 <= len(iban) <= 34:
        return IbanResult(
            normalized=iban,
            valid=False,
            message=f"IBAN format error: length {len(iban)} is outside the 15-34 range",
            formatted=format_iban(iban),
            corrections=corrections,
        )

    remainder = iban_mod97(iban)
    if remainder != 1:
        return IbanResult(
            normalized=iban,
            valid=False,
            message=f"IBAN checksum error: mod-97 remainder is {remainder}, expected 1",
            formatted=format_iban(iban),
            corrections=corrections,
        )

    return IbanResult(
        normalized=iban,
        valid=True,
        message="IBAN is valid",
        formatted=format_iban(iban),
        corrections=corrections,
    )


def iban_mod97(iban: str) -> int:
    """Move country code + check digits to the end, letters to numbers, mod 97."""
    rearranged = iban[4:] + iban[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97


def format_iban(iban: str) -> str:
    """'BE68539007547034' → 'BE68 5390 0754 7034'."""
    return " ".join(iban[i : i + 4] for i in range(0, len(iban), 4))


# ─── OGM ─────────────────────────────────────────────────────────────


def validate_ogm(raw: str | None) -> OgmResult:
    """Validate a Belgian structured communication.

    Accepts "+++012/3456/78939+++", "***012/3456/78939***" or bare digits,
    optionally surrounded by labels such as "OGM:" or "Ref.". Only the
    communication itself is OCR-corrected, never the text around it.
    The last two digits must equal ``base mod 97`` (97 when the remainder is 0).
    """
    if raw is None or not raw.strip():
        return OgmResult(normalized="", valid=False, message="OGM format error: value is empty")

    core = re.sub(r"[\s/\-.+*]", "", _ogm_segment(raw)).upper()
    digits, corrections = _correct_ocr(core, set(range(len(core))))

    if not re.fullmatch(r"\d{12}", digits):
        return OgmResult(
            normalized=digits,
            valid=False,
            message=(
                f"OGM format error: expected 12 digits (10 base + 2 check), "
                f"found '{digits}' ({len(digits)} characters)"
            ),
            corrections=corrections,
        )

    base, found = digits[:10], int(digits[10:])
    expected = ogm_check_digits(base)
    normalized = f"+++{digits[:3]}/{digits[3:7]}/{digits[7:]}+++"

    if found != expected:
        return OgmResult(
            normalized=normalized,
            valid=False,
            message=(
                f"OGM checksum error: check digits are {found:02d}, "
                f"expected {expected:02d} ({base} mod 97)"
            ),
            expected_check_digit=f"{expected:02d}",
            corrections=corrections,
        )

    return OgmResult(
        normalized=normalized,
        valid=True,
        message="OGM structured communication is valid",
        expected_check_digit=f"{expected:02d}",
        corrections=corrections,
    )


def ogm_check_digits(base: str | int) -> int:
    """Check digits for a 10-digit base: ``base mod 97``, with 0 mapped to 97."""
    remainder = int(base) % 97
    return remainder or 97


def looks_like_ogm(raw: str | None) -> bool:
    """True if a payment reference is meant to be a structured communication.

    Free-form communications ("Invoice 2024-117") are legitimate and carry
    no checksum, so only wrapped or slash-grouped references are treated as OGM.
    """
    if not raw:
        return False
    text = raw.strip()
    if re.search(r"[+*]{3}", text):
        return True
    if re.fullmatch(r"\w{3}\s*/\s*\w{4}\s*/\s*\w{5}", text):
        return True
    return bool(re.fullmatch(r"\d{12}", re.sub(r"\s", "", text)))


# ─── Internal Helpers ────────────────────────────────────────────────


def _ogm_segment(raw: str) -> str:
    """The part of a raw reference that holds the communication digits."""
    wrapped = _OGM_WRAPPED.search(raw)
    if wrapped:
        return wrapped.group(1)
    grouped = _OGM_GROUPED.search(raw)
    if grouped:
        return "".join(grouped.groups())
    return raw


def _correct_ocr(text: str, digit_positions: set[int]) -> tuple[str, tuple[str, ...]]:
    """Replace letter look-alikes with digits at the given positions."""
    chars = list(text)
    corrections: list[str] = []
    for pos in sorted(digit_positions):
        if pos >= len(chars):
            break
        replacement = OCR_DIGIT_CONFUSIONS.get(chars[pos])
        if replacement is not None:
            corrections.append(f"{chars[pos]}→{replacement} at position {pos + 1}")
            chars[pos] = replacement
    return "".join(chars), tuple(corrections)
