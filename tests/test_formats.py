"""
Tests for IBAN / OGM normalization and checksum validation.

Pure functions: no network, no LLM, no flakiness.
"""

from __future__ import annotations

import pytest

from invoice_gatekeeper.formats import (
    format_iban,
    iban_mod97,
    looks_like_ogm,
    ogm_check_digits,
    validate_iban,
    validate_ogm,
)

VALID_BE_IBAN = "BE68539007547034"


# ═══════════════════════════════════════════════════════════════════
# IBAN
# ═══════════════════════════════════════════════════════════════════


class TestIbanValidation:
    @pytest.mark.parametrize(
        "iban",
        [
            "BE68539007547034",
            "DE89370400440532013000",
            "NL91ABNA0417164300",
            "GB82WEST12345698765432",
        ],
    )
    def test_known_valid_ibans(self, iban: str) -> None:
        result = validate_iban(iban)
        assert result.valid, result.message
        assert result.normalized == iban

    @pytest.mark.parametrize(
        "raw",
        [
            "BE68 5390 0754 7034",
            "be68-5390-0754-7034",
            "be68 5390 0754 7034",
            "  BE68.5390.0754.7034  ",
            "IBAN: BE68 5390 0754 7034",
        ],
    )
    def test_invariant_to_separators_and_case(self, raw: str) -> None:
        result = validate_iban(raw)
        assert result.valid
        assert result.normalized == VALID_BE_IBAN

    def test_flipping_any_single_digit_invalidates(self) -> None:
        for pos, ch in enumerate(VALID_BE_IBAN):
            if not ch.isdigit():
                continue
            flipped = VALID_BE_IBAN[:pos] + str((int(ch) + 1) % 10) + VALID_BE_IBAN[pos + 1 :]
            assert not validate_iban(flipped).valid, f"flip at position {pos} went undetected"

    def test_checksum_failure_message(self) -> None:
        result = validate_iban("BE68539007547035")
        assert not result.valid
        assert "checksum" in result.message

    def test_wrong_length_is_format_failure(self) -> None:
        result = validate_iban("BE6853900754703")
        assert not result.valid
        assert "format" in result.message
        assert "16" in result.message
        assert "Belgian" in result.message

    def test_german_length_enforced(self) -> None:
        result = validate_iban("DE8937040044053201300")
        assert not result.valid
        assert "22" in result.message

    def test_missing_country_code(self) -> None:
        result = validate_iban("68539007547034")
        assert not result.valid
        assert "format" in result.message

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_input(self, raw: str | None) -> None:
        result = validate_iban(raw)
        assert not result.valid
        assert "format" in result.message

    def test_formatted_in_blocks_of_four(self) -> None:
        assert validate_iban(VALID_BE_IBAN).formatted == "BE68 5390 0754 7034"
        assert format_iban("NL91ABNA0417164300") == "NL91 ABNA 0417 1643 00"

    def test_mod97_of_valid_iban_is_one(self) -> None:
        assert iban_mod97(VALID_BE_IBAN) == 1


class TestIbanOcrCorrection:
    def test_letter_o_in_account_number(self) -> None:
        result = validate_iban("BE68 539O 0754 7034")
        assert result.valid
        assert result.normalized == VALID_BE_IBAN
        assert any("O→0" in c for c in result.corrections)

    def test_lowercase_l_becomes_one(self) -> None:
        # BE71 0961 2345 6769 is valid; write the 1s as lowercase L
        assert validate_iban("BE71096123456769").valid
        result = validate_iban("BE7l 096l 2345 6769")
        assert result.valid
        assert len(result.corrections) == 2

    def test_bank_code_letters_not_touched(self) -> None:
        # NL bank codes are letters: the B in ABNA must not become 8
        result = validate_iban("NL91ABNA0417164300")
        assert result.valid
        assert result.corrections == ()


# ═══════════════════════════════════════════════════════════════════
# OGM (structured communication)
# ═══════════════════════════════════════════════════════════════════


class TestOgmValidation:
    @pytest.mark.parametrize(
        "raw",
        [
            "+++012/3456/78939+++",
            "***012/3456/78939***",
            "012/3456/78939",
            "012345678939",
            " +++ 012 / 3456 / 78939 +++ ",
        ],
    )
    def test_valid_forms(self, raw: str) -> None:
        result = validate_ogm(raw)
        assert result.valid, result.message
        assert result.normalized == "+++012/3456/78939+++"

    def test_wrong_check_digits(self) -> None:
        result = validate_ogm("+++012/3456/78940+++")
        assert not result.valid
        assert "checksum" in result.message
        assert result.expected_check_digit == "39"

    def test_remainder_zero_maps_to_97(self) -> None:
        assert ogm_check_digits("0000000097") == 97
        assert validate_ogm("+++000/0000/09797+++").valid

    def test_check_digit_computation(self) -> None:
        assert ogm_check_digits("0123456789") == 39
        assert ogm_check_digits(123456789) == 39

    def test_too_few_digits_is_format_failure(self) -> None:
        result = validate_ogm("+++012/3456/7893+++")
        assert not result.valid
        assert "format" in result.message
        assert result.expected_check_digit is None

    def test_letters_that_are_not_digit_lookalikes(self) -> None:
        result = validate_ogm("+++012/3456/789XY+++")
        assert not result.valid
        assert "format" in result.message

    @pytest.mark.parametrize("raw", ["", None])
    def test_empty_input(self, raw: str | None) -> None:
        assert not validate_ogm(raw).valid


class TestOgmOcrCorrection:
    def test_letter_o_validates_like_digit_zero(self) -> None:
        with_letter = validate_ogm("+++O12/3456/78939+++")
        with_digit = validate_ogm("+++012/3456/78939+++")
        assert with_letter.valid
        assert with_letter.normalized == with_digit.normalized
        assert with_letter.corrections

    def test_multiple_confusions(self) -> None:
        # 0→O, 1→I, 5→S, 6→G, 8→B
        result = validate_ogm("+++OI2/34SG/7B939+++")
        assert result.valid
        assert len(result.corrections) == 5

    @pytest.mark.parametrize(
        "raw",
        [
            "OGM: +++012/3456/78939+++",
            "Mededeling: ***012/3456/78939*** (verplicht)",
            "Ref. 012/3456/78939",
        ],
    )
    def test_surrounding_label_is_left_alone(self, raw: str) -> None:
        result = validate_ogm(raw)
        assert result.valid, result.message
        assert result.normalized == "+++012/3456/78939+++"
        assert result.corrections == ()

    def test_correction_inside_labelled_reference(self) -> None:
        result = validate_ogm("OGM: +++O12/3456/78939+++")
        assert result.valid
        assert result.corrections == ("O→0 at position 1",)


class TestLooksLikeOgm:
    @pytest.mark.parametrize(
        "raw",
        ["+++012/3456/78939+++", "***012/3456/78939***", "012/3456/78939", "123456789012"],
    )
    def test_structured(self, raw: str) -> None:
        assert looks_like_ogm(raw)

    @pytest.mark.parametrize("raw", ["Invoice 2024-117", "INV-0042", "", None])
    def test_free_form(self, raw: str | None) -> None:
        assert not looks_like_ogm(raw)
