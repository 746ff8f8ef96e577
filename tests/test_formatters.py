"""Tests for amount, text and timestamp formatting."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from common.exceptions import InvalidAmountError, InvalidInputError, InvalidTimestampError
from modules.websrm.formatters import (
    calculate_gst,
    calculate_qst,
    format_amount,
    parse_utc,
    sanitize_text,
    to_local_compact_timestamp,
    validate_amounts_sum,
    validate_ascii,
    validate_line_items_count,
    validate_software_version,
)


class TestFormatAmount:
    """Dollars to integer cents, half-up."""

    @pytest.mark.parametrize("value,cents", [
        (12.34, 1234),
        (0.005, 1),
        (1.995, 200),
        (22.995, 2300),
        (20, 2000),
        (0, 0),
        ("7.10", 710),
        (Decimal("1.005"), 101),
    ])
    def test_converts_to_cents(self, value, cents) -> None:
        assert format_amount(value) == cents

    def test_returns_int(self) -> None:
        assert isinstance(format_amount(1.5), int)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), "nan", "abc", None, True, [1]])
    def test_rejects_non_finite_and_non_numbers(self, value) -> None:
        with pytest.raises(InvalidAmountError):
            format_amount(value)


class TestTaxes:
    """GST 5%, QST 9.975%, rounded to cents."""

    def test_gst(self) -> None:
        assert calculate_gst(10.00) == 50
        assert calculate_gst(20.00) == 100

    def test_qst_rounds_half_up(self) -> None:
        assert calculate_qst(10.00) == 100   # 99.75 cents
        assert calculate_qst(20.00) == 200   # 199.5 cents

    def test_negative_subtotal_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            calculate_gst(-1)

    def test_amounts_sum_tolerates_one_cent(self) -> None:
        assert validate_amounts_sum(2000, 100, 200, 2300)
        assert validate_amounts_sum(2000, 100, 200, 2301)
        assert not validate_amounts_sum(2000, 100, 200, 2302)
        assert not validate_amounts_sum(2000, 100, 200.0, 2300)


class TestSanitizeText:
    """Accented Latin → ASCII, everything else non-ASCII dropped."""

    def test_french_accents(self) -> None:
        assert sanitize_text("Café à la carte") == "Cafe a la carte"
        assert sanitize_text("Crème brûlée façon Noël") == "Creme brulee facon Noel"

    def test_uppercase_accents(self) -> None:
        assert sanitize_text("ÉCOLE ÇA ÑÝŸ") == "ECOLE CA NYY"

    def test_emoji_dropped(self) -> None:
        assert sanitize_text("Pizza 🍕") == "Pizza "

    def test_output_is_ascii_and_bounded(self) -> None:
        out = sanitize_text("é" * 500)
        assert len(out) == 255
        assert validate_ascii(out)

    def test_custom_length(self) -> None:
        assert sanitize_text("Poutine", max_length=4) == "Pout"

    def test_rejects_non_text(self) -> None:
        with pytest.raises(InvalidInputError):
            sanitize_text(42)

    @pytest.mark.parametrize("length", [0, -1, True])
    def test_rejects_bad_length(self, length) -> None:
        with pytest.raises(InvalidInputError):
            sanitize_text("abc", max_length=length)


class TestTimestamps:
    """UTC → fixed -5h offset → YYYYMMDDHHMMSS."""

    def test_iso_with_z(self) -> None:
        assert to_local_compact_timestamp("2025-01-06T14:30:00Z") == "20250106093000"

    def test_iso_with_millis(self) -> None:
        assert to_local_compact_timestamp("2025-01-06T14:30:00.000Z") == "20250106093000"

    def test_crosses_midnight(self) -> None:
        assert to_local_compact_timestamp("2025-01-01T02:15:30Z") == "20241231211530"

    def test_aware_datetime(self) -> None:
        dt = datetime(2025, 7, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert to_local_compact_timestamp(dt) == "20250701070000"

    def test_naive_datetime_is_utc(self) -> None:
        assert to_local_compact_timestamp(datetime(2025, 7, 1, 12, 0, 0)) == "20250701070000"

    def test_other_offset_normalised(self) -> None:
        assert parse_utc("2025-01-06T09:30:00-05:00") == datetime(2025, 1, 6, 14, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["", "not a date", None, 1736173800])
    def test_invalid(self, value) -> None:
        with pytest.raises(InvalidTimestampError):
            to_local_compact_timestamp(value)


class TestValidators:
    """Small validators."""

    def test_software_version(self) -> None:
        assert validate_software_version("1.0.0")
        assert validate_software_version("10.20.30")
        assert not validate_software_version("1.0")
        assert not validate_software_version("v1.0.0")
        assert not validate_software_version(None)

    @pytest.mark.parametrize("version", ["1.0.0\n", "1.0.0 ", "\uff11.0.0", "\u0661.\u0662.\u0663", "1.0.0.1"])
    def test_software_version_exact_ascii(self, version) -> None:
        assert not validate_software_version(version)

    def test_line_items_count(self) -> None:
        assert validate_line_items_count([1])
        assert not validate_line_items_count([])
        assert not validate_line_items_count([0] * 1001)
        assert not validate_line_items_count("abc")
