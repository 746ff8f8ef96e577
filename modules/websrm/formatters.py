"""
WEB-SRM Formatting Utilities
==============================
Pure functions: currency → integer cents, free text → restricted ASCII,
UTC instants → local compact timestamps, plus small validators.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Sequence, Union

from common.exceptions import InvalidAmountError, InvalidInputError, InvalidTimestampError
from modules.websrm.enums import (
    COMPACT_TIMESTAMP_FORMAT, GST_RATE, MAX_LINE_ITEMS, MAX_TEXT_LENGTH,
    QST_RATE, VERSION_PATTERN,
)

Number = Union[int, float, Decimal, str]

_ACCENT_TABLE = {
    "à": "a", "á": "a", "â": "a", "ã": "a", "ä": "a", "å": "a",
    "è": "e", "é": "e", "ê": "e", "ë": "e",
    "ì": "i", "í": "i", "î": "i", "ï": "i",
    "ò": "o", "ó": "o", "ô": "o", "õ": "o", "ö": "o",
    "ù": "u", "ú": "u", "û": "u", "ü": "u",
    "ý": "y", "ÿ": "y",
    "ñ": "n", "ç": "c",
    "À": "A", "Á": "A", "Â": "A", "Ã": "A", "Ä": "A", "Å": "A",
    "È": "E", "É": "E", "Ê": "E", "Ë": "E",
    "Ì": "I", "Í": "I", "Î": "I", "Ï": "I",
    "Ò": "O", "Ó": "O", "Ô": "O", "Õ": "O", "Ö": "O",
    "Ù": "U", "Ú": "U", "Û": "U", "Ü": "U",
    "Ý": "Y", "Ÿ": "Y",
    "Ñ": "N", "Ç": "C",
}


# ==========================================
# Amounts
# ==========================================

def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise InvalidAmountError(f"Invalid amount: {value!r}. Must be a number.")
    try:
        # str() first so 1.995 stays 1.995 instead of its binary approximation
        d = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise InvalidAmountError(f"Invalid amount: {value!r}. Must be a number.")
    if not d.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}. Must be a finite number.")
    return d


def format_amount(value: Number) -> int:
    """
    Dollars → integer cents, rounded half-up.

    format_amount(12.34)  -> 1234
    format_amount(0.005)  -> 1
    format_amount(1.995)  -> 200
    """
    cents = _to_decimal(value) * 100
    rounded = cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if rounded != rounded.to_integral_value():
        raise InvalidAmountError(f"Rounding failed for amount: {value!r}")
    return int(rounded)


def calculate_gst(subtotal: Number) -> int:
    """Federal tax (TPS, 5%) in cents."""
    d = _to_decimal(subtotal)
    if d < 0:
        raise InvalidAmountError(f"Invalid subtotal: {subtotal!r}")
    return format_amount(d * Decimal(GST_RATE))


def calculate_qst(subtotal: Number) -> int:
    """Québec tax (TVQ, 9.975%) in cents."""
    d = _to_decimal(subtotal)
    if d < 0:
        raise InvalidAmountError(f"Invalid subtotal: {subtotal!r}")
    return format_amount(d * Decimal(QST_RATE))


def validate_amounts_sum(subtotal: int, gst: int, qst: int, total: int) -> bool:
    """True when subtotal + taxes equals total within one cent."""
    values = (subtotal, gst, qst, total)
    if any(isinstance(v, bool) or not isinstance(v, int) for v in values):
        return False
    return abs(subtotal + gst + qst - total) <= 1


# ==========================================
# Text
# ==========================================

def validate_ascii(text) -> bool:
    return isinstance(text, str) and all(ord(ch) <= 0x7F for ch in text)


def sanitize_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Replace accented Latin letters with ASCII, drop any other non-ASCII
    character, then cut to `max_length`.

    sanitize_text("Café à la carte") -> "Cafe a la carte"
    sanitize_text("Pizza 🍕")        -> "Pizza "
    """
    if not isinstance(text, str):
        raise InvalidInputError("Input must be a string")
    if isinstance(max_length, bool) or not isinstance(max_length, int) or max_length <= 0:
        raise InvalidInputError("max_length must be a positive integer")

    out = []
    for ch in text:
        if ord(ch) <= 0x7F:
            out.append(ch)
        else:
            replacement = _ACCENT_TABLE.get(ch)
            if replacement:
                out.append(replacement)
    return "".join(out)[:max_length]


# ==========================================
# Time
# ==========================================

def parse_utc(value: Union[str, datetime]) -> datetime:
    """ISO-8601 string or datetime → aware UTC datetime. Naive input is UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            raise InvalidTimestampError(f"Invalid date format: {value!r}")
    else:
        raise InvalidTimestampError("Invalid UTC timestamp: must be a non-empty string or datetime")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_local_compact_timestamp(value: Union[str, datetime], utc_offset_hours: int = -5) -> str:
    """
    UTC instant → issuing jurisdiction wall clock (fixed offset) → YYYYMMDDHHMMSS.

    to_local_compact_timestamp("2025-01-06T14:30:00Z") -> "20250106093000"
    """
    local_tz = timezone(timedelta(hours=utc_offset_hours))
    return parse_utc(value).astimezone(local_tz).strftime(COMPACT_TIMESTAMP_FORMAT)


# ==========================================
# Validators
# ==========================================

def validate_software_version(version) -> bool:
    return isinstance(version, str) and bool(VERSION_PATTERN.fullmatch(version))


def validate_line_items_count(items: Sequence) -> bool:
    if not isinstance(items, (list, tuple)):
        return False
    return 0 < len(items) <= MAX_LINE_ITEMS
