"""
WEB-SRM Response Classification
=================================
Decides whether a response is a success, a transient failure (retry later)
or a permanent one (needs an operator). Messages are PII-redacted before
they are stored or logged.
"""

import re
from dataclasses import dataclass
from typing import Optional

from common.helpers import truncate
from modules.websrm.client import SrmResponse
from modules.websrm.enums import (
    MAX_ERROR_MESSAGE_LENGTH, PERMANENT_CODES, RETRYABLE_CODES, Outcome, ResponseCode,
)

# Error categories stored on the entry
OK = "OK"
TEMP_UNAVAILABLE = "TEMP_UNAVAILABLE"
RATE_LIMIT = "RATE_LIMIT"
DUPLICATE = "DUPLICATE"
INVALID_SIGNATURE = "INVALID_SIGNATURE"
INVALID_HEADER = "INVALID_HEADER"
INVALID_CERTIFICATION = "INVALID_CERTIFICATION"
REJECTED = "REJECTED"
UNKNOWN = "UNKNOWN"

_CODE_CATEGORIES = {
    ResponseCode.ERROR.value: TEMP_UNAVAILABLE,
    ResponseCode.TIMEOUT.value: TEMP_UNAVAILABLE,
    ResponseCode.INVALID_SIGNATURE.value: INVALID_SIGNATURE,
    ResponseCode.MISSING_FIELDS.value: REJECTED,
    ResponseCode.INVALID_FORMAT.value: REJECTED,
    ResponseCode.DUPLICATE.value: DUPLICATE,
    ResponseCode.NOT_FOUND.value: REJECTED,
    ResponseCode.INVALID_CERTIFICATION.value: INVALID_CERTIFICATION,
    ResponseCode.DEVICE_NOT_REGISTERED.value: INVALID_CERTIFICATION,
    ResponseCode.CERTIFICATE_EXPIRED.value: INVALID_CERTIFICATION,
}

_SIGNATURE_KEYWORDS = ("signature", "signa", "sign", "verification", "verify", "sig_invalid")
_HEADER_KEYWORDS = ("header", "missing", "required", "idapprl", "idsev", "codcertif")

_PII_PATTERNS = (
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CARD]"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I), "[UUID]"),
    (re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{1,30}\b"), "[IBAN]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{3}[-\s]\d{3}[-\s]\d{3}\b"), "[SIN]"),
)


@dataclass(frozen=True)
class Classification:
    outcome: Outcome
    category: str
    http_status: int = 0
    raw_code: Optional[str] = None
    message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.outcome == Outcome.TRANSIENT

    def as_error(self) -> dict:
        """Shape stored in queue entry last_error."""
        return {
            "code": self.raw_code or self.category,
            "category": self.category,
            "message": self.message,
            "http_status": self.http_status,
        }


def sanitize_error_message(message: Optional[str]) -> Optional[str]:
    """Redact e-mails, phone/card/SIN/SSN numbers, UUIDs, IBANs; cap at 500 chars."""
    if not message:
        return None
    sanitized = str(message)
    for pattern, token in _PII_PATTERNS:
        sanitized = pattern.sub(token, sanitized)
    return truncate(sanitized, MAX_ERROR_MESSAGE_LENGTH)


def _has_keyword(keywords, *values) -> bool:
    text = " ".join(v.lower() for v in values if v)
    return any(k in text for k in keywords)


def classify(response: SrmResponse) -> Classification:
    """
    Rules, first match wins:
      transport timeout / network error  → transient
      2xx with codRetour 00 (or none)     → success
      codRetour 99                        → transient
      codRetour 01-05, JW00B/C/D          → permanent
      409                                 → permanent (duplicate)
      429                                 → transient
      other 4xx                           → permanent
      5xx                                 → transient
      anything else                       → permanent
    """
    message = sanitize_error_message(response.message)
    status = response.http_status
    code = response.code

    if response.transport_error:
        return Classification(Outcome.TRANSIENT, TEMP_UNAVAILABLE, 0, response.transport_error, message)

    if 200 <= status < 300 and code in (None, ResponseCode.SUCCESS.value):
        return Classification(Outcome.SUCCESS, OK, status, code)

    if code in RETRYABLE_CODES:
        return Classification(Outcome.TRANSIENT, _CODE_CATEGORIES[code], status, code, message)
    if code in PERMANENT_CODES:
        return Classification(Outcome.PERMANENT, _CODE_CATEGORIES[code], status, code, message)

    if status == 409:
        return Classification(Outcome.PERMANENT, DUPLICATE, status, code, message)
    if status == 429:
        return Classification(Outcome.TRANSIENT, RATE_LIMIT, status, code, message)
    if 400 <= status < 500:
        if _has_keyword(_SIGNATURE_KEYWORDS, code, response.message):
            category = INVALID_SIGNATURE
        elif _has_keyword(_HEADER_KEYWORDS, code, response.message):
            category = INVALID_HEADER
        else:
            category = UNKNOWN
        return Classification(Outcome.PERMANENT, category, status, code, message)
    if 500 <= status < 600:
        return Classification(Outcome.TRANSIENT, TEMP_UNAVAILABLE, status, code, message)

    return Classification(Outcome.PERMANENT, UNKNOWN, status, code, message)
