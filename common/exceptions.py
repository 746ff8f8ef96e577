"""
FiscalBridge - Custom Exceptions
=================================
Business-level exceptions that can be caught and converted to HTTP responses.
"""

from fastapi import HTTPException


class FiscalBridgeError(Exception):
    """Base exception for all adapter errors."""
    def __init__(self, message: str = "Unexpected fiscal adapter error."):
        self.message = message
        super().__init__(self.message)


# ------------------------------------------
# Validation (local, fail fast, never enqueued)
# ------------------------------------------

class ValidationError(FiscalBridgeError):
    """Raised when local input cannot be turned into a valid transaction."""
    pass


class IncompleteOrderError(ValidationError):
    """Raised when an order lacks an identifier or line items."""
    pass


class InvalidAmountError(ValidationError):
    """Raised for non-finite, non-numeric, or negative monetary values."""
    pass


class InvalidInputError(ValidationError):
    """Raised for text inputs that cannot be sanitized."""
    pass


class InvalidTimestampError(ValidationError):
    """Raised when a timestamp cannot be parsed."""
    pass


# ------------------------------------------
# Configuration (fatal at startup / first use)
# ------------------------------------------

class ConfigurationError(FiscalBridgeError):
    """Raised when signing keys, certification, or device settings are missing or malformed."""
    pass


# ------------------------------------------
# Protocol & queue
# ------------------------------------------

class CanonicalizationError(FiscalBridgeError):
    """Raised when a payload cannot be serialized deterministically (cycles, unsupported values)."""
    pass


class IncompleteResponseError(FiscalBridgeError):
    """Raised when a WEB-SRM response lacks the transaction identifier."""
    pass


class UnsupportedFormatError(FiscalBridgeError):
    """Raised for unknown receipt reference formats."""
    pass


class InvalidTransitionError(FiscalBridgeError):
    """Raised when a queue entry cannot move to the requested status."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal queue transition: {current} -> {target}")


class ImmutableRecordError(FiscalBridgeError):
    """Raised on an attempt to rewrite or delete audit history or a signed payload."""
    pass


class NotFoundError(FiscalBridgeError):
    """Raised when a requested resource doesn't exist."""
    pass


# ------------------------------------------
# Warnings
# ------------------------------------------

class UnknownValueWarning(UserWarning):
    """A categorical order value had no protocol mapping and was substituted."""
    def __init__(self, field: str, raw, substituted: str):
        self.field = field
        self.raw = raw
        self.substituted = substituted
        super().__init__(f"Unknown {field} {raw!r}, substituted {substituted!r}")


def raise_http(error: FiscalBridgeError, status_code: int = 400):
    """Convert a business exception to an HTTP exception."""
    raise HTTPException(status_code=status_code, detail={"success": False, "error": error.message})
