"""
WEB-SRM Protocol Vocabulary
=============================
Closed code sets and constants shared by every WEB-SRM component.
Values must match exactly what the WEB-SRM endpoint expects.
"""

import enum
import re


class ActionType(str, enum.Enum):
    REGISTER = "ENR"    # Enregistrement
    CANCEL = "ANN"      # Annulation
    MODIFY = "MOD"      # Modification
    CLOSING = "FER"     # Fermeture (daily closing)


class ServiceType(str, enum.Enum):
    RESTAURANT = "REST"
    DELIVERY = "LIV"


class TransactionType(str, enum.Enum):
    SALE = "VEN"
    REFUND = "REM"


class PrintMode(str, enum.Enum):
    ELECTRONIC = "ELE"
    PAPER = "PAP"
    NONE = "AUC"


class PrintFormat(str, enum.Enum):
    SUMMARY = "SUM"
    DETAILED = "DET"


class PaymentMode(str, enum.Enum):
    CARD = "CARTE"
    CASH = "COMPTANT"
    DEBIT = "DEBIT"
    CHECK = "CHEQUE"
    ELECTRONIC = "ELECTRONIQUE"


class ResponseCode(str, enum.Enum):
    SUCCESS = "00"
    ERROR = "99"
    INVALID_SIGNATURE = "01"
    MISSING_FIELDS = "02"
    INVALID_FORMAT = "03"
    DUPLICATE = "04"
    NOT_FOUND = "05"
    INVALID_CERTIFICATION = "JW00B"
    DEVICE_NOT_REGISTERED = "JW00C"
    CERTIFICATE_EXPIRED = "JW00D"
    TIMEOUT = "TIMEOUT"         # client-observed, never sent by the endpoint


class Environment(str, enum.Enum):
    DEV = "dev"
    ESSAI = "essai"
    PROD = "prod"


class SignatureAlgorithm(str, enum.Enum):
    HMAC_SHA256 = "HMAC-SHA256"
    ECDSA = "ECDSA"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"


class QueueKind(str, enum.Enum):
    TRANSACTION = "transaction"
    CLOSING = "closing"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ReceiptFormat(str, enum.Enum):
    URL = "url"
    JSON = "json"
    COMPACT = "compact"


# ==========================================
# Response code classes
# ==========================================
RETRYABLE_CODES = frozenset({ResponseCode.ERROR.value, ResponseCode.TIMEOUT.value})

PERMANENT_CODES = frozenset({
    ResponseCode.INVALID_SIGNATURE.value,
    ResponseCode.MISSING_FIELDS.value,
    ResponseCode.INVALID_FORMAT.value,
    ResponseCode.DUPLICATE.value,
    ResponseCode.NOT_FOUND.value,
    ResponseCode.INVALID_CERTIFICATION.value,
    ResponseCode.DEVICE_NOT_REGISTERED.value,
    ResponseCode.CERTIFICATE_EXPIRED.value,
})

# Transport-level failures reported by the client (no HTTP response)
TRANSPORT_TIMEOUT = "TIMEOUT"
TRANSPORT_NETWORK_ERROR = "NETWORK_ERROR"

TERMINAL_STATUSES = frozenset({QueueStatus.SENT, QueueStatus.FAILED_PERMANENT, QueueStatus.CANCELLED})


# ==========================================
# Constants
# ==========================================
MAX_TEXT_LENGTH = 255
MAX_LINE_ITEMS = 1000
GST_RATE = "0.05"        # TPS, federal
QST_RATE = "0.09975"     # TVQ, Québec
CURRENCY = "CAD"
VERSION_PATTERN = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+")   # fullmatch, ASCII digits only
COMPACT_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
CLOSING_DATE_FORMAT = "%Y%m%d"
MAX_QR_LENGTH = 2048
MAX_ERROR_MESSAGE_LENGTH = 500

TRANSACTION_PATH = "/transaction"
CLOSING_PATH = "/closing"

DEFAULT_BASE_URLS = {
    Environment.DEV: "https://cnfr.api.rq-fo.ca",
    Environment.ESSAI: "https://cnfr.api.rq-fo.ca",
    Environment.PROD: "https://cnfr.api.rq-fo.ca",
}


# ==========================================
# Internal → protocol lookup tables
# ==========================================
ORDER_STATUS_MAP = {
    "completed": ActionType.REGISTER,
    "cancelled": ActionType.CANCEL,
    "refunded": ActionType.CANCEL,
}

ORDER_TYPE_MAP = {
    "dine_in": ServiceType.RESTAURANT,
    "takeaway": ServiceType.RESTAURANT,
    "table_service": ServiceType.RESTAURANT,
    "delivery": ServiceType.DELIVERY,
}

PAYMENT_METHOD_MAP = {
    "credit_card": PaymentMode.CARD,
    "debit_card": PaymentMode.DEBIT,
    "cash": PaymentMode.CASH,
    "check": PaymentMode.CHECK,
    "digital_wallet": PaymentMode.ELECTRONIC,
    "bank_transfer": PaymentMode.ELECTRONIC,
}

PRINT_MODE_MAP = {
    "electronic": PrintMode.ELECTRONIC,
    "paper": PrintMode.PAPER,
    "none": PrintMode.NONE,
}

PRINT_FORMAT_MAP = {
    "summary": PrintFormat.SUMMARY,
    "detailed": PrintFormat.DETAILED,
}

# Fallback used when a raw value is missing from its table
MAPPING_DEFAULTS = {
    "order_status": ActionType.REGISTER,
    "order_type": ServiceType.RESTAURANT,
    "payment_method": PaymentMode.CARD,
    "receipt_print_mode": PrintMode.ELECTRONIC,
    "receipt_format": PrintFormat.DETAILED,
}

ECOMMERCE_PLATFORMS = frozenset({"web", "mobile", "qr_code"})
