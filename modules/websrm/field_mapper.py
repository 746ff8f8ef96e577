"""
WEB-SRM Field Mapper
======================
Maps internal orders and daily closings to unsigned WEB-SRM records.

Categorical values go through lookup tables. A value missing from its table
is replaced by the documented default and reported as an UnknownValueWarning
in MappingResult.warnings (and logged), never silently.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel

from common.exceptions import IncompleteOrderError, UnknownValueWarning, ValidationError
from modules.websrm.enums import (
    CLOSING_DATE_FORMAT, ECOMMERCE_PLATFORMS, MAPPING_DEFAULTS, MAX_LINE_ITEMS,
    MAX_TEXT_LENGTH, ORDER_STATUS_MAP, ORDER_TYPE_MAP, PAYMENT_METHOD_MAP,
    PRINT_FORMAT_MAP, PRINT_MODE_MAP, ActionType, TransactionType,
)
from modules.websrm.formatters import (
    format_amount, sanitize_text, to_local_compact_timestamp, validate_amounts_sum,
)

logger = logging.getLogger("fiscal.websrm.mapper")


# ==========================================
# Records
# ==========================================

@dataclass(frozen=True)
class LineItem:
    description: str
    unit_price: int     # cents
    quantity: int
    line_total: int     # cents

    def to_payload(self) -> Dict[str, Any]:
        return {
            "desc": self.description,
            "prixUnit": self.unit_price,
            "qte": self.quantity,
            "montLig": self.line_total,
        }


@dataclass(frozen=True)
class TransactionRecord:
    """One sale or refund as reported to WEB-SRM. Amounts in cents."""
    id_trans: str
    action: ActionType
    service_type: str
    transaction_type: str
    print_mode: str
    print_format: str
    payment_mode: str
    subtotal: int
    gst: int
    qst: int
    total: int
    transaction_time: str                   # local YYYYMMDDHHMMSS
    reference: str
    ecommerce: bool
    line_items: Tuple[LineItem, ...]
    tip_percent: Optional[int] = None
    discount: Optional[int] = None
    employee_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    signature: str = ""

    kind = "transaction"

    @property
    def record_id(self) -> str:
        return self.id_trans

    @property
    def timestamp(self) -> str:
        return self.transaction_time

    @property
    def amount(self) -> int:
        return self.total

    @property
    def operation(self) -> str:
        """Logical submission within one idTrans, e.g. ENR/VEN or ANN/REM."""
        return f"{self.action.value}/{self.transaction_type}"

    def to_payload(self, include_signature: bool = True) -> Dict[str, Any]:
        """Wire dict. Optional fields are omitted when unset."""
        payload = {
            "idTrans": self.id_trans,
            "acti": self.action.value,
            "typServ": self.service_type,
            "typTrans": self.transaction_type,
            "modImpr": self.print_mode,
            "formImpr": self.print_format,
            "modPai": self.payment_mode,
            "montST": self.subtotal,
            "montTPS": self.gst,
            "montTVQ": self.qst,
            "montTot": self.total,
            "dtTrans": self.transaction_time,
            "refTrans": self.reference,
            "eCommerce": self.ecommerce,
            "desc": [item.to_payload() for item in self.line_items],
        }
        optional = {
            "pourcent": self.tip_percent,
            "montRab": self.discount,
            "refEmpl": self.employee_ref,
            "refCli": self.customer_ref,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if include_signature:
            payload["signature"] = self.signature
        return payload

    def with_signature(self, signature: str) -> "TransactionRecord":
        return dataclasses.replace(self, signature=signature)


@dataclass(frozen=True)
class ClosingRecord:
    """Daily closing (FER) for one branch. Amounts in cents."""
    id_closing: str
    closing_date: str                       # YYYYMMDD
    sales: int
    refunds: int
    net: int
    gst: int
    qst: int
    transaction_count: int
    cash_total: int
    card_total: int
    branch_ref: str
    employee_ref: Optional[str] = None
    signature: str = ""

    kind = "closing"
    action = ActionType.CLOSING

    @property
    def record_id(self) -> str:
        return self.id_closing

    @property
    def timestamp(self) -> str:
        return self.closing_date

    @property
    def amount(self) -> int:
        return self.net

    @property
    def operation(self) -> str:
        return ActionType.CLOSING.value

    def to_payload(self, include_signature: bool = True) -> Dict[str, Any]:
        payload = {
            "idFer": self.id_closing,
            "acti": ActionType.CLOSING.value,
            "dtFer": self.closing_date,
            "montVente": self.sales,
            "montRembours": self.refunds,
            "montNet": self.net,
            "montTPS": self.gst,
            "montTVQ": self.qst,
            "nbTrans": self.transaction_count,
            "montComptant": self.cash_total,
            "montCarte": self.card_total,
            "refSucc": self.branch_ref,
        }
        if self.employee_ref is not None:
            payload["refEmpl"] = self.employee_ref
        if include_signature:
            payload["signature"] = self.signature
        return payload

    def with_signature(self, signature: str) -> "ClosingRecord":
        return dataclasses.replace(self, signature=signature)


@dataclass(frozen=True)
class Resolved:
    """Outcome of one table lookup: the protocol value and whether it was a fallback."""
    value: Any
    raw: Any
    unknown: bool = False


@dataclass
class MappingResult:
    record: Union[TransactionRecord, ClosingRecord]
    warnings: List[UnknownValueWarning] = field(default_factory=list)


# ==========================================
# Lookups
# ==========================================

def resolve(field_name: str, raw, table: Mapping, missing_is_default: bool = False) -> Resolved:
    """
    Look `raw` up in `table`. Unknown values resolve to MAPPING_DEFAULTS[field_name]
    with unknown=True. When `missing_is_default` is set, None/empty resolves to the
    default without being reported.
    """
    default = MAPPING_DEFAULTS[field_name]
    if raw in (None, "") and missing_is_default:
        return Resolved(value=default, raw=raw)
    key = raw.lower() if isinstance(raw, str) else raw
    try:
        mapped = table.get(key)
    except TypeError:
        mapped = None
    if mapped is None:
        return Resolved(value=default, raw=raw, unknown=True)
    return Resolved(value=mapped, raw=raw)


def _lookup(field_name: str, raw, table: Mapping, warnings: list, missing_is_default: bool = False):
    resolved = resolve(field_name, raw, table, missing_is_default)
    if resolved.unknown:
        warning = UnknownValueWarning(field_name, raw, resolved.value.value)
        warnings.append(warning)
        logger.warning(f"Unknown {field_name} {raw!r}, defaulting to {resolved.value.value}")
    return resolved.value


def _as_dict(source) -> Dict[str, Any]:
    if isinstance(source, BaseModel):
        return source.model_dump()
    if isinstance(source, Mapping):
        return dict(source)
    raise IncompleteOrderError(f"Unsupported input type: {type(source).__name__}")


def is_ecommerce(platform: Optional[str]) -> bool:
    """web / mobile / qr_code → online; another platform → not; none → online."""
    if not platform:
        return True
    return platform.strip().lower() in ECOMMERCE_PLATFORMS


# ==========================================
# Order → Transaction
# ==========================================

def _quantity(raw, index: int) -> int:
    """Whole number of units. 2, 2.0, "2" are accepted; 1.5 or "abc" are not."""
    if raw is None or raw == "":
        return 0
    if isinstance(raw, bool):
        raise ValidationError(f"items[{index}].quantity must be a whole number")
    if isinstance(raw, int):
        return raw
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValidationError(f"items[{index}].quantity must be a whole number, got {raw!r}")
    if not value.is_finite() or value != value.to_integral_value():
        raise ValidationError(f"items[{index}].quantity must be a whole number, got {raw!r}")
    return int(value)


def _map_line_items(items) -> Tuple[LineItem, ...]:
    if not items:
        raise IncompleteOrderError("Order must have at least one item")
    if len(items) > MAX_LINE_ITEMS:
        raise ValidationError(f"Too many line items: {len(items)} (max {MAX_LINE_ITEMS})")

    mapped = []
    for index, item in enumerate(items):
        item = _as_dict(item)
        mapped.append(LineItem(
            description=sanitize_text(item.get("menu_item_name") or "", MAX_TEXT_LENGTH),
            unit_price=format_amount(item.get("menu_item_price")),
            quantity=_quantity(item.get("quantity"), index),
            line_total=format_amount(item.get("item_total")),
        ))
    return tuple(mapped)


def map_order(order, utc_offset_hours: int = -5) -> MappingResult:
    """
    Order (OrderPayload or dict) → unsigned TransactionRecord.

    Raises IncompleteOrderError without an id or items, and the formatter
    validation errors for bad amounts, text, or timestamps.
    """
    data = _as_dict(order)
    order_id = data.get("id")
    if not order_id:
        raise IncompleteOrderError("Order is required and must have an ID")
    order_id = str(order_id)

    warnings: List[UnknownValueWarning] = []
    status = data.get("order_status")

    action = _lookup("order_status", status, ORDER_STATUS_MAP, warnings)
    service_type = _lookup("order_type", data.get("order_type"), ORDER_TYPE_MAP, warnings)
    payment_mode = _lookup("payment_method", data.get("payment_method"), PAYMENT_METHOD_MAP, warnings)
    print_mode = _lookup(
        "receipt_print_mode", data.get("receipt_print_mode"), PRINT_MODE_MAP, warnings,
        missing_is_default=True,
    )
    print_format = _lookup(
        "receipt_format", data.get("receipt_format"), PRINT_FORMAT_MAP, warnings,
        missing_is_default=True,
    )

    status_key = status.lower() if isinstance(status, str) else status
    transaction_type = TransactionType.REFUND if status_key == "refunded" else TransactionType.SALE

    tip_percent = None
    if data.get("tip_type") == "percentage" and data.get("tip_value"):
        tip_percent = int(format_amount(data["tip_value"]))  # 0.15 → 15

    discount = None
    if data.get("discount_amount"):
        discount = format_amount(data["discount_amount"])

    line_items = _map_line_items(data.get("items"))

    record = TransactionRecord(
        id_trans=order_id,
        action=action,
        service_type=service_type.value,
        transaction_type=transaction_type.value,
        print_mode=print_mode.value,
        print_format=print_format.value,
        payment_mode=payment_mode.value,
        subtotal=format_amount(data.get("items_subtotal")),
        gst=format_amount(data.get("gst_amount")),
        qst=format_amount(data.get("qst_amount")),
        total=format_amount(data.get("total_amount")),
        transaction_time=to_local_compact_timestamp(data.get("created_at"), utc_offset_hours),
        reference=order_id[:8].upper(),
        ecommerce=is_ecommerce(data.get("third_party_platform")),
        line_items=line_items,
        tip_percent=tip_percent,
        discount=discount,
        employee_ref=data.get("served_by_user_id") or None,
        customer_ref=data.get("customer_phone") or None,
    )
    return MappingResult(record=record, warnings=warnings)


def _is_cents(value) -> bool:
    return not isinstance(value, bool) and isinstance(value, int) and value >= 0


def validate_transaction(record: TransactionRecord) -> List[str]:
    """
    Local consistency checks before signing. Returns a list of problems
    (empty when the record is valid).
    """
    errors = []
    if not record.id_trans:
        errors.append("idTrans is required")
    if not record.transaction_time:
        errors.append("dtTrans is required")

    for name in ("subtotal", "gst", "qst", "total"):
        if not _is_cents(getattr(record, name)):
            errors.append(f"{name} must be a non-negative integer")
    if record.discount is not None and not _is_cents(record.discount):
        errors.append("discount must be a non-negative integer")
    if record.tip_percent is not None and not _is_cents(record.tip_percent):
        errors.append("pourcent must be a non-negative integer")

    if not record.line_items:
        errors.append("desc must have at least one item")
    elif len(record.line_items) > MAX_LINE_ITEMS:
        errors.append(f"desc must have at most {MAX_LINE_ITEMS} items")
    for i, item in enumerate(record.line_items):
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            errors.append(f"desc[{i}].qte must be positive")
        for name, value in (("prixUnit", item.unit_price), ("montLig", item.line_total)):
            if not _is_cents(value):
                errors.append(f"desc[{i}].{name} must be a non-negative integer")

    # Tips are not itemised, so the sum only holds for tip-free orders
    if not errors and record.tip_percent is None:
        subtotal = record.subtotal - (record.discount or 0)
        if not validate_amounts_sum(subtotal, record.gst, record.qst, record.total):
            errors.append(
                f"montST + montTPS + montTVQ ({subtotal + record.gst + record.qst}) "
                f"does not match montTot ({record.total})"
            )
    return errors


# ==========================================
# Daily closing → FER
# ==========================================

def map_closing(closing) -> MappingResult:
    """Daily closing (ClosingPayload or dict) → unsigned ClosingRecord."""
    data = _as_dict(closing)
    closing_id = data.get("id")
    if not closing_id:
        raise IncompleteOrderError("Daily closing is required and must have an ID")
    if not data.get("branch_id"):
        raise IncompleteOrderError("Daily closing must reference a branch")

    closing_date = data.get("closing_date")
    if hasattr(closing_date, "strftime"):
        closing_date = closing_date.strftime(CLOSING_DATE_FORMAT)
    elif isinstance(closing_date, str) and len(closing_date) == 10 and closing_date[4] == "-":
        closing_date = closing_date.replace("-", "")
    else:
        raise ValidationError("Valid closing_date is required (YYYY-MM-DD format)")

    count = data.get("transaction_count")
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ValidationError("transaction_count must be a non-negative integer")

    amounts = {
        "sales": format_amount(data.get("total_sales")),
        "refunds": format_amount(data.get("total_refunds") or 0),
        "net": format_amount(data.get("net_sales")),
        "gst": format_amount(data.get("gst_collected")),
        "qst": format_amount(data.get("qst_collected")),
        "cash_total": format_amount(data.get("terminal_total") or 0),
        "card_total": format_amount(data.get("online_total") or 0),
    }
    negative = [name for name, cents in amounts.items() if cents < 0]
    if negative:
        raise ValidationError(f"Closing amounts must be non-negative: {', '.join(negative)}")

    record = ClosingRecord(
        id_closing=str(closing_id),
        closing_date=closing_date,
        transaction_count=count,
        **amounts,
        branch_ref=str(data["branch_id"]),
        employee_ref=data.get("created_by") or None,
    )
    return MappingResult(record=record)
