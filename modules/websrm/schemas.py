"""
WEB-SRM Input Schemas
=======================
Shapes of the order and daily-closing events handed to the adapter.
Amounts are in dollars; the mapper converts them to cents.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderItemPayload(BaseModel):
    id: Optional[str] = None
    menu_item_name: str = Field(..., max_length=1000)
    menu_item_price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    item_total: Decimal = Field(..., ge=0)
    special_instructions: Optional[str] = None


class OrderPayload(BaseModel):
    """
    Internal restaurant order. `id` and `items` are optional here so the
    mapper can report an incomplete order instead of a schema error.
    """
    id: Optional[str] = None
    branch_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    order_type: Optional[str] = None
    order_status: Optional[str] = None
    payment_method: Optional[str] = None

    items_subtotal: Decimal = Field(..., ge=0)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    gst_amount: Decimal = Field(..., ge=0)
    qst_amount: Decimal = Field(..., ge=0)
    tip_amount: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal = Field(..., ge=0)

    tip_type: Optional[str] = None          # percentage / fixed
    tip_value: Optional[Decimal] = None     # 0.15 for 15%
    served_by_user_id: Optional[str] = None
    receipt_print_mode: Optional[str] = None
    receipt_format: Optional[str] = None
    third_party_platform: Optional[str] = None

    created_at: datetime
    items: List[OrderItemPayload] = []


class ClosingPayload(BaseModel):
    """Daily closing (Z report) for one branch."""
    id: Optional[str] = None
    branch_id: str = Field(..., min_length=1)
    closing_date: date
    total_sales: Decimal = Field(..., ge=0)
    total_refunds: Decimal = Field(Decimal("0"), ge=0)
    net_sales: Decimal = Field(..., ge=0)
    gst_collected: Decimal = Field(..., ge=0)
    qst_collected: Decimal = Field(..., ge=0)
    transaction_count: int = Field(..., ge=0)
    terminal_total: Decimal = Field(Decimal("0"), ge=0)
    online_total: Decimal = Field(Decimal("0"), ge=0)
    created_by: Optional[str] = None
