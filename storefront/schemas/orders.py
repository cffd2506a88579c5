from pydantic import BaseModel
from typing import Optional, Literal, List
from datetime import datetime
from decimal import Decimal

from storefront.schemas.checkout import OptionIn, PaymentMethodLiteral

OrderSourceLiteral = Literal["ONLINE", "TABLE"]
DiscountKindLiteral = Literal["NONE", "COUPON", "REFERRAL", "STORE_CREDIT"]

class DraftLine(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    options: List[OptionIn] = []
    notes: Optional[str] = None
    requires_preparation: bool = True
    is_composite: bool = False
    component_product_ids: List[str] = []

class OrderDraft(BaseModel):
    """
    Everything the commit writer and the post-commit effects need.

    Pay-on-fulfilment orders commit it straight away; online payments store
    it on the PaymentSession and replay it once the gateway confirms.
    """
    order_id: str
    company_id: str
    customer_id: Optional[str] = None
    customer_name: str
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    delivery_address_id: Optional[str] = None
    payment_method: PaymentMethodLiteral
    source: OrderSourceLiteral = "ONLINE"
    table_session_id: Optional[str] = None
    subtotal: Decimal
    discount_kind: DiscountKindLiteral = "NONE"
    discount_amount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    total: Decimal
    coupon_id: Optional[str] = None
    referral_code: Optional[str] = None
    referral_code_id: Optional[str] = None
    store_credit_applied: Decimal = Decimal("0")
    notes: Optional[str] = None
    needs_change: bool = False
    change_for: Optional[Decimal] = None
    estimated_delivery_time: Optional[datetime] = None
    lines: List[DraftLine]

class OrderItemOut(BaseModel):
    id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    total_price: float
    options: List[OptionIn] = []
    notes: Optional[str] = None

class OrderOut(BaseModel):
    id: str
    company_id: str
    customer_id: Optional[str] = None
    customer_name: str
    payment_method: str
    payment_status: str
    status: str
    source: str
    table_session_id: Optional[str] = None
    delivery_address_id: Optional[str] = None
    subtotal: float
    discount_kind: str
    discount_amount: float
    delivery_fee: float
    total: float
    notes: Optional[str] = None
    needs_change: bool = False
    change_for: Optional[float] = None
    estimated_delivery_time: Optional[datetime] = None
    items: List[OrderItemOut] = []
