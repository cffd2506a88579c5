from pydantic import BaseModel, Field
from typing import Optional, Literal, List
from datetime import datetime

PaymentMethodLiteral = Literal["CASH", "CARD_ON_DELIVERY", "COUNTER", "PIX", "CARD_ONLINE"]
CheckoutStatusLiteral = Literal["COMMITTED", "AWAITING_PAYMENT"]

class OptionIn(BaseModel):
    name: str
    price_delta: float = 0.0
    group: Optional[str] = None

class CartLineIn(BaseModel):
    product_id: str
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)
    options: List[OptionIn] = []
    notes: Optional[str] = None
    requires_preparation: bool = True
    is_composite: bool = False
    component_product_ids: List[str] = []
    prep_minutes: Optional[int] = None

class AddressIn(BaseModel):
    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    reference: Optional[str] = None
    label: Optional[str] = None

class CustomerIn(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

class CheckoutIn(BaseModel):
    company_id: str
    customer: CustomerIn
    items: List[CartLineIn]
    payment_method: PaymentMethodLiteral
    address: Optional[AddressIn] = None
    saved_address_id: Optional[str] = None
    editing_saved_address: bool = False
    coupon_code: Optional[str] = None
    referral_code: Optional[str] = None
    use_store_credit: bool = True
    table_session_id: Optional[str] = None
    table_number: Optional[int] = None
    notes: Optional[str] = None
    needs_change: bool = False
    change_for: Optional[float] = None
    identity_hint: Optional[str] = None

class QuoteIn(BaseModel):
    company_id: str
    items: List[CartLineIn]
    coupon_code: Optional[str] = None
    referral_code: Optional[str] = None
    customer: Optional[CustomerIn] = None
    use_store_credit: bool = True
    table_session_id: Optional[str] = None
    identity_hint: Optional[str] = None

class TotalsOut(BaseModel):
    subtotal: float
    discount_kind: str
    discount_amount: float
    delivery_fee: float
    total: float

class PaymentSessionOut(BaseModel):
    session_id: str
    gateway: str
    payment_method: str
    status: str
    qr_code: Optional[str] = None
    redirect_url: Optional[str] = None
    amount: float
    expires_at: datetime
    order_id: Optional[str] = None

class CheckoutOut(BaseModel):
    status: CheckoutStatusLiteral
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_session: Optional[PaymentSessionOut] = None
    totals: TotalsOut
    tickets_earned: int = 0
    identity_hint: Optional[str] = None

class CouponCheckIn(BaseModel):
    company_id: str
    code: str
    subtotal: float

class CouponOut(BaseModel):
    coupon_id: str
    code: str
    discount_type: str
    discount_value: float
    discount_amount: float
