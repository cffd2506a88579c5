from sqlalchemy import (
    String, ForeignKey, Boolean, Numeric, Enum, Text, DateTime, Integer, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column
from enum import Enum as PyEnum
from datetime import datetime
from decimal import Decimal
from storefront.db import Base
from storefront.models.common import IdMixin, TSMixin

# ── Enums ───────────────────────────────────────────────────────────────────
class PaymentMethod(PyEnum):
    CASH = "CASH"
    CARD_ON_DELIVERY = "CARD_ON_DELIVERY"
    COUNTER = "COUNTER"
    PIX = "PIX"
    CARD_ONLINE = "CARD_ONLINE"

class PaymentStatus(PyEnum):
    PENDING = "PENDING"   # collected on fulfilment
    PAID = "PAID"

class OrderSource(PyEnum):
    ONLINE = "ONLINE"
    TABLE = "TABLE"

class OrderStatus(PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

class Gateway(PyEnum):
    MERCADOPAGO = "MERCADOPAGO"
    PICPAY = "PICPAY"

class PaymentSessionStatus(PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class CouponType(PyEnum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"

class TableSessionStatus(PyEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"

# ── Tenant ──────────────────────────────────────────────────────────────────
class Company(Base, IdMixin, TSMixin):
    __tablename__ = "company"
    name: Mapped[str] = mapped_column(String(160))
    phone: Mapped[str | None] = mapped_column(String(20))
    is_open: Mapped[bool] = mapped_column(Boolean, default=True)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    min_order_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    online_payment_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    pix_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    card_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    active_gateway: Mapped[Gateway] = mapped_column(Enum(Gateway), default=Gateway.MERCADOPAGO)
    referrals_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

# ── Customers ───────────────────────────────────────────────────────────────
class Customer(Base, IdMixin, TSMixin):
    __tablename__ = "customer"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    name: Mapped[str] = mapped_column(String(160))
    email: Mapped[str | None] = mapped_column(String(160))   # lower-cased, trimmed
    phone: Mapped[str | None] = mapped_column(String(20))    # digits only
    __table_args__ = (
        UniqueConstraint("company_id", "email", name="uq_customer_company_email"),
        UniqueConstraint("company_id", "phone", name="uq_customer_company_phone"),
    )

class CustomerAddress(Base, IdMixin, TSMixin):
    __tablename__ = "customer_address"
    customer_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("customer.id"))
    session_id: Mapped[str | None] = mapped_column(String(60))  # guest-<uuid> when no customer
    street: Mapped[str] = mapped_column(String(200))
    number: Mapped[str] = mapped_column(String(20))
    complement: Mapped[str | None] = mapped_column(String(120))
    neighborhood: Mapped[str] = mapped_column(String(120))
    city: Mapped[str] = mapped_column(String(120))
    state: Mapped[str] = mapped_column(String(40))
    zip_code: Mapped[str | None] = mapped_column(String(12))
    reference: Mapped[str | None] = mapped_column(Text)
    label: Mapped[str] = mapped_column(String(40), default="Home")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

# ── Dining ──────────────────────────────────────────────────────────────────
class TableSession(Base, IdMixin, TSMixin):
    __tablename__ = "table_session"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    table_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[TableSessionStatus] = mapped_column(Enum(TableSessionStatus), default=TableSessionStatus.OPEN)
    customer_name: Mapped[str | None] = mapped_column(String(160))
    customer_phone: Mapped[str | None] = mapped_column(String(20))

# ── Discounts ───────────────────────────────────────────────────────────────
class Coupon(Base, IdMixin, TSMixin):
    __tablename__ = "coupon"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    code: Mapped[str] = mapped_column(String(40))  # stored upper-case
    discount_type: Mapped[CouponType] = mapped_column(Enum(CouponType))
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    min_order_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    max_uses: Mapped[int | None] = mapped_column(Integer)
    current_uses: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_coupon_company_code"),
    )

class ReferralProgram(Base, IdMixin, TSMixin):
    __tablename__ = "referral_program"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"), unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    referred_discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=10)
    referrer_credit_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=10)
    max_uses_per_referrer: Mapped[int] = mapped_column(Integer, default=10)
    credit_valid_days: Mapped[int] = mapped_column(Integer, default=90)

class ReferralCode(Base, IdMixin, TSMixin):
    __tablename__ = "referral_code"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customer.id"))  # referrer
    code: Mapped[str] = mapped_column(String(40))
    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_referral_code_company_code"),
    )

class ReferralUsage(Base, IdMixin, TSMixin):
    __tablename__ = "referral_usage"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    referral_code_id: Mapped[str] = mapped_column(String(36), ForeignKey("referral_code.id"))
    referred_customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customer.id"))
    order_id: Mapped[str] = mapped_column(String(36), unique=True)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    referrer_credit: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    __table_args__ = (
        UniqueConstraint("company_id", "referred_customer_id", name="uq_referral_usage_referred"),
    )

class StoreCredit(Base, IdMixin, TSMixin):
    __tablename__ = "store_credit"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customer.id"))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    source_referral_usage_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("referral_usage.id"))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

class StoreCreditConsumption(Base, IdMixin, TSMixin):
    __tablename__ = "store_credit_consumption"
    credit_id: Mapped[str] = mapped_column(String(36), ForeignKey("store_credit.id"))
    order_id: Mapped[str] = mapped_column(String(36))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    __table_args__ = (
        UniqueConstraint("credit_id", "order_id", name="uq_credit_consumption_order"),
    )

# ── Loyalty ─────────────────────────────────────────────────────────────────
class LoyaltySettings(Base, IdMixin, TSMixin):
    __tablename__ = "loyalty_settings"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"), unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    tickets_per_order: Mapped[int] = mapped_column(Integer, default=0)
    tickets_per_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)  # one bonus ticket per N spent

class LoyaltyTicketGrant(Base, IdMixin, TSMixin):
    __tablename__ = "loyalty_ticket_grant"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customer.id"))
    order_id: Mapped[str] = mapped_column(String(36), unique=True)
    tickets: Mapped[int] = mapped_column(Integer)

# ── Orders ──────────────────────────────────────────────────────────────────
class Order(Base, IdMixin, TSMixin):
    __tablename__ = "order"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    customer_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("customer.id"))
    customer_name: Mapped[str] = mapped_column(String(160))
    customer_phone: Mapped[str | None] = mapped_column(String(20))
    customer_email: Mapped[str | None] = mapped_column(String(160))
    delivery_address_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("customer_address.id"))
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod))
    payment_status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), default=PaymentStatus.PENDING)
    payment_reference: Mapped[str | None] = mapped_column(String(120))
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus), default=OrderStatus.PENDING)
    source: Mapped[OrderSource] = mapped_column(Enum(OrderSource), default=OrderSource.ONLINE)
    table_session_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("table_session.id"))
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    discount_kind: Mapped[str] = mapped_column(String(20), default="NONE")
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    coupon_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("coupon.id"))
    referral_code_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("referral_code.id"))
    store_credit_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    needs_change: Mapped[bool] = mapped_column(Boolean, default=False)
    change_for: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    estimated_delivery_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

class OrderItem(Base, IdMixin, TSMixin):
    __tablename__ = "order_item"
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("order.id"))
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[str] = mapped_column(String(36))  # catalog lives elsewhere; no FK
    product_name: Mapped[str] = mapped_column(String(200))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))   # base + option deltas, frozen
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    options: Mapped[str | None] = mapped_column(Text)  # JSON
    notes: Mapped[str | None] = mapped_column(Text)
    requires_preparation: Mapped[bool] = mapped_column(Boolean, default=True)
    is_composite: Mapped[bool] = mapped_column(Boolean, default=False)
    component_product_ids: Mapped[str | None] = mapped_column(Text)  # JSON

# ── Online payments ─────────────────────────────────────────────────────────
class PaymentSession(Base, IdMixin, TSMixin):
    __tablename__ = "payment_session"
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("company.id"))
    gateway: Mapped[Gateway] = mapped_column(Enum(Gateway))
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod))
    status: Mapped[PaymentSessionStatus] = mapped_column(Enum(PaymentSessionStatus), default=PaymentSessionStatus.PENDING)
    gateway_reference: Mapped[str | None] = mapped_column(String(120))
    qr_code: Mapped[str | None] = mapped_column(Text)
    redirect_url: Mapped[str | None] = mapped_column(String(400))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    order_payload: Mapped[str] = mapped_column(Text)  # serialized OrderDraft, replayed on settlement
    order_id: Mapped[str | None] = mapped_column(String(36))

# ── Audit ───────────────────────────────────────────────────────────────────
class AuditLog(Base, IdMixin, TSMixin):
    __tablename__ = "audit_log"
    actor: Mapped[str] = mapped_column(String(60))
    entity: Mapped[str] = mapped_column(String(60))
    entity_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(60))
    reason: Mapped[str | None] = mapped_column(Text)
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)
