"""
Checkout pipeline.

validate -> discount context -> inventory gate -> customer -> address ->
order draft -> payment branch (commit + side effects, or payment session).

Nothing is written before the inventory gate passes. Once the order header
exists every failure is compensated inside the payment branch.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.errors import StockError, ValidationError
from storefront.models.common import new_id
from storefront.models.core import Company, Gateway, OrderSource, PaymentMethod, TableSession, TableSessionStatus
from storefront.schemas.checkout import CheckoutIn, CheckoutOut, CouponCheckIn, CouponOut, CustomerIn, QuoteIn, TotalsOut
from storefront.schemas.orders import OrderDraft
from storefront.services.addresses import check_address_fields, resolve_address
from storefront.services.discounts import (
    AppliedDiscount, CouponDiscount, ReferralDiscount, StoreCreditDiscount,
    available_store_credit, check_coupon, coupon_amount, find_referral_grant, resolve_discount,
)
from storefront.services.identity import IdentityHint, peek_customer_id, resolve_customer
from storefront.services.inventory import DEFAULT_SHORTAGE, InventoryValidator
from storefront.services.payments import FlowContext, PaymentGateway, dispatch, ensure_method_available, session_out
from storefront.services.pricing import ZERO, cart_subtotal, compute_totals, dec, freeze_lines, money, to_float
from storefront.services.side_effects import Notifier
from storefront.util.security import read_identity_hint, sign_identity_hint

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    inventory: InventoryValidator
    gateways: dict[Gateway, PaymentGateway]
    notifier: Notifier


# ── Validation ──────────────────────────────────────────────────────────────
def load_company(db: Session, company_id: str) -> Company:
    company = db.get(Company, company_id)
    if not company:
        raise ValidationError("Store not found")
    return company


def _table_session(db: Session, company: Company, session_id: str | None, table_number: int | None) -> TableSession | None:
    if table_number is not None and not session_id:
        raise ValidationError("Table session missing, scan the table QR code again")
    if not session_id:
        return None
    ts = db.get(TableSession, session_id)
    if not ts or ts.company_id != company.id:
        raise ValidationError("Table session not found, scan the table QR code again")
    if ts.status != TableSessionStatus.OPEN:
        raise ValidationError("This table is closed, ask the staff to reopen it")
    return ts


def _check_request(company: Company, body: CheckoutIn, table: TableSession | None, subtotal) -> None:
    if not company.is_open:
        raise ValidationError("The store is closed right now")
    if not body.items:
        raise ValidationError("Your cart is empty")
    if not (body.customer.name or "").strip():
        raise ValidationError("Name is required")
    if table is None and not (body.saved_address_id and not body.editing_saved_address):
        check_address_fields(body.address)
    min_order = money(company.min_order_value)
    if table is None and min_order > 0 and subtotal < min_order:
        raise ValidationError(f"Minimum order is {min_order}, your cart has {subtotal}")
    method = PaymentMethod(body.payment_method)
    if method == PaymentMethod.COUNTER and table is None:
        raise ValidationError("Pay at the counter is only available for table orders")
    ensure_method_available(company, method)


def _check_change(body: CheckoutIn, total) -> None:
    if PaymentMethod(body.payment_method) != PaymentMethod.CASH or not body.needs_change:
        return
    if body.change_for is None or money(body.change_for) < total:
        raise ValidationError(f"Change must be for at least {total}")


# ── Discounts ───────────────────────────────────────────────────────────────
def _discount_context(db: Session, company: Company, subtotal, *, coupon_code: str | None,
                      referral_code: str | None, use_store_credit: bool, customer: CustomerIn | None,
                      hint: IdentityHint | None, now: datetime) -> AppliedDiscount:
    coupon = check_coupon(db, company.id, coupon_code, subtotal, now) if (coupon_code or "").strip() else None
    if coupon:
        return resolve_discount(subtotal, coupon=coupon)

    email = customer.email if customer else None
    phone = customer.phone if customer else None
    if not email and hint and hint.company_id == company.id:
        email = hint.email
    referral = find_referral_grant(db, company, referral_code, email)
    if referral:
        return resolve_discount(subtotal, referral=referral)

    balance = ZERO
    if use_store_credit:
        customer_id = peek_customer_id(db, company.id, email, phone, hint)
        balance = available_store_credit(db, company.id, customer_id, now)
    return resolve_discount(subtotal, credit_balance=balance)


def _totals_out(totals: dict, discount: AppliedDiscount) -> TotalsOut:
    return TotalsOut(
        subtotal=to_float(totals["subtotal"]),
        discount_kind=discount.kind,
        discount_amount=to_float(totals["discount_amount"]),
        delivery_fee=to_float(totals["delivery_fee"]),
        total=to_float(totals["total"]),
    )


# ── Draft ───────────────────────────────────────────────────────────────────
def order_notes(notes: str | None, table_number: int | None) -> str | None:
    notes = (notes or "").strip() or None
    if table_number is None:
        return notes
    return f"TABLE {table_number} | {notes}" if notes else f"TABLE {table_number}"


def estimated_delivery(body: CheckoutIn, now: datetime) -> datetime:
    prep = max((l.prep_minutes if l.prep_minutes is not None else settings.DEFAULT_PREP_MIN for l in body.items),
               default=settings.DEFAULT_PREP_MIN)
    return now + timedelta(minutes=prep + settings.DELIVERY_BUFFER_MIN)


def build_draft(body: CheckoutIn, company: Company, table: TableSession | None, customer, address_id: str | None,
                discount: AppliedDiscount, totals: dict, now: datetime) -> OrderDraft:
    method = PaymentMethod(body.payment_method)
    wants_change = method == PaymentMethod.CASH and body.needs_change
    return OrderDraft(
        order_id=new_id(),
        company_id=company.id,
        customer_id=customer.customer_id,
        customer_name=customer.name,
        customer_phone=customer.phone,
        customer_email=customer.email,
        delivery_address_id=address_id,
        payment_method=method.value,
        source=OrderSource.TABLE.value if table else OrderSource.ONLINE.value,
        table_session_id=table.id if table else None,
        subtotal=totals["subtotal"],
        discount_kind=discount.kind,
        discount_amount=totals["discount_amount"],
        delivery_fee=totals["delivery_fee"],
        total=totals["total"],
        coupon_id=discount.coupon_id if isinstance(discount, CouponDiscount) else None,
        referral_code=discount.grant.code if isinstance(discount, ReferralDiscount) else None,
        referral_code_id=discount.grant.referral_code_id if isinstance(discount, ReferralDiscount) else None,
        store_credit_applied=discount.amount if isinstance(discount, StoreCreditDiscount) else ZERO,
        notes=order_notes(body.notes, table.table_number if table else None),
        needs_change=wants_change,
        change_for=money(body.change_for) if wants_change and body.change_for is not None else None,
        estimated_delivery_time=estimated_delivery(body, now),
        lines=freeze_lines(body.items),
    )


# ── Pipeline ────────────────────────────────────────────────────────────────
def run_checkout(db: Session, body: CheckoutIn, collab: Collaborators, now: datetime) -> CheckoutOut:
    company = load_company(db, body.company_id)
    table = _table_session(db, company, body.table_session_id, body.table_number)
    subtotal = cart_subtotal(body.items)
    _check_request(company, body, table, subtotal)

    hint = read_identity_hint(body.identity_hint)
    discount = _discount_context(
        db, company, subtotal,
        coupon_code=body.coupon_code, referral_code=body.referral_code,
        use_store_credit=body.use_store_credit, customer=body.customer, hint=hint, now=now,
    )
    fee = ZERO if table else dec(company.delivery_fee)
    totals = compute_totals(subtotal, discount.amount, fee)
    _check_change(body, totals["total"])

    stock = collab.inventory.validate(body.items)
    if not stock.ok:
        logger.info("checkout for %s stopped by inventory: %s", company.id, stock.message)
        raise StockError(stock.message or DEFAULT_SHORTAGE)

    customer = resolve_customer(db, company.id, body.customer.name, body.customer.email, body.customer.phone, hint)
    address_id = None
    if table is None:
        address_id = resolve_address(
            db,
            customer_id=customer.customer_id,
            address=body.address,
            saved_address_id=body.saved_address_id,
            editing=body.editing_saved_address,
        )

    draft = build_draft(body, company, table, customer, address_id, discount, totals, now)
    ctx = FlowContext(db=db, company=company, gateways=collab.gateways, notifier=collab.notifier, now=now)
    outcome = dispatch(ctx, PaymentMethod(body.payment_method), draft)

    out = CheckoutOut(
        status="COMMITTED" if outcome.order else "AWAITING_PAYMENT",
        order_id=outcome.order.id if outcome.order else None,
        customer_id=customer.customer_id,
        payment_session=session_out(outcome.session) if outcome.session else None,
        totals=_totals_out(totals, discount),
        tickets_earned=outcome.report.tickets_earned if outcome.report else 0,
        identity_hint=sign_identity_hint(company.id, customer),
    )
    if outcome.report and outcome.report.failed:
        logger.warning("order %s committed with failed effects: %s", out.order_id, ", ".join(outcome.report.failed))
    return out


def quote_checkout(db: Session, body: QuoteIn, now: datetime) -> TotalsOut:
    company = load_company(db, body.company_id)
    table = _table_session(db, company, body.table_session_id, None)
    subtotal = cart_subtotal(body.items)
    discount = _discount_context(
        db, company, subtotal,
        coupon_code=body.coupon_code, referral_code=body.referral_code,
        use_store_credit=body.use_store_credit, customer=body.customer,
        hint=read_identity_hint(body.identity_hint), now=now,
    )
    fee = ZERO if table else dec(company.delivery_fee)
    return _totals_out(compute_totals(subtotal, discount.amount, fee), discount)


def validate_coupon(db: Session, body: CouponCheckIn, now: datetime) -> CouponOut:
    load_company(db, body.company_id)
    coupon = check_coupon(db, body.company_id, body.code, body.subtotal, now)
    return CouponOut(
        coupon_id=coupon.id,
        code=coupon.code,
        discount_type=coupon.discount_type.value,
        discount_value=to_float(coupon.discount_value),
        discount_amount=to_float(coupon_amount(coupon, body.subtotal)),
    )
