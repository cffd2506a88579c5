"""
Post-commit effects.

These run once the order header and items are both written. Each effect is
independent: a failure is rolled back and logged, the others still run,
and the order is never touched.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.errors import SideEffectError
from storefront.models.common import as_utc
from storefront.models.core import (
    Company, Coupon, CustomerAddress, LoyaltySettings, LoyaltyTicketGrant, Order,
    ReferralCode, ReferralProgram, ReferralUsage, StoreCredit, StoreCreditConsumption,
)
from storefront.schemas.orders import OrderDraft
from storefront.services.pricing import ZERO, dec, money, to_float

logger = logging.getLogger(__name__)


@dataclass
class SideEffectReport:
    tickets_earned: int = 0
    failed: list[str] = field(default_factory=list)


class Notifier:
    """Sends the order confirmation through the notification service."""

    def __init__(self, base_url: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def send_order_confirmation(self, summary: dict) -> None:
        if not self.base_url:
            logger.debug("no notification service configured; skipping %s", summary.get("order_number"))
            return
        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(f"{self.base_url}/order-confirmation", json=summary)
                r.raise_for_status()
        except httpx.HTTPError as e:
            raise SideEffectError(f"confirmation not sent: {e}") from e


def get_notifier() -> Notifier:
    return Notifier(settings.NOTIFY_URL, settings.HTTP_TIMEOUT)


def increment_coupon_usage(db: Session, coupon_id: str) -> None:
    db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .values(current_uses=Coupon.current_uses + 1)
    )
    db.commit()


def settle_referral_credit(db: Session, *, company_id: str, referral_code: str, referred_customer_id: str,
                           order_id: str, order_total, now: datetime) -> bool:
    """
    Record the referral use and credit the referrer. Idempotent per order.

    Returns False when nothing was settled (already settled, program off,
    code gone, or the referred customer already used a referral).
    """
    if db.query(ReferralUsage.id).filter(ReferralUsage.order_id == order_id).first():
        return False
    program = db.query(ReferralProgram).filter(ReferralProgram.company_id == company_id).first()
    if not program or not program.is_enabled:
        return False
    rc = (
        db.query(ReferralCode)
        .filter(ReferralCode.company_id == company_id, ReferralCode.code == referral_code.upper())
        .first()
    )
    if not rc or rc.customer_id == referred_customer_id:
        return False

    base = money(order_total)
    usage = ReferralUsage(
        company_id=company_id,
        referral_code_id=rc.id,
        referred_customer_id=referred_customer_id,
        order_id=order_id,
        discount_applied=money(base * dec(program.referred_discount_percent) / 100),
        referrer_credit=money(base * dec(program.referrer_credit_percent) / 100),
    )
    db.add(usage)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("referred customer %s already settled a referral", referred_customer_id)
        return False
    if usage.referrer_credit > 0:
        db.add(StoreCredit(
            company_id=company_id,
            customer_id=rc.customer_id,
            amount=usage.referrer_credit,
            remaining_amount=usage.referrer_credit,
            source_referral_usage_id=usage.id,
            expires_at=now + timedelta(days=program.credit_valid_days),
        ))
    db.commit()
    return True


def consume_store_credit(db: Session, *, company_id: str, customer_id: str, amount, order_id: str,
                         now: datetime) -> Decimal:
    """Draw `amount` from the customer's credits, soonest-expiring first. Idempotent per order."""
    seen = (
        db.query(StoreCreditConsumption.id)
        .join(StoreCredit, StoreCredit.id == StoreCreditConsumption.credit_id)
        .filter(StoreCreditConsumption.order_id == order_id, StoreCredit.customer_id == customer_id)
        .first()
    )
    if seen:
        return ZERO

    wanted = money(amount)
    credits = (
        db.query(StoreCredit)
        .filter(
            StoreCredit.company_id == company_id,
            StoreCredit.customer_id == customer_id,
            StoreCredit.remaining_amount > 0,
        )
        .order_by(StoreCredit.expires_at.is_(None), StoreCredit.expires_at, StoreCredit.created_at)
        .all()
    )
    used = ZERO
    for c in credits:
        if used >= wanted:
            break
        if c.expires_at is not None and as_utc(c.expires_at) <= now:
            continue
        take = min(money(c.remaining_amount), wanted - used)
        c.remaining_amount = money(dec(c.remaining_amount) - take)
        db.add(StoreCreditConsumption(credit_id=c.id, order_id=order_id, amount=take))
        used += take
    db.commit()
    if used < wanted:
        logger.warning("order %s applied %s credit but only %s was available", order_id, wanted, used)
    return used


def compute_loyalty_tickets(db: Session, company_id: str, subtotal) -> int:
    ls = db.query(LoyaltySettings).filter(LoyaltySettings.company_id == company_id).first()
    if not ls or not ls.is_enabled:
        return 0
    tickets = max(ls.tickets_per_order or 0, 0)
    per_amount = dec(ls.tickets_per_amount)
    subtotal = money(subtotal)
    if per_amount > 0 and subtotal > 0:
        tickets += math.floor(subtotal / per_amount)
    return tickets


def accrue_loyalty_tickets(db: Session, order: Order, tickets: int) -> None:
    if tickets <= 0 or not order.customer_id:
        return
    if db.query(LoyaltyTicketGrant.id).filter(LoyaltyTicketGrant.order_id == order.id).first():
        return
    db.add(LoyaltyTicketGrant(company_id=order.company_id, customer_id=order.customer_id,
                              order_id=order.id, tickets=tickets))
    db.commit()


def order_summary(db: Session, order: Order, draft: OrderDraft) -> dict:
    company = db.get(Company, order.company_id)
    addr = db.get(CustomerAddress, order.delivery_address_id) if order.delivery_address_id else None
    return {
        "order_number": order.id[:8].upper(),
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "items": [
            {
                "product_name": l.product_name,
                "quantity": l.quantity,
                "unit_price": to_float(l.unit_price),
                "total_price": to_float(l.total_price),
                "options": [o.model_dump() for o in l.options],
                "notes": l.notes,
            }
            for l in draft.lines
        ],
        "subtotal": to_float(order.subtotal),
        "delivery_fee": to_float(order.delivery_fee),
        "discount": to_float(order.discount_amount),
        "total": to_float(order.total),
        "payment_method": order.payment_method.value,
        "delivery_address": {
            "street": addr.street,
            "number": addr.number,
            "neighborhood": addr.neighborhood,
            "city": addr.city,
            "complement": addr.complement,
        } if addr else None,
        "notes": order.notes,
        "company_name": company.name if company else None,
        "company_phone": company.phone if company else None,
        "tracking_url": f"{settings.PUBLIC_BASE_URL.rstrip('/')}/track/{order.id}",
        "estimated_delivery_time": order.estimated_delivery_time.isoformat() if order.estimated_delivery_time else None,
    }


def _run(db: Session, report: SideEffectReport, order_id: str, name: str, fn, /, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except Exception:
        db.rollback()
        report.failed.append(name)
        logger.exception("post-commit effect %s failed for order %s", name, order_id)
        return None


def run_side_effects(db: Session, order: Order, draft: OrderDraft, notifier: Notifier,
                     now: datetime) -> SideEffectReport:
    report = SideEffectReport()

    if draft.coupon_id:
        _run(db, report, order.id, "coupon_usage", increment_coupon_usage, db, draft.coupon_id)

    if draft.referral_code and draft.customer_id:
        _run(db, report, order.id, "referral_credit", settle_referral_credit, db,
             company_id=order.company_id, referral_code=draft.referral_code,
             referred_customer_id=draft.customer_id, order_id=order.id,
             order_total=draft.subtotal, now=now)

    if draft.store_credit_applied > 0 and draft.customer_id:
        _run(db, report, order.id, "store_credit", consume_store_credit, db,
             company_id=order.company_id, customer_id=draft.customer_id,
             amount=draft.store_credit_applied, order_id=order.id, now=now)

    if draft.customer_email:
        _run(db, report, order.id, "confirmation",
             lambda: notifier.send_order_confirmation(order_summary(db, order, draft)))

    tickets = _run(db, report, order.id, "loyalty_tickets", compute_loyalty_tickets, db, order.company_id, draft.subtotal)
    if tickets:
        report.tickets_earned = tickets
        _run(db, report, order.id, "loyalty_accrual", accrue_loyalty_tickets, db, order, tickets)

    return report
