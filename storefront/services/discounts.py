"""
Discount resolution.

A checkout carries at most one discount. Candidates are gathered from the
store (coupon, referral grant, store-credit balance) and `resolve_discount`
picks exactly one of them by precedence coupon > referral > credit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from storefront.errors import ValidationError
from storefront.models.common import as_utc
from storefront.models.core import (
    Company, Coupon, CouponType, Customer, ReferralCode, ReferralProgram,
    ReferralUsage, StoreCredit,
)
from storefront.services.identity import normalize_email
from storefront.services.pricing import ZERO, dec, money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferralGrant:
    referral_code_id: str
    code: str
    referrer_customer_id: str
    referrer_name: str
    percent: Decimal


@dataclass(frozen=True)
class CouponDiscount:
    kind: ClassVar[str] = "COUPON"
    coupon_id: str
    code: str
    amount: Decimal

@dataclass(frozen=True)
class ReferralDiscount:
    kind: ClassVar[str] = "REFERRAL"
    grant: ReferralGrant
    amount: Decimal

@dataclass(frozen=True)
class StoreCreditDiscount:
    kind: ClassVar[str] = "STORE_CREDIT"
    balance: Decimal
    amount: Decimal

@dataclass(frozen=True)
class NoDiscount:
    kind: ClassVar[str] = "NONE"
    amount: Decimal = ZERO


AppliedDiscount = Union[CouponDiscount, ReferralDiscount, StoreCreditDiscount, NoDiscount]


def coupon_amount(coupon: Coupon, subtotal) -> Decimal:
    subtotal = money(subtotal)
    if coupon.discount_type == CouponType.PERCENTAGE:
        amount = subtotal * dec(coupon.discount_value) / 100
    else:
        amount = dec(coupon.discount_value)
    # a fixed coupon larger than the cart never drives the total below the fee
    return money(min(amount, subtotal))


def resolve_discount(
    subtotal,
    coupon: Coupon | None = None,
    referral: ReferralGrant | None = None,
    credit_balance=ZERO,
) -> AppliedDiscount:
    subtotal = money(subtotal)
    if coupon is not None:
        return CouponDiscount(coupon_id=coupon.id, code=coupon.code, amount=coupon_amount(coupon, subtotal))
    if referral is not None:
        return ReferralDiscount(grant=referral, amount=money(subtotal * dec(referral.percent) / 100))
    balance = money(credit_balance)
    if balance > 0:
        return StoreCreditDiscount(balance=balance, amount=min(balance, subtotal))
    return NoDiscount()


def check_coupon(db: Session, company_id: str, code: str, subtotal, now: datetime) -> Coupon:
    """Return the coupon or raise ValidationError naming why it cannot apply."""
    code = (code or "").strip().upper()
    if not code:
        raise ValidationError("Enter a coupon code")

    coupon = (
        db.query(Coupon)
        .filter(Coupon.company_id == company_id, Coupon.code == code)
        .first()
    )
    if not coupon:
        raise ValidationError("Coupon not found")
    if not coupon.is_active:
        raise ValidationError("This coupon is no longer active")
    if coupon.expires_at and as_utc(coupon.expires_at) < now:
        raise ValidationError("This coupon has expired")
    if coupon.min_order_value and money(subtotal) < money(coupon.min_order_value):
        raise ValidationError(f"Minimum order of {money(coupon.min_order_value)} for this coupon")
    if coupon.max_uses is not None and (coupon.current_uses or 0) >= coupon.max_uses:
        raise ValidationError("This coupon has reached its usage limit")
    return coupon


def find_referral_grant(db: Session, company: Company, code: str | None, email: str | None) -> ReferralGrant | None:
    """
    Re-validate a referral code against the store.

    The grant is tied to the customer's email: it is refused for the code's
    own owner and for anyone who already received a referral discount at
    this store. A refused referral is not a checkout failure, the order
    simply goes ahead without it.
    """
    code = (code or "").strip().upper()
    if not code or not company.referrals_enabled:
        return None

    program = db.query(ReferralProgram).filter(ReferralProgram.company_id == company.id).first()
    if not program or not program.is_enabled:
        return None

    email = normalize_email(email)
    if not email:
        logger.info("referral %s ignored: customer has no email", code)
        return None

    rc = (
        db.query(ReferralCode)
        .filter(ReferralCode.company_id == company.id, ReferralCode.code == code)
        .first()
    )
    if not rc:
        logger.info("referral %s ignored: unknown code", code)
        return None

    referrer = db.get(Customer, rc.customer_id)
    if not referrer or referrer.email == email:
        logger.info("referral %s ignored: customer is the referrer", code)
        return None

    referred = (
        db.query(Customer)
        .filter(Customer.company_id == company.id, Customer.email == email)
        .first()
    )
    if referred:
        already = (
            db.query(ReferralUsage.id)
            .filter(ReferralUsage.company_id == company.id, ReferralUsage.referred_customer_id == referred.id)
            .first()
        )
        if already:
            logger.info("referral %s ignored: %s already used a referral", code, referred.id)
            return None

    uses = db.query(func.count(ReferralUsage.id)).filter(ReferralUsage.referral_code_id == rc.id).scalar() or 0
    if uses >= program.max_uses_per_referrer:
        logger.info("referral %s ignored: referrer reached %s uses", code, uses)
        return None

    return ReferralGrant(
        referral_code_id=rc.id,
        code=rc.code,
        referrer_customer_id=referrer.id,
        referrer_name=referrer.name,
        percent=dec(program.referred_discount_percent),
    )


def available_store_credit(db: Session, company_id: str, customer_id: str | None, now: datetime) -> Decimal:
    if not customer_id:
        return ZERO
    total = (
        db.query(func.coalesce(func.sum(StoreCredit.remaining_amount), 0))
        .filter(
            StoreCredit.company_id == company_id,
            StoreCredit.customer_id == customer_id,
            StoreCredit.remaining_amount > 0,
            or_(StoreCredit.expires_at.is_(None), StoreCredit.expires_at > now),
        )
        .scalar()
    )
    return money(total)
