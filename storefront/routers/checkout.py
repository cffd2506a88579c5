from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.db import get_db
from storefront.schemas.checkout import CheckoutIn, CheckoutOut, CouponCheckIn, CouponOut, QuoteIn, TotalsOut
from storefront.services.checkout import Collaborators, quote_checkout, run_checkout, validate_coupon
from storefront.services.inventory import get_inventory_validator
from storefront.services.payments import get_gateways
from storefront.services.side_effects import get_notifier

router = APIRouter(prefix="/checkout", tags=["checkout"])


def get_collaborators(
    inventory=Depends(get_inventory_validator),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
) -> Collaborators:
    return Collaborators(inventory=inventory, gateways=gateways, notifier=notifier)


@router.post("/", response_model=CheckoutOut)
def checkout(body: CheckoutIn, db: Session = Depends(get_db), collab: Collaborators = Depends(get_collaborators)):
    """
    Place an order from the storefront cart.

    Pay-on-fulfilment methods answer COMMITTED with the order id. PIX and
    online card answer AWAITING_PAYMENT with the payment session; the order
    appears once the gateway webhook confirms the charge.
    """
    return run_checkout(db, body, collab, datetime.now(timezone.utc))


@router.post("/quote", response_model=TotalsOut)
def quote(body: QuoteIn, db: Session = Depends(get_db)):
    return quote_checkout(db, body, datetime.now(timezone.utc))


@router.post("/coupons/validate", response_model=CouponOut)
def coupon_check(body: CouponCheckIn, db: Session = Depends(get_db)):
    return validate_coupon(db, body, datetime.now(timezone.utc))
