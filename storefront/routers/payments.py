import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from storefront.db import get_db
from storefront.deps import require_auth
from storefront.models.core import Gateway, PaymentSession
from storefront.schemas.checkout import PaymentSessionOut
from storefront.schemas.common import WebhookAck
from storefront.services.payments import confirm_payment_session, expire_payment_sessions, get_gateways, session_out
from storefront.services.side_effects import get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _pick(body: dict, *keys):
    # providers nest the same field under different names
    for k in keys:
        cur = body
        for part in k.split("."):
            cur = cur.get(part) if isinstance(cur, dict) else None
        if cur not in (None, ""):
            return str(cur)
    return None


@router.post("/webhooks/{gateway}", response_model=WebhookAck)
def webhook(gateway: str, body: dict, db: Session = Depends(get_db),
            gateways=Depends(get_gateways), notifier=Depends(get_notifier)):
    """
    Charge notification from the gateway.

    The body only tells us which session to look at; the charge status is
    fetched from the provider. Acknowledged once handled so the provider
    stops retrying; the outcome is in `status`.
    """
    try:
        gw = Gateway(gateway.upper())
    except ValueError:
        raise HTTPException(404, detail="unknown gateway")

    session_id = _pick(body, "external_reference", "merchantChargeId", "data.external_reference", "session_id")
    if not session_id:
        raise HTTPException(400, detail="missing payment reference")
    claimed = _pick(body, "data.status", "status", "charge.status", "payment.status", "transaction.status")

    res = confirm_payment_session(db, session_id, gw, gateways, notifier, datetime.now(timezone.utc))
    logger.info("%s webhook for session %s: claimed %s -> %s", gw.value, session_id, claimed, res.status)
    return WebhookAck(status=res.status, order_id=res.order_id)


@router.get("/sessions/{session_id}", response_model=PaymentSessionOut)
def get_session(session_id: str, db: Session = Depends(get_db)):
    ps = db.get(PaymentSession, session_id)
    if not ps:
        raise HTTPException(404, detail="payment session not found")
    return session_out(ps)


@router.post("/sessions/expire")
def expire_sessions(db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    n = expire_payment_sessions(db, datetime.now(timezone.utc))
    return {"expired": n}
