"""
Payment branching.

Every PaymentMethod has exactly one flow in FLOWS. Pay-on-fulfilment
methods commit the order immediately. Online methods (PIX, card) only open
a PaymentSession with the store's gateway; the order is written later, from
the stored draft, when the gateway confirms the charge.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.errors import CheckoutError, CommitError, GatewayError, ValidationError
from storefront.models.common import as_utc, new_id
from storefront.models.core import (
    Company, Gateway, Order, PaymentMethod, PaymentSession, PaymentSessionStatus, PaymentStatus,
)
from storefront.schemas.checkout import PaymentSessionOut
from storefront.schemas.orders import OrderDraft
from storefront.services.orders import OrderCommit, commit_order
from storefront.services.pricing import to_float
from storefront.services.side_effects import Notifier, SideEffectReport, run_side_effects
from storefront.util.audit import audit

logger = logging.getLogger(__name__)

APPROVED_STATUSES = frozenset({"PAID", "APPROVED", "COMPLETED", "SETTLED", "AUTHORIZED", "CAPTURED"})
FAILED_STATUSES = frozenset({"CANCELLED", "CANCELED", "REJECTED", "FAILED", "EXPIRED", "REFUNDED", "CHARGEBACK"})


# ── Gateways ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class GatewaySession:
    reference: str
    qr_code: str | None = None
    redirect_url: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ChargeStatus:
    status: str
    charge_id: str | None = None


class PaymentGateway:
    gateway: Gateway

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def create_session(self, session_id: str, method: PaymentMethod, draft: OrderDraft,
                       expires_at: datetime) -> GatewaySession:
        raise NotImplementedError

    def fetch_status(self, session_id: str, reference: str | None) -> ChargeStatus:
        raise NotImplementedError

    def _post(self, path: str, payload: dict) -> dict:
        headers = {"X-Idempotency-Key": payload.get("_key", "")}
        payload = {k: v for k, v in payload.items() if k != "_key"}
        r = self._send("POST", path, "Payment provider unavailable, try another payment method",
                       json=payload, headers=headers)
        if r.status_code >= 400:
            logger.error("%s rejected session: %s %s", self.gateway.value, r.status_code, r.text[:500])
            raise GatewayError("Could not start the payment, try another payment method")
        return r.json()

    def _get(self, path: str, params: dict | None = None) -> dict | None:
        r = self._send("GET", path, "Could not verify the payment with the provider", params=params)
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            logger.error("%s status lookup failed: %s %s", self.gateway.value, r.status_code, r.text[:500])
            raise GatewayError("Could not verify the payment with the provider")
        return r.json()

    def _send(self, method: str, path: str, unavailable: str, headers: dict | None = None, **kw) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token}", **(headers or {})}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                return client.request(method, f"{self.base_url}{path}", headers=headers, **kw)
        except httpx.RequestError as e:
            logger.error("%s unreachable: %s", self.gateway.value, e)
            raise GatewayError(unavailable) from e


class MercadoPagoGateway(PaymentGateway):
    gateway = Gateway.MERCADOPAGO

    def create_session(self, session_id, method, draft, expires_at):
        if method == PaymentMethod.PIX:
            data = self._post("/v1/payments", {
                "_key": session_id,
                "transaction_amount": to_float(draft.total),
                "payment_method_id": "pix",
                "description": f"Order {draft.order_id[:8].upper()}",
                "external_reference": session_id,
                "date_of_expiration": expires_at.isoformat(),
                "payer": {"email": draft.customer_email or "", "first_name": draft.customer_name},
                "metadata": {"order": draft.model_dump(mode="json")},
            })
            tx = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
            if not tx.get("qr_code"):
                raise GatewayError("PIX data was not returned by the payment provider")
            return GatewaySession(reference=str(data.get("id")), qr_code=tx["qr_code"],
                                  redirect_url=tx.get("ticket_url"), expires_at=expires_at)

        data = self._post("/checkout/preferences", {
            "_key": session_id,
            "external_reference": session_id,
            "items": [{"title": l.product_name, "quantity": l.quantity, "unit_price": to_float(l.unit_price)}
                      for l in draft.lines],
            "expiration_date_to": expires_at.isoformat(),
            "metadata": {"order": draft.model_dump(mode="json")},
        })
        if not data.get("init_point"):
            raise GatewayError("Card checkout was not returned by the payment provider")
        return GatewaySession(reference=str(data.get("id")), redirect_url=data["init_point"], expires_at=expires_at)

    def fetch_status(self, session_id, reference):
        # card preferences have no payment id until the buyer pays, so search by our reference
        data = self._get("/v1/payments/search", {"external_reference": session_id,
                                                 "sort": "date_created", "criteria": "desc"})
        results = (data or {}).get("results") or []
        if not results:
            return ChargeStatus("PENDING")
        latest = results[0]
        return ChargeStatus(str(latest.get("status") or "PENDING"), str(latest.get("id") or "") or None)


class PicPayGateway(PaymentGateway):
    gateway = Gateway.PICPAY

    def create_session(self, session_id, method, draft, expires_at):
        path = "/api/v1/charge/pix" if method == PaymentMethod.PIX else "/api/v1/charge/link"
        data = self._post(path, {
            "_key": session_id,
            "merchantChargeId": session_id,
            "amount": int(draft.total * 100),  # cents
            "expiresAt": expires_at.isoformat(),
            "customer": {"name": draft.customer_name, "email": draft.customer_email,
                         "phone": draft.customer_phone},
            "metadata": {"order": draft.model_dump(mode="json")},
        })
        qr, url = data.get("qrCode"), data.get("paymentUrl")
        if not qr and not url:
            raise GatewayError("Payment data was not returned by the payment provider")
        return GatewaySession(reference=str(data.get("id") or session_id), qr_code=qr, redirect_url=url,
                              expires_at=expires_at)

    def fetch_status(self, session_id, reference):
        data = self._get(f"/api/v1/charge/{session_id}")
        if data is None:
            return ChargeStatus("PENDING")
        # the status field moves around between charge types
        status = (data.get("status")
                  or (data.get("charge") or {}).get("status")
                  or (data.get("payment") or {}).get("status")
                  or (data.get("transaction") or {}).get("status")
                  or "PENDING")
        return ChargeStatus(str(status), str(data.get("id") or reference or "") or None)


def get_gateways() -> dict[Gateway, PaymentGateway]:
    return {
        Gateway.MERCADOPAGO: MercadoPagoGateway(settings.MERCADOPAGO_URL, settings.MERCADOPAGO_TOKEN, settings.HTTP_TIMEOUT),
        Gateway.PICPAY: PicPayGateway(settings.PICPAY_URL, settings.PICPAY_TOKEN, settings.HTTP_TIMEOUT),
    }


# ── Dispatcher ──────────────────────────────────────────────────────────────
def ensure_method_available(company: Company, method: PaymentMethod) -> None:
    if method == PaymentMethod.PIX and not (company.online_payment_enabled and company.pix_enabled):
        raise ValidationError("This store does not accept PIX, choose another payment method")
    if method == PaymentMethod.CARD_ONLINE and not (company.online_payment_enabled and company.card_enabled):
        raise ValidationError("This store does not accept online card payments, choose another payment method")


@dataclass
class FlowContext:
    db: Session
    company: Company
    gateways: dict[Gateway, PaymentGateway]
    notifier: Notifier
    now: datetime


@dataclass
class FlowOutcome:
    order: Order | None = None
    session: PaymentSession | None = None
    report: SideEffectReport | None = None


def _pay_on_fulfilment(ctx: FlowContext, method: PaymentMethod, draft: OrderDraft) -> FlowOutcome:
    with OrderCommit(ctx.db) as commit:
        order = commit_order(ctx.db, draft, commit)
    # past this point the order stands; effects can fail without undoing it
    report = run_side_effects(ctx.db, order, draft, ctx.notifier, ctx.now)
    return FlowOutcome(order=order, report=report)


def _online_payment(ctx: FlowContext, method: PaymentMethod, draft: OrderDraft) -> FlowOutcome:
    return FlowOutcome(session=open_payment_session(ctx, method, draft))


FLOWS: dict[PaymentMethod, Callable[[FlowContext, PaymentMethod, OrderDraft], FlowOutcome]] = {
    PaymentMethod.CASH: _pay_on_fulfilment,
    PaymentMethod.CARD_ON_DELIVERY: _pay_on_fulfilment,
    PaymentMethod.COUNTER: _pay_on_fulfilment,
    PaymentMethod.PIX: _online_payment,
    PaymentMethod.CARD_ONLINE: _online_payment,
}


def dispatch(ctx: FlowContext, method: PaymentMethod, draft: OrderDraft) -> FlowOutcome:
    return FLOWS[method](ctx, method, draft)


# ── Sessions ────────────────────────────────────────────────────────────────
def open_payment_session(ctx: FlowContext, method: PaymentMethod, draft: OrderDraft) -> PaymentSession:
    gw = ctx.gateways.get(ctx.company.active_gateway)
    if gw is None:
        raise GatewayError("Online payments are not configured for this store")

    session_id = new_id()
    expires_at = ctx.now + timedelta(minutes=settings.PAYMENT_SESSION_TTL_MIN)
    gs = gw.create_session(session_id, method, draft, expires_at)

    ps = PaymentSession(
        id=session_id,
        company_id=ctx.company.id,
        gateway=gw.gateway,
        payment_method=method,
        status=PaymentSessionStatus.PENDING,
        gateway_reference=gs.reference,
        qr_code=gs.qr_code,
        redirect_url=gs.redirect_url,
        amount=draft.total,
        expires_at=gs.expires_at or expires_at,
        order_payload=draft.model_dump_json(),
    )
    ctx.db.add(ps)
    try:
        ctx.db.commit()
    except SQLAlchemyError as e:
        ctx.db.rollback()
        logger.exception("could not store payment session %s", session_id)
        raise CommitError(str(e)) from e
    logger.info("payment session %s opened with %s for %s", session_id, gw.gateway.value, draft.total)
    return ps


def session_out(ps: PaymentSession) -> PaymentSessionOut:
    return PaymentSessionOut(
        session_id=ps.id,
        gateway=ps.gateway.value,
        payment_method=ps.payment_method.value,
        status=ps.status.value,
        qr_code=ps.qr_code,
        redirect_url=ps.redirect_url,
        amount=to_float(ps.amount),
        expires_at=as_utc(ps.expires_at),
        order_id=ps.order_id,
    )


@dataclass(frozen=True)
class ConfirmResult:
    status: str  # COMPLETED | ALREADY_PROCESSED | DISCARDED | EXPIRED | PENDING | IGNORED | NOT_FOUND | FAILED
    order_id: str | None = None


def _discard(db: Session, ps: PaymentSession, why: str) -> None:
    db.delete(ps)
    db.commit()
    logger.info("payment session %s discarded (%s)", ps.id, why)


def confirm_payment_session(db: Session, session_id: str, gateway: Gateway, gateways: dict[Gateway, PaymentGateway],
                            notifier: Notifier, now: datetime) -> ConfirmResult:
    """
    Settle an online payment: replay the stored draft as a paid order.

    A notification is only a trigger. The charge status is read back from
    the provider the session was opened with; whatever the caller claims
    is never trusted.
    """
    ps = db.get(PaymentSession, session_id)
    if not ps:
        return ConfirmResult("NOT_FOUND")
    if ps.gateway != gateway:
        logger.warning("%s notification for session %s opened with %s", gateway.value, ps.id, ps.gateway.value)
        raise ValidationError("Notification does not match the payment session")
    if ps.status == PaymentSessionStatus.COMPLETED or ps.order_id:
        return ConfirmResult("ALREADY_PROCESSED", ps.order_id)
    if ps.status != PaymentSessionStatus.PENDING:
        return ConfirmResult("IGNORED")

    client = gateways.get(ps.gateway)
    if client is None:
        raise GatewayError(f"{ps.gateway.value} is not configured")
    charge = client.fetch_status(ps.id, ps.gateway_reference)
    status = charge.status.upper()
    if status in FAILED_STATUSES:
        _discard(db, ps, status)
        return ConfirmResult("DISCARDED")
    if status not in APPROVED_STATUSES:
        if as_utc(ps.expires_at) <= now:
            _discard(db, ps, "expired")
            return ConfirmResult("EXPIRED")
        return ConfirmResult("PENDING")
    if as_utc(ps.expires_at) <= now:
        # the charge went through; the money is real even if our window closed
        logger.warning("payment session %s confirmed after expiry", ps.id)

    claimed = db.execute(
        update(PaymentSession)
        .where(PaymentSession.id == ps.id, PaymentSession.status == PaymentSessionStatus.PENDING)
        .values(status=PaymentSessionStatus.PROCESSING)
    ).rowcount
    db.commit()
    if claimed != 1:
        return ConfirmResult("ALREADY_PROCESSED")

    draft = OrderDraft.model_validate_json(ps.order_payload)
    reference = f"{ps.gateway.value.lower()}_{charge.charge_id or ps.gateway_reference}"
    try:
        with OrderCommit(db) as commit:
            order = commit_order(db, draft, commit, PaymentStatus.PAID, reference)
    except CheckoutError as e:
        ps = db.get(PaymentSession, session_id)
        ps.status = PaymentSessionStatus.FAILED
        audit(db, "gateway", "PaymentSession", ps.id, "SETTLE_FAILED", reason=getattr(e, "internal", None) or e.reason)
        db.commit()
        logger.error("paid session %s could not be turned into an order; needs reconciliation", session_id)
        return ConfirmResult("FAILED")

    ps = db.get(PaymentSession, session_id)
    ps.status = PaymentSessionStatus.COMPLETED
    ps.order_id = order.id
    audit(db, "gateway", "PaymentSession", ps.id, "SETTLED", after={"order_id": order.id, "reference": reference})
    db.commit()
    run_side_effects(db, order, draft, notifier, now)
    return ConfirmResult("COMPLETED", order.id)


def expire_payment_sessions(db: Session, now: datetime) -> int:
    n = db.execute(
        delete(PaymentSession)
        .where(PaymentSession.status == PaymentSessionStatus.PENDING, PaymentSession.expires_at <= now)
    ).rowcount
    db.commit()
    if n:
        logger.info("discarded %s expired payment sessions", n)
    return n
