# test_payments.py
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import jprint
from storefront.errors import ValidationError
from storefront.models.core import (
    Coupon, CouponType, Gateway, Order, OrderItem, PaymentMethod, PaymentSession, PaymentSessionStatus,
    PaymentStatus,
)
from storefront.services.payments import (
    FLOWS, ChargeStatus, MercadoPagoGateway, PicPayGateway, confirm_payment_session, ensure_method_available,
)


def _rows(db, model, *where):
    db.expire_all()
    return db.query(model).filter(*where).all()


def _open_pix(client, checkout_body, **kw):
    out = jprint("POST /checkout/ (pix)", client.post("/checkout/", json=checkout_body(payment_method="PIX", **kw)))
    assert out["status"] == "AWAITING_PAYMENT"
    return out


def test_every_payment_method_has_a_flow():
    assert set(FLOWS) == set(PaymentMethod)


def test_pix_rejected_when_online_payments_disabled(client, db, make_company, gateway):
    company = make_company(online_payment_enabled=False)
    body = {"company_id": company.id, "customer": {"name": "Ana", "email": "ana@example.com"},
            "items": [{"product_id": "p-1", "product_name": "Margherita", "quantity": 2, "unit_price": 25.0}],
            "payment_method": "PIX", "address": {"street": "Rua A", "number": "1", "neighborhood": "Centro",
                                                 "city": "Sao Paulo", "state": "SP"}}
    r = client.post("/checkout/", json=body)
    assert r.status_code == 400
    assert "PIX" in r.json()["detail"]
    assert gateway.calls == []
    assert _rows(db, PaymentSession) == []
    assert _rows(db, Order) == []


def test_method_availability_flags(make_company):
    company = make_company(pix_enabled=False)
    with pytest.raises(ValidationError):
        ensure_method_available(company, PaymentMethod.PIX)
    ensure_method_available(company, PaymentMethod.CARD_ONLINE)
    ensure_method_available(company, PaymentMethod.CASH)


def test_pix_opens_session_without_order(client, db, checkout_body, gateway, notifier):
    out = _open_pix(client, checkout_body)
    ps = out["payment_session"]
    assert out["order_id"] is None
    assert ps["qr_code"].startswith("000201")
    assert ps["amount"] == 58.0
    assert ps["status"] == "PENDING"
    assert len(gateway.calls) == 1
    assert _rows(db, Order) == []
    assert notifier.sent == []

    polled = jprint("GET session", client.get(f"/payments/sessions/{ps['session_id']}"))
    assert polled["status"] == "PENDING"


def test_card_online_returns_redirect(client, checkout_body):
    out = jprint("POST /checkout/ (card)", client.post("/checkout/", json=checkout_body(payment_method="CARD_ONLINE")))
    assert out["payment_session"]["redirect_url"].startswith("https://pay.test/")


def test_webhook_confirms_and_is_idempotent(client, db, company, checkout_body, gateway, notifier):
    db.add(Coupon(company_id=company.id, code="PIX5", discount_type=CouponType.FIXED, discount_value=Decimal("5")))
    db.commit()
    sid = _open_pix(client, checkout_body, coupon_code="PIX5")["payment_session"]["session_id"]
    assert _rows(db, Coupon)[0].current_uses == 0
    gateway.charge(sid, "approved", "998877")

    hook = {"external_reference": sid, "status": "approved"}
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago", json=hook))
    assert ack["status"] == "COMPLETED"
    order_id = ack["order_id"]

    o = db.get(Order, order_id)
    assert o.payment_status == PaymentStatus.PAID
    assert o.payment_reference == "mercadopago_998877"
    assert o.total == Decimal("53.00")
    assert len(_rows(db, OrderItem, OrderItem.order_id == order_id)) == 1
    assert _rows(db, Coupon)[0].current_uses == 1
    assert len(notifier.sent) == 1

    again = jprint("webhook retry", client.post("/payments/webhooks/mercadopago", json=hook))
    assert again == {"received": True, "status": "ALREADY_PROCESSED", "order_id": order_id}
    assert len(_rows(db, Order)) == 1

    polled = jprint("GET session", client.get(f"/payments/sessions/{sid}"))
    assert polled["status"] == "COMPLETED" and polled["order_id"] == order_id


def test_nested_webhook_payload(client, db, checkout_body, gateway):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    gateway.charge(sid, "approved", "mp-1")
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago",
                                        json={"action": "payment.updated", "data": {"external_reference": sid}}))
    assert ack["status"] == "COMPLETED"
    assert db.get(Order, ack["order_id"]).payment_reference == "mercadopago_mp-1"


def test_claimed_status_is_not_trusted(client, db, checkout_body, gateway, notifier):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": sid, "status": "PAID"}))
    assert ack["status"] == "PENDING"
    assert gateway.lookups == [sid]
    assert _rows(db, Order) == []
    assert _rows(db, PaymentSession)[0].status == PaymentSessionStatus.PENDING
    assert notifier.sent == []


def test_notification_from_other_gateway_is_rejected(client, db, checkout_body, gateway):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    gateway.charge(sid, "approved")
    r = client.post("/payments/webhooks/picpay", json={"merchantChargeId": sid, "charge": {"status": "PAID"}})
    assert r.status_code == 400
    assert r.json()["detail"] == "Notification does not match the payment session"
    assert gateway.lookups == []
    assert _rows(db, Order) == []
    assert _rows(db, PaymentSession)[0].status == PaymentSessionStatus.PENDING


def test_unreachable_provider_leaves_session_pending(client, db, checkout_body, gateway):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    gateway.fail = True
    r = client.post("/payments/webhooks/mercadopago", json={"external_reference": sid, "status": "approved"})
    assert r.status_code == 502
    assert _rows(db, PaymentSession)[0].status == PaymentSessionStatus.PENDING
    assert _rows(db, Order) == []


def test_rejected_charge_discards_session(client, db, checkout_body, gateway):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    gateway.charge(sid, "rejected")
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": sid}))
    assert ack["status"] == "DISCARDED"
    assert _rows(db, PaymentSession) == []
    assert _rows(db, Order) == []


def test_pending_notification_changes_nothing(client, db, checkout_body):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": sid, "status": "pending"}))
    assert ack["status"] == "PENDING"
    assert _rows(db, PaymentSession)[0].status == PaymentSessionStatus.PENDING


def test_webhook_bad_requests(client):
    assert client.post("/payments/webhooks/stripe", json={"external_reference": "x"}).status_code == 404
    assert client.post("/payments/webhooks/mercadopago", json={"status": "approved"}).status_code == 400
    ack = jprint("unknown", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": "nope", "status": "approved"}))
    assert ack["status"] == "NOT_FOUND"
    assert client.get("/payments/sessions/nope").status_code == 404


def test_expired_sessions_are_swept(client, db, checkout_body, auth_headers):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    ps = db.get(PaymentSession, sid)
    ps.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.commit()

    assert client.post("/payments/sessions/expire").status_code == 401
    out = jprint("expire", client.post("/payments/sessions/expire", headers=auth_headers))
    assert out == {"expired": 1}
    assert _rows(db, PaymentSession) == []
    assert _rows(db, Order) == []


def test_expired_session_discarded_on_late_pending_notice(client, db, checkout_body, gateway, notifier):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    res = confirm_payment_session(db, sid, Gateway.MERCADOPAGO, {Gateway.MERCADOPAGO: gateway}, notifier, later)
    assert res.status == "EXPIRED"
    assert _rows(db, PaymentSession) == []


def test_approved_after_expiry_still_settles(client, db, checkout_body, gateway, notifier):
    sid = _open_pix(client, checkout_body)["payment_session"]["session_id"]
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    gateway.charge(sid, "approved", "ch-1")
    res = confirm_payment_session(db, sid, Gateway.MERCADOPAGO, {Gateway.MERCADOPAGO: gateway}, notifier, later)
    assert res.status == "COMPLETED"
    assert db.get(Order, res.order_id) is not None


def test_gateway_failure_leaves_nothing(client, db, checkout_body, gateway):
    gateway.fail = True
    r = client.post("/checkout/", json=checkout_body(payment_method="PIX"))
    assert r.status_code == 502
    assert r.json()["detail"] == "Payment provider unavailable, try another payment method"
    assert _rows(db, PaymentSession) == []
    assert _rows(db, Order) == []


def test_provider_status_responses(monkeypatch):
    mp = MercadoPagoGateway("http://mp.test")
    monkeypatch.setattr(mp, "_get", lambda path, params=None: {"results": [{"id": 42, "status": "approved"}]})
    assert mp.fetch_status("s-1", "pref-1") == ChargeStatus("approved", "42")
    monkeypatch.setattr(mp, "_get", lambda path, params=None: {"results": []})
    assert mp.fetch_status("s-1", "pref-1").status == "PENDING"

    pp = PicPayGateway("http://pp.test")
    monkeypatch.setattr(pp, "_get", lambda path, params=None: {"charge": {"status": "PAID"}})
    assert pp.fetch_status("s-1", "ref-1") == ChargeStatus("PAID", "ref-1")
    monkeypatch.setattr(pp, "_get", lambda path, params=None: None)
    assert pp.fetch_status("s-1", None) == ChargeStatus("PENDING", None)
