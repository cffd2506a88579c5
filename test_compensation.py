# test_compensation.py
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import jprint
from storefront.errors import CommitError, StockError
from storefront.models.common import new_id
from storefront.models.core import AuditLog, Order, OrderItem, PaymentSession, PaymentSessionStatus
from storefront.schemas.orders import DraftLine, OrderDraft
from storefront.services import orders as order_service
from storefront.services.orders import OrderCommit, commit_order


def _rows(db, model, *where):
    db.expire_all()
    return db.query(model).filter(*where).all()


def _broken_items(*a, **kw):
    raise RuntimeError("order_item insert timed out")


def _draft(company_id):
    return OrderDraft(
        order_id=new_id(), company_id=company_id, customer_name="Ana", payment_method="CASH",
        subtotal=Decimal("25.00"), total=Decimal("33.00"), delivery_fee=Decimal("8.00"),
        lines=[DraftLine(product_id="p-1", product_name="Margherita", quantity=1,
                         unit_price=Decimal("25.00"), total_price=Decimal("25.00"))],
    )


def test_items_failure_deletes_header(client, db, checkout_body, notifier, monkeypatch):
    monkeypatch.setattr(order_service, "write_order_items", _broken_items)
    r = client.post("/checkout/", json=checkout_body())
    assert r.status_code == 500
    assert r.json() == {"detail": CommitError.GENERIC}
    assert _rows(db, Order) == []
    assert _rows(db, OrderItem) == []
    assert notifier.sent == []

    trail = _rows(db, AuditLog, AuditLog.action == "COMPENSATE")
    assert len(trail) == 1
    assert "timed out" in trail[0].reason


def test_header_failure_surfaces_generic_error(client, db, checkout_body, monkeypatch):
    def broken_header(*a, **kw):
        raise OperationalError("INSERT INTO \"order\"", {}, Exception("database is locked"))

    monkeypatch.setattr(order_service, "write_order_header", broken_header)
    r = client.post("/checkout/", json=checkout_body())
    assert r.status_code == 500
    assert r.json()["detail"] == "Could not place your order, please try again"
    assert _rows(db, Order) == []
    assert _rows(db, AuditLog) == []


def test_checkout_error_inside_commit_keeps_its_type(db, company):
    draft = _draft(company.id)
    with pytest.raises(StockError):
        with OrderCommit(db) as commit:
            commit_order(db, draft, commit)
            raise StockError("sold out while committing")
    assert _rows(db, Order) == []


def test_commit_without_failure_keeps_order(db, company):
    draft = _draft(company.id)
    with OrderCommit(db) as commit:
        order = commit_order(db, draft, commit)
    assert commit.order_id == order.id == draft.order_id
    assert len(_rows(db, OrderItem, OrderItem.order_id == order.id)) == 1


def test_paid_session_replay_failure_is_compensated(client, db, checkout_body, gateway, monkeypatch):
    out = jprint("pix", client.post("/checkout/", json=checkout_body(payment_method="PIX")))
    sid = out["payment_session"]["session_id"]
    gateway.charge(sid, "approved", "1")

    monkeypatch.setattr(order_service, "write_order_items", _broken_items)
    ack = jprint("webhook", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": sid, "status": "approved"}))
    assert ack["status"] == "FAILED"
    assert _rows(db, Order) == []
    assert _rows(db, PaymentSession)[0].status == PaymentSessionStatus.FAILED
    actions = {a.action for a in _rows(db, AuditLog)}
    assert actions == {"COMPENSATE", "SETTLE_FAILED"}

    # a retried notification does not try again
    again = jprint("retry", client.post("/payments/webhooks/mercadopago",
                                        json={"external_reference": sid, "status": "approved"}))
    assert again["status"] == "IGNORED"
