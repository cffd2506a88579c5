"""
Order commit and its compensation.

The order is written in two steps: the header, then the items. They are not
one transaction, so once the header exists an `OrderCommit` tracks its id and
deletes the partial order if anything fails before the checkout returns.
"""
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.errors import CheckoutError, CommitError
from storefront.models.core import (
    Order, OrderItem, OrderSource, PaymentMethod, PaymentStatus, TableSession,
)
from storefront.schemas.orders import DraftLine, OrderDraft
from storefront.util.audit import audit

logger = logging.getLogger(__name__)


class OrderCommit:
    """
    Scope of one commit attempt.

    Inside the block, any exception raised after the header was written
    deletes the order and its items, then surfaces as CommitError (a
    CheckoutError raised inside keeps its own type).
    """

    def __init__(self, db: Session):
        self.db = db
        self.order_id: str | None = None

    def __enter__(self) -> "OrderCommit":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is None or self.order_id is None:
            return False
        compensate_order(self.db, self.order_id, reason=f"{exc_type.__name__}: {exc}")
        if isinstance(exc, CheckoutError):
            return False
        raise CommitError(str(exc)) from exc


def write_order_header(db: Session, draft: OrderDraft, payment_status: PaymentStatus,
                       payment_reference: str | None = None) -> Order:
    o = Order(
        id=draft.order_id,
        company_id=draft.company_id,
        customer_id=draft.customer_id,
        customer_name=draft.customer_name,
        customer_phone=draft.customer_phone,
        customer_email=draft.customer_email,
        delivery_address_id=draft.delivery_address_id,
        payment_method=PaymentMethod(draft.payment_method),
        payment_status=payment_status,
        payment_reference=payment_reference,
        source=OrderSource(draft.source),
        table_session_id=draft.table_session_id,
        subtotal=draft.subtotal,
        discount_kind=draft.discount_kind,
        discount_amount=draft.discount_amount,
        delivery_fee=draft.delivery_fee,
        total=draft.total,
        coupon_id=draft.coupon_id,
        referral_code_id=draft.referral_code_id,
        store_credit_applied=draft.store_credit_applied,
        notes=draft.notes,
        needs_change=draft.needs_change,
        change_for=draft.change_for,
        estimated_delivery_time=draft.estimated_delivery_time,
    )
    db.add(o)
    db.commit()
    return o


def write_order_items(db: Session, order_id: str, lines: list[DraftLine]) -> list[OrderItem]:
    rows = [
        OrderItem(
            order_id=order_id,
            position=i,
            product_id=l.product_id,
            product_name=l.product_name,
            quantity=l.quantity,
            unit_price=l.unit_price,
            total_price=l.total_price,
            options=json.dumps([o.model_dump() for o in l.options]),
            notes=l.notes,
            requires_preparation=l.requires_preparation,
            is_composite=l.is_composite,
            component_product_ids=json.dumps(l.component_product_ids) if l.is_composite else None,
        )
        for i, l in enumerate(lines)
    ]
    db.add_all(rows)
    db.commit()
    return rows


def _note_table_customer(db: Session, draft: OrderDraft) -> None:
    # front-of-house reference only; the order stands either way
    if not draft.table_session_id or not draft.customer_name:
        return
    try:
        ts = db.get(TableSession, draft.table_session_id)
        if ts:
            ts.customer_name = draft.customer_name
            ts.customer_phone = draft.customer_phone or None
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("could not update table session %s", draft.table_session_id)


def commit_order(db: Session, draft: OrderDraft, commit: OrderCommit,
                 payment_status: PaymentStatus = PaymentStatus.PENDING,
                 payment_reference: str | None = None) -> Order:
    try:
        order = write_order_header(db, draft, payment_status, payment_reference)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("order header write failed")
        raise CommitError(str(e)) from e
    commit.order_id = order.id

    write_order_items(db, order.id, draft.lines)
    logger.info("order %s committed (%s, total %s)", order.id, draft.payment_method, draft.total)

    _note_table_customer(db, draft)
    return order


def compensate_order(db: Session, order_id: str, reason: str | None = None) -> None:
    """Delete items, then the header. Secondary errors are logged, never raised."""
    try:
        db.rollback()
        db.query(OrderItem).filter(OrderItem.order_id == order_id).delete(synchronize_session=False)
        db.query(Order).filter(Order.id == order_id).delete(synchronize_session=False)
        audit(db, "checkout", "Order", order_id, "COMPENSATE", reason=reason)
        db.commit()
        logger.warning("order %s compensated: %s", order_id, reason)
    except Exception:
        db.rollback()
        logger.exception("could not clean up order %s", order_id)
