import json

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from storefront.db import get_db
from storefront.models.core import Order, OrderItem
from storefront.schemas.orders import OrderItemOut, OrderOut
from storefront.services.pricing import to_float

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: str, db: Session = Depends(get_db)):
    """Tracking view; the order id is the customer's handle, so no login."""
    o = db.get(Order, order_id)
    if not o:
        raise HTTPException(404, detail="order not found")

    items = (
        db.query(OrderItem)
        .filter(OrderItem.order_id == o.id)
        .order_by(OrderItem.position)
        .all()
    )
    return OrderOut(
        id=o.id,
        company_id=o.company_id,
        customer_id=o.customer_id,
        customer_name=o.customer_name,
        payment_method=o.payment_method.value,
        payment_status=o.payment_status.value,
        status=o.status.value,
        source=o.source.value,
        table_session_id=o.table_session_id,
        delivery_address_id=o.delivery_address_id,
        subtotal=to_float(o.subtotal),
        discount_kind=o.discount_kind,
        discount_amount=to_float(o.discount_amount),
        delivery_fee=to_float(o.delivery_fee),
        total=to_float(o.total),
        notes=o.notes,
        needs_change=o.needs_change,
        change_for=to_float(o.change_for) if o.change_for is not None else None,
        estimated_delivery_time=o.estimated_delivery_time,
        items=[
            OrderItemOut(
                id=it.id,
                product_id=it.product_id,
                product_name=it.product_name,
                quantity=it.quantity,
                unit_price=to_float(it.unit_price),
                total_price=to_float(it.total_price),
                options=json.loads(it.options) if it.options else [],
                notes=it.notes,
            )
            for it in items
        ],
    )
