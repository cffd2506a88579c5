import logging
import uuid

from sqlalchemy.orm import Session

from storefront.errors import ValidationError
from storefront.models.core import CustomerAddress
from storefront.schemas.checkout import AddressIn

logger = logging.getLogger(__name__)

# (field, message) checked for delivery orders typing a new address
REQUIRED_FIELDS = (
    ("street", "Street is required"),
    ("number", "Number is required"),
    ("neighborhood", "Neighborhood is required"),
    ("city", "City is required"),
    ("state", "State is required"),
)


def _clean(v: str | None) -> str | None:
    v = (v or "").strip()
    return v or None


def check_address_fields(address: AddressIn | None) -> None:
    for field, message in REQUIRED_FIELDS:
        if not address or not _clean(getattr(address, field)):
            raise ValidationError(message)


def _match_fields(a: AddressIn) -> dict:
    return {
        "street": _clean(a.street),
        "number": _clean(a.number),
        "neighborhood": _clean(a.neighborhood),
        "city": _clean(a.city),
        "state": _clean(a.state),
        "zip_code": _clean(a.zip_code),
        "complement": _clean(a.complement),
    }


def _insert(db: Session, a: AddressIn, *, customer_id: str | None, session_id: str | None, is_default: bool) -> CustomerAddress:
    row = CustomerAddress(
        customer_id=customer_id,
        session_id=session_id,
        reference=_clean(a.reference),
        label=_clean(a.label) or "Home",
        is_default=is_default,
        **_match_fields(a),
    )
    db.add(row)
    db.commit()
    return row


def resolve_address(
    db: Session,
    *,
    customer_id: str | None,
    address: AddressIn | None,
    saved_address_id: str | None = None,
    editing: bool = False,
) -> str:
    """
    Find or create the delivery address for this order and return its id.

    Table orders never get here. A saved address is reused as is (and linked
    to the customer when it was a guest address). A typed address is matched
    field by field against the customer's book before inserting; guests
    always get a fresh row tagged with a throwaway session id.
    """
    if saved_address_id and not editing:
        saved = db.get(CustomerAddress, saved_address_id)
        if not saved:
            raise ValidationError("Selected address no longer exists")
        if saved.customer_id and customer_id and saved.customer_id != customer_id:
            raise ValidationError("Selected address no longer exists")
        if customer_id and not saved.customer_id:
            saved.customer_id = customer_id
            db.commit()
            logger.info("linked guest address %s to customer %s", saved.id, customer_id)
        return saved.id

    check_address_fields(address)

    if customer_id:
        existing = (
            db.query(CustomerAddress)
            .filter(CustomerAddress.customer_id == customer_id)
            .filter_by(**_match_fields(address))
            .first()
        )
        if existing:
            return existing.id
        return _insert(db, address, customer_id=customer_id, session_id=None, is_default=not saved_address_id).id

    return _insert(db, address, customer_id=None, session_id=f"guest-{uuid.uuid4()}", is_default=not saved_address_id).id
