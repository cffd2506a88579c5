"""
Customer identity resolution.

Finds or creates the single customer row behind an email/phone pair for a
store. Email is the primary key of a person; phone is the fallback. The
signed identity hint from a previous checkout only short-cuts the lookup,
and is dropped as soon as the typed details disagree with it.
"""
import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.models.core import Customer

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_email(email: str | None) -> str | None:
    email = (email or "").strip().lower()
    return email or None


def normalize_phone(phone: str | None) -> str | None:
    digits = _NON_DIGITS.sub("", phone or "")
    return digits or None


@dataclass(frozen=True)
class IdentityHint:
    customer_id: str
    company_id: str
    name: str
    email: str | None
    phone: str | None


@dataclass(frozen=True)
class ResolvedCustomer:
    customer_id: str | None
    name: str
    email: str | None
    phone: str | None


def _hint_matches(hint: IdentityHint, email: str | None, phone: str | None) -> bool:
    # a blank typed field is not a divergence
    if email and normalize_email(hint.email) != email:
        return False
    if phone and normalize_phone(hint.phone) != phone:
        return False
    return True


def _owner_of(db: Session, company_id: str, *, email: str | None = None, phone: str | None = None) -> Customer | None:
    q = db.query(Customer).filter(Customer.company_id == company_id)
    if email:
        return q.filter(Customer.email == email).first()
    if phone:
        return q.filter(Customer.phone == phone).first()
    return None


def lookup_customer(db: Session, company_id: str, email: str | None, phone: str | None) -> Customer | None:
    """Email first, then phone. A phone hit carrying another email is someone else."""
    if email:
        c = _owner_of(db, company_id, email=email)
        if c:
            return c
    if phone:
        c = _owner_of(db, company_id, phone=phone)
        if c and email and c.email and c.email != email:
            logger.info("phone matches customer %s but email differs; treating as a different person", c.id)
            return None
        return c
    return None


def _refresh_profile(db: Session, c: Customer, name: str, email: str | None, phone: str | None) -> None:
    changed = False
    if name and c.name != name:
        c.name = name
        changed = True
    if email and not c.email and not _owner_of(db, c.company_id, email=email):
        c.email = email
        changed = True
    if phone and not c.phone and not _owner_of(db, c.company_id, phone=phone):
        c.phone = phone
        changed = True
    if not changed:
        return
    try:
        db.commit()
    except IntegrityError:
        # a concurrent checkout claimed the value first; the profile stays as it was
        db.rollback()
        logger.warning("could not refresh profile of customer %s", c.id)


def _create_customer(db: Session, company_id: str, name: str, email: str | None, phone: str | None) -> Customer | None:
    if phone and _owner_of(db, company_id, phone=phone):
        # the phone belongs to someone with another email; keep the new row unique
        phone = None
    c = Customer(company_id=company_id, name=name, email=email, phone=phone)
    db.add(c)
    try:
        db.commit()
        logger.info("created customer %s", c.id)
        return c
    except IntegrityError:
        db.rollback()
        winner = lookup_customer(db, company_id, email, phone)
        if winner:
            logger.info("customer insert raced; using existing %s", winner.id)
        else:
            logger.warning("customer insert failed and no existing row found; continuing as guest")
        return winner


def resolve_customer(
    db: Session,
    company_id: str,
    name: str,
    email: str | None,
    phone: str | None,
    hint: IdentityHint | None = None,
) -> ResolvedCustomer:
    name = (name or "").strip()
    email = normalize_email(email)
    phone = normalize_phone(phone)

    if hint and hint.company_id == company_id:
        if _hint_matches(hint, email, phone):
            c = db.get(Customer, hint.customer_id)
            if c and c.company_id == company_id:
                _refresh_profile(db, c, name, email, phone)
                return ResolvedCustomer(c.id, name or c.name, email or c.email, phone or c.phone)
        else:
            logger.info("identity hint for %s does not match typed details; discarded", hint.customer_id)

    if not email and not phone:
        return ResolvedCustomer(None, name, None, None)

    c = lookup_customer(db, company_id, email, phone)
    if c:
        _refresh_profile(db, c, name, email, phone)
    else:
        c = _create_customer(db, company_id, name, email, phone)
    if not c:
        return ResolvedCustomer(None, name, email, phone)
    return ResolvedCustomer(c.id, name or c.name, email or c.email, phone or c.phone)


def peek_customer_id(db: Session, company_id: str, email: str | None, phone: str | None,
                     hint: IdentityHint | None = None) -> str | None:
    """Read-only counterpart of resolve_customer, used before anything is written."""
    email = normalize_email(email)
    phone = normalize_phone(phone)
    if hint and hint.company_id == company_id and _hint_matches(hint, email, phone):
        return hint.customer_id
    c = lookup_customer(db, company_id, email, phone)
    return c.id if c else None
