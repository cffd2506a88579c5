import logging
import jwt
from datetime import datetime, timedelta, timezone
from storefront.config import settings
from storefront.services.identity import IdentityHint, ResolvedCustomer

logger = logging.getLogger(__name__)

HINT_AUD = "storefront:identity-hint"


def sign_identity_hint(company_id: str, customer: ResolvedCustomer) -> str | None:
    """Signed replacement for the "last known customer" blob the storefront keeps."""
    if not customer.customer_id:
        return None
    now = datetime.now(timezone.utc)
    exp = now + timedelta(days=settings.IDENTITY_HINT_DAYS)
    payload = {
        "sub": customer.customer_id,
        "cid": company_id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "iss": settings.JWT_ISS,
        "aud": HINT_AUD,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, settings.APP_SECRET, algorithm="HS256")


def read_identity_hint(token: str | None) -> IdentityHint | None:
    # a bad hint only means a fresh lookup, never a failed checkout
    if not token:
        return None
    try:
        data = jwt.decode(token, settings.APP_SECRET, algorithms=["HS256"], audience=HINT_AUD)
    except jwt.PyJWTError as e:
        logger.info("ignoring identity hint: %s", e)
        return None
    return IdentityHint(
        customer_id=data["sub"],
        company_id=data["cid"],
        name=data.get("name") or "",
        email=data.get("email"),
        phone=data.get("phone"),
    )
