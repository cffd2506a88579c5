# conftest.py
import os

os.environ.setdefault("APP_SECRET", "test-secret-not-for-prod")
os.environ.setdefault("DB_URL", "sqlite://")
os.environ["INVENTORY_URL"] = ""
os.environ["NOTIFY_URL"] = ""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient

from storefront.config import settings
from storefront.db import Base, SessionLocal, engine
from storefront.errors import GatewayError, SideEffectError
from storefront.main import app
from storefront.models.core import Company, Gateway, PaymentMethod
from storefront.services.inventory import InventoryResult, get_inventory_validator
from storefront.services.payments import ChargeStatus, GatewaySession, PaymentGateway, get_gateways
from storefront.services.side_effects import Notifier, get_notifier


class FakeInventory:
    def __init__(self):
        self.result = InventoryResult(ok=True)
        self.calls = []

    def validate(self, lines):
        self.calls.append(list(lines))
        return self.result


class FakeGateway(PaymentGateway):
    gateway = Gateway.MERCADOPAGO

    def __init__(self):
        super().__init__("http://gateway.test", "tok")
        self.fail = False
        self.calls = []
        self.charges = {}
        self.lookups = []

    def charge(self, session_id, status, charge_id=None):
        """What the provider will report for a session."""
        self.charges[session_id] = ChargeStatus(status, charge_id)

    def fetch_status(self, session_id, reference):
        self.lookups.append(session_id)
        if self.fail:
            raise GatewayError("Could not verify the payment with the provider")
        return self.charges.get(session_id, ChargeStatus("pending"))

    def create_session(self, session_id, method, draft, expires_at):
        self.calls.append((session_id, method, draft))
        if self.fail:
            raise GatewayError("Payment provider unavailable, try another payment method")
        if method == PaymentMethod.PIX:
            return GatewaySession(reference=f"ch_{session_id[:8]}", qr_code="00020126580014br.gov.bcb.pix",
                                  expires_at=expires_at)
        return GatewaySession(reference=f"pref_{session_id[:8]}", redirect_url=f"https://pay.test/{session_id}",
                              expires_at=expires_at)


class FakeNotifier(Notifier):
    def __init__(self):
        super().__init__("")
        self.fail = False
        self.sent = []

    def send_order_confirmation(self, summary):
        if self.fail:
            raise SideEffectError("mail relay down")
        self.sent.append(summary)


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def inventory():
    return FakeInventory()

@pytest.fixture()
def gateway():
    return FakeGateway()

@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def client(db, inventory, gateway, notifier):
    app.dependency_overrides[get_inventory_validator] = lambda: inventory
    app.dependency_overrides[get_gateways] = lambda: {Gateway.MERCADOPAGO: gateway}
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def staff_token(sub):
    # staff tokens are minted by the back office; same claims, same secret
    now = datetime.now(timezone.utc)
    exp = now + timedelta(hours=1)
    payload = {"sub": sub, "iss": settings.JWT_ISS, "iat": int(now.timestamp()), "exp": int(exp.timestamp())}
    return jwt.encode(payload, settings.APP_SECRET, algorithm="HS256")

@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {staff_token('staff-1')}"}


@pytest.fixture()
def make_company(db):
    def _make(**kw):
        fields = dict(
            name="Pizzaria Bella", phone="11999990000", is_open=True,
            delivery_fee=Decimal("8.00"), min_order_value=Decimal("0"),
            online_payment_enabled=True, pix_enabled=True, card_enabled=True,
            active_gateway=Gateway.MERCADOPAGO, referrals_enabled=True,
        )
        fields.update(kw)
        c = Company(**fields)
        db.add(c)
        db.commit()
        return c
    return _make

@pytest.fixture()
def company(make_company):
    return make_company()


ADDRESS = {
    "street": "Rua das Flores", "number": "120", "neighborhood": "Centro",
    "city": "Sao Paulo", "state": "SP", "zip_code": "01000-000",
}

def line(product_id="p-1", name="Margherita", qty=1, price=25.0, **kw):
    return {"product_id": product_id, "product_name": name, "quantity": qty, "unit_price": price, **kw}

@pytest.fixture()
def checkout_body(company):
    def _body(**kw):
        body = {
            "company_id": company.id,
            "customer": {"name": "Ana Souza", "email": "ana@example.com", "phone": "(11) 98888-7777"},
            "items": [line(qty=2)],
            "payment_method": "CASH",
            "address": dict(ADDRESS),
        }
        body.update(kw)
        return body
    return _body


def jprint(step, r):
    """Helper to print response and assert on failure."""
    assert 200 <= r.status_code < 300, f"{step} -> {r.status_code}: {r.text}"
    return r.json() if r.headers.get("content-type","").startswith("application/json") else r.text
