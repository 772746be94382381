import hashlib
import hmac
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEBUG_MODE"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ.pop("ADMIN_IDS", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.routes.routes import get_db
from src.domain.exceptions import GatewayError
from src.infrastructure.db.models import Base
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway, get_payment_gateway
from src.main import app

WEBHOOK_SECRET = "whsec_test"


class FakeGateway(RazorpayGateway):
    """Records order calls instead of hitting Razorpay. Signature checks stay real."""

    def __init__(self):
        super().__init__(
            key_id="rzp_test_key",
            key_secret="rzp_test_secret",
            webhook_secret=WEBHOOK_SECRET,
        )
        self.orders: list[dict] = []
        self.order_status: dict[str, str] = {}
        self.fail_next = False

    def create_order(self, amount, currency, receipt, notes=None):
        if self.fail_next:
            self.fail_next = False
            raise GatewayError("Payment gateway unavailable")
        order = {
            "id": f"order_{len(self.orders) + 1:04d}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        self.orders.append(order)
        return order

    def fetch_order(self, order_id):
        return {"id": order_id, "status": self.order_status.get(order_id, "created")}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_body(order_id: str, status: str, amount: int, payment_id: str = "pay_0001") -> bytes:
    event = {
        "captured": "payment.captured",
        "failed": "payment.failed",
        "authorized": "payment.authorized",
    }.get(status, f"payment.{status}")
    return json.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_id,
                        "status": status,
                        "amount": amount,
                        "currency": "INR",
                    }
                }
            },
        }
    ).encode("utf-8")


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def booking_payload():
    return {
        "user_id": "user-1",
        "items": [{"sku": "AC-SERVICE", "name": "AC service", "qty": 1, "price": 1500}],
        "total": 1500,
        "address": "12 MG Road, Bengaluru",
        "receiver_name": "Asha",
        "receiver_phone": "+919800000001",
        "receiver_email": "asha@example.com",
        "pincode": "560001",
        "preferred_date": "2026-11-01",
        "preferred_slot": "morning",
    }


@pytest.fixture
def signed_webhook():
    def build(order_id: str, status: str, amount: int, payment_id: str = "pay_0001"):
        body = webhook_body(order_id, status, amount, payment_id)
        return body, sign(body)

    return build


@pytest.fixture
def webhook_signer():
    return sign
