import hashlib
import hmac
import json
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from checkout_service.core_settings import Settings
from checkout_service.domain.models import Base, Product, Inventory, Cart, CartItem
from checkout_service.infrastructure.db import build_engine, build_session_factory, get_db
from checkout_service.infrastructure.paystack import PaystackClient, VerifyResult, get_gateway
from checkout_service.application.schemas import ShippingAddress
from checkout_service.application.settlement import SettlementMetrics

SECRET = "sk_test_secret"


class FakeGateway(PaystackClient):
    """Paystack client with canned responses; signatures use the real HMAC."""

    def __init__(self):
        super().__init__(secret_key=SECRET, base_url="https://gateway.test")
        self.outcomes = {}
        self.initialized = []
        self.refunds = []
        self.verify_calls = []
        self.refund_error = None

    def succeed(self, reference, transaction_id="4099260516", amount=0):
        self.outcomes[reference] = VerifyResult(reference, "success", amount, "Approved", transaction_id)

    def fail(self, reference, reason="Declined", status="failed"):
        self.outcomes[reference] = VerifyResult(reference, status, 0, reason, None)

    def initialize(self, email, amount, reference, metadata=None):
        self.initialized.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        return {
            "authorization_url": f"https://checkout.gateway.test/{reference}",
            "access_code": "acc_123",
            "reference": reference,
        }

    def verify(self, reference):
        self.verify_calls.append(reference)
        return self.outcomes[reference]

    def refund(self, transaction_id, amount, reason=None):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append({"transaction": transaction_id, "amount": amount, "reason": reason})
        return {"status": "pending"}

    def sign(self, body: bytes) -> str:
        return hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    def event(self, name: str, **data) -> bytes:
        return json.dumps({"event": name, "data": data}).encode()


class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def product(self, name="Widget", price="1000", on_hand=5, reserved=0, threshold=1,
                is_active=True, image_url="https://img.test/widget.png") -> int:
        with self.session_factory() as db:
            product = Product(name=name, price=Decimal(price), is_active=is_active, image_url=image_url)
            db.add(product)
            db.flush()
            db.add(Inventory(product_id=product.id, on_hand=on_hand, reserved=reserved,
                             low_stock_threshold=threshold))
            db.commit()
            return product.id

    def cart(self, user_id: int, *lines, price=None) -> None:
        with self.session_factory() as db:
            cart = db.query(Cart).filter(Cart.user_id == user_id).first()
            if cart is None:
                cart = Cart(user_id=user_id)
                db.add(cart)
            for product_id, quantity in lines:
                shown = price if price is not None else db.get(Product, product_id).price
                cart.items.append(CartItem(product_id=product_id, quantity=quantity, price=Decimal(shown)))
            db.commit()

    def stock(self, product_id: int) -> Inventory:
        with self.session_factory() as db:
            return db.query(Inventory).filter(Inventory.product_id == product_id).one()

    def cart_size(self, user_id: int) -> int:
        with self.session_factory() as db:
            return db.query(CartItem).join(Cart).filter(Cart.user_id == user_id).count()

    def set_price(self, product_id: int, price: str) -> None:
        with self.session_factory() as db:
            db.get(Product, product_id).price = Decimal(price)
            db.commit()


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(engine):
    # Plain deferred transactions so assertions can read while a test session
    # still holds its BEGIN IMMEDIATE write lock
    plain = create_engine(engine.url, connect_args={"check_same_thread": False})
    yield Seeder(build_session_factory(plain))
    plain.dispose()


@pytest.fixture
def settings():
    return Settings(PAYSTACK_SECRET_KEY=SECRET, DATABASE_URL="sqlite://")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def metrics():
    return SettlementMetrics()


@pytest.fixture
def shipping():
    return ShippingAddress(
        full_name="Ada Obi",
        phone="+2348000000000",
        address="12 Marina Road",
        city="Lagos",
        state="Lagos",
    )


@pytest.fixture
def client(session_factory, gateway):
    from checkout_service.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
