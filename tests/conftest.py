"""Shared fixtures: SQLite test database, seeded sellers and orders, API client."""
import os
from decimal import Decimal

import pytest

# Must be set before the app modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_settlement_app.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import settlement.auth
from settlement.database import Base
from settlement.main import app as fastapi_app
from settlement.models import CartItem, Company, Order, utcnow
from settlement.repository import SettlementRepository

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_settlement.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def repo(db):
    return SettlementRepository(db)


@pytest.fixture
def us_seller(db):
    company = Company(name="Acme Tooling", country="US", stripe_account_id="acct_us_123")
    db.add(company)
    db.commit()
    return company


@pytest.fixture
def ph_seller(db):
    company = Company(name="Manila Textiles", country="PH")
    db.add(company)
    db.commit()
    return company


@pytest.fixture
def cart_items(db, us_seller):
    items = [
        CartItem(buyer_email="buyer@example.com", product_id=11, company_id=us_seller.id,
                 quantity=2, unit_price=Decimal("25.00"), specifications={"color": "red"}),
        CartItem(buyer_email="buyer@example.com", product_id=12, company_id=us_seller.id,
                 quantity=1, unit_price=Decimal("30.00")),
    ]
    db.add_all(items)
    db.commit()
    return items


@pytest.fixture
def make_order(db):
    """Insert an order directly, bypassing checkout pricing."""
    def _make(company, total="107.90", payment_status="pending", status="pending",
              fee_percent="7.9", payment_intent_id=None):
        order = Order(
            company_id=company.id,
            buyer_name="Bea Buyer",
            buyer_email="buyer@example.com",
            shipping_address="1 Market St, San Francisco, CA",
            billing_address="1 Market St, San Francisco, CA",
            subtotal_amount=Decimal(total),
            shipping_amount=Decimal("0.00"),
            tax_amount=Decimal("0.00"),
            platform_fee_percentage=Decimal(fee_percent),
            total_amount=Decimal(total),
            currency="usd",
            status=status,
            payment_status=payment_status,
            payment_intent_id=payment_intent_id,
            created_at=utcnow(),
            paid_at=utcnow() if payment_status == "paid" else None,
        )
        db.add(order)
        db.flush()
        order.order_number = f"ORD-TEST-{order.id:06d}"
        db.commit()
        return order
    return _make


@pytest.fixture
def make_intent():
    """Build a real Stripe PaymentIntent object without touching the network."""
    def _make(intent_id="pi_test_123", status="succeeded", amount=10790, order_id=None, **extra):
        values = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": amount if status == "succeeded" else 0,
            "currency": "usd",
            "status": status,
            "client_secret": f"{intent_id}_secret",
            "latest_charge": extra.pop("latest_charge", f"ch_{intent_id}"),
            "metadata": {
                "order_id": str(order_id) if order_id is not None else None,
                "platform_fee_percentage": "7.9",
                "platform_fee_cents": "790",
                "merchant_amount_cents": "10000",
                "merchant_country": "US",
                "requires_manual_transfer": "true",
            },
        }
        if order_id is None:
            values["metadata"].pop("order_id")
        values.update(extra)
        return stripe.PaymentIntent.construct_from(values, "sk_test_dummy")
    return _make


@pytest.fixture
def client(monkeypatch):
    # Route every request-scoped session to the test database
    monkeypatch.setattr("settlement.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("settlement.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    claims = {"sub": "tester", "role": "admin"}
    fastapi_app.dependency_overrides[settlement.auth.verify_token] = lambda: claims
    fastapi_app.dependency_overrides[settlement.auth.require_back_office] = lambda: claims

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
