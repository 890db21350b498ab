from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from settlement.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    country = Column(String(2))
    preferred_payout_method = Column(String)          # stripe | manual | None
    stripe_account_id = Column(String)                # connected account for transfers


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    buyer_email = Column(String, index=True, nullable=False)
    product_id = Column(Integer, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"))
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    specifications = Column(JSON)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String, unique=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)

    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False, index=True)
    buyer_company = Column(String)
    shipping_address = Column(Text, nullable=False)
    billing_address = Column(Text)
    notes = Column(Text)

    subtotal_amount = Column(Numeric(10, 2), nullable=False)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    platform_fee_percentage = Column(Numeric(5, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)     # charged to buyer, fee included
    currency = Column(String(3), nullable=False, default="usd")

    status = Column(String, nullable=False, default="pending")           # pending | confirmed | in_production | shipped | delivered | cancelled
    payment_status = Column(String, nullable=False, default="pending")   # pending | partial | paid | refunded
    payment_intent_id = Column(String, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    confirmed_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))

    company = relationship("Company")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    cart_item_id = Column(Integer)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    specifications = Column(JSON)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # One successful payment per order, whichever confirmation path lands first
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
        UniqueConstraint("transaction_id", "status", name="uq_payments_transaction_status"),
    )

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    payment_method = Column(String, nullable=False, default="card")
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False)           # pending | completed | failed
    transaction_id = Column(String, index=True)       # Stripe charge or PaymentIntent ID
    gateway_response = Column(JSON)
    processed_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order")


class SellerPayout(Base):
    __tablename__ = "seller_payouts"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)

    gross_amount = Column(Numeric(10, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False)
    net_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    platform_fee_percentage = Column(Numeric(5, 2), nullable=False)

    payout_method = Column(String, nullable=False)                    # stripe | manual
    status = Column(String, nullable=False, default="pending")        # pending | processing | completed | failed

    stripe_transfer_id = Column(String)
    transfer_attempts = Column(Integer, nullable=False, default=0)   # transfers Stripe rejected; seeds the idempotency key
    processor_response = Column(JSON)
    manual_reference = Column(String)
    manual_notes = Column(Text)
    manual_details = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    failure_reason = Column(Text)

    company = relationship("Company")
    order = relationship("Order")
