from decimal import Decimal

import stripe

from settlement.models import CartItem, Order, Payment, SellerPayout
from conftest import TestingSessionLocal


def test_full_settlement_lifecycle_integration(client, mocker, cart_items, make_intent, us_seller):
    """
    Full lifecycle:
    1. Checkout (API -> DB + Stripe mocked)
    2. Webhook success (Stripe -> API -> DB), payout created
    3. Client-side confirmation lands late and is a no-op
    4. Back-office transfers the payout
    """

    # --- 1. CHECKOUT ---
    intent = make_intent("pi_integration_test_123", status="requires_payment_method", amount=11286)
    mocker.patch("stripe.PaymentIntent.create", return_value=intent)

    payload = {
        "buyer_name": "Bea Buyer",
        "buyer_email": "buyer@example.com",
        "shipping_address": "1 Market St, San Francisco, CA",
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity, "unit_price": str(item.unit_price),
             "seller_company_id": item.company_id, "cart_item_id": item.id}
            for item in cart_items
        ],
    }
    response = client.post("/checkout", json=payload)

    assert response.status_code == 200
    assert response.json()["client_secret"] == "pi_integration_test_123_secret"
    order_id = response.json()["order"]["id"]

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.payment_intent_id == "pi_integration_test_123"
    assert order.payment_status == "pending"
    assert db.query(CartItem).count() == 2
    db.close()

    # --- 2. WEBHOOK SUCCESS ---
    succeeded = make_intent("pi_integration_test_123", amount=11286, order_id=order_id)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=succeeded)
    mock_event = {
        "id": "evt_test",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_integration_test_123", "metadata": {"order_id": str(order_id)}}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    webhook_response = client.post(
        "/webhook",
        content="raw_stripe_payload",
        headers={"stripe-signature": "test_signature"}
    )

    assert webhook_response.status_code == 200
    assert webhook_response.json() == {"ok": True}

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert db.query(CartItem).count() == 0
    payout = db.query(SellerPayout).filter_by(order_id=order_id).one()
    assert payout.gross_amount + payout.platform_fee == order.total_amount
    payout_id = payout.id
    db.close()

    # --- 3. LATE CLIENT CONFIRMATION ---
    confirm = client.post("/payments/confirm",
                          json={"external_intent_id": "pi_integration_test_123", "order_id": order_id})

    assert confirm.status_code == 200
    assert confirm.json()["already_paid"] is True
    assert confirm.json()["payout_id"] == payout_id

    # --- 4. PAYOUT TRANSFER ---
    transfer = stripe.Transfer.construct_from({"id": "tr_integration", "object": "transfer"}, "sk_test")
    mocker.patch("stripe.Transfer.create", return_value=transfer)

    transferred = client.post(f"/payouts/{payout_id}/transfer")

    assert transferred.status_code == 200
    assert transferred.json()["status"] == "completed"
    assert transferred.json()["stripe_transfer_id"] == "tr_integration"

    db = TestingSessionLocal()
    assert db.query(Payment).count() == 1
    assert db.query(SellerPayout).count() == 1
    assert db.get(SellerPayout, payout_id).net_amount == Decimal("104.60")
    db.close()


def test_checkout_database_integrity_on_stripe_error(client, mocker, cart_items):
    """If Stripe fails, the order stays pending without an intent and the cart is untouched."""
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.APIConnectionError("Stripe Service Unavailable"))

    payload = {
        "buyer_name": "Bea Buyer",
        "buyer_email": "buyer@example.com",
        "shipping_address": "1 Market St",
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity, "unit_price": str(item.unit_price),
             "seller_company_id": item.company_id, "cart_item_id": item.id}
            for item in cart_items
        ],
    }
    response = client.post("/checkout", json=payload)

    assert response.status_code == 502
    assert response.json()["retryable"] is True

    db = TestingSessionLocal()
    order = db.query(Order).one()
    assert order.payment_status == "pending"
    assert order.payment_intent_id is None
    assert db.query(Payment).count() == 0
    assert db.query(CartItem).count() == 2
    db.close()
