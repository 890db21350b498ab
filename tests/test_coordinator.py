from decimal import Decimal

import pytest

from settlement import coordinator, payouts
from settlement.errors import InvalidTransition, NotFoundError, ValidationError
from settlement.models import Order, Payment, SellerPayout

BUYER = {"name": "Bea Buyer", "email": "buyer@example.com"}
ADDRESSES = {"shipping": "1 Market St, San Francisco, CA"}


def _cart(cart_items):
    return [
        {
            "product_id": item.product_id,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "seller_company_id": item.company_id,
            "cart_item_id": item.id,
        }
        for item in cart_items
    ]


def test_complete_checkout_creates_order_and_authorization(repo, mocker, cart_items, make_intent):
    create = mocker.patch("settlement.checkout.create_payment",
                          return_value=make_intent("pi_checkout", status="requires_payment_method"))

    order, authorization = coordinator.complete_checkout(repo, _cart(cart_items), BUYER, ADDRESSES)

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.payment_intent_id == "pi_checkout"
    assert authorization.client_token == "pi_checkout_secret"
    assert create.call_args[0][0] == 11286


def test_complete_checkout_rejects_multi_merchant_without_side_effects(repo, db, mocker, us_seller, ph_seller):
    create = mocker.patch("settlement.checkout.create_payment")
    cart = [
        {"product_id": 1, "quantity": 1, "unit_price": "20.00", "seller_company_id": us_seller.id},
        {"product_id": 2, "quantity": 1, "unit_price": "20.00", "seller_company_id": ph_seller.id},
    ]

    with pytest.raises(ValidationError):
        coordinator.complete_checkout(repo, cart, BUYER, ADDRESSES)

    assert db.query(Order).count() == 0
    create.assert_not_called()


def test_settle_order_refuses_unpaid_orders(repo, db, make_order, us_seller):
    order = make_order(us_seller)

    with pytest.raises(ValidationError) as exc:
        coordinator.settle_order(repo, order.id)

    assert exc.value.code == "order_not_paid"
    assert db.query(SellerPayout).count() == 0


def test_settle_order_unknown_order(repo):
    with pytest.raises(NotFoundError):
        coordinator.settle_order(repo, 9999)


def test_settle_order_is_repeatable(repo, db, make_order, us_seller):
    order = make_order(us_seller, payment_status="paid")

    ids = {coordinator.settle_order(repo, order.id).id for _ in range(3)}

    assert len(ids) == 1
    assert db.query(SellerPayout).count() == 1


def test_confirm_checkout_settles_once(repo, db, mocker, make_order, make_intent, us_seller):
    order = make_order(us_seller, payment_intent_id="pi_settle")
    mocker.patch("settlement.checkout.retrieve_payment",
                 return_value=make_intent("pi_settle", order_id=order.id))

    first, payout = coordinator.confirm_checkout(repo, "pi_settle", order.id)
    second, same_payout = coordinator.confirm_checkout(repo, "pi_settle", order.id)

    assert first.success and second.already_paid
    assert payout.id == same_payout.id
    assert payout.net_amount == Decimal("100.00")
    assert db.query(Payment).count() == 1
    assert db.query(SellerPayout).count() == 1


def test_confirm_checkout_does_not_settle_failed_payment(repo, db, mocker, make_order, make_intent, us_seller):
    order = make_order(us_seller, payment_intent_id="pi_fail")
    mocker.patch("settlement.checkout.retrieve_payment",
                 return_value=make_intent("pi_fail", status="canceled", order_id=order.id))

    result, payout = coordinator.confirm_checkout(repo, "pi_fail", order.id)

    assert result.success is False
    assert payout is None
    assert db.query(SellerPayout).count() == 0


def test_refund_order_stops_pending_payout(repo, db, mocker, make_order, us_seller):
    order = make_order(us_seller, payment_status="paid", payment_intent_id="pi_refund")
    payout = coordinator.settle_order(repo, order.id)
    refund = mocker.patch("settlement.coordinator.refund_payment")

    refunded = coordinator.refund_order(repo, order.id)

    refund.assert_called_once_with("pi_refund")
    assert refunded.payment_status == "refunded"
    db.refresh(payout)
    assert payout.status == "failed"
    assert payout.failure_reason == "Order refunded"

    payouts.retry(repo, payout)
    with pytest.raises(ValidationError) as exc:
        payouts.process_transfer(repo, payout)
    assert exc.value.code == "order_not_paid"
    assert payout.status == "pending"


def test_refund_order_refuses_once_seller_is_paid(repo, db, mocker, make_order, us_seller):
    order = make_order(us_seller, payment_status="paid", payment_intent_id="pi_paid_out")
    payouts.mark_completed(repo, coordinator.settle_order(repo, order.id))
    refund = mocker.patch("settlement.coordinator.refund_payment")

    with pytest.raises(InvalidTransition) as exc:
        coordinator.refund_order(repo, order.id)

    assert exc.value.code == "payout_in_flight"
    refund.assert_not_called()
    db.refresh(order)
    assert order.payment_status == "paid"


def test_refund_order_without_payment_is_a_no_op(repo, mocker, make_order, us_seller):
    order = make_order(us_seller)
    refund = mocker.patch("settlement.coordinator.refund_payment")

    assert coordinator.refund_order(repo, order.id) is None
    refund.assert_not_called()
