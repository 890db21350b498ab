"""Entry points used by the checkout UI, the processor webhook and the payout
back-office. Holds no state; it only fixes the order in which the checkout,
refund and payout services run.
"""
import logging

from settlement import checkout, payouts
from settlement.errors import InvalidTransition, NotFoundError, ValidationError
from settlement.stripe_service import refund_payment

logger = logging.getLogger(__name__)


def complete_checkout(repo, cart, buyer_info, addresses, notes=None, fee_percent=None):
    """Validate the cart, create the order and request authorization.

    Returns ``(order, authorization)``. If authorization fails the order is
    left pending and ``request_authorization`` can be retried on it.
    """
    checkout.validate_cart(cart)
    order = checkout.create_order(repo, buyer_info, cart, addresses, notes=notes, fee_percent=fee_percent)
    authorization = checkout.request_authorization(repo, order, buyer_info.get("email"))
    return order, authorization


def confirm_checkout(repo, external_intent_id, order_id):
    """Confirm payment and, once paid, settle the seller payout."""
    result = checkout.confirm_payment(repo, external_intent_id, order_id)
    payout = None
    if result.success:
        payout = payouts.create_from_order(repo, result.order)
    return result, payout


def settle_order(repo, order_id, fee_percent=None, payout_method=None):
    order = repo.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    existing = repo.get_payout_for_order(order.id)
    if existing is not None:
        return existing
    if order.payment_status != "paid":
        raise ValidationError(
            f"Order {order_id} has payment status {order.payment_status}; confirm payment first",
            code="order_not_paid",
        )
    return payouts.create_from_order(repo, order, fee_percent=fee_percent, payout_method=payout_method)


def refund_order(repo, order_id):
    """Refund a paid order and stop its seller payout.

    Returns the refunded order, or None when there is nothing to refund. A
    payout that is processing or completed has already left (or is leaving)
    the platform, so the refund is refused until it has been reversed.
    """
    order = repo.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.payment_status != "paid" or not order.payment_intent_id:
        return None

    payout = repo.get_payout_for_order(order.id)
    if payout is not None and payout.status in ("processing", "completed"):
        raise InvalidTransition(
            f"Payout {payout.id} for order {order.id} is {payout.status}; reverse it before refunding",
            code="payout_in_flight",
        )

    refund_payment(order.payment_intent_id)
    order.payment_status = "refunded"
    if payout is not None and payout.status == "pending":
        payouts.mark_failed(repo, payout, "Order refunded")
    else:
        repo.commit()
    logger.info("Order %s refunded", order.id)
    return order
