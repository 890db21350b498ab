"""In-process completion signal for paid orders.

Receivers run inside the confirming transaction, so a receiver failure rolls
the confirmation back and a later retry runs every receiver again. They never
run twice for the same order because only the call that flips the order to
paid sends the signal.
"""
import logging

from settlement.models import utcnow

logger = logging.getLogger(__name__)


class Signal:

    def __init__(self, name):
        self.name = name
        self.receivers = []

    def connect(self, receiver):
        if receiver not in self.receivers:
            self.receivers.append(receiver)
        return receiver

    def disconnect(self, receiver):
        if receiver in self.receivers:
            self.receivers.remove(receiver)

    def send(self, repo, **payload):
        for receiver in list(self.receivers):
            logger.debug("Dispatching %s to %s", self.name, receiver.__name__)
            receiver(repo, **payload)


payment_completed = Signal("payment_completed")


@payment_completed.connect
def remove_checked_out_cart_items(repo, order, payment):
    cart_item_ids = [item.cart_item_id for item in order.items if item.cart_item_id]
    removed = repo.delete_cart_items(cart_item_ids)
    logger.info("Removed %s cart item(s) for order %s", removed, order.id)


@payment_completed.connect
def confirm_pending_order(repo, order, payment):
    if order.status == "pending":
        order.status = "confirmed"
        order.confirmed_at = utcnow()
        logger.info("Order %s confirmed after payment %s", order.id, payment.id)
