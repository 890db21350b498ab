"""Persistence seam used by the settlement services.

Services only talk to the database through ``SettlementRepository``; the
compare-and-create helpers lean on the unique indexes declared in
``settlement.models`` instead of check-then-insert.
"""
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from settlement.models import CartItem, Company, Order, Payment, SellerPayout

logger = logging.getLogger(__name__)


class SettlementRepository:

    def __init__(self, db):
        self.db = db

    # -- reads ---------------------------------------------------------------

    def get_company(self, company_id):
        return self.db.get(Company, company_id)

    def get_order(self, order_id):
        return self.db.get(Order, order_id)

    def get_payment(self, payment_id):
        return self.db.get(Payment, payment_id)

    def get_payout(self, payout_id):
        return self.db.get(SellerPayout, payout_id)

    def get_payout_for_order(self, order_id):
        return self.db.query(SellerPayout).filter_by(order_id=order_id).first()

    def payments_for_order(self, order_id):
        return self.db.query(Payment).filter_by(order_id=order_id).order_by(Payment.id).all()

    def completed_payment_for_order(self, order_id):
        return self.db.query(Payment).filter_by(order_id=order_id, status="completed").first()

    def cart_items(self, cart_item_ids):
        if not cart_item_ids:
            return []
        return self.db.query(CartItem).filter(CartItem.id.in_(cart_item_ids)).order_by(CartItem.id).all()

    def payouts_with_orders(self):
        return self.db.query(SellerPayout).join(Order, SellerPayout.order_id == Order.id).all()

    def payout_totals_by_status(self, company_id):
        rows = (
            self.db.query(SellerPayout.status, func.sum(SellerPayout.net_amount))
            .filter(SellerPayout.company_id == company_id)
            .group_by(SellerPayout.status)
            .all()
        )
        return {status: total for status, total in rows}

    def list_payouts(self, status=None, payout_method=None, company_id=None):
        query = self.db.query(SellerPayout)
        if status is not None:
            query = query.filter(SellerPayout.status == status)
        if payout_method is not None:
            query = query.filter(SellerPayout.payout_method == payout_method)
        if company_id is not None:
            query = query.filter(SellerPayout.company_id == company_id)
        return query.order_by(SellerPayout.id.desc()).all()

    def payout_totals(self, company_id=None):
        """Return ``(count, net total, platform fee total)`` over payouts."""
        query = self.db.query(
            func.count(SellerPayout.id),
            func.sum(SellerPayout.net_amount),
            func.sum(SellerPayout.platform_fee),
        )
        if company_id is not None:
            query = query.filter(SellerPayout.company_id == company_id)
        count, net, fees = query.one()
        return count, net, fees

    def payout_totals_grouped_by(self, column_name, company_id=None):
        column = getattr(SellerPayout, column_name)
        query = self.db.query(column, func.count(SellerPayout.id), func.sum(SellerPayout.net_amount))
        if company_id is not None:
            query = query.filter(SellerPayout.company_id == company_id)
        rows = query.group_by(column).all()
        return {key: (count, total) for key, count, total in rows}

    def list_payments(self, status=None, payment_method=None, company_id=None, since=None):
        query = self.db.query(Payment)
        if company_id is not None:
            query = query.join(Order, Payment.order_id == Order.id).filter(Order.company_id == company_id)
        if status is not None:
            query = query.filter(Payment.status == status)
        if payment_method is not None:
            query = query.filter(Payment.payment_method == payment_method)
        if since is not None:
            query = query.filter(Payment.processed_at >= since)
        return query.order_by(Payment.id.desc()).all()

    def payment_counts_by_status(self):
        rows = self.db.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
        return {status: count for status, count in rows}

    # -- writes --------------------------------------------------------------

    def add_order(self, order, items):
        self.db.add(order)
        self.db.flush()
        for item in items:
            item.order_id = order.id
            self.db.add(item)
        order.order_number = f"ORD-{order.created_at.year}-{order.id:06d}"
        self.db.commit()
        self.db.refresh(order)
        return order

    def set_payment_intent(self, order, intent_id):
        order.payment_intent_id = intent_id
        self.db.commit()

    def claim_paid(self, order_id, paid_at):
        """Flip ``payment_status`` to paid only if it is not paid already.

        Returns True when this call made the transition.
        """
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.payment_status != "paid")
            .update({"payment_status": "paid", "paid_at": paid_at}, synchronize_session=False)
        )
        return updated == 1

    def insert_payment(self, payment):
        self.db.add(payment)
        self.db.flush()
        return payment

    def insert_payout(self, payout):
        """Create ``payout`` or return the row that already owns its order."""
        self.db.add(payout)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_payout_for_order(payout.order_id)
            if existing is None:
                raise
            logger.info("Payout already exists for order %s", payout.order_id)
            return existing
        self.db.refresh(payout)
        return payout

    def delete_cart_items(self, cart_item_ids):
        if not cart_item_ids:
            return 0
        return (
            self.db.query(CartItem)
            .filter(CartItem.id.in_(cart_item_ids))
            .delete(synchronize_session=False)
        )

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def refresh(self, obj):
        self.db.refresh(obj)
