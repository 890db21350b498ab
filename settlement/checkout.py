"""Checkout orchestration: cart validation, order creation, payment
authorization and idempotent payment confirmation.

Carts must belong to exactly one seller company. The order total is the
seller's base (subtotal + shipping + tax) with the platform fee added on top,
and it never changes once the order exists. Confirmation may arrive twice
(client redirect and processor webhook); both converge on ``confirm_payment``
and only the first one records a payment.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from settlement.config import (
    CURRENCY,
    FLAT_SHIPPING,
    FREE_SHIPPING_THRESHOLD,
    MAX_PLATFORM_FEE_PERCENT,
    MINIMUM_CHARGE,
    PLATFORM_FEE_PERCENT,
    TAX_RATE,
)
from settlement.errors import ConfirmationConflict, IrrecoverableError, NotFoundError, ValidationError
from settlement.fees import apply_additive, quantize, split_additive, to_decimal, to_minor_units
from settlement.models import Order, OrderItem, Payment, utcnow
from settlement.signals import payment_completed
from settlement.stripe_service import as_dict, create_payment, retrieve_payment

logger = logging.getLogger(__name__)

SUCCEEDED_INTENT_STATUSES = ("succeeded",)
FAILED_INTENT_STATUSES = ("requires_payment_method", "canceled")


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal
    seller_company_id: int | None
    specifications: dict | None = None
    cart_item_id: int | None = None

    @classmethod
    def from_mapping(cls, data):
        try:
            quantity = int(data["quantity"])
            unit_price = quantize(data["unit_price"])
            product_id = int(data["product_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid cart line: {exc}", code="invalid_cart_line") from exc
        if quantity < 1 or unit_price < 0:
            raise ValidationError("Cart lines need a positive quantity and a non-negative price",
                                  code="invalid_cart_line")
        return cls(
            product_id=product_id,
            quantity=quantity,
            unit_price=unit_price,
            seller_company_id=data.get("seller_company_id", data.get("company_id")),
            specifications=data.get("specifications"),
            cart_item_id=data.get("cart_item_id"),
        )

    @classmethod
    def from_cart_item(cls, item):
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=quantize(item.unit_price),
            seller_company_id=item.company_id,
            specifications=item.specifications,
            cart_item_id=item.id,
        )

    @property
    def line_total(self):
        return quantize(self.unit_price * self.quantity)


@dataclass(frozen=True)
class CheckoutTotals:
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    base: Decimal
    platform_fee: Decimal
    platform_fee_percentage: Decimal
    total: Decimal


@dataclass(frozen=True)
class Authorization:
    client_token: str
    external_intent_id: str
    amount_breakdown: dict = field(default_factory=dict)


@dataclass
class ConfirmationResult:
    success: bool
    order: Order
    payment: Payment | None = None
    already_paid: bool = False
    processor_status: str | None = None
    message: str | None = None


def _as_lines(items):
    return [item if isinstance(item, CartLine) else CartLine.from_mapping(item) for item in items]


def _fee_percent(fee_percent):
    fee_percent = PLATFORM_FEE_PERCENT if fee_percent is None else to_decimal(fee_percent)
    if fee_percent < 0 or fee_percent > MAX_PLATFORM_FEE_PERCENT:
        raise ValidationError(
            f"Platform fee percentage must be between 0 and {MAX_PLATFORM_FEE_PERCENT}",
            code="invalid_fee_percent",
        )
    return fee_percent


def validate_cart(items):
    """Return the single seller company id the cart belongs to."""
    lines = _as_lines(items)
    if not lines:
        raise ValidationError("Cart is empty", code="empty_cart")
    if any(line.seller_company_id is None for line in lines):
        raise ValidationError("Every cart item must belong to a seller company", code="missing_company")
    companies = {int(line.seller_company_id) for line in lines}
    if len(companies) > 1:
        raise ValidationError(
            "Cart contains items from more than one seller; check out one seller at a time",
            code="multi_merchant_cart",
        )
    return companies.pop()


def quote_totals(items, fee_percent=None):
    lines = _as_lines(items)
    fee_percent = _fee_percent(fee_percent)
    subtotal = quantize(sum((line.line_total for line in lines), Decimal("0")))
    shipping = Decimal("0.00") if subtotal > FREE_SHIPPING_THRESHOLD else quantize(FLAT_SHIPPING)
    tax = quantize(subtotal * TAX_RATE)
    base = subtotal + shipping + tax
    total = apply_additive(base, fee_percent)
    return CheckoutTotals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        base=base,
        platform_fee=total - base,
        platform_fee_percentage=fee_percent,
        total=total,
    )


def create_order(repo, buyer_info, cart, addresses, notes=None, fee_percent=None):
    lines = _as_lines(cart)
    company_id = validate_cart(lines)
    company = repo.get_company(company_id)
    if company is None:
        raise ValidationError(f"Seller company {company_id} does not exist", code="missing_company")

    buyer_name = (buyer_info.get("name") or "").strip()
    buyer_email = (buyer_info.get("email") or "").strip()
    shipping_address = (addresses.get("shipping") or "").strip()
    missing = [
        label for label, value in (
            ("buyer name", buyer_name),
            ("buyer email", buyer_email),
            ("shipping address", shipping_address),
        ) if not value
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", code="missing_fields")
    if "@" not in buyer_email:
        raise ValidationError("Buyer email is not valid", code="invalid_email")

    totals = quote_totals(lines, fee_percent)

    order = Order(
        company_id=company.id,
        buyer_name=buyer_name,
        buyer_email=buyer_email,
        buyer_company=buyer_info.get("company"),
        shipping_address=shipping_address,
        billing_address=(addresses.get("billing") or shipping_address),
        notes=notes,
        subtotal_amount=totals.subtotal,
        shipping_amount=totals.shipping,
        tax_amount=totals.tax,
        platform_fee_percentage=totals.platform_fee_percentage,
        total_amount=totals.total,
        currency=CURRENCY,
        status="pending",
        payment_status="pending",
        created_at=utcnow(),
    )
    items = [
        OrderItem(
            cart_item_id=line.cart_item_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            specifications=line.specifications,
        )
        for line in lines
    ]
    order = repo.add_order(order, items)
    logger.info("Created order %s for company %s, total %s", order.order_number, company.id, order.total_amount)
    return order


def request_authorization(repo, order, customer_email, fee_percent=None):
    if order.payment_status == "paid":
        raise ValidationError(f"Order {order.id} is already paid", code="order_already_paid")
    if order.status == "cancelled":
        raise ValidationError(f"Order {order.id} is cancelled", code="order_cancelled")
    if not customer_email or "@" not in customer_email:
        raise ValidationError("Customer email is required", code="invalid_email")

    frozen_percent = to_decimal(order.platform_fee_percentage)
    if fee_percent is not None and _fee_percent(fee_percent) != frozen_percent:
        raise ValidationError(
            f"Order {order.id} was priced at a {frozen_percent}% platform fee",
            code="fee_percent_mismatch",
        )

    total = quantize(order.total_amount)
    if total < MINIMUM_CHARGE:
        raise ValidationError(
            f"Order total {total} is below the minimum chargeable amount of {MINIMUM_CHARGE}",
            code="below_minimum",
        )

    base, fee = split_additive(total, frozen_percent)
    breakdown = {
        "total_amount": str(total),
        "merchant_amount": str(base),
        "platform_fee": str(fee),
        "platform_fee_percentage": str(frozen_percent),
    }

    idempotency_key = f"order-{order.id}-authorize"
    if order.payment_intent_id:
        existing = retrieve_payment(order.payment_intent_id)
        if existing.status != "canceled":
            return Authorization(existing.client_secret, existing.id, breakdown)
        idempotency_key = f"order-{order.id}-authorize-after-{existing.id}"

    company = order.company
    intent = create_payment(
        to_minor_units(total),
        order.currency,
        idempotency_key,
        description=f"Order {order.order_number} - {company.name}",
        receipt_email=customer_email,
        metadata={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "merchant_company_id": str(company.id),
            "merchant_name": company.name,
            "merchant_country": company.country or "",
            "customer_email": customer_email,
            "platform_fee_percentage": str(frozen_percent),
            "merchant_amount_cents": str(to_minor_units(base)),
            "platform_fee_cents": str(to_minor_units(fee)),
            "requires_manual_transfer": "true",
        },
    )
    repo.set_payment_intent(order, intent.id)
    logger.info("Authorization %s requested for order %s", intent.id, order.id)
    return Authorization(intent.client_secret, intent.id, breakdown)


def _charge_id(intent):
    charge = getattr(intent, "latest_charge", None)
    if charge is not None and not isinstance(charge, str):
        charge = getattr(charge, "id", None)
    return charge or intent.id


def _already_paid(repo, order):
    return ConfirmationResult(
        success=True,
        order=order,
        payment=repo.completed_payment_for_order(order.id),
        already_paid=True,
        processor_status="succeeded",
    )


def _record_success(repo, order, intent):
    expected = to_minor_units(order.total_amount)
    received = getattr(intent, "amount_received", None) or intent.amount
    if received != expected:
        logger.error("Intent %s charged %s cents, order %s expects %s", intent.id, received, order.id, expected)
        raise IrrecoverableError(
            f"Processor amount {received} does not match order {order.id} total {expected}"
        )

    paid_at = utcnow()
    try:
        if not repo.claim_paid(order.id, paid_at):
            repo.rollback()
            repo.refresh(order)
            return _already_paid(repo, order)
        order.payment_status = "paid"
        order.paid_at = paid_at
        if not order.payment_intent_id:
            order.payment_intent_id = intent.id
        payment = repo.insert_payment(Payment(
            order_id=order.id,
            payment_method="card",
            amount=order.total_amount,
            currency=order.currency,
            status="completed",
            transaction_id=_charge_id(intent),
            gateway_response=as_dict(intent),
            processed_at=paid_at,
        ))
        payment_completed.send(repo, order=order, payment=payment)
        repo.commit()
    except IntegrityError:
        # Another confirmation committed the completed payment first
        repo.rollback()
        repo.refresh(order)
        if order.payment_status != "paid":
            raise
        return _already_paid(repo, order)
    except Exception:
        repo.rollback()
        raise

    repo.refresh(order)
    logger.info("Order %s paid via %s (payment %s)", order.id, intent.id, payment.id)
    return ConfirmationResult(success=True, order=order, payment=payment, processor_status=intent.status)


def _record_failure(repo, order, intent):
    error = getattr(intent, "last_payment_error", None)
    message = getattr(error, "message", None) if error is not None else None
    payment = Payment(
        order_id=order.id,
        payment_method="card",
        amount=order.total_amount,
        currency=order.currency,
        status="failed",
        transaction_id=_charge_id(intent),
        gateway_response=as_dict(intent),
        processed_at=utcnow(),
    )
    try:
        repo.insert_payment(payment)
        repo.commit()
    except IntegrityError:
        # Same failed attempt reported twice
        repo.rollback()
        payment = None
    logger.warning("Payment for order %s failed with status %s: %s", order.id, intent.status, message)
    return ConfirmationResult(
        success=False,
        order=order,
        payment=payment,
        processor_status=intent.status,
        message=message or "Payment failed",
    )


def confirm_payment(repo, external_intent_id, order_id):
    order = repo.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")

    if order.payment_status == "paid":
        logger.info("Order %s already paid; confirmation %s is a no-op", order.id, external_intent_id)
        return _already_paid(repo, order)
    if order.payment_status == "refunded" or order.status == "cancelled":
        raise ConfirmationConflict(
            f"Order {order.id} is {order.status}/{order.payment_status} and cannot be confirmed"
        )
    if order.payment_intent_id and order.payment_intent_id != external_intent_id:
        raise ConfirmationConflict(
            f"Intent {external_intent_id} does not belong to order {order.id}"
        )

    intent = retrieve_payment(external_intent_id)
    metadata = as_dict(intent).get("metadata") or {}
    if metadata.get("order_id") not in (None, str(order.id)):
        raise ConfirmationConflict(
            f"Intent {external_intent_id} was issued for order {metadata.get('order_id')}"
        )

    if intent.status in SUCCEEDED_INTENT_STATUSES:
        return _record_success(repo, order, intent)
    if intent.status in FAILED_INTENT_STATUSES:
        return _record_failure(repo, order, intent)
    return ConfirmationResult(
        success=False,
        order=order,
        processor_status=intent.status,
        message="Payment not completed",
    )
