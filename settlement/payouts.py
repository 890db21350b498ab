"""Seller payout ledger.

One payout per paid order, anchored on the unique ``seller_payouts.order_id``.
Amounts follow the additive fee model: the seller is owed the order's base
amount in full (``gross == net``) and the platform fee is tracked alongside.

Status machine::

    pending -> processing -> completed
    pending | processing -> failed
    failed -> pending            (retry)
    failed -> processing         (retry straight into a transfer)
    pending | failed -> completed  (manual settlement / late reconciliation)

``completed`` is terminal. Processing and completion require the order to
still be ``paid``; a refunded order blocks both.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from settlement.config import CURRENCY, PLATFORM_FEE_PERCENT, STRIPE_PAYOUT_COUNTRIES
from settlement.errors import ExternalProcessorError, InvalidTransition, IrrecoverableError, ValidationError
from settlement.fees import quantize, split_additive, to_decimal, to_minor_units
from settlement.models import SellerPayout, utcnow
from settlement.stripe_service import as_dict, create_transfer

logger = logging.getLogger(__name__)

PAYOUT_METHODS = ("stripe", "manual")

TRANSITIONS = {
    "pending": {"processing", "completed", "failed"},
    "processing": {"completed", "failed"},
    "failed": {"pending", "processing", "completed"},
    "completed": set(),
}


@dataclass(frozen=True)
class PayoutStatistics:
    total_payouts: int
    total_amount: Decimal
    total_platform_fees: Decimal
    by_status: dict
    by_method: dict


@dataclass(frozen=True)
class PayoutSummary:
    company_id: int
    total_pending: Decimal
    total_processing: Decimal
    total_completed: Decimal
    total_failed: Decimal
    default_payout_method: str


def default_payout_method(company):
    if company.preferred_payout_method in PAYOUT_METHODS:
        return company.preferred_payout_method
    return "stripe" if (company.country or "").upper() in STRIPE_PAYOUT_COUNTRIES else "manual"


def is_eligible(repo, order):
    if order.payment_status != "paid":
        return False
    return repo.get_payout_for_order(order.id) is None


def create_from_order(repo, order, fee_percent=None, payout_method=None):
    """Return the payout for ``order``, creating it on first call."""
    existing = repo.get_payout_for_order(order.id)
    if existing is not None:
        return existing
    if order.payment_status != "paid":
        raise ValidationError(f"Order {order.id} is not paid; no payout is owed", code="order_not_paid")
    if payout_method is not None and payout_method not in PAYOUT_METHODS:
        raise ValidationError(f"Unknown payout method {payout_method!r}", code="invalid_payout_method")

    fee_percent = order.platform_fee_percentage if fee_percent is None else fee_percent
    if fee_percent is None:
        fee_percent = PLATFORM_FEE_PERCENT
    fee_percent = to_decimal(fee_percent)

    total = quantize(order.total_amount)
    base, fee = split_additive(total, fee_percent)
    if base + fee != total:
        raise IrrecoverableError(f"Payout split for order {order.id} does not reconcile: {base} + {fee} != {total}")

    payout = SellerPayout(
        company_id=order.company_id,
        order_id=order.id,
        gross_amount=base,
        platform_fee=fee,
        net_amount=base,
        currency=(order.currency or CURRENCY).lower(),
        platform_fee_percentage=fee_percent,
        payout_method=payout_method or default_payout_method(order.company),
        status="pending",
        created_at=utcnow(),
    )
    payout = repo.insert_payout(payout)
    logger.info(
        "Payout %s for order %s: net %s, fee %s, method %s",
        payout.id, order.id, payout.net_amount, payout.platform_fee, payout.payout_method,
    )
    return payout


def _transition(payout, target):
    if target not in TRANSITIONS[payout.status]:
        raise InvalidTransition(f"Payout {payout.id} cannot move from {payout.status} to {target}")
    payout.status = target


def _require_paid_order(payout):
    order = payout.order
    if order.payment_status != "paid":
        raise ValidationError(
            f"Order {order.id} is {order.payment_status}; payout {payout.id} cannot be paid out",
            code="order_not_paid",
        )


def mark_processing(repo, payout):
    _require_paid_order(payout)
    _transition(payout, "processing")
    payout.processed_at = None
    payout.failed_at = None
    payout.failure_reason = None
    repo.commit()
    return payout


def mark_completed(repo, payout, processed_at=None):
    _require_paid_order(payout)
    _transition(payout, "completed")
    payout.processed_at = processed_at or utcnow()
    payout.failed_at = None
    payout.failure_reason = None
    repo.commit()
    logger.info("Payout %s completed", payout.id)
    return payout


def mark_failed(repo, payout, reason, failed_at=None):
    _transition(payout, "failed")
    payout.failed_at = failed_at or utcnow()
    payout.failure_reason = reason
    payout.processed_at = None
    repo.commit()
    logger.warning("Payout %s failed: %s", payout.id, reason)
    return payout


def retry(repo, payout):
    if payout.status != "failed":
        raise InvalidTransition(f"Only failed payouts can be retried; payout {payout.id} is {payout.status}")
    _transition(payout, "pending")
    payout.failed_at = None
    payout.failure_reason = None
    payout.stripe_transfer_id = None
    payout.processor_response = None
    repo.commit()
    return payout


def process_transfer(repo, payout):
    """Send a ``stripe`` payout to the seller's connected account.

    ``transfer_attempts`` counts attempts Stripe answered with an error. A
    failure whose outcome is unknown (timeout, rate limit, server error) keeps
    the same idempotency key, so the retry cannot create a second transfer.
    """
    if payout.payout_method != "stripe":
        raise ValidationError(f"Payout {payout.id} is not a processor payout", code="invalid_payout_method")
    if payout.status != "pending":
        raise InvalidTransition(f"Payout {payout.id} is {payout.status}, expected pending")
    _require_paid_order(payout)
    company = payout.company
    if not company.stripe_account_id:
        raise ValidationError(f"Company {company.id} has no connected processor account", code="missing_account")

    attempt = (payout.transfer_attempts or 0) + 1
    mark_processing(repo, payout)
    try:
        transfer = create_transfer(
            to_minor_units(payout.net_amount),
            payout.currency,
            company.stripe_account_id,
            f"payout-{payout.id}-transfer-{attempt}",
            description=f"Payout for order {payout.order.order_number}",
            transfer_group=f"order-{payout.order_id}",
            metadata={
                "payout_id": str(payout.id),
                "order_id": str(payout.order_id),
                "company_id": str(company.id),
                "gross_amount_cents": str(to_minor_units(payout.gross_amount)),
                "platform_fee_cents": str(to_minor_units(payout.platform_fee)),
            },
        )
    except ExternalProcessorError as exc:
        if not exc.outcome_unknown:
            payout.transfer_attempts = attempt
        mark_failed(repo, payout, exc.message)
        raise

    payout.stripe_transfer_id = transfer.id
    payout.processor_response = as_dict(transfer)
    return mark_completed(repo, payout)


def complete_manual(repo, payout, reference, notes=None, details=None):
    if payout.payout_method != "manual":
        raise ValidationError(f"Payout {payout.id} is not a manual payout", code="invalid_payout_method")
    if not reference:
        raise ValidationError("A transfer reference is required", code="missing_reference")
    _require_paid_order(payout)
    payout.manual_reference = reference
    payout.manual_notes = notes
    payout.manual_details = details
    return mark_completed(repo, payout)


def company_summary(repo, company):
    totals = repo.payout_totals_by_status(company.id)

    def total(status):
        return quantize(totals.get(status) or 0)

    return PayoutSummary(
        company_id=company.id,
        total_pending=total("pending"),
        total_processing=total("processing"),
        total_completed=total("completed"),
        total_failed=total("failed"),
        default_payout_method=default_payout_method(company),
    )


def find_unreconciled(repo):
    """Payouts whose ``gross + fee`` does not match what the buyer paid.

    These come from an older fee convention and are reported for migration,
    never rewritten here.
    """
    flagged = []
    for payout in repo.payouts_with_orders():
        expected = quantize(payout.order.total_amount)
        actual = quantize(payout.gross_amount) + quantize(payout.platform_fee)
        if actual != expected:
            logger.warning(
                "Payout %s does not reconcile with order %s: %s + %s != %s",
                payout.id, payout.order_id, payout.gross_amount, payout.platform_fee, expected,
            )
            flagged.append(payout)
    return flagged


def list_payouts(repo, status=None, payout_method=None, company_id=None):
    if status is not None and status not in TRANSITIONS:
        raise ValidationError(f"Unknown payout status {status!r}", code="invalid_status")
    if payout_method is not None and payout_method not in PAYOUT_METHODS:
        raise ValidationError(f"Unknown payout method {payout_method!r}", code="invalid_payout_method")
    return repo.list_payouts(status=status, payout_method=payout_method, company_id=company_id)


def platform_statistics(repo, company_id=None):
    """Payout counts and net totals by status and by method, plus fees kept."""
    count, net, fees = repo.payout_totals(company_id)

    def grouped(keys, rows):
        out = {key: {"count": 0, "total_amount": quantize(0)} for key in keys}
        for key, (n, total) in rows.items():
            out[key] = {"count": n, "total_amount": quantize(total or 0)}
        return out

    return PayoutStatistics(
        total_payouts=count,
        total_amount=quantize(net or 0),
        total_platform_fees=quantize(fees or 0),
        by_status=grouped(TRANSITIONS, repo.payout_totals_grouped_by("status", company_id)),
        by_method=grouped(PAYOUT_METHODS, repo.payout_totals_grouped_by("payout_method", company_id)),
    )
