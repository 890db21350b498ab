"""Financial breakdown of recorded payments and the platform revenue report.

The breakdown is read from the processor snapshot stored on the Payment row,
so it can never drift from what the processor was actually asked to charge.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from settlement.errors import ValidationError
from settlement.fees import from_minor_units, quantize, split_additive
from settlement.models import utcnow

# Rolling windows; "all" reports every completed payment
REPORT_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
    "all": None,
}


@dataclass(frozen=True)
class PaymentBreakdown:
    platform_fee_amount: Decimal
    merchant_amount: Decimal
    payment_flow: str
    merchant_country: str | None


@dataclass(frozen=True)
class RevenueReport:
    period: str
    payment_count: int
    total_revenue: Decimal
    total_platform_fees: Decimal
    average_transaction: Decimal
    average_fee: Decimal
    fees_by_country: dict
    payments_by_status: dict


def payment_flow(gateway_response: dict) -> str:
    metadata = gateway_response.get("metadata") or {}
    if gateway_response.get("transfer_data"):
        return "destination_charge"
    if str(metadata.get("requires_manual_transfer", "")).lower() == "true":
        return "separate_transfer"
    return "platform_charge"


def breakdown(payment) -> PaymentBreakdown:
    snapshot = payment.gateway_response or {}
    metadata = snapshot.get("metadata") or {}

    if "platform_fee_cents" in metadata and "merchant_amount_cents" in metadata:
        fee = from_minor_units(int(metadata["platform_fee_cents"]))
        merchant = from_minor_units(int(metadata["merchant_amount_cents"]))
    elif "platform_fee_percentage" in metadata:
        merchant, fee = split_additive(payment.amount, metadata["platform_fee_percentage"])
    else:
        # Snapshot predates fee metadata: nothing was withheld
        merchant, fee = Decimal(payment.amount), Decimal("0.00")

    return PaymentBreakdown(
        platform_fee_amount=fee,
        merchant_amount=merchant,
        payment_flow=payment_flow(snapshot),
        merchant_country=metadata.get("merchant_country"),
    )


def revenue_report(repo, period="month"):
    """Revenue and platform fees over completed payments in ``period``."""
    if period not in REPORT_PERIODS:
        raise ValidationError(f"Unknown report period {period!r}", code="invalid_period")
    window = REPORT_PERIODS[period]
    since = utcnow() - window if window is not None else None

    revenue = Decimal("0.00")
    fees = Decimal("0.00")
    fees_by_country = {}
    payments = repo.list_payments(status="completed", since=since)
    for payment in payments:
        parts = breakdown(payment)
        revenue += quantize(payment.amount)
        fees += parts.platform_fee_amount
        country = parts.merchant_country or "unknown"
        fees_by_country[country] = fees_by_country.get(country, Decimal("0.00")) + parts.platform_fee_amount

    count = len(payments)
    return RevenueReport(
        period=period,
        payment_count=count,
        total_revenue=revenue,
        total_platform_fees=fees,
        average_transaction=quantize(revenue / count) if count else Decimal("0.00"),
        average_fee=quantize(fees / count) if count else Decimal("0.00"),
        fees_by_country=fees_by_country,
        payments_by_status=repo.payment_counts_by_status(),
    )
