from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import ValidationError
from settlement.models import Payment, utcnow
from settlement.payments import breakdown, revenue_report


def _payment(snapshot, amount="107.90"):
    return Payment(order_id=1, amount=Decimal(amount), currency="usd", status="completed",
                   gateway_response=snapshot)


def test_breakdown_reads_fee_cents_from_snapshot():
    parts = breakdown(_payment({
        "id": "pi_1",
        "metadata": {
            "platform_fee_cents": "790",
            "merchant_amount_cents": "10000",
            "merchant_country": "PH",
            "requires_manual_transfer": "true",
        },
    }))

    assert parts.platform_fee_amount == Decimal("7.90")
    assert parts.merchant_amount == Decimal("100.00")
    assert parts.payment_flow == "separate_transfer"
    assert parts.merchant_country == "PH"


def test_breakdown_detects_destination_charges():
    parts = breakdown(_payment({
        "transfer_data": {"destination": "acct_123"},
        "metadata": {"platform_fee_cents": "790", "merchant_amount_cents": "10000", "merchant_country": "US"},
    }))
    assert parts.payment_flow == "destination_charge"


def test_breakdown_falls_back_to_fee_percentage():
    parts = breakdown(_payment({"metadata": {"platform_fee_percentage": "7.9"}}))
    assert parts.merchant_amount == Decimal("100.00")
    assert parts.platform_fee_amount == Decimal("7.90")


def test_breakdown_without_fee_metadata_attributes_everything_to_merchant():
    parts = breakdown(_payment(None, amount="12.00"))
    assert parts.merchant_amount == Decimal("12.00")
    assert parts.platform_fee_amount == Decimal("0.00")
    assert parts.payment_flow == "platform_charge"
    assert parts.merchant_country is None


@pytest.fixture
def recorded_payments(db, make_order, us_seller, ph_seller):
    def record(order, status, snapshot, processed_at=None):
        payment = Payment(order_id=order.id, amount=order.total_amount, currency="usd", status=status,
                          transaction_id=f"ch_{order.id}_{status}", gateway_response=snapshot,
                          processed_at=processed_at or utcnow())
        db.add(payment)
        db.commit()
        return payment

    us_fees = {"metadata": {"platform_fee_cents": "790", "merchant_amount_cents": "10000",
                            "merchant_country": "US"}}
    record(make_order(us_seller), "completed", us_fees)
    record(make_order(ph_seller, total="53.95"), "completed",
           {"metadata": {"platform_fee_percentage": "7.9", "merchant_country": "PH"}})
    record(make_order(us_seller), "completed", us_fees, processed_at=utcnow() - timedelta(days=60))
    record(make_order(us_seller), "failed", {"metadata": {}})


def test_revenue_report_for_last_month(repo, recorded_payments):
    report = revenue_report(repo, "month")

    assert report.payment_count == 2
    assert report.total_revenue == Decimal("161.85")
    assert report.total_platform_fees == Decimal("11.85")
    assert report.average_transaction == Decimal("80.93")
    assert report.average_fee == Decimal("5.93")
    assert report.fees_by_country == {"US": Decimal("7.90"), "PH": Decimal("3.95")}
    assert report.payments_by_status == {"completed": 3, "failed": 1}


def test_revenue_report_all_time_and_unknown_period(repo, recorded_payments):
    assert revenue_report(repo, "all").payment_count == 3

    with pytest.raises(ValidationError) as exc:
        revenue_report(repo, "decade")
    assert exc.value.code == "invalid_period"
