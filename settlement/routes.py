from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from settlement import checkout, coordinator, payouts
from settlement.auth import can_view_company, require_back_office, verify_token
from settlement.database import SessionLocal
from settlement.errors import NotFoundError, ValidationError
from settlement.payments import breakdown, revenue_report
from settlement.repository import SettlementRepository

router = APIRouter()


class CartLineIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    seller_company_id: int | None = None
    specifications: dict | None = None
    cart_item_id: int | None = None


class BuyerFields(BaseModel):
    buyer_name: str
    buyer_email: str
    buyer_company: str | None = None
    shipping_address: str
    billing_address: str | None = None
    notes: str | None = None

    def buyer_info(self):
        return {"name": self.buyer_name, "email": self.buyer_email, "company": self.buyer_company}

    def addresses(self):
        return {"shipping": self.shipping_address, "billing": self.billing_address}


class CheckoutRequest(BuyerFields):
    items: list[CartLineIn]


class OrderRequest(BuyerFields):
    seller_company_id: int
    line_items: list[CartLineIn]
    platform_fee_percent: Decimal | None = None


class AuthorizationRequest(BaseModel):
    order_id: int
    customer_email: str
    platform_fee_percent: Decimal | None = None


class ConfirmationRequest(BaseModel):
    external_intent_id: str
    order_id: int


class PayoutRequest(BaseModel):
    order_id: int
    platform_fee_percent: Decimal | None = None
    payout_method: str | None = None


class PayoutCompletion(BaseModel):
    processed_at: datetime | None = None


class PayoutFailure(BaseModel):
    reason: str
    failed_at: datetime | None = None


class ManualPayoutCompletion(BaseModel):
    manual_reference: str
    manual_notes: str | None = None
    manual_details: dict | None = None


def _money(value):
    return None if value is None else str(value)


def _when(value):
    return None if value is None else value.isoformat()


def order_out(order):
    return {
        "id": order.id,
        "order_number": order.order_number,
        "company_id": order.company_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "subtotal_amount": _money(order.subtotal_amount),
        "shipping_amount": _money(order.shipping_amount),
        "tax_amount": _money(order.tax_amount),
        "platform_fee_percentage": _money(order.platform_fee_percentage),
        "total_amount": _money(order.total_amount),
        "currency": order.currency,
        "confirmed_at": _when(order.confirmed_at),
        "paid_at": _when(order.paid_at),
    }


def payment_out(payment):
    parts = breakdown(payment)
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "payment_method": payment.payment_method,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "transaction_id": payment.transaction_id,
        "processed_at": _when(payment.processed_at),
        "platform_fee_amount": _money(parts.platform_fee_amount),
        "merchant_amount": _money(parts.merchant_amount),
        "payment_flow": parts.payment_flow,
        "merchant_country": parts.merchant_country,
    }


def payout_out(payout):
    return {
        "id": payout.id,
        "company_id": payout.company_id,
        "order_id": payout.order_id,
        "gross_amount": _money(payout.gross_amount),
        "platform_fee": _money(payout.platform_fee),
        "net_amount": _money(payout.net_amount),
        "currency": payout.currency,
        "platform_fee_percentage": _money(payout.platform_fee_percentage),
        "payout_method": payout.payout_method,
        "status": payout.status,
        "stripe_transfer_id": payout.stripe_transfer_id,
        "manual_reference": payout.manual_reference,
        "processed_at": _when(payout.processed_at),
        "failed_at": _when(payout.failed_at),
        "failure_reason": payout.failure_reason,
    }


def summary_out(summary):
    return {
        "company_id": summary.company_id,
        "total_pending": _money(summary.total_pending),
        "total_processing": _money(summary.total_processing),
        "total_completed": _money(summary.total_completed),
        "total_failed": _money(summary.total_failed),
        "default_payout_method": summary.default_payout_method,
    }


def _order_or_404(repo, order_id):
    order = repo.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _payout_or_404(repo, payout_id):
    payout = repo.get_payout(payout_id)
    if payout is None:
        raise NotFoundError(f"Payout {payout_id} not found")
    return payout


def _company_or_404(repo, company_id):
    company = repo.get_company(company_id)
    if company is None:
        raise NotFoundError(f"Company {company_id} not found")
    return company


# -- checkout ------------------------------------------------------------------

@router.post("/checkout")
def checkout_api(request: CheckoutRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        order, authorization = coordinator.complete_checkout(
            repo,
            [item.model_dump() for item in request.items],
            request.buyer_info(),
            request.addresses(),
            notes=request.notes,
        )
        return {
            "order": order_out(order),
            "client_secret": authorization.client_token,
            "payment_intent_id": authorization.external_intent_id,
            "amount_breakdown": authorization.amount_breakdown,
        }
    finally:
        db.close()


@router.post("/orders", status_code=201)
def create_order_api(request: OrderRequest, auth=Depends(verify_token)):
    items = []
    for item in request.line_items:
        line = item.model_dump()
        if line["seller_company_id"] is None:
            line["seller_company_id"] = request.seller_company_id
        elif line["seller_company_id"] != request.seller_company_id:
            raise ValidationError("Line items must all belong to the order's seller", code="multi_merchant_cart")
        items.append(line)

    db = SessionLocal()
    try:
        order = checkout.create_order(
            SettlementRepository(db),
            request.buyer_info(),
            items,
            request.addresses(),
            notes=request.notes,
            fee_percent=request.platform_fee_percent,
        )
        return order_out(order)
    finally:
        db.close()


@router.get("/orders/{order_id}")
def get_order_api(order_id: int, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        order = _order_or_404(repo, order_id)
        body = order_out(order)
        body["payments"] = [payment_out(p) for p in repo.payments_for_order(order.id)]
        return body
    finally:
        db.close()


@router.post("/payments/authorize")
def authorize_api(request: AuthorizationRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        order = _order_or_404(repo, request.order_id)
        authorization = checkout.request_authorization(
            repo, order, request.customer_email, request.platform_fee_percent
        )
        return {
            "client_secret": authorization.client_token,
            "payment_intent_id": authorization.external_intent_id,
            "amount_breakdown": authorization.amount_breakdown,
        }
    finally:
        db.close()


@router.post("/payments/confirm")
def confirm_api(request: ConfirmationRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        result, payout = coordinator.confirm_checkout(repo, request.external_intent_id, request.order_id)
        return {
            "success": result.success,
            "already_paid": result.already_paid,
            "processor_status": result.processor_status,
            "message": result.message,
            "order": order_out(result.order),
            "payout_id": payout.id if payout is not None else None,
        }
    finally:
        db.close()


@router.get("/payments")
def list_payments_api(status: str | None = None, payment_method: str | None = None,
                      company_id: int | None = None, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        found = SettlementRepository(db).list_payments(
            status=status, payment_method=payment_method, company_id=company_id
        )
        return {"payments": [payment_out(p) for p in found]}
    finally:
        db.close()


@router.get("/payments/statistics")
def payment_statistics_api(period: str = "month", auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        report = revenue_report(SettlementRepository(db), period)
        return {
            "period": report.period,
            "payment_count": report.payment_count,
            "total_revenue": _money(report.total_revenue),
            "total_platform_fees": _money(report.total_platform_fees),
            "average_transaction": _money(report.average_transaction),
            "average_fee": _money(report.average_fee),
            "fees_by_country": {k: _money(v) for k, v in report.fees_by_country.items()},
            "payments_by_status": report.payments_by_status,
        }
    finally:
        db.close()


@router.get("/payments/{payment_id}")
def get_payment_api(payment_id: int, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        payment = SettlementRepository(db).get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment_out(payment)
    finally:
        db.close()


@router.post("/refund")
def refund(order_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        order = coordinator.refund_order(SettlementRepository(db), order_id)
        if order is None:
            return {"message": "Nothing to refund"}
        return {"status": "refunded"}
    finally:
        db.close()


# -- payout back-office --------------------------------------------------------

@router.post("/payouts")
def create_payout_api(request: PayoutRequest, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        payout = coordinator.settle_order(
            SettlementRepository(db),
            request.order_id,
            fee_percent=request.platform_fee_percent,
            payout_method=request.payout_method,
        )
        return payout_out(payout)
    finally:
        db.close()


@router.get("/payouts")
def list_payouts_api(status: str | None = None, payout_method: str | None = None,
                     company_id: int | None = None, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        found = payouts.list_payouts(
            SettlementRepository(db), status=status, payout_method=payout_method, company_id=company_id
        )
        return {"payouts": [payout_out(p) for p in found]}
    finally:
        db.close()


@router.get("/payouts/statistics")
def payout_statistics_api(company_id: int | None = None, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        stats = payouts.platform_statistics(SettlementRepository(db), company_id)

        def grouped(rows):
            return {k: {"count": v["count"], "total_amount": _money(v["total_amount"])} for k, v in rows.items()}

        return {
            "total_payouts": stats.total_payouts,
            "total_amount": _money(stats.total_amount),
            "total_platform_fees": _money(stats.total_platform_fees),
            "by_status": grouped(stats.by_status),
            "by_method": grouped(stats.by_method),
        }
    finally:
        db.close()


@router.get("/payouts/reconciliation")
def reconciliation_api(auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        flagged = payouts.find_unreconciled(SettlementRepository(db))
        return {"unreconciled": [payout_out(p) for p in flagged]}
    finally:
        db.close()


@router.get("/payouts/{payout_id}")
def get_payout_api(payout_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        return payout_out(_payout_or_404(SettlementRepository(db), payout_id))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/processing")
def payout_processing_api(payout_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        return payout_out(payouts.mark_processing(repo, _payout_or_404(repo, payout_id)))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/completed")
def payout_completed_api(payout_id: int, request: PayoutCompletion, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        payout = _payout_or_404(repo, payout_id)
        return payout_out(payouts.mark_completed(repo, payout, request.processed_at))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/failed")
def payout_failed_api(payout_id: int, request: PayoutFailure, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        payout = _payout_or_404(repo, payout_id)
        return payout_out(payouts.mark_failed(repo, payout, request.reason, request.failed_at))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/retry")
def payout_retry_api(payout_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        return payout_out(payouts.retry(repo, _payout_or_404(repo, payout_id)))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/transfer")
def payout_transfer_api(payout_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        return payout_out(payouts.process_transfer(repo, _payout_or_404(repo, payout_id)))
    finally:
        db.close()


@router.post("/payouts/{payout_id}/manual")
def payout_manual_api(payout_id: int, request: ManualPayoutCompletion, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        payout = payouts.complete_manual(
            repo,
            _payout_or_404(repo, payout_id),
            request.manual_reference,
            notes=request.manual_notes,
            details=request.manual_details,
        )
        return payout_out(payout)
    finally:
        db.close()


@router.get("/companies/{company_id}/payouts")
def company_payouts_api(company_id: int, status: str | None = None, claims=Depends(verify_token)):
    if not can_view_company(claims, company_id):
        raise HTTPException(status_code=403, detail="Not allowed to view this company's payouts")
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        company = _company_or_404(repo, company_id)
        found = payouts.list_payouts(repo, status=status, company_id=company.id)
        return {
            "payouts": [payout_out(p) for p in found],
            "summary": summary_out(payouts.company_summary(repo, company)),
        }
    finally:
        db.close()


@router.get("/companies/{company_id}/payouts/summary")
def payout_summary_api(company_id: int, auth=Depends(require_back_office)):
    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        return summary_out(payouts.company_summary(repo, _company_or_404(repo, company_id)))
    finally:
        db.close()
