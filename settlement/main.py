import logging

import stripe
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from settlement import coordinator
from settlement.config import STRIPE_WEBHOOK_SECRET
from settlement.database import Base, SessionLocal, engine
from settlement.errors import (
    ConfirmationConflict,
    ExternalProcessorError,
    InvalidTransition,
    IrrecoverableError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from settlement.logging_config import setup_logging
from settlement.repository import SettlementRepository
from settlement.routes import router
from settlement.stripe_service import as_dict, construct_event

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConfirmationConflict: 409,
    InvalidTransition: 409,
    ExternalProcessorError: 502,
    IrrecoverableError: 500,
}


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    body = {"success": False, "code": exc.code, "detail": exc.message}
    if isinstance(exc, ExternalProcessorError):
        body["retryable"] = exc.retryable
    if isinstance(exc, IrrecoverableError):
        logger.error("Irrecoverable settlement error on %s: %s", request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=status_code, content=body)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        logger.info("Unhandled webhook event %s", event["type"])
        return {"ok": True}

    intent = as_dict(event["data"]["object"])
    raw_order_id = (intent.get("metadata") or {}).get("order_id")
    try:
        order_id = int(raw_order_id)
    except (TypeError, ValueError):
        logger.warning("Webhook intent %s carries no usable order id: %r", intent.get("id"), raw_order_id)
        return {"ok": True}

    db = SessionLocal()
    try:
        repo = SettlementRepository(db)
        if repo.get_order(order_id) is None:
            logger.warning("Webhook intent %s references unknown order %s", intent["id"], order_id)
            return {"ok": True}
        result, payout = coordinator.confirm_checkout(repo, intent["id"], order_id)
        logger.info(
            "Webhook %s for order %s: success=%s already_paid=%s payout=%s",
            event["type"], order_id, result.success, result.already_paid,
            payout.id if payout is not None else None,
        )
    except ConfirmationConflict as exc:
        # Stripe would redeliver forever; the conflict needs a human
        logger.warning("Webhook confirmation conflict for order %s: %s", order_id, exc.message)
    finally:
        db.close()

    return {"ok": True}
