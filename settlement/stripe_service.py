import logging

import stripe

from settlement.config import STRIPE_SECRET_KEY, STRIPE_TIMEOUT_SECONDS
from settlement.errors import ExternalProcessorError

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)


# Credentials and account permissions fail the same way on every attempt
CONFIGURATION_ERRORS = (stripe.AuthenticationError, stripe.PermissionError, stripe.IdempotencyError)

# The request may have been applied even though no result came back
UNKNOWN_OUTCOME_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _processor_error(exc):
    # Declines, timeouts and outages can be retried; only configuration faults cannot
    retryable = not isinstance(exc, CONFIGURATION_ERRORS)
    logger.warning("Stripe call failed (%s): %s", type(exc).__name__, exc)
    return ExternalProcessorError(
        f"Payment processor error: {getattr(exc, 'user_message', None) or exc}",
        code=getattr(exc, "code", None) or "processor_error",
        retryable=retryable,
        outcome_unknown=isinstance(exc, UNKNOWN_OUTCOME_ERRORS),
    )


def create_payment(amount: int, currency: str, idempotency_key: str, **params):
    try:
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
            **params
        )
    except stripe.StripeError as exc:
        raise _processor_error(exc) from exc


def retrieve_payment(payment_intent_id: str):
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        raise _processor_error(exc) from exc


def create_transfer(amount: int, currency: str, destination: str, idempotency_key: str, **params):
    try:
        return stripe.Transfer.create(
            amount=amount,
            currency=currency,
            destination=destination,
            idempotency_key=idempotency_key,
            **params
        )
    except stripe.StripeError as exc:
        raise _processor_error(exc) from exc


def refund_payment(payment_intent_id: str):
    try:
        return stripe.Refund.create(payment_intent=payment_intent_id)
    except stripe.StripeError as exc:
        raise _processor_error(exc) from exc


def construct_event(payload, signature, secret):
    return stripe.Webhook.construct_event(payload, signature, secret)


def as_dict(stripe_object):
    """Snapshot a Stripe object (or an already-plain mapping) as a plain dict."""
    if hasattr(stripe_object, "to_dict_recursive"):
        return stripe_object.to_dict_recursive()
    if hasattr(stripe_object, "to_dict"):
        return stripe_object.to_dict()
    if isinstance(stripe_object, dict):
        return dict(stripe_object)
    return {}
