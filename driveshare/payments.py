# Payment provider adapter: Stripe integration with test-friendly fallbacks.
# Creates PaymentIntents, issues refunds, verifies webhooks and polls intent status.
# When Stripe keys are absent, operates in deterministic offline mode for local/dev and CI.
# HTTP endpoints live in routes/payments.py; booking state changes go through the reconciler.
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Tuple

import stripe

from . import models

logger = logging.getLogger("driveshare.payments")

# Environment configuration (blank values disable Stripe features in dev/tests)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()

# Stripe event type -> normalized payment event kind
STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": "COMPLETE",
    "payment_intent.payment_failed": "FAILED",
    "charge.refunded": "REFUNDED",
}

# PaymentIntent status -> normalized kind, for the polling path
STRIPE_INTENT_KINDS = {
    "succeeded": "COMPLETE",
    "canceled": "FAILED",
}


def stripe_enabled() -> bool:
    """
    True only when STRIPE_SECRET_KEY is set.

    When False, helpers use deterministic, network-free behavior for tests/dev.
    """
    return bool(STRIPE_SECRET_KEY)


def _init_stripe() -> None:
    if not stripe_enabled():
        raise RuntimeError("Stripe not enabled (STRIPE_SECRET_KEY not set)")
    stripe.api_key = STRIPE_SECRET_KEY


def create_payment_intent(booking: models.Booking, idempotency_key: str) -> Tuple[str, str]:
    """
    Create a PaymentIntent for the booking total and return (payment_intent_id, client_secret).

    The booking_ref travels in metadata so webhooks can be matched back to the booking.
    """
    if not stripe_enabled():
        return f"pi_test_{booking.booking_ref}", f"test_client_secret_{booking.booking_ref}"

    _init_stripe()
    pi = stripe.PaymentIntent.create(
        amount=int(booking.total_price_cents),
        currency=booking.currency.lower(),
        metadata={"booking_ref": booking.booking_ref, "vehicle_id": str(booking.vehicle_id)},
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        # Some Stripe flows do not return it on create
        pi = stripe.PaymentIntent.retrieve(pi.id)
        client_secret = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return pi.id, client_secret


def retrieve_client_secret(payment_intent_id: str) -> str:
    if not stripe_enabled():
        return f"test_client_secret_{payment_intent_id}"

    _init_stripe()
    pi = stripe.PaymentIntent.retrieve(payment_intent_id)
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return client_secret


def retrieve_intent_status(payment_intent_id: str) -> Tuple[Optional[str], int]:
    """Return (status, amount_cents) of a PaymentIntent; offline mode reports it as processing."""
    if not stripe_enabled():
        return "processing", 0
    _init_stripe()
    pi = stripe.PaymentIntent.retrieve(payment_intent_id)
    return getattr(pi, "status", None), int(getattr(pi, "amount", 0) or 0)


def request_refund(booking: models.Booking, amount_cents: int) -> Optional[str]:
    """
    Ask the provider to refund `amount_cents` of a cancelled booking.

    Called after the cancellation commits. Provider errors are logged for operators and
    never undo the cancellation. Returns the refund id, if any.
    """
    if amount_cents <= 0:
        logger.info("refund.skipped", extra={"booking_ref": booking.booking_ref, "amount_cents": amount_cents})
        return None
    if not stripe_enabled() or not booking.payment_intent_id:
        refund_id = f"manual_refund_{booking.booking_ref}"
        logger.warning(
            "refund.manual",
            extra={"booking_ref": booking.booking_ref, "amount_cents": amount_cents, "refund_id": refund_id},
        )
        return refund_id

    try:
        _init_stripe()
        refund = stripe.Refund.create(
            payment_intent=booking.payment_intent_id,
            amount=int(amount_cents),
            metadata={"booking_ref": booking.booking_ref},
            idempotency_key=f"refund:{booking.booking_ref}",
        )
    except stripe.StripeError as exc:
        logger.error(
            "refund.failed",
            extra={"booking_ref": booking.booking_ref, "amount_cents": amount_cents, "error": str(exc)},
        )
        return None
    logger.info("refund.created", extra={"booking_ref": booking.booking_ref, "refund_id": refund.id})
    return refund.id


def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> Any:
    """Verify the Stripe signature and return the event; raises ValueError or stripe.SignatureVerificationError."""
    return stripe.Webhook.construct_event(
        payload=payload.decode("utf-8"),
        sig_header=sig_header,
        secret=STRIPE_WEBHOOK_SECRET,
    )


def _field(obj: Any, key: str) -> Any:
    # StripeObject supports item access; plain dicts come from tests and offline tooling
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, None)


def normalize_stripe_event(event: Any) -> Optional[Dict[str, Any]]:
    """
    Map a Stripe event to the reconciler's (provider_event_id, booking_ref, kind, amount_cents).

    Returns None for event types the engine does not consume or when metadata is missing.
    """
    kind = STRIPE_EVENT_KINDS.get(_field(event, "type") or "")
    if kind is None:
        return None

    obj: Any = _field(_field(event, "data"), "object")
    booking_ref = _field(_field(obj, "metadata"), "booking_ref")
    if not booking_ref:
        return None

    if kind == "REFUNDED":
        amount = _field(obj, "amount_refunded") or 0
    elif kind == "COMPLETE":
        amount = _field(obj, "amount_received") or _field(obj, "amount") or 0
    else:
        amount = _field(obj, "amount") or 0

    return {
        "provider_event_id": _field(event, "id"),
        "booking_ref": booking_ref,
        "kind": kind,
        "amount_cents": int(amount),
    }
