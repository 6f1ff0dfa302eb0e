# Payment endpoints: normalized event intake for operators, the reconciliation review
# list, and the Stripe webhook. All booking effects go through reconciler.apply_payment_event.
from __future__ import annotations

import logging
from typing import List, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, payments, reconciler, schemas
from ..locks import with_retries
from ..notifications import NotificationDispatcher, get_dispatcher
from ..rate_limit import rate_limit
from .auth import require_admin

logger = logging.getLogger("driveshare.payments")

# Mounted under /api/v1
router = APIRouter()
# Mounted without prefix so the provider-facing URL stays stable
webhook_router = APIRouter()


def _result(result: reconciler.ReconcileResult) -> schemas.PaymentEventResult:
    return schemas.PaymentEventResult(
        outcome=result.outcome,
        detail=result.detail,
        booking=schemas.BookingRead.model_validate(result.booking) if result.booking is not None else None,
    )


@router.post(
    "/payments/events",
    response_model=schemas.PaymentEventResult,
    dependencies=[Depends(rate_limit("payment"))],
)
def post_payment_event(
    payload: schemas.PaymentEventIn,
    db: Session = Depends(get_db),
    _admin: models.User = Depends(require_admin),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> schemas.PaymentEventResult:
    """
    Apply one normalized payment event.

    Always 200: duplicates, unmatched and ignored events are outcomes, not errors.
    Only a persistent lock timeout surfaces (503) so the sender retries.
    """
    result = with_retries(
        lambda: reconciler.apply_payment_event(
            db,
            payload.provider_event_id,
            payload.booking_ref,
            payload.kind,
            payload.amount_cents,
            dispatcher=dispatcher,
        )
    )
    return _result(result)


@router.get("/payments/events", response_model=List[schemas.PaymentEventRead])
def list_payment_events(
    outcome: Optional[str] = Query(None, pattern="^(applied|unmatched|ignored)$"),
    booking_ref: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _admin: models.User = Depends(require_admin),
) -> List[models.PaymentEvent]:
    """Ledger view for operators, newest first; filter by outcome to review anomalies."""
    q = db.query(models.PaymentEvent)
    if outcome:
        q = q.filter(models.PaymentEvent.outcome == outcome)
    if booking_ref:
        q = q.filter(models.PaymentEvent.booking_ref == booking_ref)
    return q.order_by(models.PaymentEvent.id.desc()).offset(offset).limit(limit).all()


@webhook_router.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> dict:
    """
    Verify the Stripe signature and feed consumed event types through the reconciler.

    Returns 200 for every verified event (applied, duplicate, unmatched, ignored or
    not consumed); 4xx only for an invalid payload or signature.
    """
    if not payments.STRIPE_WEBHOOK_SECRET:
        # Accept as a no-op to keep local/dev flows simple
        return {"status": "stripe_disabled"}

    payload = await request.body()
    try:
        event = payments.construct_webhook_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("payment.webhook.invalid", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid webhook: {exc}")

    normalized = payments.normalize_stripe_event(event)
    if normalized is None:
        return {"status": "unhandled_event"}

    result = await run_in_threadpool(
        with_retries,
        lambda: reconciler.apply_payment_event(db, dispatcher=dispatcher, **normalized),
    )
    return {"status": result.outcome}
