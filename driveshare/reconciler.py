# Payment reconciler: applies normalized payment-provider events to bookings.
#
# Tolerates at-least-once and out-of-order delivery:
# - provider_event_id is recorded once in payment_events (dedup ledger);
# - the payment transition is checked against the booking's *current* state and
#   illegal ones are recorded as ignored instead of failing;
# - anomalies (unknown booking, amount mismatch) are recorded as unmatched for
#   operators and never bounced back to the provider.
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import TransitionRejected, TransitionTimeout
from .locks import lock_vehicle_row, vehicle_lock
from .notifications import NotificationDispatcher
from .state_machine import apply_payment_status

logger = logging.getLogger("driveshare.reconciler")

PAYMENT_AMOUNT_TOLERANCE_CENTS = int(os.getenv("PAYMENT_AMOUNT_TOLERANCE_CENTS", "1"))

KIND_TO_PAYMENT_STATUS = {
    "COMPLETE": "paid",
    "FAILED": "failed",
    "REFUNDED": "refunded",
}

APPLIED = "applied"
DUPLICATE = "duplicate"
UNMATCHED = "unmatched"
IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: str
    booking: Optional[models.Booking] = None
    detail: Optional[str] = None


def _already_processed(db: Session, provider_event_id: str) -> bool:
    return (
        db.query(models.PaymentEvent.id)
        .filter(models.PaymentEvent.provider_event_id == provider_event_id)
        .first()
        is not None
    )


def _record(
    db: Session,
    provider_event_id: str,
    booking_ref: str,
    kind: str,
    amount_cents: int,
    outcome: str,
    detail: Optional[str] = None,
) -> None:
    db.add(
        models.PaymentEvent(
            provider_event_id=provider_event_id,
            booking_ref=booking_ref,
            kind=kind,
            amount_cents=amount_cents,
            outcome=outcome,
            detail=detail,
        )
    )


def _payment_applied(db: Session, booking_ref: str) -> bool:
    """True when a COMPLETE for this booking was applied earlier (webhook or polling)."""
    return (
        db.query(models.PaymentEvent.id)
        .filter(
            models.PaymentEvent.booking_ref == booking_ref,
            models.PaymentEvent.kind == "COMPLETE",
            models.PaymentEvent.outcome == APPLIED,
        )
        .first()
        is not None
    )


def _amount_problem(booking: models.Booking, kind: str, amount_cents: int) -> Optional[str]:
    total = booking.total_price_cents
    if kind == "REFUNDED":
        if amount_cents <= 0 or amount_cents > total + PAYMENT_AMOUNT_TOLERANCE_CENTS:
            return f"refund amount {amount_cents} outside (0, {total}]"
        return None
    if abs(amount_cents - total) > PAYMENT_AMOUNT_TOLERANCE_CENTS:
        return f"amount {amount_cents} does not match booking total {total}"
    return None


def _commit_record(
    db: Session,
    provider_event_id: str,
    booking_ref: str,
    kind: str,
    amount_cents: int,
    outcome: str,
    detail: Optional[str],
) -> bool:
    """Persist a ledger row on its own; returns False when another delivery recorded it first."""
    try:
        _record(db, provider_event_id, booking_ref, kind, amount_cents, outcome, detail)
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


def attach_payment_intent(db: Session, booking: models.Booking, payment_intent_id: str) -> models.Booking:
    """Remember the provider intent created for `booking` so refunds and polling can find it."""
    if booking.payment_intent_id == payment_intent_id:
        return booking
    try:
        booking.payment_intent_id = payment_intent_id
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(booking)
    logger.info("payment.intent.attached", extra={"booking_ref": booking.booking_ref, "payment_intent_id": payment_intent_id})
    return booking


def apply_payment_event(
    db: Session,
    provider_event_id: str,
    booking_ref: str,
    kind: str,
    amount_cents: int,
    *,
    dispatcher: NotificationDispatcher,
) -> ReconcileResult:
    """
    Apply one payment-provider event.

    Returns applied, duplicate, unmatched or ignored; only TransitionTimeout escapes,
    so the caller layer can retry the delivery.
    """
    log_extra = {"provider_event_id": provider_event_id, "booking_ref": booking_ref, "kind": kind, "amount_cents": amount_cents}

    if _already_processed(db, provider_event_id):
        logger.info("payment.event.duplicate", extra=log_extra)
        return ReconcileResult(DUPLICATE)

    booking = db.query(models.Booking).filter(models.Booking.booking_ref == booking_ref).first()
    if booking is None:
        logger.warning("payment.event.unmatched", extra=dict(log_extra, detail="unknown booking"))
        if not _commit_record(db, provider_event_id, booking_ref, kind, amount_cents, UNMATCHED, "unknown booking"):
            return ReconcileResult(DUPLICATE)
        return ReconcileResult(UNMATCHED, detail="unknown booking")

    vehicle_id = booking.vehicle_id
    db.rollback()

    staged: List[models.Notification] = []
    with vehicle_lock(vehicle_id, error=TransitionTimeout):
        try:
            lock_vehicle_row(db, vehicle_id, TransitionTimeout)
            if _already_processed(db, provider_event_id):
                db.rollback()
                return ReconcileResult(DUPLICATE)

            booking = (
                db.query(models.Booking)
                .filter(models.Booking.booking_ref == booking_ref)
                .populate_existing()
                .one()
            )
            outcome, detail = APPLIED, None
            target = KIND_TO_PAYMENT_STATUS.get(kind)

            if target is None:
                outcome, detail = UNMATCHED, f"unknown event kind {kind!r}"
            else:
                detail = _amount_problem(booking, kind, amount_cents)
                if detail is not None:
                    outcome = UNMATCHED
                elif kind == "COMPLETE" and booking.status == "cancelled":
                    if _payment_applied(db, booking_ref):
                        outcome, detail = IGNORED, "payment already settled before cancellation"
                    else:
                        outcome, detail = UNMATCHED, "payment captured for a cancelled booking"
                else:
                    try:
                        staged = apply_payment_status(db, booking, target, dispatcher)
                    except TransitionRejected as exc:
                        outcome, detail = IGNORED, exc.message

            _record(db, provider_event_id, booking_ref, kind, amount_cents, outcome, detail)
            db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            db.rollback()
            return ReconcileResult(DUPLICATE)
        except Exception:
            db.rollback()
            raise

    if outcome == APPLIED:
        logger.info(
            "payment.event.applied",
            extra=dict(log_extra, payment_status=booking.payment_status, status=booking.status),
        )
        dispatcher.deliver(staged)
    elif outcome == UNMATCHED:
        logger.warning("payment.event.unmatched", extra=dict(log_extra, detail=detail))
    else:
        logger.info("payment.event.ignored", extra=dict(log_extra, detail=detail, payment_status=booking.payment_status))
    return ReconcileResult(outcome, booking=booking, detail=detail)
