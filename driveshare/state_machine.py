# Booking state machine: the only place booking status and payment status change.
#
#   pending --(host/admin, paid)--> approved --(host/system)--> active --(host)--> completed
#      |                               |
#      +--(renter/host/admin/system)---+--(host/admin, reason)--> cancelled
#
# The system actor only cancels pending holds that are unpaid and past expires_at.
# Payment sub-state: pending -> paid -> refunded, pending -> failed -> paid. A declined
# attempt leaves the provider intent open, so a later success still settles the booking.
# Each transition runs under the booking's vehicle lock, re-reads the row, checks the
# guard, then commits status, interval release and notifications as one unit.
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from . import intervals, models, payments, pricing
from .errors import BookingNotFound, NotAllowed, TransitionRejected, TransitionTimeout
from .locks import lock_vehicle_row, vehicle_lock
from .notifications import NotificationDispatcher

logger = logging.getLogger("driveshare.state_machine")

STATUSES = ("pending", "approved", "active", "completed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
ROLES = ("renter", "host", "admin", "system")

# (from, to) -> roles allowed to request it
TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    ("pending", "approved"): frozenset({"host", "admin"}),
    ("pending", "cancelled"): frozenset({"renter", "host", "admin", "system"}),
    ("approved", "active"): frozenset({"host", "system"}),
    ("approved", "cancelled"): frozenset({"host", "admin"}),
    ("active", "completed"): frozenset({"host"}),
}

PAYMENT_TRANSITIONS = frozenset({
    ("pending", "paid"),
    ("pending", "failed"),
    ("failed", "paid"),
    ("paid", "refunded"),
})

STATUS_EVENTS = {
    "approved": "booking_approved",
    "active": "booking_active",
    "completed": "booking_completed",
    "cancelled": "booking_cancelled",
}

PAYMENT_EVENTS = {
    "paid": "payment_received",
    "failed": "payment_failed",
    "refunded": "payment_refunded",
}


@dataclass(frozen=True)
class Actor:
    """Who is requesting a transition, as vouched for by the identity layer."""
    role: str
    user_id: Optional[int] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role="system")

    @classmethod
    def from_user(cls, user: models.User) -> "Actor":
        return cls(role=user.role, user_id=user.id)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive; they are stored in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def hold_expired(booking: models.Booking, now: Optional[datetime] = None) -> bool:
    if booking.expires_at is None:
        return False
    return _as_utc(booking.expires_at) <= (now or datetime.now(timezone.utc))


def get_booking(db: Session, booking_ref: str) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.booking_ref == booking_ref).first()
    if booking is None:
        raise BookingNotFound("Booking not found", booking_ref=booking_ref)
    return booking


def check_party(booking: models.Booking, actor: Actor) -> None:
    """Renters and hosts may only act on their own bookings."""
    if actor.role == "renter" and actor.user_id != booking.renter_id:
        raise NotAllowed("Not allowed to modify this booking")
    if actor.role == "host" and actor.user_id != booking.host_id:
        raise NotAllowed("Not allowed to modify this booking")
    if actor.role not in ROLES:
        raise NotAllowed(f"Unknown role {actor.role!r}")


def check_transition(
    booking: models.Booking,
    requested: str,
    actor: Actor,
    reason: Optional[str] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise TransitionRejected naming the violated precondition, or return None."""
    current = booking.status

    def reject(message: str) -> TransitionRejected:
        return TransitionRejected(message, current_status=current, requested=requested)

    if requested not in STATUSES:
        raise reject(f"Unknown status {requested!r}")
    if current in TERMINAL_STATUSES:
        raise reject(f"Booking is {current}; no further transitions are allowed")

    allowed = TRANSITIONS.get((current, requested))
    if allowed is None:
        raise reject(f"Cannot move a booking from {current} to {requested}")
    if actor.role not in allowed:
        raise reject(f"Role {actor.role} may not move a booking from {current} to {requested}")

    if (current, requested) == ("pending", "approved") and booking.payment_status != "paid":
        raise reject("Payment must be confirmed before a booking can be approved")
    if (current, requested) == ("pending", "cancelled") and actor.role == "system":
        if booking.payment_status == "paid":
            raise reject("Paid bookings are not expired")
        if not hold_expired(booking, now):
            raise reject("Payment window has not passed")
    if (current, requested) == ("approved", "active") and actor.role == "system":
        if (today or utc_today()) < booking.start_date:
            raise reject("Pickup date has not been reached")
    if (current, requested) == ("approved", "cancelled") and not (reason and reason.strip()):
        raise reject("A cancellation reason is required once a booking is approved")


def check_payment_transition(booking: models.Booking, new_payment_status: str) -> None:
    current = booking.payment_status
    if (current, new_payment_status) not in PAYMENT_TRANSITIONS:
        raise TransitionRejected(
            f"Cannot move payment from {current} to {new_payment_status}",
            current_status=current,
            requested=new_payment_status,
        )


def apply_payment_status(
    db: Session,
    booking: models.Booking,
    new_payment_status: str,
    dispatcher: NotificationDispatcher,
) -> List[models.Notification]:
    """
    Move the payment sub-state inside the caller's locked transaction.

    Returns the staged notifications; the caller commits and delivers them.
    """
    check_payment_transition(booking, new_payment_status)
    booking.payment_status = new_payment_status
    booking.version = (booking.version or 1) + 1
    return dispatcher.booking_event(db, booking, PAYMENT_EVENTS[new_payment_status])


def _cancel(
    db: Session,
    booking: models.Booking,
    actor: Actor,
    reason: Optional[str],
    today: date,
    dispatcher: NotificationDispatcher,
) -> Tuple[List[models.Notification], Optional[int]]:
    intervals.release(db, booking.vehicle_id, booking.id)

    fee = 0
    if actor.role == "renter" and booking.payment_status == "paid":
        fee = pricing.cancellation_fee(booking.total_price_cents, booking.start_date, today)

    booking.status = "cancelled"
    booking.cancellation_reason = (reason or "").strip() or "cancelled"
    booking.cancellation_fee_cents = fee
    booking.cancelled_by = actor.role
    booking.cancelled_at = datetime.now(timezone.utc)

    staged = dispatcher.booking_event(db, booking, "booking_cancelled")
    refund: Optional[int] = None
    if booking.payment_status == "paid":
        refund = booking.total_price_cents - fee
        booking.refund_amount_cents = refund
        staged += apply_payment_status(db, booking, "refunded", dispatcher)
    return staged, refund


def _apply(
    db: Session,
    booking: models.Booking,
    requested: str,
    actor: Actor,
    reason: Optional[str],
    today: date,
    dispatcher: NotificationDispatcher,
) -> Tuple[List[models.Notification], Optional[int]]:
    if requested == "cancelled":
        staged, refund = _cancel(db, booking, actor, reason, today, dispatcher)
    else:
        booking.status = requested
        staged, refund = dispatcher.booking_event(db, booking, STATUS_EVENTS[requested]), None
    booking.version = (booking.version or 1) + 1
    return staged, refund


def transition_booking(
    db: Session,
    booking_ref: str,
    requested_status: str,
    actor: Actor,
    reason: Optional[str] = None,
    *,
    dispatcher: NotificationDispatcher,
    today: Optional[date] = None,
) -> models.Booking:
    """
    Apply a named status transition to a booking.

    Raises BookingNotFound, NotAllowed, TransitionRejected or TransitionTimeout.
    On rejection the booking is unchanged.
    """
    today = today or utc_today()
    booking = get_booking(db, booking_ref)
    check_party(booking, actor)
    vehicle_id = booking.vehicle_id
    # End the read transaction so the locked re-read below sees the latest commit
    db.rollback()

    with vehicle_lock(vehicle_id, error=TransitionTimeout):
        try:
            lock_vehicle_row(db, vehicle_id, TransitionTimeout)
            booking = (
                db.query(models.Booking)
                .filter(models.Booking.booking_ref == booking_ref)
                .populate_existing()
                .one()
            )
            previous = booking.status
            check_transition(booking, requested_status, actor, reason=reason, today=today)
            staged, refund = _apply(db, booking, requested_status, actor, reason, today, dispatcher)
            db.commit()
        except TransitionRejected as exc:
            db.rollback()
            logger.info(
                "booking.transition.rejected",
                extra={"booking_ref": booking_ref, "requested": requested_status, "role": actor.role, "reason": exc.message},
            )
            raise
        except Exception:
            db.rollback()
            raise

    logger.info(
        "booking.transition",
        extra={
            "booking_ref": booking_ref,
            "from": previous,
            "to": booking.status,
            "role": actor.role,
            "payment_status": booking.payment_status,
            "version": booking.version,
        },
    )
    dispatcher.deliver(staged)
    if refund is not None:
        payments.request_refund(booking, refund)
    return booking
