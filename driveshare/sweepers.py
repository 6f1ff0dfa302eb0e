# Background sweepers for periodic lifecycle maintenance.
# Both go through state_machine.transition_booking with the system actor, so an expired
# hold releases its interval exactly like a manual cancellation.
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models
from .db import SessionLocal
from .errors import BookingError
from .notifications import NotificationDispatcher, dispatcher as default_dispatcher
from .state_machine import Actor, transition_booking, utc_today

logger = logging.getLogger("driveshare.sweepers")


def _run(
    db: Optional[Session],
    refs_query,
    requested_status: str,
    reason: Optional[str],
    dispatcher: NotificationDispatcher,
    today: date,
) -> int:
    # Track whether this call created its own DB session (so we can close it)
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True

    try:
        refs: List[str] = [ref for (ref,) in refs_query(db).all()]
        changed = 0
        for ref in refs:
            try:
                transition_booking(
                    db,
                    ref,
                    requested_status,
                    Actor.system(),
                    reason=reason,
                    dispatcher=dispatcher,
                    today=today,
                )
                changed += 1
            except BookingError as exc:
                # Raced with a payment or a manual action; the booking is no longer eligible
                logger.info("sweeper.skipped", extra={"booking_ref": ref, "to": requested_status, "error": exc.code})
        return changed
    finally:
        if created_session:
            db.close()


def sweep_expired_bookings(
    db: Optional[Session] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> int:
    """
    Cancel 'pending' bookings whose payment window has passed without a payment.

    Idempotent across repeated runs. Returns the number of bookings cancelled.
    """
    now = datetime.now(timezone.utc)

    def refs(session: Session):
        return session.query(models.Booking.booking_ref).filter(
            models.Booking.status == "pending",
            models.Booking.payment_status != "paid",
            models.Booking.expires_at != None,  # noqa: E711
            models.Booking.expires_at < now,
        )

    n = _run(db, refs, "cancelled", "expired", dispatcher or default_dispatcher, utc_today())
    if n:
        logger.info("sweeper.expired", extra={"count": n})
    return n


def activate_due_bookings(
    db: Optional[Session] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    today: Optional[date] = None,
) -> int:
    """Move 'approved' bookings whose pickup date has arrived to 'active'."""
    today = today or utc_today()

    def refs(session: Session):
        return session.query(models.Booking.booking_ref).filter(
            models.Booking.status == "approved",
            models.Booking.start_date <= today,
        )

    n = _run(db, refs, "active", None, dispatcher or default_dispatcher, today)
    if n:
        logger.info("sweeper.activated", extra={"count": n})
    return n
