# Notification dispatcher: durable notification rows plus best-effort live delivery.
#
# Rows are staged in the caller's transaction (record/booking_event) so they commit
# atomically with the transition that produced them; live delivery (deliver) runs
# only after commit and never raises back into the engine.
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("driveshare.notifications")


class LiveTransport(Protocol):
    """Pushes a payload to a user's live sessions; returns False when nobody is listening."""

    def deliver(self, user_id: int, payload: Dict[str, Any]) -> bool:
        ...


class NullTransport:
    def deliver(self, user_id: int, payload: Dict[str, Any]) -> bool:
        return False


# (title, message) per event type and recipient role.
# Placeholders: {vehicle}, {start}, {end}, {total}, {reason}
TEMPLATES: Dict[str, Dict[str, tuple]] = {
    "booking_created": {
        "host": ("New booking request", "{vehicle} was requested for {start} to {end}."),
    },
    "booking_approved": {
        "renter": ("Booking approved", "Your booking of {vehicle} for {start} to {end} is approved."),
        "host": ("Booking approved", "You approved the booking of {vehicle} for {start} to {end}."),
    },
    "booking_active": {
        "renter": ("Trip started", "Enjoy your trip in {vehicle}. Return it by {end}."),
        "host": ("Vehicle handed over", "{vehicle} is out on a trip until {end}."),
    },
    "booking_completed": {
        "renter": ("Trip completed", "Thanks for returning {vehicle}."),
        "host": ("Vehicle returned", "{vehicle} has been returned and the booking is complete."),
    },
    "booking_cancelled": {
        "renter": ("Booking cancelled", "Your booking of {vehicle} for {start} to {end} was cancelled ({reason})."),
        "host": ("Booking cancelled", "The booking of {vehicle} for {start} to {end} was cancelled ({reason})."),
    },
    "payment_received": {
        "renter": ("Payment received", "We received your payment of {total} for {vehicle}."),
        "host": ("Booking paid", "The booking of {vehicle} for {start} to {end} is paid and awaits your approval."),
    },
    "payment_failed": {
        "renter": ("Payment failed", "Your payment for {vehicle} did not go through. Please try again."),
        "host": ("Payment failed", "The renter's payment for {vehicle} on {start} failed."),
    },
    "payment_refunded": {
        "renter": ("Refund issued", "Your payment for {vehicle} has been refunded."),
        "host": ("Payment refunded", "The payment for {vehicle} on {start} was refunded."),
    },
}


def _money(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency}"


def _to_payload(n: models.Notification) -> Dict[str, Any]:
    return {
        "type": "notification",
        "id": n.id,
        "notification_type": n.type,
        "title": n.title,
        "message": n.message,
        "booking_ref": n.booking_ref,
        "data": n.data or {},
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


class NotificationDispatcher:
    def __init__(self, transport: Optional[LiveTransport] = None) -> None:
        self.transport: LiveTransport = transport or NullTransport()

    def record(
        self,
        db: Session,
        user_id: int,
        type_: str,
        title: str,
        message: str,
        booking_ref: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> models.Notification:
        """Stage a notification row in the current transaction (no commit)."""
        n = models.Notification(
            user_id=user_id,
            booking_ref=booking_ref,
            type=type_,
            title=title,
            message=message,
            data=data or {},
            is_read=False,
        )
        db.add(n)
        return n

    def booking_event(self, db: Session, booking: models.Booking, type_: str) -> List[models.Notification]:
        """Stage role-worded notifications for the parties of `booking`."""
        templates = TEMPLATES[type_]
        vehicle = db.get(models.Vehicle, booking.vehicle_id)
        context = {
            "vehicle": vehicle.title if vehicle else f"vehicle #{booking.vehicle_id}",
            "start": booking.start_date.isoformat(),
            "end": booking.end_date.isoformat(),
            "total": _money(booking.total_price_cents, booking.currency),
            "reason": booking.cancellation_reason or "no reason given",
        }
        data = {
            "status": booking.status,
            "payment_status": booking.payment_status,
            "vehicle_id": booking.vehicle_id,
        }
        staged: List[models.Notification] = []
        for role, user_id in (("renter", booking.renter_id), ("host", booking.host_id)):
            if role not in templates:
                continue
            title, message = templates[role]
            staged.append(
                self.record(
                    db,
                    user_id,
                    type_,
                    title,
                    message.format(**context),
                    booking_ref=booking.booking_ref,
                    data=dict(data, role=role),
                )
            )
        return staged

    def deliver(self, notifications: Iterable[models.Notification]) -> int:
        """
        Push committed notifications to live sessions.

        Best-effort: failures are logged and swallowed because the persisted row is
        the durability guarantee. Returns the number of live deliveries.
        """
        delivered = 0
        for n in notifications:
            try:
                if self.transport.deliver(n.user_id, _to_payload(n)):
                    delivered += 1
            except Exception as exc:
                logger.warning(
                    "notification.deliver.failed",
                    extra={"notification_id": getattr(n, "id", None), "user_id": n.user_id, "error": str(exc)},
                )
        return delivered

    def notify(self, db: Session, user_id: int, type_: str, payload: Dict[str, Any]) -> models.Notification:
        """Persist one notification and push it live. Commits the session."""
        n = self.record(
            db,
            user_id,
            type_,
            payload.get("title", type_.replace("_", " ").capitalize()),
            payload.get("message", ""),
            booking_ref=payload.get("booking_ref"),
            data=payload.get("data"),
        )
        db.commit()
        self.deliver([n])
        return n


# Process-wide dispatcher; main.py swaps in the WebSocket transport at startup.
dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency returning the process-wide dispatcher."""
    return dispatcher
