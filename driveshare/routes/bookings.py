# Booking endpoints: create, read, transition, cancel, and the payment hand-off.
# Domain rules live in reservations/state_machine/reconciler; this module maps HTTP onto them
# and retries lock timeouts before surfacing 503.
from __future__ import annotations

from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, payments, reconciler, schemas
from ..errors import NotAllowed
from ..locks import with_retries
from ..notifications import NotificationDispatcher, get_dispatcher
from ..rate_limit import rate_limit
from ..reservations import create_booking as reserve
from ..state_machine import Actor, get_booking, transition_booking
from .auth import get_current_user, require_renter

router = APIRouter()


def _visible_booking(db: Session, booking_ref: str, user: models.User) -> models.Booking:
    booking = get_booking(db, booking_ref)
    if user.role != "admin" and user.id not in (booking.renter_id, booking.host_id):
        raise NotAllowed("Not allowed to view this booking")
    return booking


@router.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def create_booking(
    payload: schemas.BookingCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user: models.User = Depends(require_renter),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> models.Booking:
    """
    Reserve a vehicle for [start_date, end_date).

    Returns 201 with the new booking, or 200 with the original booking when the
    idempotency key was already used by this renter.
    """
    key = (idempotency_key or payload.idempotency_key or "").strip() or uuid4().hex

    result = with_retries(
        lambda: reserve(
            db,
            user.id,
            payload.vehicle_id,
            payload.start_date,
            payload.end_date,
            key,
            dispatcher=dispatcher,
        )
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return result.booking


@router.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    status_filter: Optional[schemas.BookingStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Booking]:
    """Renters see bookings they made; hosts see bookings on their vehicles; admins see all."""
    q = db.query(models.Booking)
    if user.role == "renter":
        q = q.filter(models.Booking.renter_id == user.id)
    elif user.role == "host":
        q = q.filter(models.Booking.host_id == user.id)
    if status_filter:
        q = q.filter(models.Booking.status == status_filter)

    return (
        q.order_by(models.Booking.start_date.desc(), models.Booking.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.get("/bookings/{booking_ref}", response_model=schemas.BookingRead)
def read_booking(
    booking_ref: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Booking:
    return _visible_booking(db, booking_ref, user)


@router.post(
    "/bookings/{booking_ref}/transition",
    response_model=schemas.BookingRead,
    dependencies=[Depends(rate_limit("write"))],
)
def transition(
    booking_ref: str,
    payload: schemas.TransitionRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> models.Booking:
    actor = Actor.from_user(user)
    return with_retries(
        lambda: transition_booking(
            db,
            booking_ref,
            payload.status,
            actor,
            reason=payload.reason,
            dispatcher=dispatcher,
        )
    )


@router.delete(
    "/bookings/{booking_ref}",
    response_model=schemas.BookingRead,
    dependencies=[Depends(rate_limit("write"))],
)
def cancel_booking(
    booking_ref: str,
    reason: Optional[str] = Query(None, max_length=255),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> models.Booking:
    """
    Shorthand for a transition to 'cancelled'.

    Idempotent: cancelling an already cancelled booking returns it unchanged.
    """
    booking = _visible_booking(db, booking_ref, user)
    if booking.status == "cancelled":
        return booking

    actor = Actor.from_user(user)
    return with_retries(
        lambda: transition_booking(
            db,
            booking_ref,
            "cancelled",
            actor,
            reason=reason or f"cancelled by {user.role}",
            dispatcher=dispatcher,
        )
    )


@router.get("/bookings/{booking_ref}/payment_info", response_model=schemas.PaymentInfoResponse)
def get_payment_info(
    booking_ref: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_renter),
) -> schemas.PaymentInfoResponse:
    """
    Client secret for paying a pending booking.

    The PaymentIntent is created lazily on first call and reused afterwards.
    """
    booking = get_booking(db, booking_ref)
    if booking.renter_id != user.id:
        raise NotAllowed("Not allowed to pay for this booking")
    if booking.status != "pending" or booking.payment_status != "pending":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking is not awaiting payment")

    if booking.payment_intent_id:
        client_secret = payments.retrieve_client_secret(booking.payment_intent_id)
    else:
        idem_key = f"booking:{booking.booking_ref}:v{booking.version or 1}"
        pi_id, client_secret = payments.create_payment_intent(booking, idem_key)
        booking = reconciler.attach_payment_intent(db, booking, pi_id)

    return schemas.PaymentInfoResponse(
        booking_ref=booking.booking_ref,
        client_secret=client_secret,
        amount_cents=booking.total_price_cents,
        currency=booking.currency,
        expires_at=booking.expires_at,
    )


@router.post(
    "/bookings/{booking_ref}/finalize_payment",
    response_model=schemas.FinalizePaymentResponse,
    dependencies=[Depends(rate_limit("payment"))],
)
def finalize_payment(
    booking_ref: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> schemas.FinalizePaymentResponse:
    """
    Polling fallback for when the webhook is delayed.

    Retrieves the PaymentIntent and feeds its terminal status through the reconciler
    under a synthesized event id; a webhook reporting the same outcome later is recorded as ignored.
    """
    booking = _visible_booking(db, booking_ref, user)
    if not booking.payment_intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No payment has been started for this booking")

    intent_status, amount_cents = payments.retrieve_intent_status(booking.payment_intent_id)
    kind = payments.STRIPE_INTENT_KINDS.get(intent_status or "")
    if kind is None:
        return schemas.FinalizePaymentResponse(
            status=intent_status or "unknown",
            booking=schemas.BookingRead.model_validate(booking),
        )

    event_id = f"poll:{booking.payment_intent_id}:{intent_status}"
    result = with_retries(
        lambda: reconciler.apply_payment_event(
            db,
            event_id,
            booking_ref,
            kind,
            amount_cents,
            dispatcher=dispatcher,
        )
    )
    return schemas.FinalizePaymentResponse(
        status=result.outcome,
        booking=schemas.BookingRead.model_validate(result.booking or get_booking(db, booking_ref)),
    )
