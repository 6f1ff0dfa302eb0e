# Reservation engine: validates a booking request, prices it, and atomically
# reserves the vehicle's date range while inserting the booking row.
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import intervals, models, pricing
from .errors import (
    BookingError,
    DateRangeUnavailable,
    InvalidBookingRequest,
    InvalidDateRange,
    PastStartDate,
    ReservationTimeout,
    VehicleNotApproved,
    VehicleNotFound,
)
from .locks import lock_vehicle_row, vehicle_lock
from .notifications import NotificationDispatcher
from .state_machine import utc_today

logger = logging.getLogger("driveshare.reservations")

# Payment window (minutes) for a pending booking before the expiry sweeper may cancel it.
HOLD_MINUTES = int(os.getenv("HOLD_MINUTES", "30"))

# Rejections that are stored against the idempotency key and replayed on retry.
# Lock timeouts are transient and are not remembered.
REMEMBERED_REJECTIONS = {
    cls.code: cls
    for cls in (
        InvalidDateRange,
        PastStartDate,
        InvalidBookingRequest,
        VehicleNotFound,
        VehicleNotApproved,
        DateRangeUnavailable,
    )
}


@dataclass
class ReservationResult:
    booking: models.Booking
    # False when an earlier booking with the same idempotency key was returned
    created: bool


def _find_by_key(db: Session, renter_id: int, idempotency_key: str) -> Optional[models.Booking]:
    return (
        db.query(models.Booking)
        .filter(
            models.Booking.renter_id == renter_id,
            models.Booking.idempotency_key == idempotency_key,
        )
        .first()
    )


def validate_dates(start_date: date, end_date: date, today: date) -> None:
    if start_date >= end_date:
        raise InvalidDateRange("start_date must be before end_date")
    if start_date < today:
        raise PastStartDate("start_date cannot be in the past")


def load_bookable_vehicle(db: Session, vehicle_id: int, renter_id: int) -> models.Vehicle:
    vehicle = db.get(models.Vehicle, vehicle_id)
    if vehicle is None:
        raise VehicleNotFound("Vehicle not found", vehicle_id=vehicle_id)
    if vehicle.approval_status != "approved":
        raise VehicleNotApproved("Vehicle is not available for booking", vehicle_id=vehicle_id)
    if vehicle.host_id == renter_id:
        raise InvalidBookingRequest("Hosts cannot book their own vehicles")
    return vehicle


def create_booking(
    db: Session,
    renter_id: int,
    vehicle_id: int,
    start_date: date,
    end_date: date,
    idempotency_key: str,
    *,
    dispatcher: NotificationDispatcher,
    today: Optional[date] = None,
) -> ReservationResult:
    """
    Reserve `vehicle_id` for [start_date, end_date) on behalf of `renter_id`.

    A retried request with the same idempotency key returns the original booking
    unchanged. Otherwise exactly one interval and one booking are committed together,
    or nothing is. Raises InvalidDateRange, PastStartDate, VehicleNotFound,
    VehicleNotApproved, InvalidBookingRequest, DateRangeUnavailable or ReservationTimeout.
    A rejected key keeps raising the same rejection; only a timeout may be retried as is.
    """
    existing = _find_by_key(db, renter_id, idempotency_key)
    if existing is not None:
        return ReservationResult(existing, created=False)
    _replay_rejection(db, renter_id, idempotency_key)

    try:
        return _reserve(db, renter_id, vehicle_id, start_date, end_date, idempotency_key, dispatcher, today)
    except BookingError as exc:
        if exc.code in REMEMBERED_REJECTIONS:
            _remember_rejection(db, renter_id, idempotency_key, exc)
        raise


def _replay_rejection(db: Session, renter_id: int, idempotency_key: str) -> None:
    rejection = (
        db.query(models.BookingRejection)
        .filter(
            models.BookingRejection.renter_id == renter_id,
            models.BookingRejection.idempotency_key == idempotency_key,
        )
        .first()
    )
    if rejection is None:
        return
    logger.info(
        "booking.rejection.replayed",
        extra={"renter_id": renter_id, "idempotency_key": idempotency_key, "error": rejection.code},
    )
    error_cls = REMEMBERED_REJECTIONS.get(rejection.code, InvalidBookingRequest)
    raise error_cls(rejection.message, **(rejection.details or {}))


def _remember_rejection(db: Session, renter_id: int, idempotency_key: str, exc: BookingError) -> None:
    db.rollback()
    try:
        db.add(
            models.BookingRejection(
                renter_id=renter_id,
                idempotency_key=idempotency_key,
                code=exc.code,
                message=exc.message[:255],
                details=exc.details or None,
            )
        )
        db.commit()
    except IntegrityError:
        # A concurrent retry of the same request recorded it first
        db.rollback()


def _reserve(
    db: Session,
    renter_id: int,
    vehicle_id: int,
    start_date: date,
    end_date: date,
    idempotency_key: str,
    dispatcher: NotificationDispatcher,
    today: Optional[date],
) -> ReservationResult:
    validate_dates(start_date, end_date, today or utc_today())
    vehicle = load_bookable_vehicle(db, vehicle_id, renter_id)
    price = pricing.quote(vehicle.daily_rate_cents, start_date, end_date)
    host_id, currency = vehicle.host_id, vehicle.currency or "USD"
    db.rollback()

    with vehicle_lock(vehicle_id, error=ReservationTimeout):
        try:
            lock_vehicle_row(db, vehicle_id, ReservationTimeout)

            # A concurrent retry of the same request may have won the lock first
            existing = _find_by_key(db, renter_id, idempotency_key)
            if existing is not None:
                return ReservationResult(existing, created=False)

            booking = models.Booking(
                booking_ref=uuid4().hex,
                idempotency_key=idempotency_key,
                renter_id=renter_id,
                host_id=host_id,
                vehicle_id=vehicle_id,
                start_date=start_date,
                end_date=end_date,
                base_price_cents=price.base_price_cents,
                service_fee_cents=price.service_fee_cents,
                insurance_fee_cents=price.insurance_fee_cents,
                total_price_cents=price.total_price_cents,
                currency=currency,
                status="pending",
                payment_status="pending",
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=HOLD_MINUTES),
                version=1,
            )
            db.add(booking)
            db.flush()

            intervals.try_reserve(db, vehicle_id, start_date, end_date, booking.id)
            staged = dispatcher.booking_event(db, booking, "booking_created")
            db.commit()
        except DateRangeUnavailable:
            db.rollback()
            raise
        except IntegrityError:
            # Same key committed concurrently on another vehicle: return the winner
            db.rollback()
            existing = _find_by_key(db, renter_id, idempotency_key)
            if existing is not None:
                return ReservationResult(existing, created=False)
            raise
        except Exception:
            db.rollback()
            raise

    logger.info(
        "booking.created",
        extra={
            "booking_ref": booking.booking_ref,
            "vehicle_id": vehicle_id,
            "renter_id": renter_id,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "total_price_cents": booking.total_price_cents,
        },
    )
    dispatcher.deliver(staged)
    return ReservationResult(booking, created=True)
