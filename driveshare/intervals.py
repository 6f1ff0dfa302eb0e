# Interval store: the date ranges held on each vehicle by non-cancelled bookings.
# try_reserve is the only authoritative availability check; overlaps() is advisory.
# Callers must hold vehicle_lock(vehicle_id) around try_reserve/release so that the
# re-read and the insert form one linearizable step per vehicle.
from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models
from .errors import DateRangeUnavailable

logger = logging.getLogger("driveshare.intervals")


def _overlapping(db: Session, vehicle_id: int, start_date: date, end_date: date):
    """
    Query intervals on `vehicle_id` overlapping the half-open range [start_date, end_date).

    Overlap logic: existing.start < end AND existing.end > start
    (a return on day D and a pickup on day D do not overlap).
    """
    return db.query(models.BookingInterval).filter(
        models.BookingInterval.vehicle_id == vehicle_id,
        models.BookingInterval.start_date < end_date,
        models.BookingInterval.end_date > start_date,
    )


def overlaps(db: Session, vehicle_id: int, start_date: date, end_date: date) -> bool:
    """Pre-flight availability check for UIs. Never relied upon to approve a reservation."""
    return _overlapping(db, vehicle_id, start_date, end_date).first() is not None


def try_reserve(db: Session, vehicle_id: int, start_date: date, end_date: date, booking_id: int) -> models.BookingInterval:
    """
    Insert an interval for `booking_id` iff nothing held on the vehicle overlaps it.

    Runs in the caller's transaction; nothing is committed here.
    Raises DateRangeUnavailable on conflict.
    """
    clash: Optional[models.BookingInterval] = _overlapping(db, vehicle_id, start_date, end_date).first()
    if clash is not None:
        logger.info(
            "interval.conflict",
            extra={"vehicle_id": vehicle_id, "start_date": str(start_date), "end_date": str(end_date), "held_by": clash.booking_id},
        )
        raise DateRangeUnavailable(
            "Vehicle is not available for the selected dates",
            vehicle_id=vehicle_id,
        )

    interval = models.BookingInterval(
        vehicle_id=vehicle_id,
        booking_id=booking_id,
        start_date=start_date,
        end_date=end_date,
    )
    db.add(interval)
    db.flush()
    return interval


def release(db: Session, vehicle_id: int, booking_id: int) -> bool:
    """Drop the interval held by `booking_id`. Idempotent: returns False when nothing was held."""
    removed = (
        db.query(models.BookingInterval)
        .filter(
            models.BookingInterval.vehicle_id == vehicle_id,
            models.BookingInterval.booking_id == booking_id,
        )
        .delete(synchronize_session=False)
    )
    return bool(removed)


def list_active_intervals(
    db: Session,
    vehicle_id: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[models.BookingInterval]:
    """Intervals held on the vehicle that intersect [date_from, date_to), ordered by start."""
    q = db.query(models.BookingInterval).filter(models.BookingInterval.vehicle_id == vehicle_id)
    if date_from is not None:
        q = q.filter(models.BookingInterval.end_date > date_from)
    if date_to is not None:
        q = q.filter(models.BookingInterval.start_date < date_to)
    return q.order_by(models.BookingInterval.start_date.asc(), models.BookingInterval.id.asc()).all()
