# SQLAlchemy ORM models for the booking engine (users, vehicles, bookings, remembered
# rejections, intervals, payment ledger, notifications).
# Keep business logic out of models; mutations go through the reservation engine,
# the state machine and the payment reconciler.
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_mixin

from .db import Base


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps automatically managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and updated on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base, TimestampMixin):
    """Platform account.

    Roles:
    - renter: books vehicles
    - host: lists vehicles and approves/hands over/closes bookings on them
    - admin: operator with override rights on bookings and payment review
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, index=True)


class Vehicle(Base, TimestampMixin):
    """Vehicle listed by a host. Read-only reference data for the booking engine."""
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    daily_rate_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    approval_status = Column(String(20), nullable=False, default="pending")  # pending | approved | rejected


class Booking(Base, TimestampMixin):
    """Reservation of a vehicle for a half-open date range [start_date, end_date).

    Status transitions:
    pending -> approved -> active -> completed
       └── cancelled      └── cancelled

    payment_status moves independently: pending -> paid -> refunded, pending -> failed -> paid
    (a declined card may be retried on the same intent).
    The pricing columns are a snapshot taken at creation and never recomputed.
    'version' is bumped on every mutation.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    booking_ref = Column(String(32), nullable=False, unique=True, index=True)
    idempotency_key = Column(String(128), nullable=False)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    base_price_cents = Column(Integer, nullable=False)
    service_fee_cents = Column(Integer, nullable=False)
    insurance_fee_cents = Column(Integer, nullable=False)
    total_price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_intent_id = Column(String(255), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    cancellation_reason = Column(String(255), nullable=True)
    cancellation_fee_cents = Column(Integer, nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("renter_id", "idempotency_key", name="uq_bookings_renter_idempotency_key"),
        Index("ix_bookings_vehicle_start", "vehicle_id", "start_date"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_expires_at", "expires_at"),
    )


class BookingRejection(Base):
    """Rejected create request, remembered so a retry with the same key gets the same answer."""
    __tablename__ = "booking_rejections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    idempotency_key = Column(String(128), nullable=False)
    code = Column(String(40), nullable=False)
    message = Column(String(255), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("renter_id", "idempotency_key", name="uq_booking_rejections_renter_idempotency_key"),
    )


class BookingInterval(Base):
    """Date range currently held on a vehicle by a non-cancelled booking."""
    __tablename__ = "booking_intervals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    # Overlap scans always filter by vehicle first, then by range bounds
    __table_args__ = (
        Index("ix_booking_intervals_vehicle_start", "vehicle_id", "start_date"),
        Index("ix_booking_intervals_vehicle_end", "vehicle_id", "end_date"),
    )


class PaymentEvent(Base):
    """Ledger of payment-provider events; provider_event_id is the dedup key."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_event_id = Column(String(255), nullable=False, unique=True, index=True)
    booking_ref = Column(String(32), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    outcome = Column(String(20), nullable=False, index=True)  # applied | unmatched | ignored
    detail = Column(String(255), nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Notification(Base):
    """Durable per-user notification written for every accepted booking/payment transition."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_ref = Column(String(32), nullable=True, index=True)
    type = Column(String(40), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_created_at", "user_id", "created_at"),
    )
