# Pydantic models (request/response DTOs) used by the API layer.
# Keep models minimal and serializable; business logic lives in the engine modules.
from pydantic import BaseModel, Field, ConfigDict, field_validator, EmailStr
from typing import Any, Dict, List, Literal, Optional
from datetime import date, datetime


BookingStatus = Literal["pending", "approved", "active", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentKind = Literal["COMPLETE", "FAILED", "REFUNDED"]


# Vehicles
# Attributes supplied by a host when listing a vehicle
class VehicleCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    daily_rate_cents: int = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v: str) -> str:
        # Trim surrounding whitespace before validation
        if isinstance(v, str):
            v = v.strip()
        return v

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().upper()
        return v


class VehicleRead(BaseModel):
    id: int
    host_id: int
    title: str
    daily_rate_cents: int
    currency: str
    approval_status: Literal["pending", "approved", "rejected"]

    model_config = ConfigDict(from_attributes=True)


# Bookings
# Request payload for creating a booking; the Idempotency-Key header may be used instead
class BookingCreate(BaseModel):
    vehicle_id: int = Field(..., ge=1)
    start_date: date
    end_date: date
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


# API response for a booking record
class BookingRead(BaseModel):
    booking_ref: str
    vehicle_id: int
    renter_id: int
    host_id: int
    start_date: date
    end_date: date
    status: BookingStatus
    payment_status: PaymentStatus
    base_price_cents: int
    service_fee_cents: int
    insurance_fee_cents: int
    total_price_cents: int
    currency: str = "USD"
    expires_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee_cents: Optional[int] = None
    refund_amount_cents: Optional[int] = None
    cancelled_by: Optional[str] = None
    version: int

    model_config = ConfigDict(from_attributes=True)


# Requested status change for POST /bookings/{ref}/transition
class TransitionRequest(BaseModel):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=255)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


# Intervals and availability
class IntervalRead(BaseModel):
    vehicle_id: int
    start_date: date
    end_date: date

    model_config = ConfigDict(from_attributes=True)


class AvailabilityResponse(BaseModel):
    vehicle_id: int
    start_date: date
    end_date: date
    available: bool


# Payments
# Normalized provider event accepted by POST /payments/events
class PaymentEventIn(BaseModel):
    provider_event_id: str = Field(..., min_length=1, max_length=255)
    booking_ref: str = Field(..., min_length=1, max_length=32)
    kind: PaymentKind
    amount_cents: int


class PaymentEventResult(BaseModel):
    outcome: Literal["applied", "duplicate", "unmatched", "ignored"]
    detail: Optional[str] = None
    booking: Optional[BookingRead] = None


class PaymentEventRead(BaseModel):
    provider_event_id: str
    booking_ref: str
    kind: str
    amount_cents: int
    outcome: str
    detail: Optional[str] = None
    received_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Payment intent details for client-side Stripe PaymentElement
class PaymentInfoResponse(BaseModel):
    booking_ref: str
    client_secret: str
    amount_cents: int
    currency: str
    expires_at: Optional[datetime] = None


class FinalizePaymentResponse(BaseModel):
    status: str
    booking: Optional[BookingRead] = None


# Notifications
class NotificationRead(BaseModel):
    id: int
    booking_ref: Optional[str] = None
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Authentication and user models

# User roles within the system
Role = Literal["renter", "host", "admin"]


# Common user fields shared by create/read
class UserBase(BaseModel):
    email: EmailStr
    role: Role

    # Normalize email input to lowercase without surrounding whitespace
    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# Request payload for user registration
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Role = "renter"

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# API response for a user record
class UserRead(UserBase):
    id: int

    model_config = ConfigDict(from_attributes=True)


# Request payload for logging in
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# OAuth2-style token response bundled with the current user profile
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class BookingList(BaseModel):
    items: List[BookingRead]
