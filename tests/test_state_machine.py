# Booking state machine tests: transition legality grid, role guards, the payment gate,
# cancellation fees and refunds, and notification side effects.
from __future__ import annotations

from datetime import date, timedelta

import pytest

from driveshare import intervals, models, reconciler, state_machine
from driveshare.errors import BookingNotFound, NotAllowed, TransitionRejected
from driveshare.reservations import create_booking
from driveshare.state_machine import STATUSES, TRANSITIONS, Actor, transition_booking

TODAY = date(2024, 5, 1)
START = date(2024, 6, 1)
END = date(2024, 6, 4)


@pytest.fixture()
def parties(make_user, make_vehicle):
    host = make_user("host")
    renter = make_user("renter")
    admin = make_user("admin")
    vehicle = make_vehicle(host, daily_rate_cents=10000)
    return host, renter, admin, vehicle


def new_booking(db, renter, vehicle, dispatcher, key="k", start=START, end=END) -> models.Booking:
    return create_booking(db, renter.id, vehicle.id, start, end, key, dispatcher=dispatcher, today=TODAY).booking


def force_state(db, booking: models.Booking, status: str, payment_status: str = "pending") -> models.Booking:
    booking = db.query(models.Booking).filter_by(booking_ref=booking.booking_ref).one()
    booking.status = status
    booking.payment_status = payment_status
    db.commit()
    db.refresh(booking)
    return booking


def pay(db, booking: models.Booking, dispatcher, event_id: str = "evt-pay") -> None:
    result = reconciler.apply_payment_event(db, event_id, booking.booking_ref, "COMPLETE", booking.total_price_cents, dispatcher=dispatcher)
    assert result.outcome == "applied"


def actor_for(role: str, host, renter, admin) -> Actor:
    if role == "system":
        return Actor.system()
    user = {"host": host, "renter": renter, "admin": admin}[role]
    return Actor.from_user(user)


ILLEGAL_PAIRS = [(s, t) for s in STATUSES for t in STATUSES if (s, t) not in TRANSITIONS]


# Every (state, target) pair outside the table is rejected for every role and leaves the booking untouched
@pytest.mark.parametrize("current,target", ILLEGAL_PAIRS)
def test_illegal_transitions_rejected(db, parties, dispatcher, current, target):
    host, renter, admin, vehicle = parties
    booking = force_state(db, new_booking(db, renter, vehicle, dispatcher), current, "paid")
    before = (booking.status, booking.payment_status, booking.version)

    for role in ("renter", "host", "admin", "system"):
        with pytest.raises(TransitionRejected) as info:
            transition_booking(
                db,
                booking.booking_ref,
                target,
                actor_for(role, host, renter, admin),
                reason="because",
                dispatcher=dispatcher,
                today=END,
            )
        assert info.value.current_status == current
        assert info.value.requested == target

    db.expire_all()
    after = db.query(models.Booking).filter_by(booking_ref=booking.booking_ref).one()
    assert (after.status, after.payment_status, after.version) == before


# Roles outside the allowed set for a legal pair are rejected too
@pytest.mark.parametrize("pair,roles", sorted(TRANSITIONS.items()))
def test_roles_outside_allowed_set_rejected(db, parties, dispatcher, pair, roles):
    host, renter, admin, vehicle = parties
    current, target = pair
    booking = force_state(db, new_booking(db, renter, vehicle, dispatcher), current, "paid")

    for role in {"renter", "host", "admin", "system"} - set(roles):
        with pytest.raises(TransitionRejected):
            transition_booking(
                db, booking.booking_ref, target, actor_for(role, host, renter, admin),
                reason="because", dispatcher=dispatcher, today=END,
            )
    db.expire_all()
    assert db.query(models.Booking).filter_by(booking_ref=booking.booking_ref).one().status == current


# Approval requires a confirmed payment
def test_approval_requires_payment(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)

    with pytest.raises(TransitionRejected):
        transition_booking(db, booking.booking_ref, "approved", Actor.from_user(host), dispatcher=dispatcher, today=TODAY)

    pay(db, booking, dispatcher)
    approved = transition_booking(db, booking.booking_ref, "approved", Actor.from_user(admin), dispatcher=dispatcher, today=TODAY)
    assert approved.status == "approved"


# Full happy path through to completion, with the version bumped on each step
def test_lifecycle_to_completion(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    pay(db, booking, dispatcher)
    hostactor = Actor.from_user(host)

    b = transition_booking(db, booking.booking_ref, "approved", hostactor, dispatcher=dispatcher, today=TODAY)
    v1 = b.version
    b = transition_booking(db, booking.booking_ref, "active", hostactor, dispatcher=dispatcher, today=TODAY)
    assert b.version == v1 + 1
    b = transition_booking(db, booking.booking_ref, "completed", hostactor, dispatcher=dispatcher, today=TODAY)
    assert b.status == "completed"
    assert b.payment_status == "paid"


# The system actor only activates once the pickup date arrives
def test_system_activation_waits_for_start_date(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    pay(db, booking, dispatcher)
    transition_booking(db, booking.booking_ref, "approved", Actor.from_user(host), dispatcher=dispatcher, today=TODAY)

    with pytest.raises(TransitionRejected):
        transition_booking(db, booking.booking_ref, "active", Actor.system(), dispatcher=dispatcher, today=START - timedelta(days=1))
    active = transition_booking(db, booking.booking_ref, "active", Actor.system(), dispatcher=dispatcher, today=START)
    assert active.status == "active"


# Cancelling an approved booking needs a reason
def test_approved_cancellation_requires_reason(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    pay(db, booking, dispatcher)
    transition_booking(db, booking.booking_ref, "approved", Actor.from_user(host), dispatcher=dispatcher, today=TODAY)

    with pytest.raises(TransitionRejected):
        transition_booking(db, booking.booking_ref, "cancelled", Actor.from_user(host), reason="  ", dispatcher=dispatcher, today=TODAY)

    cancelled = transition_booking(
        db, booking.booking_ref, "cancelled", Actor.from_user(host), reason="vehicle damaged", dispatcher=dispatcher, today=TODAY
    )
    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "vehicle damaged"
    assert cancelled.cancelled_by == "host"
    # Host cancellations refund in full
    assert cancelled.cancellation_fee_cents == 0
    assert cancelled.refund_amount_cents == cancelled.total_price_cents
    assert cancelled.payment_status == "refunded"
    assert intervals.overlaps(db, vehicle.id, START, END) is False


# Renter cancelling a paid booking shortly before pickup keeps a tiered fee
@pytest.mark.parametrize(
    "days_ahead,fee_percent",
    [(0, 50), (2, 25), (5, 10), (7, 0), (20, 0)],
)
def test_renter_cancellation_fee_tiers(db, parties, dispatcher, days_ahead, fee_percent):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    pay(db, booking, dispatcher)
    today = START - timedelta(days=days_ahead)

    cancelled = transition_booking(
        db, booking.booking_ref, "cancelled", Actor.from_user(renter), reason="plans changed", dispatcher=dispatcher, today=today
    )

    total = cancelled.total_price_cents
    assert cancelled.cancellation_fee_cents == total * fee_percent // 100
    assert cancelled.refund_amount_cents == total - cancelled.cancellation_fee_cents
    assert cancelled.payment_status == "refunded"


# An unpaid cancellation carries no fee and no refund
def test_unpaid_cancellation(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)

    cancelled = transition_booking(db, booking.booking_ref, "cancelled", Actor.from_user(renter), dispatcher=dispatcher, today=START)

    assert cancelled.cancellation_fee_cents == 0
    assert cancelled.refund_amount_cents is None
    assert cancelled.payment_status == "pending"
    assert cancelled.cancellation_reason == "cancelled"


# Renters and hosts may only act on their own bookings
def test_non_party_not_allowed(db, parties, make_user, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    stranger_renter = make_user("renter")
    stranger_host = make_user("host")

    with pytest.raises(NotAllowed):
        transition_booking(db, booking.booking_ref, "cancelled", Actor.from_user(stranger_renter), dispatcher=dispatcher)
    with pytest.raises(NotAllowed):
        transition_booking(db, booking.booking_ref, "cancelled", Actor.from_user(stranger_host), dispatcher=dispatcher)


def test_unknown_booking(db, dispatcher):
    with pytest.raises(BookingNotFound):
        transition_booking(db, "does-not-exist", "cancelled", Actor.system(), dispatcher=dispatcher)


# Accepted transitions notify both parties with role-specific wording
def test_transition_notifies_both_parties(db, parties, dispatcher, transport):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    pay(db, booking, dispatcher)
    transport.sent.clear()

    transition_booking(db, booking.booking_ref, "approved", Actor.from_user(host), dispatcher=dispatcher, today=TODAY)

    rows = (
        db.query(models.Notification)
        .filter_by(booking_ref=booking.booking_ref, type="booking_approved")
        .order_by(models.Notification.user_id)
        .all()
    )
    assert sorted(n.user_id for n in rows) == sorted([renter.id, host.id])
    by_user = {n.user_id: n for n in rows}
    assert by_user[renter.id].title == "Booking approved"
    assert by_user[renter.id].message != by_user[host.id].message
    assert sorted(uid for uid, _ in transport.sent) == sorted([renter.id, host.id])


# A failing live transport never rolls back the committed transition or its notification rows
def test_delivery_failure_does_not_roll_back(db, parties, dispatcher, transport):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    transport.fail = True

    cancelled = transition_booking(db, booking.booking_ref, "cancelled", Actor.from_user(host), reason="no", dispatcher=dispatcher)

    assert cancelled.status == "cancelled"
    db.expire_all()
    assert db.query(models.Notification).filter_by(booking_ref=booking.booking_ref, type="booking_cancelled").count() == 2


# Rejection leaves no notification behind
def test_rejection_writes_no_notifications(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    before = db.query(models.Notification).count()

    with pytest.raises(TransitionRejected):
        transition_booking(db, booking.booking_ref, "completed", Actor.from_user(host), dispatcher=dispatcher)

    assert db.query(models.Notification).count() == before


def test_check_transition_names_unknown_status(db, parties, dispatcher):
    host, renter, admin, vehicle = parties
    booking = new_booking(db, renter, vehicle, dispatcher)
    with pytest.raises(TransitionRejected) as info:
        state_machine.check_transition(booking, "teleported", Actor.from_user(host))
    assert "teleported" in info.value.message
