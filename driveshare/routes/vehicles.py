# Vehicle listing endpoints plus read-only views of the interval store.
# Hosts manage their own listings; admins approve them before they become bookable.
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import intervals, models, schemas
from .auth import get_current_user_optional, require_admin, require_host
from ..rate_limit import rate_limit

router = APIRouter()


def _get_vehicle(db: Session, vehicle_id: int) -> models.Vehicle:
    vehicle = db.get(models.Vehicle, vehicle_id)
    if not vehicle:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return vehicle


@router.get("/vehicles", response_model=List[schemas.VehicleRead])
def list_vehicles(db: Session = Depends(get_db), user: Optional[models.User] = Depends(get_current_user_optional)):
    """
    List vehicles, newest first.

    - Hosts see their own listings in every approval state.
    - Admins see everything.
    - Everyone else sees approved listings only.
    """
    q = db.query(models.Vehicle)
    if user and user.role == "host":
        q = q.filter(models.Vehicle.host_id == user.id)
    elif not (user and user.role == "admin"):
        q = q.filter(models.Vehicle.approval_status == "approved")
    return q.order_by(models.Vehicle.id.desc()).all()


@router.post(
    "/vehicles",
    response_model=schemas.VehicleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def create_vehicle(payload: schemas.VehicleCreate, db: Session = Depends(get_db), user: models.User = Depends(require_host)):
    obj = models.Vehicle(
        host_id=user.id,
        title=payload.title,
        daily_rate_cents=payload.daily_rate_cents,
        currency=payload.currency,
        approval_status="pending",
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@router.post("/vehicles/{vehicle_id}/approve", response_model=schemas.VehicleRead)
def approve_vehicle(vehicle_id: int, db: Session = Depends(get_db), _admin: models.User = Depends(require_admin)):
    obj = _get_vehicle(db, vehicle_id)
    obj.approval_status = "approved"
    db.commit()
    db.refresh(obj)
    return obj


@router.get("/vehicles/{vehicle_id}/intervals", response_model=List[schemas.IntervalRead])
def get_intervals(
    vehicle_id: int,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    """Date ranges currently held on the vehicle (calendar view)."""
    _get_vehicle(db, vehicle_id)
    return intervals.list_active_intervals(db, vehicle_id, date_from=date_from, date_to=date_to)


@router.get("/vehicles/{vehicle_id}/availability", response_model=schemas.AvailabilityResponse)
def get_availability(
    vehicle_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
):
    """Advisory pre-flight check; only booking creation actually reserves the range."""
    if start_date >= end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must be before end_date")
    _get_vehicle(db, vehicle_id)
    return schemas.AvailabilityResponse(
        vehicle_id=vehicle_id,
        start_date=start_date,
        end_date=end_date,
        available=not intervals.overlaps(db, vehicle_id, start_date, end_date),
    )
