# Notification inbox: the durable side of the dispatcher.
# Live pushes are best-effort; clients reconcile against this list after reconnecting.
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from .auth import get_current_user

router = APIRouter()


@router.get("/notifications", response_model=List[schemas.NotificationRead])
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Notification]:
    q = db.query(models.Notification).filter(models.Notification.user_id == user.id)
    if unread_only:
        q = q.filter(models.Notification.is_read == False)  # noqa: E712
    return (
        q.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.post("/notifications/{notification_id}/read", response_model=schemas.NotificationRead)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Notification:
    n = db.get(models.Notification, notification_id)
    # Other users' notifications are indistinguishable from missing ones
    if not n or n.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    if not n.is_read:
        n.is_read = True
        db.commit()
        db.refresh(n)
    return n
