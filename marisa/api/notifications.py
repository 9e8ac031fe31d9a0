import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import get_current_user, require_admin
from marisa.core.database import get_db
from marisa.models.orm import Notification, User
from marisa.services import notifications as svc

logger = logging.getLogger(__name__)
router = APIRouter()


class NotificationIn(BaseModel):
    type: Literal["banner", "modal", "email"]
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    image_url: Optional[str] = None
    target_type: Literal["all", "role", "specific"]
    target_role: Optional[Literal["admin", "tester", "qa", "client"]] = None
    target_user_ids: Optional[List[str]] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def target_fields(self):
        if self.target_type == "role" and not self.target_role:
            raise ValueError("target_role is required when target_type is role")
        if self.target_type == "specific" and not self.target_user_ids:
            raise ValueError("target_user_ids is required when target_type is specific")
        return self

class NotificationUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    message: Optional[str] = Field(default=None, min_length=1)
    image_url: Optional[str] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


def _get(db: Session, notification_id: str) -> Notification:
    n = db.get(Notification, notification_id)
    if n is None:
        raise HTTPException(404, "Notification not found")
    return n


@router.get("")
def my_notifications(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"data": [n.to_dict() for n in svc.visible_notifications(db, user)]}

@router.post("/{notification_id}/dismiss")
def dismiss(notification_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    svc.dismiss(db, _get(db, notification_id), user)
    return {"data": {"message": "Notification dismissed"}}

@router.get("/admin/all")
def all_notifications(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    rows = db.scalars(select(Notification).order_by(Notification.created_at.desc()))
    return {"data": [{**n.to_dict(), "dismissals": len(n.dismissals)} for n in rows]}

@router.get("/admin/{notification_id}/metrics")
def metrics(notification_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"data": svc.dismissal_metrics(db, _get(db, notification_id))}

@router.post("/admin", status_code=201)
def create(payload: NotificationIn, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    n = Notification(
        created_by=admin.id,
        is_active=True,
        **payload.model_dump(),
    )
    if n.target_type != "role":
        n.target_role = None
    if n.target_type != "specific":
        n.target_user_ids = None
    db.add(n)
    db.commit()
    logger.info(f"Admin {admin.id} created {n.type} notification {n.id}")

    emailed = None
    if n.type == "email":
        try:
            emailed = svc.send_email_notification(db, n)
        except Exception as e:
            logger.error(f"Failed to email notification {n.id}: {e}", exc_info=True)
    return {"data": {**n.to_dict(), "emails_sent": emailed}}

@router.put("/admin/{notification_id}")
def update(notification_id: str, payload: NotificationUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    n = _get(db, notification_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in ("title", "message", "is_active"):
            continue
        setattr(n, field, value)
    db.commit()
    return {"data": n.to_dict()}

@router.delete("/admin/{notification_id}")
def delete(notification_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    n = _get(db, notification_id)
    db.delete(n)
    db.commit()
    return {"data": {"message": "Notification deleted"}}
