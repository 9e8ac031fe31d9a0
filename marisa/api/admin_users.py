import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import require_admin
from marisa.core.database import get_db
from marisa.models.orm import User, UserStatus, utcnow
from marisa.services.mailer import render_invite_email, send_email
from marisa.services.workspace import WorkspaceLookupError, lookup_user_id

logger = logging.getLogger(__name__)
router = APIRouter()



class InviteUser(BaseModel):
    email: EmailStr
    full_name: Optional[str] = None
    role: str = Field(default="tester", pattern="^(admin|tester|qa|client)$")

class UpdateUser(BaseModel):
    full_name: Optional[str] = None
    role: Optional[str] = Field(default=None, pattern="^(admin|tester|qa|client)$")

class BlockUser(BaseModel):
    reason: str = Field(min_length=1)

class RejectUser(BaseModel):
    reason: str = Field(min_length=1)


def _get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    return user

def _send_invite(user: User) -> bool:
    subject, text = render_invite_email(user.full_name)
    sent = send_email(user.email, subject, text)
    if not sent:
        logger.warning(f"Invite email to {user.email} was not delivered")
    return sent


@router.get("")
def list_users(role: Optional[str] = None, status: Optional[str] = None, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    stmt = select(User).order_by(User.created_at.desc())
    if role:
        stmt = stmt.where(User.role == role)
    if status:
        stmt = stmt.where(User.status == status)
    return {"data": [u.to_dict() for u in db.scalars(stmt)]}

@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": _get_user(db, user_id).to_dict()}

@router.post("/invite", status_code=201)
def invite_user(payload: InviteUser, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    email = payload.email.lower()
    if db.scalar(select(User.id).where(User.email == email)) is not None:
        raise HTTPException(409, "A user with this email already exists")
    user = User(
        email=email,
        full_name=payload.full_name,
        role=payload.role,
        status=UserStatus.PENDING_INVITE.value,
        invited_at=utcnow(),
        invited_by=admin.id,
    )
    db.add(user)
    db.commit()
    logger.info(f"Admin {admin.id} invited {email} as {payload.role}")
    email_sent = _send_invite(user)
    return {"data": {**user.to_dict(), "email_sent": email_sent}}

@router.put("/{user_id}")
def update_user(user_id: str, payload: UpdateUser, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(user, field, value)
    db.commit()
    return {"data": user.to_dict()}

@router.post("/{user_id}/block")
def block_user(user_id: str, payload: BlockUser, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    if user_id == admin.id:
        raise HTTPException(400, "You cannot block yourself")
    user = _get_user(db, user_id)
    user.status = UserStatus.BLOCKED.value
    user.blocked_at = utcnow()
    user.blocked_by = admin.id
    user.blocked_reason = payload.reason
    db.commit()
    logger.info(f"Admin {admin.id} blocked user {user.id}")
    return {"data": user.to_dict()}

@router.post("/{user_id}/unblock")
def unblock_user(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.status != UserStatus.BLOCKED.value:
        raise HTTPException(409, "User is not blocked")
    user.status = UserStatus.ACTIVE.value
    user.blocked_at = None
    user.blocked_by = None
    user.blocked_reason = None
    db.commit()
    logger.info(f"Admin {admin.id} unblocked user {user.id}")
    return {"data": user.to_dict()}

@router.post("/{user_id}/resend-invite")
def resend_invite(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.status != UserStatus.PENDING_INVITE.value:
        raise HTTPException(409, "User has no pending invite")
    user.invited_at = utcnow()
    db.commit()
    return {"data": {**user.to_dict(), "email_sent": _send_invite(user)}}

@router.delete("/{user_id}/invite")
def cancel_invite(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.status != UserStatus.PENDING_INVITE.value:
        raise HTTPException(409, "Only pending invites can be cancelled")
    db.delete(user)
    db.commit()
    logger.info(f"Admin {admin.id} cancelled invite for {user.email}")
    return {"data": {"message": "Invite cancelled"}}

@router.post("/{user_id}/approve")
def approve_user(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.status != UserStatus.PENDING_APPROVAL.value:
        raise HTTPException(409, "User is not pending approval")
    try:
        slack_id = lookup_user_id(user.email)
        if slack_id:
            user.slack_user_id = slack_id
    except WorkspaceLookupError as e:
        logger.warning(f"Workspace lookup for {user.email} failed: {e}")
    user.status = UserStatus.ACTIVE.value
    db.commit()
    logger.info(f"Admin {admin.id} approved QA {user.id}")
    return {"data": user.to_dict()}

@router.post("/{user_id}/reject")
def reject_user(user_id: str, payload: RejectUser, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.status != UserStatus.PENDING_APPROVAL.value:
        raise HTTPException(409, "User is not pending approval")
    user.status = UserStatus.BLOCKED.value
    user.blocked_at = utcnow()
    user.blocked_by = admin.id
    user.blocked_reason = payload.reason
    db.commit()
    logger.info(f"Admin {admin.id} rejected QA {user.id}")
    return {"data": user.to_dict()}
