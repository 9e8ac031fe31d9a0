from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from marisa.core.auth import get_current_user
from marisa.core.database import get_db
from marisa.models.orm import BankAccount, User

router = APIRouter()

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)

def _profile(db: Session, user: User):
    account = db.scalar(select(BankAccount).where(BankAccount.user_id == user.id))
    return {**user.to_dict(), "bank_account": account.to_dict() if account else None}

@router.get("/profile")
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"data": _profile(db, user)}

@router.put("/profile")
def update_profile(payload: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    return {"data": _profile(db, user)}
