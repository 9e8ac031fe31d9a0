import logging
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, RootModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import get_current_user, require_admin
from marisa.core.database import get_db
from marisa.models.orm import BankAccount, BankAccountStatus, User, utcnow

logger = logging.getLogger(__name__)
router = APIRouter()

DOMESTIC_FIELDS = ("agency", "account_number", "pix_key")
INTERNATIONAL_FIELDS = ("iban", "swift_code", "international_account_number", "bank_name", "bank_address")


class DomesticAccount(BaseModel):
    account_type: Literal["domestic"]
    agency: str = Field(min_length=1, max_length=20)
    account_number: str = Field(min_length=1, max_length=50)
    pix_key: Optional[str] = Field(default=None, max_length=255)

class InternationalAccount(BaseModel):
    account_type: Literal["international"]
    iban: str = Field(min_length=5, max_length=50)
    swift_code: str = Field(min_length=8, max_length=11)
    international_account_number: Optional[str] = Field(default=None, max_length=50)
    bank_name: str = Field(min_length=1, max_length=255)
    bank_address: Optional[str] = None

class BankAccountIn(RootModel[Annotated[Union[DomesticAccount, InternationalAccount], Field(discriminator="account_type")]]):
    pass

class RejectAccount(BaseModel):
    reason: str = Field(min_length=1)


def _get(db: Session, account_id: str) -> BankAccount:
    account = db.get(BankAccount, account_id)
    if account is None:
        raise HTTPException(404, "Bank account not found")
    return account


@router.get("")
def my_account(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    account = db.scalar(select(BankAccount).where(BankAccount.user_id == user.id))
    return {"data": account.to_dict() if account else None}

@router.post("")
def save_account(payload: BankAccountIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    data = payload.root
    account = db.scalar(select(BankAccount).where(BankAccount.user_id == user.id))
    if account is None:
        account = BankAccount(user_id=user.id)
        db.add(account)
    keep, clear = (DOMESTIC_FIELDS, INTERNATIONAL_FIELDS) if data.account_type == "domestic" else (INTERNATIONAL_FIELDS, DOMESTIC_FIELDS)
    account.account_type = data.account_type
    for field in keep:
        setattr(account, field, getattr(data, field))
    for field in clear:
        setattr(account, field, None)
    account.status = BankAccountStatus.PENDING.value
    account.rejected_reason = None
    account.rejected_at = None
    account.rejected_by = None
    db.commit()
    return {"data": account.to_dict()}

@router.get("/admin/user/{user_id}")
def user_account(user_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    account = db.scalar(select(BankAccount).where(BankAccount.user_id == user_id))
    if account is None:
        raise HTTPException(404, "Bank account not found")
    return {"data": account.to_dict()}

@router.put("/admin/{account_id}/approve")
def approve(account_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    account = _get(db, account_id)
    account.status = BankAccountStatus.APPROVED.value
    account.rejected_reason = None
    account.rejected_at = None
    account.rejected_by = None
    db.commit()
    logger.info(f"Admin {admin.id} approved bank account {account.id}")
    return {"data": account.to_dict()}

@router.put("/admin/{account_id}/reject")
def reject(account_id: str, payload: RejectAccount, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    account = _get(db, account_id)
    account.status = BankAccountStatus.REJECTED.value
    account.rejected_reason = payload.reason
    account.rejected_at = utcnow()
    account.rejected_by = admin.id
    db.commit()
    logger.info(f"Admin {admin.id} rejected bank account {account.id}")
    return {"data": account.to_dict()}
