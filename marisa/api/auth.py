import logging
import secrets
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import create_token
from marisa.core.cache import OTPStore, get_otp_store
from marisa.core.config import settings
from marisa.core.database import get_db
from marisa.models.orm import User, UserRole, UserStatus, utcnow
from marisa.services.mailer import render_otp_email, send_email

logger = logging.getLogger(__name__)
router = APIRouter()


class SignupRequest(BaseModel):
    email: EmailStr

class VerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(pattern=r"^\d{6}$")

class EducationEntry(BaseModel):
    level: str
    institution: Optional[str] = None
    course: Optional[str] = None
    year: Optional[int] = None

class RegisterQA(BaseModel):
    full_name: str = Field(min_length=2, max_length=255)
    email: EmailStr
    birth_date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    gender: Optional[Literal["male", "female", "non_binary", "prefer_not_to_say"]] = None
    nationality: str = Field(min_length=2)
    phone: str = Field(min_length=8, max_length=50)
    primary_language: str = Field(min_length=2, max_length=20)
    secondary_languages: List[str] = []
    document_number: str = Field(min_length=3, max_length=100)
    document_photo_url: Optional[str] = None
    selfie_photo_url: Optional[str] = None
    education: List[EducationEntry] = []
    terms_accepted: bool

    @field_validator("terms_accepted")
    @classmethod
    def must_accept_terms(cls, v: bool) -> bool:
        if not v:
            raise ValueError("Terms must be accepted")
        return v


def _check_status(user: User) -> None:
    if user.status == UserStatus.BLOCKED.value:
        raise HTTPException(403, detail={"message": "Account blocked", "code": "account_blocked"})
    if user.status == UserStatus.PENDING_APPROVAL.value:
        raise HTTPException(403, detail={"message": "Account pending approval", "code": "account_pending"})


@router.post("/signup")
def signup(payload: SignupRequest, db: Session = Depends(get_db), otp: OTPStore = Depends(get_otp_store)):
    email = payload.email.lower()
    user = db.scalar(select(User).where(User.email == email))
    if user is None:
        if email.rsplit("@", 1)[-1] != settings.ALLOWED_EMAIL_DOMAIN:
            raise HTTPException(400, f"Only @{settings.ALLOWED_EMAIL_DOMAIN} emails can sign up directly")
        user = User(email=email, role=UserRole.TESTER.value, status=UserStatus.ACTIVE.value)
        db.add(user)
        db.commit()
        logger.info(f"Created user {user.id} for {email}")
    _check_status(user)

    code = f"{secrets.randbelow(1_000_000):06d}"
    otp.put(email, code)
    if settings.is_development():
        logger.info(f"OTP for {email}: {code}")
    else:
        logger.info(f"OTP issued for {email}")
    subject, text = render_otp_email(code)
    if not send_email(email, subject, text):
        logger.warning(f"OTP email to {email} was not delivered")

    data = {"message": "Verification code sent", "email": email}
    if settings.is_development():
        data["code"] = code
    return {"data": data}


@router.post("/verify")
def verify(payload: VerifyRequest, db: Session = Depends(get_db), otp: OTPStore = Depends(get_otp_store)):
    email = payload.email.lower()
    if not otp.consume(email, payload.code):
        raise HTTPException(401, "Invalid or expired code")
    user = db.scalar(select(User).where(User.email == email))
    if user is None:
        raise HTTPException(401, "Invalid or expired code")
    _check_status(user)

    user.last_login = utcnow()
    if user.status == UserStatus.PENDING_INVITE.value:
        user.status = UserStatus.ACTIVE.value
    db.commit()
    return {"data": {"token": create_token(user), "user": user.to_dict()}}


@router.post("/register-qa", status_code=201)
def register_qa(payload: RegisterQA, db: Session = Depends(get_db)):
    email = payload.email.lower()
    if db.scalar(select(User.id).where(User.email == email)) is not None:
        raise HTTPException(409, "An account with this email already exists")
    user = User(
        email=email,
        full_name=payload.full_name,
        role=UserRole.QA.value,
        status=UserStatus.PENDING_APPROVAL.value,
        birth_date=payload.birth_date,
        gender=payload.gender,
        nationality=payload.nationality,
        phone=payload.phone,
        primary_language=payload.primary_language,
        secondary_languages=payload.secondary_languages,
        document_number=payload.document_number,
        document_photo_url=payload.document_photo_url,
        selfie_photo_url=payload.selfie_photo_url,
        education=[e.model_dump() for e in payload.education],
    )
    db.add(user)
    db.commit()
    logger.info(f"QA registration received for {email}")
    return {"data": {"message": "Registration received, pending approval", "user": user.to_dict()}}


@router.post("/logout")
def logout():
    return {"data": {"message": "Logged out"}}
