from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import Optional
import jwt
from datetime import datetime, timedelta, timezone
from sqlalchemy.orm import Session
from marisa.core.config import settings
from marisa.core.database import get_db
from marisa.models.orm import User, UserStatus

class TokenData(BaseModel):
    sub: str
    email: str
    role: str

bearer = HTTPBearer(auto_error=False)

def create_token(user: User, ttl_days: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = timedelta(days=ttl_days if ttl_days is not None else settings.ACCESS_TOKEN_EXPIRE_DAYS)
    payload = {"sub": user.id, "email": user.email, "role": user.role, "iat": int(now.timestamp()), "exp": int((now + ttl).timestamp())}
    return jwt.encode(payload, settings.JWT_SECRET.get_secret_value(), algorithm=settings.JWT_ALGORITHM)

def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET.get_secret_value(), algorithms=[settings.JWT_ALGORITHM])
        return TokenData(sub=payload["sub"], email=payload["email"], role=payload["role"])
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer), db: Session = Depends(get_db)) -> User:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = decode_token(creds.credentials)
    user = db.get(User, token.sub)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if user.status == UserStatus.BLOCKED.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"message": "Account blocked", "code": "account_blocked"})
    if user.status == UserStatus.PENDING_APPROVAL.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"message": "Account pending approval", "code": "account_pending"})
    return user

def require_roles(*required: str):
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in required:
            raise HTTPException(status_code=403, detail={"message": "Insufficient role", "code": "insufficient_role"})
        return user
    return checker

require_admin = require_roles("admin")
