from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timedelta, timezone
from hems.core.config import settings

class TokenData(BaseModel):
    sub: str
    roles: List[str]
    sid: Optional[str] = None
    phase: Optional[int] = None
    student_id: Optional[int] = None

    @property
    def user_id(self) -> int:
        return int(self.sub)

bearer = HTTPBearer()

def create_token(user_id: int, roles: List[str], ttl_minutes: Optional[int] = None, sid: Optional[str] = None,
                 phase: Optional[int] = None, student_id: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {"sub": str(user_id), "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    if sid is not None: payload["sid"] = sid
    if phase is not None: payload["phase"] = phase
    if student_id is not None: payload["student_id"] = student_id
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []), sid=payload.get("sid"),
                         phase=payload.get("phase"), student_id=payload.get("student_id"))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker
