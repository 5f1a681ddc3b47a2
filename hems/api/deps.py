"""
Request-scoped dependencies shared by the routers, and the mapping from
service error kinds to HTTP responses.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from hems.core.auth import TokenData, get_current_user, require_roles
from hems.core.clock import Clock, get_clock
from hems.core.database import get_db
from hems.core.results import ErrorKind, Result
from hems.services.credential_gate import PHASE_EXAM_DAY, CredentialGate
from hems.services.exam_session import ExamSessionManager, RequestContext

STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PRECONDITION_FAILED: 409,
    ErrorKind.INTEGRITY_VIOLATION: 422,
    ErrorKind.TRANSIENT_CONFLICT: 409,
    ErrorKind.INFRASTRUCTURE: 503,
}


def raise_for(result: Result, status_code: Optional[int] = None):
    """Turn a failed Result into an HTTPException; successful results pass through."""
    if result.ok:
        return result.value
    if result.error == ErrorKind.INFRASTRUCTURE:
        status_code = 503
    raise HTTPException(
        status_code=status_code or STATUS_BY_KIND.get(result.error, 400),
        detail={"error": result.error.value, "reason": result.reason, "message": result.message},
    )


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "127.0.0.1"


def get_session_user(user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                     clock: Clock = Depends(get_clock)) -> TokenData:
    """Bearer token whose login session is still active."""
    if user.sid is None or not CredentialGate(db, clock).validate_login_session(user.sid):
        raise HTTPException(status_code=401, detail="Login session expired")
    return user


def get_exam_context(request: Request, user: TokenData = Depends(get_session_user)) -> RequestContext:
    if "student" not in user.roles or user.phase != PHASE_EXAM_DAY or user.student_id is None:
        raise HTTPException(status_code=403, detail="Exam-day login required")
    return RequestContext(user_id=user.user_id, student_id=user.student_id, login_token=user.sid,
                          ip_address=client_ip(request))


def get_exam_manager(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> ExamSessionManager:
    return ExamSessionManager(db, clock)


require_coordinator = require_roles("coordinator")
