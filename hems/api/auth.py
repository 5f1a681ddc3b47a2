from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from typing import List, Optional
from sqlalchemy.orm import Session
from hems.api.deps import client_ip, get_session_user, raise_for
from hems.core.auth import TokenData, create_token
from hems.core.clock import Clock, get_clock
from hems.core.database import get_db
from hems.core.results import ErrorKind, Result, precondition
from hems.services.audit import AuditEvent, AuditRecorder, AuditSeverity
from hems.services.credential_gate import PHASE_EXAM_DAY, PHASE_IDENTITY, CredentialGate

router = APIRouter()

class Phase1Login(BaseModel):
    email: str = Field(max_length=100)
    password: str = Field(max_length=128)

class Phase2Login(BaseModel):
    id_number: str = Field(max_length=20)
    password: str = Field(max_length=128)

class StaffLogin(BaseModel):
    email: str = Field(max_length=100)
    password: str = Field(max_length=128)

class CredentialChange(BaseModel):
    new_password: str
    confirm_password: str

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    roles: List[str]
    phase: int
    must_change_password: bool = False
    exam_id: Optional[int] = None

def _reject_login(result: Result):
    # Wrong state and wrong secret look the same to the caller; storage faults do not.
    if result.error == ErrorKind.INFRASTRUCTURE or result.reason == "concurrent_phase2_session":
        raise_for(result)
    raise_for(result, status_code=401)

@router.post("/phase1", response_model=TokenOut)
def phase1_login(payload: Phase1Login, request: Request, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    gate = CredentialGate(db, clock); audit = AuditRecorder(db, clock); ip = client_ip(request)
    checked = gate.check_phase1_login(payload.email, payload.password)
    if checked.ok and not gate.complete_phase1_login(checked.value.id):
        # Lost the race to a concurrent phase-1 login.
        checked = precondition("phase1_already_completed", "Identity verification already completed")
    if not checked.ok:
        audit.record(AuditEvent.PHASE1_LOGIN_FAILED, f"Phase 1 login failed for {payload.email}: {checked.reason}",
                     severity=AuditSeverity.WARNING, ip_address=ip)
        _reject_login(checked)
    user = checked.value
    session = raise_for(gate.create_login_session(user.id, PHASE_IDENTITY, ip_address=ip,
                                                  user_agent=request.headers.get("user-agent")))
    audit.record(AuditEvent.PHASE1_LOGIN, f"Phase 1 completed for {user.username}", user_id=user.id, ip_address=ip)
    token = create_token(user.id, [user.role], sid=session.session_token, phase=PHASE_IDENTITY)
    return TokenOut(access_token=token, roles=[user.role], phase=PHASE_IDENTITY, must_change_password=user.must_change_password)

@router.post("/phase2", response_model=TokenOut)
def phase2_login(payload: Phase2Login, request: Request, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    gate = CredentialGate(db, clock); audit = AuditRecorder(db, clock); ip = client_ip(request)
    checked = gate.check_phase2_login(payload.id_number, payload.password)
    if not checked.ok:
        audit.record(AuditEvent.PHASE2_LOGIN_FAILED, f"Phase 2 login failed for {payload.id_number}: {checked.reason}",
                     severity=AuditSeverity.WARNING, ip_address=ip)
        _reject_login(checked)
    grant = checked.value
    created = gate.create_login_session(grant.user_id, PHASE_EXAM_DAY, exam_session_id=grant.exam_session_id,
                                        ip_address=ip, user_agent=request.headers.get("user-agent"))
    if not created.ok:
        _reject_login(created)
    user = gate.store.get_user(grant.user_id)
    audit.record(AuditEvent.PHASE2_LOGIN, f"Phase 2 login for student {payload.id_number}",
                 user_id=user.id, exam_id=grant.exam_id, ip_address=ip)
    token = create_token(user.id, [user.role], sid=created.value.session_token, phase=PHASE_EXAM_DAY, student_id=grant.student_id)
    return TokenOut(access_token=token, roles=[user.role], phase=PHASE_EXAM_DAY,
                    must_change_password=user.must_change_password, exam_id=grant.exam_id)

@router.post("/login", response_model=TokenOut)
def staff_login(payload: StaffLogin, request: Request, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    gate = CredentialGate(db, clock); ip = client_ip(request)
    checked = gate.validate_staff_login(payload.email, payload.password)
    if not checked.ok:
        _reject_login(checked)
    user = checked.value
    session = raise_for(gate.create_login_session(user.id, PHASE_IDENTITY, ip_address=ip,
                                                  user_agent=request.headers.get("user-agent")))
    AuditRecorder(db, clock).record(AuditEvent.STAFF_LOGIN, f"Staff login for {user.username}", user_id=user.id, ip_address=ip)
    token = create_token(user.id, [user.role], sid=session.session_token, phase=PHASE_IDENTITY)
    return TokenOut(access_token=token, roles=[user.role], phase=PHASE_IDENTITY, must_change_password=user.must_change_password)

@router.post("/change-credential")
def change_credential(payload: CredentialChange, request: Request, user: TokenData = Depends(get_session_user),
                      db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    raise_for(CredentialGate(db, clock).change_credential_with_policy(user.user_id, payload.new_password, payload.confirm_password))
    AuditRecorder(db, clock).record(AuditEvent.CREDENTIAL_CHANGED, f"Credential changed for user {user.user_id}",
                                    user_id=user.user_id, ip_address=client_ip(request))
    return {"ok": True}

@router.post("/logout")
def logout(user: TokenData = Depends(get_session_user), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    if not CredentialGate(db, clock).invalidate_login_session(user.sid):
        raise HTTPException(404, "Login session not found")
    return {"ok": True}
