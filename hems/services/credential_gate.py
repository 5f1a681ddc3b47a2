"""
Two-phase authentication gate.

Phase 1 proves a student owns their university email using a password
derived from their institutional ID number. Phase 2, on exam day, proves
possession of the session password announced by the coordinator. Phase 2
is unreachable until phase 1 has been completed.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.core.config import settings
from hems.core.results import (
    ErrorKind, Result, invalid, is_blank, not_found, precondition, storage_guarded,
)
from hems.core.security import hash_password, password_policy_violations, verify_password
from hems.models.orm import LoginSession, User
from hems.services.calendar import current_academic_year, institutional_year_suffix
from hems.services.store import ExamStore

logger = logging.getLogger(__name__)

PHASE_IDENTITY = 1
PHASE_EXAM_DAY = 2


@dataclass(frozen=True)
class Phase2Grant:
    """Outcome of a successful exam-day login."""
    user_id: int
    student_id: int
    exam_session_id: int
    exam_id: int


class CredentialGate:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock
        self.store = ExamStore(db)

    # ============= Phase 1 =============

    def calculate_phase1_password(self, id_number: Optional[str]) -> str:
        if is_blank(id_number):
            return ""
        return f"{id_number}{institutional_year_suffix(self.clock())}"

    def is_university_email_valid(self, email: Optional[str]) -> bool:
        if is_blank(email) or email.count("@") != 1:
            return False
        try:
            info = validate_email(email, check_deliverability=False)
        except EmailNotValidError:
            return False
        domain = info.ascii_domain.lower()
        return domain in settings.UNIVERSITY_EMAIL_DOMAINS

    @storage_guarded
    def check_phase1_login(self, email: Optional[str], password: Optional[str]) -> Result[User]:
        if is_blank(email) or is_blank(password):
            return invalid("missing_credentials", "Email and password are required")
        if not self.is_university_email_valid(email):
            return invalid("invalid_university_email", "Please enter a valid university email address")

        user = self.store.get_user_by_username(email)
        if user is None:
            return not_found("user_not_found", "Invalid email or password")
        student = self.store.get_student_by_user(user.id)
        if student is None:
            return not_found("student_record_not_found", "Student record not found")
        if user.login_phase_completed:
            return precondition("phase1_already_completed", "Identity verification already completed")

        expected = self.calculate_phase1_password(student.id_number)
        if not hmac.compare_digest(expected.encode(), password.encode()):
            return invalid("incorrect_password", "Invalid email or password")
        return Result.success(user)

    def validate_phase1_login(self, email: Optional[str], password: Optional[str]) -> bool:
        return self.check_phase1_login(email, password).ok

    def complete_phase1_login(self, user_id: int) -> bool:
        if not self.store.mark_phase1_completed(user_id):
            return False
        logger.info(f"Phase 1 completed for user {user_id}")
        return True

    @storage_guarded
    def validate_staff_login(self, email: Optional[str], password: Optional[str]) -> Result[User]:
        if is_blank(email) or is_blank(password):
            return invalid("missing_credentials", "Email and password are required")
        user = self.store.get_user_by_username(email)
        if user is None:
            return not_found("user_not_found", "Invalid email or password")
        if user.role == "student":
            return precondition("student_must_use_phase_login", "Students sign in through identity verification")
        if not verify_password(password, user.password_hash):
            return invalid("incorrect_password", "Invalid email or password")
        return Result.success(user)

    # ============= Phase 2 =============

    @storage_guarded
    def check_phase2_login(self, id_number: Optional[str], password: Optional[str]) -> Result[Phase2Grant]:
        if is_blank(id_number) or is_blank(password):
            return invalid("missing_credentials", "Student ID and session password are required")

        student = self.store.get_student_by_id_number(id_number)
        if student is None:
            return not_found("student_not_found", "Invalid student ID or session password")
        user = self.store.get_user(student.user_id)
        if user is None:
            return not_found("user_not_found", "User account not found")
        if not user.login_phase_completed:
            return precondition("phase1_not_completed", "Please complete Phase 1 identity verification first")

        now = self.clock()
        exams = self.store.list_published_exams(current_academic_year(now))
        credentials = self.store.list_open_exam_sessions([e.id for e in exams], now)
        if not credentials:
            return precondition("no_active_exam_session", "No active exam session found")

        for credential in credentials:
            if verify_password(password, credential.session_password):
                return Result.success(Phase2Grant(
                    user_id=user.id,
                    student_id=student.id,
                    exam_session_id=credential.id,
                    exam_id=credential.exam_id,
                ))
        return invalid("incorrect_exam_password", "Invalid session password")

    def validate_phase2_login(self, id_number: Optional[str], password: Optional[str]) -> bool:
        return self.check_phase2_login(id_number, password).ok

    # ============= Credential changes =============

    def change_credential(self, user_id: int, new_password: Optional[str]) -> bool:
        if is_blank(new_password):
            return False
        user = self.store.get_user(user_id)
        if user is None:
            return False
        user.password_hash = hash_password(new_password)
        user.must_change_password = False
        self.db.commit()
        logger.info(f"Credential changed for user {user_id}")
        return True

    @storage_guarded
    def change_credential_with_policy(self, user_id: int, new_password: Optional[str],
                                      confirm_password: Optional[str]) -> Result[None]:
        if is_blank(new_password):
            return invalid("missing_password", "Password is required")
        if new_password != confirm_password:
            return invalid("confirmation_mismatch", "Password and confirmation do not match")
        violations = password_policy_violations(new_password)
        if violations:
            return invalid("weak_password", " ".join(violations))
        if self.store.get_user(user_id) is None:
            return not_found("user_not_found")
        self.change_credential(user_id, new_password)
        return Result.success()

    # ============= Login sessions =============

    @storage_guarded
    def create_login_session(self, user_id: int, phase: int, exam_session_id: Optional[int] = None,
                             ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Result[LoginSession]:
        if phase not in (PHASE_IDENTITY, PHASE_EXAM_DAY):
            return invalid("invalid_login_phase")
        if self.store.get_user(user_id) is None:
            return not_found("user_not_found")
        if phase == PHASE_EXAM_DAY and not self.can_start_phase2_session(user_id, exam_session_id):
            return Result.failure(ErrorKind.PRECONDITION_FAILED, "concurrent_phase2_session",
                                  "An exam-day session is already active for this account")

        now = self.clock()
        session = LoginSession(
            user_id=user_id,
            session_token=str(uuid4()),
            login_phase=phase,
            exam_session_id=exam_session_id,
            ip_address=ip_address or "127.0.0.1",
            user_agent=user_agent or "Unknown",
            is_active=True,
            created_at=now,
            expiry_date=now + timedelta(hours=settings.LOGIN_SESSION_TTL_HOURS),
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return Result.success(session)

    def _is_live(self, session: Optional[LoginSession]) -> bool:
        return (session is not None and session.is_active
                and (session.expiry_date is None or session.expiry_date > self.clock()))

    def get_login_session(self, token: Optional[str]) -> Optional[LoginSession]:
        if is_blank(token):
            return None
        return self.store.get_login_session(token)

    def validate_login_session(self, token: Optional[str]) -> bool:
        return self._is_live(self.get_login_session(token))

    def invalidate_login_session(self, token: Optional[str]) -> bool:
        session = self.get_login_session(token)
        if session is None or not session.is_active:
            return False
        session.is_active = False
        session.logout_time = self.clock()
        self.db.commit()
        return True

    def invalidate_login_sessions(self, user_id: int) -> int:
        sessions = self.store.list_active_login_sessions(user_id)
        now = self.clock()
        for s in sessions:
            s.is_active = False
            s.logout_time = now
        self.db.commit()
        return len(sessions)

    def can_start_phase2_session(self, user_id: int, exam_session_id: Optional[int]) -> bool:
        active = self.store.list_active_login_sessions(user_id, phase=PHASE_EXAM_DAY, exam_session_id=exam_session_id)
        return not any(self._is_live(s) for s in active)

    def has_completed_phase2(self, user_id: int, token: Optional[str] = None) -> bool:
        user = self.store.get_user(user_id)
        if user is None or not user.login_phase_completed:
            return False
        if token is not None:
            session = self.get_login_session(token)
            return (self._is_live(session) and session.user_id == user_id
                    and session.login_phase == PHASE_EXAM_DAY)
        sessions = self.store.list_active_login_sessions(user_id, phase=PHASE_EXAM_DAY)
        return any(self._is_live(s) for s in sessions)

    def cleanup_expired_sessions(self) -> int:
        stale = self.store.list_stale_login_sessions(self.clock())
        now = self.clock()
        for s in stale:
            s.is_active = False
            s.logout_time = s.logout_time or now
        self.db.commit()
        return len(stale)
