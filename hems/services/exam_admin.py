"""
Coordinator workflow: exam authoring, publishing and exam-day credentials.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.core.config import settings
from hems.core.results import Result, invalid, is_blank, not_found, precondition, storage_guarded
from hems.core.security import hash_password
from hems.models.orm import Choice, Exam, ExamSession, Question
from hems.services.audit import AuditEvent, AuditRecorder
from hems.services.grading import GradingEngine
from hems.services.store import ExamStore

logger = logging.getLogger(__name__)


class ExamAdministration:
    def __init__(self, db: Session, clock: Clock = utcnow, user_id: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.user_id = user_id
        self.store = ExamStore(db)
        self.audit = AuditRecorder(db, clock)

    @storage_guarded
    def create_exam(self, title: Optional[str], academic_year: int, duration_minutes: int) -> Result[Exam]:
        if is_blank(title):
            return invalid("missing_title", "Exam title is required")
        title = title.strip()
        if not settings.EXAM_TITLE_MIN_LENGTH <= len(title) <= settings.EXAM_TITLE_MAX_LENGTH:
            return invalid("invalid_title_length",
                           f"Exam title must be between {settings.EXAM_TITLE_MIN_LENGTH} and "
                           f"{settings.EXAM_TITLE_MAX_LENGTH} characters")
        if not settings.EXAM_MIN_DURATION_MINUTES <= duration_minutes <= settings.EXAM_MAX_DURATION_MINUTES:
            return invalid("invalid_duration",
                           f"Duration must be between {settings.EXAM_MIN_DURATION_MINUTES} and "
                           f"{settings.EXAM_MAX_DURATION_MINUTES} minutes")
        if academic_year <= 0:
            return invalid("invalid_academic_year", "Academic year must be positive")

        exam = Exam(title=title, academic_year=academic_year, duration_minutes=duration_minutes,
                    is_published=False, created_at=self.clock())
        self.db.add(exam)
        self.db.commit()
        self.db.refresh(exam)
        logger.info(f"Exam {exam.id} created: {title}")
        return Result.success(exam)

    @storage_guarded
    def add_question(self, exam_id: int, text: Optional[str], choices: Sequence[str], correct_index: int) -> Result[Question]:
        if is_blank(text):
            return invalid("missing_question_text", "Question text is required")
        if len(choices) < 2 or any(is_blank(c) for c in choices):
            return invalid("invalid_choices", "At least two non-empty choices are required")
        if not 0 <= correct_index < len(choices):
            return invalid("invalid_correct_choice", "Exactly one choice must be marked correct")
        exam = self.store.get_exam(exam_id)
        if exam is None:
            return not_found("exam_not_found", "Exam not found")
        if exam.is_published:
            return precondition("exam_already_published", "Published exams cannot be edited")

        question = Question(exam_id=exam_id, question_text=text.strip(),
                            question_order=self.store.count_questions(exam_id) + 1)
        self.db.add(question)
        self.db.flush()
        for i, choice_text in enumerate(choices):
            self.db.add(Choice(question_id=question.id, choice_text=choice_text.strip(),
                               choice_order=i + 1, is_correct=(i == correct_index)))
        self.db.commit()
        self.db.refresh(question)
        return Result.success(question)

    @storage_guarded
    def publish_exam(self, exam_id: int) -> Result[Exam]:
        """Publishing is one-way; publishing an already published exam is a no-op."""
        exam = self.store.get_exam(exam_id)
        if exam is None:
            return not_found("exam_not_found", "Exam not found")
        if exam.is_published:
            return Result.success(exam)
        if not GradingEngine(self.db, self.clock, self.audit).validate_grading_criteria(exam_id):
            return precondition("exam_not_ready", "Every question needs exactly one correct choice before publishing")
        exam.is_published = True
        self.db.commit()
        self.audit.record(AuditEvent.EXAM_PUBLISHED, f"Exam {exam_id} published", user_id=self.user_id, exam_id=exam_id)
        return Result.success(exam)

    @storage_guarded
    def issue_session_credential(self, exam_id: int, password: Optional[str],
                                 expires_at: Optional[datetime] = None) -> Result[ExamSession]:
        if is_blank(password):
            return invalid("missing_session_password", "Session password is required")
        exam = self.store.get_exam(exam_id)
        if exam is None:
            return not_found("exam_not_found", "Exam not found")
        if not exam.is_published:
            return precondition("exam_not_published", "Cannot generate session password for unpublished exam")

        now = self.clock()
        expires_at = expires_at or now + timedelta(hours=settings.SESSION_CREDENTIAL_TTL_HOURS)
        if expires_at <= now:
            return invalid("expiry_in_past", "Session credential must expire in the future")

        replaced = self.store.deactivate_exam_sessions(exam_id)
        credential = ExamSession(exam_id=exam_id, session_password=hash_password(password),
                                 is_active=True, created_at=now, expiry_date=expires_at)
        self.db.add(credential)
        self.db.commit()
        self.db.refresh(credential)
        self.audit.record(
            AuditEvent.SESSION_CREDENTIAL_ISSUED,
            f"Session credential {credential.id} issued for exam {exam_id}",
            user_id=self.user_id,
            exam_id=exam_id,
            details={"expires_at": expires_at.isoformat(), "replaced": replaced},
        )
        return Result.success(credential)

    @storage_guarded
    def deactivate_session_credential(self, credential_id: int) -> Result[ExamSession]:
        credential = self.store.get_exam_session(credential_id)
        if credential is None:
            return not_found("session_credential_not_found", "Exam session not found")
        credential.is_active = False
        self.db.commit()
        logger.info(f"Session credential {credential_id} deactivated")
        return Result.success(credential)

    def list_exams(self) -> List[Exam]:
        return self.store.list_exams()
