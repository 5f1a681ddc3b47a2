"""
Exam attempt state machine: NotStarted -> InProgress -> Submitted.

Every caller-facing operation takes an explicit RequestContext naming the
authenticated identity; nothing here reads request or session globals.
Submission is a compare-and-set on the attempt's submitted flag, so a manual
submit racing an expiry-triggered one transitions the attempt exactly once.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.core.results import (
    Result, conflict, invalid, not_found, precondition, storage_guarded,
)
from hems.models.orm import Exam, Question, StudentAnswer, StudentExam
from hems.services.audit import AuditEvent, AuditRecorder, AuditSeverity
from hems.services.calendar import current_academic_year
from hems.services.credential_gate import CredentialGate
from hems.services.grading import GradingEngine, GradingResult
from hems.services.store import ExamStore
from hems.services.timer import TimerIntegrityEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller of an exam operation."""
    user_id: int
    student_id: Optional[int] = None
    login_token: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class SubmissionReceipt:
    attempt_id: int
    submitted_at: datetime
    automatic: bool
    grading: Optional[GradingResult] = None


@dataclass(frozen=True)
class AnswerState:
    question_id: int
    choice_id: Optional[int]
    is_flagged: bool


@dataclass
class AttemptOverview:
    attempt_id: int
    exam_id: int
    is_submitted: bool
    total_questions: int
    answered: int
    flagged: int
    unanswered: int
    remaining: timedelta
    score: Optional[float] = None
    percentage: Optional[float] = None
    answers: List[AnswerState] = field(default_factory=list)


class ExamSessionManager:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock
        self.store = ExamStore(db)
        self.audit = AuditRecorder(db, clock)
        self.gate = CredentialGate(db, clock)
        self.timer = TimerIntegrityEngine(db, clock, self.audit)
        self.grading = GradingEngine(db, clock, self.audit)

    def get_owned_attempt(self, ctx: RequestContext, attempt_id: int) -> Optional[StudentExam]:
        # Another student's attempt is indistinguishable from a missing one.
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None or ctx.student_id is None or attempt.student_id != ctx.student_id:
            return None
        return attempt

    # ============= Start =============

    @storage_guarded
    def start_exam(self, ctx: Optional[RequestContext], exam_id: Optional[int]) -> Result[StudentExam]:
        if ctx is None or ctx.student_id is None or exam_id is None:
            return invalid("missing_context", "An authenticated student and an exam are required")

        exam = self.store.get_exam(exam_id)
        if exam is None:
            return not_found("exam_not_found", "Exam not found")
        if not exam.is_published:
            return precondition("exam_not_published", "This exam is not available yet")
        if exam.academic_year != current_academic_year(self.clock()):
            return precondition("exam_not_in_current_cycle", "This exam is not part of the current academic year")

        student = self.store.get_student(ctx.student_id)
        if student is None or student.user_id != ctx.user_id:
            return not_found("student_not_found", "Student record not found")
        user = self.store.get_user(ctx.user_id)
        if user is None or not user.login_phase_completed:
            return precondition("phase1_not_completed", "Please complete Phase 1 identity verification first")
        if not self.gate.has_completed_phase2(ctx.user_id, ctx.login_token):
            return precondition("phase2_not_completed", "Please complete Phase 2 exam-day login first")
        if self.store.find_attempt(student.id, exam.id) is not None:
            return precondition("attempt_already_exists", "You have already taken this exam")

        now = self.clock()
        attempt = StudentExam(student_id=student.id, exam_id=exam.id, start_date_time=now, is_submitted=False)
        self.db.add(attempt)
        try:
            self.db.flush()
            for q in self.store.list_questions(exam.id):
                self.db.add(StudentAnswer(student_exam_id=attempt.id, question_id=q.id,
                                          choice_id=None, is_flagged=False, last_modified=now))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Concurrent start for student {student.id} on exam {exam.id}")
            return conflict("attempt_already_exists", "An attempt for this exam was started concurrently")
        self.db.refresh(attempt)

        self.audit.record(
            AuditEvent.EXAM_STARTED,
            f"Student {student.id_number} started exam {exam.id}",
            user_id=ctx.user_id,
            exam_id=exam.id,
            attempt_id=attempt.id,
            ip_address=ctx.ip_address,
        )
        return Result.success(attempt)

    # ============= Answering =============

    def _check_mutable(self, ctx: RequestContext, attempt_id: int, question_id: int):
        """Shared preconditions of answer and flag writes. Returns (failure, answer)."""
        attempt = self.get_owned_attempt(ctx, attempt_id)
        if attempt is None:
            return not_found("attempt_not_found", "Exam attempt not found"), None
        if attempt.is_submitted:
            return precondition("attempt_already_submitted", "This exam has already been submitted"), None
        if self.timer.is_expired(attempt_id):
            self.auto_submit(attempt_id)
            return precondition("timer_expired", "Exam time has expired; your answers were submitted"), None
        answer = self.store.get_answer(attempt_id, question_id)
        if answer is None:
            return not_found("answer_record_not_found", "Question is not part of this exam attempt"), None
        return None, answer

    def _write_answer(self, ctx: RequestContext, answer: StudentAnswer, **values) -> Result[AnswerState]:
        attempt_id = answer.student_exam_id
        question_id = answer.question_id
        if not self.store.update_open_answer(answer.id, attempt_id, last_modified=self.clock(), **values):
            self.audit.record(
                AuditEvent.SYNC_CONFLICT,
                f"Write to question {question_id} lost against submission of attempt {attempt_id}",
                severity=AuditSeverity.WARNING,
                user_id=ctx.user_id,
                attempt_id=attempt_id,
                ip_address=ctx.ip_address,
            )
            return conflict("attempt_submitted_concurrently", "The exam was submitted while saving")
        answer = self.store.get_answer(attempt_id, question_id)
        return Result.success(AnswerState(question_id=question_id, choice_id=answer.choice_id, is_flagged=answer.is_flagged))

    @storage_guarded
    def save_answer(self, ctx: Optional[RequestContext], attempt_id: Optional[int],
                    question_id: Optional[int], choice_id: Optional[int]) -> Result[AnswerState]:
        if ctx is None or attempt_id is None or question_id is None or choice_id is None:
            return invalid("missing_answer_fields", "Attempt, question and choice are required")
        failure, answer = self._check_mutable(ctx, attempt_id, question_id)
        if failure is not None:
            return failure
        choice = self.store.get_choice(choice_id)
        if choice is None or choice.question_id != question_id:
            return precondition("choice_not_in_question", "The selected choice does not belong to this question")
        return self._write_answer(ctx, answer, choice_id=choice_id)

    @storage_guarded
    def flag_question(self, ctx: Optional[RequestContext], attempt_id: Optional[int],
                      question_id: Optional[int], flagged: bool) -> Result[AnswerState]:
        if ctx is None or attempt_id is None or question_id is None:
            return invalid("missing_flag_fields", "Attempt and question are required")
        failure, answer = self._check_mutable(ctx, attempt_id, question_id)
        if failure is not None:
            return failure
        return self._write_answer(ctx, answer, is_flagged=bool(flagged))

    # ============= Submission =============

    def _submit(self, attempt: StudentExam, automatic: bool, ctx: Optional[RequestContext] = None) -> Result[SubmissionReceipt]:
        now = self.clock()
        attempt_id, exam_id = attempt.id, attempt.exam_id
        if not self.store.mark_submitted(attempt_id, now):
            logger.info(f"Attempt {attempt_id} was submitted by a concurrent request")
            return conflict("already_submitted_concurrently", "The exam has already been submitted")

        self.audit.record(
            AuditEvent.EXAM_AUTO_SUBMITTED if automatic else AuditEvent.EXAM_SUBMITTED,
            f"Attempt {attempt_id} {'auto-submitted at expiry' if automatic else 'submitted'}",
            user_id=ctx.user_id if ctx else None,
            exam_id=exam_id,
            attempt_id=attempt_id,
            ip_address=ctx.ip_address if ctx else None,
        )

        graded = self.grading.grade_exam(attempt_id)
        if not graded.ok:
            # The submission stands; a regrade job can fill the score in later.
            logger.error(f"Grading failed for attempt {attempt_id}: {graded.reason}")
        return Result.success(SubmissionReceipt(
            attempt_id=attempt_id,
            submitted_at=now,
            automatic=automatic,
            grading=graded.value if graded.ok else None,
        ))

    @storage_guarded
    def submit_exam(self, ctx: Optional[RequestContext], attempt_id: Optional[int]) -> Result[SubmissionReceipt]:
        if ctx is None or attempt_id is None:
            return invalid("missing_attempt", "An exam attempt is required")
        attempt = self.get_owned_attempt(ctx, attempt_id)
        if attempt is None:
            return not_found("attempt_not_found", "Exam attempt not found")
        if attempt.is_submitted:
            return precondition("attempt_already_submitted", "This exam has already been submitted")
        return self._submit(attempt, automatic=False, ctx=ctx)

    @storage_guarded
    def auto_submit(self, attempt_id: int) -> Result[SubmissionReceipt]:
        """Force the authoritative submission of an attempt whose time has run out."""
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return not_found("attempt_not_found", "Exam attempt not found")
        if attempt.is_submitted:
            return precondition("attempt_already_submitted", "This exam has already been submitted")
        if not self.timer.is_expired(attempt_id):
            return precondition("timer_not_expired", "Exam time has not expired")
        return self._submit(attempt, automatic=True)

    def submit_expired_attempts(self) -> int:
        submitted = 0
        for attempt in self.store.list_open_attempts():
            if self.timer.is_expired(attempt.id) and self.auto_submit(attempt.id).ok:
                submitted += 1
        if submitted:
            logger.info(f"Auto-submitted {submitted} expired attempt(s)")
        return submitted

    # ============= Navigation and read models =============

    def get_next_question(self, question_id: int) -> Optional[Question]:
        question = self.store.get_question(question_id)
        return self.store.adjacent_question(question, forward=True) if question else None

    def get_previous_question(self, question_id: int) -> Optional[Question]:
        question = self.store.get_question(question_id)
        return self.store.adjacent_question(question, forward=False) if question else None

    @storage_guarded
    def navigate(self, ctx: RequestContext, question_id: int, forward: bool = True) -> Result[Question]:
        """Step to a neighbouring question of an exam the student has already started."""
        question = self.store.get_question(question_id)
        exam = self.store.get_exam(question.exam_id) if question else None
        if exam is None or not exam.is_published or ctx is None or ctx.student_id is None \
                or self.store.find_attempt(ctx.student_id, exam.id) is None:
            return not_found("question_not_found", "Question not found")
        adjacent = self.store.adjacent_question(question, forward=forward)
        if adjacent is None:
            return not_found("no_adjacent_question", "No more questions" if forward else "No previous question")
        return Result.success(adjacent)

    def get_exam_questions(self, exam_id: int) -> List[Question]:
        return self.store.list_questions(exam_id)

    def get_available_exams(self) -> List[Exam]:
        return self.store.list_published_exams(current_academic_year(self.clock()))

    @storage_guarded
    def get_attempt_overview(self, ctx: RequestContext, attempt_id: int) -> Result[AttemptOverview]:
        attempt = self.get_owned_attempt(ctx, attempt_id)
        if attempt is None:
            return not_found("attempt_not_found", "Exam attempt not found")
        answers = self.store.list_answers(attempt_id)
        answered = sum(1 for a in answers if a.choice_id is not None)
        return Result.success(AttemptOverview(
            attempt_id=attempt.id,
            exam_id=attempt.exam_id,
            is_submitted=attempt.is_submitted,
            total_questions=len(answers),
            answered=answered,
            flagged=sum(1 for a in answers if a.is_flagged),
            unanswered=len(answers) - answered,
            remaining=self.timer.remaining_time(attempt_id) if not attempt.is_submitted else timedelta(0),
            score=attempt.score,
            percentage=attempt.percentage,
            answers=[AnswerState(a.question_id, a.choice_id, a.is_flagged) for a in answers],
        ))
