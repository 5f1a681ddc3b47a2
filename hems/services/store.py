"""
Keyed lookups and atomic writes over the exam tables.

Services never navigate object graphs; they ask the store for rows by key.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from hems.models.orm import (
    User, Student, Exam, Question, Choice, ExamSession, LoginSession,
    StudentExam, StudentAnswer, AuditLog,
)


class ExamStore:
    def __init__(self, db: Session):
        self.db = db

    # ---- identities ----
    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.db.scalar(select(User).where(func.lower(User.username) == username.strip().lower()))

    def mark_phase1_completed(self, user_id: int) -> bool:
        """Compare-and-set the phase-1 flag. True only for the caller that flipped it."""
        res = self.db.execute(
            update(User)
            .where(User.id == user_id, User.login_phase_completed.is_(False))
            .values(login_phase_completed=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def get_student(self, student_id: int) -> Optional[Student]:
        return self.db.get(Student, student_id)

    def get_student_by_user(self, user_id: int) -> Optional[Student]:
        return self.db.scalar(select(Student).where(Student.user_id == user_id))

    def get_student_by_id_number(self, id_number: str) -> Optional[Student]:
        return self.db.scalar(select(Student).where(Student.id_number == id_number.strip()))

    # ---- exam content ----
    def get_exam(self, exam_id: int) -> Optional[Exam]:
        return self.db.get(Exam, exam_id)

    def list_exams(self) -> List[Exam]:
        return list(self.db.scalars(select(Exam).order_by(Exam.id)))

    def list_published_exams(self, academic_year: int) -> List[Exam]:
        stmt = select(Exam).where(Exam.is_published.is_(True), Exam.academic_year == academic_year).order_by(Exam.id)
        return list(self.db.scalars(stmt))

    def get_question(self, question_id: int) -> Optional[Question]:
        return self.db.get(Question, question_id)

    def list_questions(self, exam_id: int) -> List[Question]:
        stmt = select(Question).where(Question.exam_id == exam_id).order_by(Question.question_order, Question.id)
        return list(self.db.scalars(stmt))

    def count_questions(self, exam_id: int) -> int:
        return self.db.scalar(select(func.count(Question.id)).where(Question.exam_id == exam_id)) or 0

    def get_choice(self, choice_id: int) -> Optional[Choice]:
        return self.db.get(Choice, choice_id)

    def list_choices(self, question_id: int) -> List[Choice]:
        stmt = select(Choice).where(Choice.question_id == question_id).order_by(Choice.choice_order)
        return list(self.db.scalars(stmt))

    def correct_choice_ids(self, exam_id: int) -> dict:
        """Map question id to the id of its correct choice for one exam."""
        stmt = (select(Choice.question_id, Choice.id)
                .join(Question, Question.id == Choice.question_id)
                .where(Question.exam_id == exam_id, Choice.is_correct.is_(True)))
        return {qid: cid for qid, cid in self.db.execute(stmt).all()}

    def adjacent_question(self, question: Question, forward: bool) -> Optional[Question]:
        if forward:
            stmt = (select(Question)
                    .where(Question.exam_id == question.exam_id, Question.question_order > question.question_order)
                    .order_by(Question.question_order.asc()))
        else:
            stmt = (select(Question)
                    .where(Question.exam_id == question.exam_id, Question.question_order < question.question_order)
                    .order_by(Question.question_order.desc()))
        return self.db.scalar(stmt.limit(1))

    # ---- session credentials ----
    def get_exam_session(self, exam_session_id: int) -> Optional[ExamSession]:
        return self.db.get(ExamSession, exam_session_id)

    def list_open_exam_sessions(self, exam_ids: List[int], now: datetime) -> List[ExamSession]:
        if not exam_ids:
            return []
        stmt = select(ExamSession).where(
            ExamSession.exam_id.in_(exam_ids),
            ExamSession.is_active.is_(True),
            ExamSession.expiry_date.is_not(None),
            ExamSession.expiry_date > now,
        ).order_by(ExamSession.created_at.desc())
        return list(self.db.scalars(stmt))

    def deactivate_exam_sessions(self, exam_id: int) -> int:
        res = self.db.execute(
            update(ExamSession).where(ExamSession.exam_id == exam_id, ExamSession.is_active.is_(True)).values(is_active=False)
        )
        return res.rowcount

    # ---- login sessions ----
    def get_login_session(self, token: str) -> Optional[LoginSession]:
        return self.db.scalar(select(LoginSession).where(LoginSession.session_token == token))

    def list_active_login_sessions(self, user_id: int, phase: Optional[int] = None,
                                   exam_session_id: Optional[int] = None) -> List[LoginSession]:
        stmt = select(LoginSession).where(LoginSession.user_id == user_id, LoginSession.is_active.is_(True))
        if phase is not None:
            stmt = stmt.where(LoginSession.login_phase == phase)
        if exam_session_id is not None:
            stmt = stmt.where(LoginSession.exam_session_id == exam_session_id)
        return list(self.db.scalars(stmt))

    def list_stale_login_sessions(self, now: datetime) -> List[LoginSession]:
        stmt = select(LoginSession).where(LoginSession.is_active.is_(True), LoginSession.expiry_date < now)
        return list(self.db.scalars(stmt))

    # ---- attempts ----
    def get_attempt(self, attempt_id: int) -> Optional[StudentExam]:
        return self.db.get(StudentExam, attempt_id)

    def find_attempt(self, student_id: int, exam_id: int) -> Optional[StudentExam]:
        return self.db.scalar(select(StudentExam).where(StudentExam.student_id == student_id, StudentExam.exam_id == exam_id))

    def list_open_attempts(self) -> List[StudentExam]:
        return list(self.db.scalars(select(StudentExam).where(StudentExam.is_submitted.is_(False))))

    def list_submitted_attempts(self, exam_id: int) -> List[StudentExam]:
        stmt = select(StudentExam).where(StudentExam.exam_id == exam_id, StudentExam.is_submitted.is_(True)).order_by(StudentExam.id)
        return list(self.db.scalars(stmt))

    def mark_submitted(self, attempt_id: int, now: datetime) -> bool:
        """Compare-and-set the submitted flag. True only for the caller that flipped it."""
        res = self.db.execute(
            update(StudentExam)
            .where(StudentExam.id == attempt_id, StudentExam.is_submitted.is_(False))
            .values(is_submitted=True, submit_date_time=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    # ---- answers ----
    def get_answer(self, attempt_id: int, question_id: int) -> Optional[StudentAnswer]:
        return self.db.scalar(select(StudentAnswer).where(
            StudentAnswer.student_exam_id == attempt_id, StudentAnswer.question_id == question_id))

    def list_answers(self, attempt_id: int) -> List[StudentAnswer]:
        stmt = select(StudentAnswer).where(StudentAnswer.student_exam_id == attempt_id).order_by(StudentAnswer.question_id)
        return list(self.db.scalars(stmt))

    def update_open_answer(self, answer_id: int, attempt_id: int, **values) -> bool:
        """Write an answer row only while its attempt is still open. Last write wins."""
        open_attempt = select(StudentExam.id).where(StudentExam.id == attempt_id, StudentExam.is_submitted.is_(False))
        res = self.db.execute(
            update(StudentAnswer)
            .where(StudentAnswer.id == answer_id, StudentAnswer.student_exam_id.in_(open_attempt))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    # ---- audit ----
    def count_audit_events(self, event_type: str, attempt_id: int) -> int:
        stmt = select(func.count(AuditLog.id)).where(AuditLog.event_type == event_type, AuditLog.student_exam_id == attempt_id)
        return self.db.scalar(stmt) or 0
