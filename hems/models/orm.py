from datetime import datetime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, JSON, Float, DateTime, UniqueConstraint, Index
from hems.core.clock import utcnow

class Base(DeclarativeBase): pass

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default="student")
    login_phase_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class Student(Base):
    __tablename__ = "students"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), unique=True)
    id_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    university_email: Mapped[str] = mapped_column(String(100))
    first_name: Mapped[str] = mapped_column(String(50))
    last_name: Mapped[str] = mapped_column(String(50))
    batch_year: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class Exam(Base):
    __tablename__ = "exams"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    academic_year: Mapped[int] = mapped_column(Integer)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (Index("idx_questions_exam_order", "exam_id", "question_order"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    exam_id: Mapped[int] = mapped_column(Integer, ForeignKey("exams.id"))
    question_text: Mapped[str] = mapped_column(Text)
    question_order: Mapped[int] = mapped_column(Integer)

class Choice(Base):
    __tablename__ = "choices"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("questions.id"), index=True)
    choice_text: Mapped[str] = mapped_column(Text)
    choice_order: Mapped[int] = mapped_column(Integer)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)

class ExamSession(Base):
    """Exam-day session credential issued by a coordinator."""
    __tablename__ = "exam_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    exam_id: Mapped[int] = mapped_column(Integer, ForeignKey("exams.id"), index=True)
    session_password: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

class LoginSession(Base):
    __tablename__ = "login_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    session_token: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    login_phase: Mapped[int] = mapped_column(Integer)
    exam_session_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("exam_sessions.id"), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(45), default="127.0.0.1")
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    logout_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

class StudentExam(Base):
    """A student's single attempt at an exam."""
    __tablename__ = "student_exams"
    __table_args__ = (UniqueConstraint("student_id", "exam_id", name="uq_student_exam"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(Integer, ForeignKey("students.id"), index=True)
    exam_id: Mapped[int] = mapped_column(Integer, ForeignKey("exams.id"), index=True)
    start_date_time: Mapped[datetime] = mapped_column(DateTime)
    submit_date_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    graded_date_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

class StudentAnswer(Base):
    __tablename__ = "student_answers"
    __table_args__ = (UniqueConstraint("student_exam_id", "question_id", name="uq_student_answer"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_exam_id: Mapped[int] = mapped_column(Integer, ForeignKey("student_exams.id"), index=True)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("questions.id"))
    choice_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("choices.id"), nullable=True)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    last_modified: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_al_event_attempt", "event_type", "student_exam_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(50))
    description: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(20), default="info")
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exam_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    student_exam_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
