import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-jwt-signing-32b")
os.environ.setdefault("TIMESTAMP_SECRET", "test-timestamp-secret")

from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hems.core.clock import FrozenClock
from hems.core.security import hash_password
from hems.models.orm import Base, Choice, Student, User
from hems.services.credential_gate import PHASE_EXAM_DAY, CredentialGate
from hems.services.exam_admin import ExamAdministration
from hems.services.exam_session import RequestContext

NOW = datetime(2026, 3, 10, 9, 0, 0)
PHASE1_SUFFIX = "19"
SESSION_PASSWORD = "EXAM-DAY-1"
COORDINATOR_PASSWORD = "Coord#2026"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


def add_student(db, email, id_number, batch_year="2019"):
    user = User(username=email, password_hash=hash_password("provisioned"), role="student",
                login_phase_completed=False, must_change_password=True)
    db.add(user)
    db.flush()
    student = Student(user_id=user.id, id_number=id_number, university_email=email,
                      first_name="Abebe", last_name="Kebede", batch_year=batch_year)
    db.add(student)
    db.commit()
    return user, student


def build_exam(db, clock, title="Anatomy Final", year=2026, duration=60, questions=5, publish=True):
    admin = ExamAdministration(db, clock)
    exam = admin.create_exam(title, year, duration).value
    for i in range(questions):
        admin.add_question(exam.id, f"Question {i + 1}?", ["Alpha", "Bravo", "Charlie", "Delta"], i % 4)
    if publish:
        admin.publish_exam(exam.id)
    return exam


@pytest.fixture
def seeded(db, clock):
    user, student = add_student(db, "student@hems.edu", "SE123")
    other_user, other_student = add_student(db, "other@aau.edu.et", "SE456", batch_year="2015")
    coordinator = User(username="coordinator@hems.edu", password_hash=hash_password(COORDINATOR_PASSWORD),
                       role="coordinator", login_phase_completed=True, must_change_password=False)
    db.add(coordinator)
    db.commit()

    exam = build_exam(db, clock)
    credential = ExamAdministration(db, clock).issue_session_credential(exam.id, SESSION_PASSWORD).value
    return SimpleNamespace(user=user, student=student, other_user=other_user, other_student=other_student,
                           coordinator=coordinator, exam=exam, credential=credential)


def exam_day_context(db, clock, user, student, credential) -> RequestContext:
    """Walk a student through both login phases and return their request context."""
    gate = CredentialGate(db, clock)
    gate.complete_phase1_login(user.id)
    session = gate.create_login_session(user.id, PHASE_EXAM_DAY, exam_session_id=credential.id).value
    return RequestContext(user_id=user.id, student_id=student.id, login_token=session.session_token)


@pytest.fixture
def ctx(db, clock, seeded):
    return exam_day_context(db, clock, seeded.user, seeded.student, seeded.credential)


@pytest.fixture
def other_ctx(db, clock, seeded):
    return exam_day_context(db, clock, seeded.other_user, seeded.other_student, seeded.credential)


def correct_choice(db, question_id) -> Choice:
    return db.scalar(select(Choice).where(Choice.question_id == question_id, Choice.is_correct.is_(True)))


def wrong_choice(db, question_id) -> Choice:
    return db.scalar(select(Choice).where(Choice.question_id == question_id, Choice.is_correct.is_(False)).limit(1))


@pytest.fixture
def client(db, clock):
    from fastapi.testclient import TestClient
    from hems.core.clock import get_clock
    from hems.core.database import get_db
    from hems.main import app

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()
