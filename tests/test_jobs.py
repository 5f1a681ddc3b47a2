import pytest

from conftest import correct_choice
from hems.jobs.grading_job import regrade_exam_job, sweep_expired_attempts_job
from hems.services.credential_gate import PHASE_IDENTITY, CredentialGate
from hems.services.exam_session import ExamSessionManager


@pytest.fixture
def manager(db, clock):
    return ExamSessionManager(db, clock)


def test_sweep_submits_expired_attempts_and_closes_sessions(db, clock, session_factory, manager, ctx, seeded):
    attempt = manager.start_exam(ctx, seeded.exam.id).value
    CredentialGate(db, clock).create_login_session(seeded.other_user.id, PHASE_IDENTITY)
    clock.advance(hours=9)
    result = sweep_expired_attempts_job(session_factory=session_factory, clock=clock)
    assert result == {"auto_submitted": 1, "sessions_closed": 2}
    db.expire_all()
    assert manager.store.get_attempt(attempt.id).is_submitted


def test_sweep_with_nothing_to_do(session_factory, clock, seeded):
    assert sweep_expired_attempts_job(session_factory=session_factory, clock=clock) == {"auto_submitted": 0, "sessions_closed": 0}


def test_regrade_exam(db, clock, session_factory, manager, ctx, seeded):
    attempt = manager.start_exam(ctx, seeded.exam.id).value
    q = manager.get_exam_questions(seeded.exam.id)[0]
    manager.save_answer(ctx, attempt.id, q.id, correct_choice(db, q.id).id)
    manager.submit_exam(ctx, attempt.id)
    result = regrade_exam_job(seeded.exam.id, session_factory=session_factory, clock=clock)
    assert result == {"exam_id": seeded.exam.id, "graded": 1, "failed": 0}
    db.expire_all()
    assert manager.store.get_attempt(attempt.id).score == 1
