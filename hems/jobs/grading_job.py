"""
Background jobs run by the RQ worker.

Both jobs only speed up work the request path would do anyway: expired
attempts are force-submitted on their next touch, and grading is
idempotent, so a job that dies halfway can simply be enqueued again.
"""
import logging
from rq import get_current_job
from hems.core.clock import utcnow
from hems.core.database import SessionLocal
from hems.services.credential_gate import CredentialGate
from hems.services.exam_session import ExamSessionManager
from hems.services.grading import GradingEngine

logger = logging.getLogger(__name__)

def _meta(**values):
    job = get_current_job()
    if job is None:
        return
    job.meta.update(values); job.save_meta()

def sweep_expired_attempts_job(session_factory=SessionLocal, clock=utcnow):
    _meta(state="running")
    db = session_factory()
    try:
        submitted = ExamSessionManager(db, clock).submit_expired_attempts()
        closed = CredentialGate(db, clock).cleanup_expired_sessions()
        result = {"auto_submitted": submitted, "sessions_closed": closed}
        _meta(state="done", **result)
        logger.info(f"Expiry sweep finished: {result}")
        return result
    except Exception:
        _meta(state="failed")
        raise
    finally:
        db.close()

def regrade_exam_job(exam_id: int, session_factory=SessionLocal, clock=utcnow):
    _meta(state="running", exam_id=exam_id)
    db = session_factory()
    try:
        results = GradingEngine(db, clock).grade_all_submissions(exam_id)
        graded = sum(1 for r in results if r.ok)
        result = {"exam_id": exam_id, "graded": graded, "failed": len(results) - graded}
        _meta(state="done", **result)
        return result
    except Exception:
        _meta(state="failed")
        raise
    finally:
        db.close()
