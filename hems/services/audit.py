"""
Fire-and-forget audit trail.

Audit writes never fail the operation that triggered them: a storage fault
is logged and the event dropped.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.models.orm import AuditLog

logger = logging.getLogger(__name__)


class AuditEvent:
    PHASE1_LOGIN = "PHASE1_LOGIN"
    PHASE1_LOGIN_FAILED = "PHASE1_LOGIN_FAILED"
    PHASE2_LOGIN = "PHASE2_LOGIN"
    PHASE2_LOGIN_FAILED = "PHASE2_LOGIN_FAILED"
    STAFF_LOGIN = "STAFF_LOGIN"
    CREDENTIAL_CHANGED = "CREDENTIAL_CHANGED"
    EXAM_STARTED = "EXAM_STARTED"
    EXAM_SUBMITTED = "EXAM_SUBMITTED"
    EXAM_AUTO_SUBMITTED = "EXAM_AUTO_SUBMITTED"
    EXAM_GRADED = "EXAM_GRADED"
    EXAM_PUBLISHED = "EXAM_PUBLISHED"
    SESSION_CREDENTIAL_ISSUED = "SESSION_CREDENTIAL_ISSUED"
    TIMESTAMP_TAMPERED = "TIMESTAMP_TAMPERED"
    TIMING_MISMATCH = "TIMING_MISMATCH"
    TIMING_OVERTIME = "TIMING_OVERTIME"
    SYNC_CONFLICT = "SYNC_CONFLICT"


class AuditSeverity:
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.CRITICAL: logging.ERROR,
}


class AuditRecorder:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def record(
        self,
        event_type: str,
        description: str,
        severity: str = AuditSeverity.INFO,
        user_id: Optional[int] = None,
        exam_id: Optional[int] = None,
        attempt_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.log(_LEVELS.get(severity, logging.INFO), f"[audit] {event_type}: {description}")
        try:
            self.db.add(AuditLog(
                event_type=event_type,
                description=description,
                severity=severity,
                user_id=user_id,
                exam_id=exam_id,
                student_exam_id=attempt_id,
                ip_address=ip_address,
                details=details or {},
                timestamp=self.clock(),
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Audit write failed for {event_type}: {e}")
