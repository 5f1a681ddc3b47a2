"""
Server-authoritative exam timing.

Remaining time is always recomputed from the persisted attempt start and
the server clock; nothing the client reports feeds into it. Clients may
render a countdown between polls, but every decision is re-derived here.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.core.config import settings
from hems.services.audit import AuditEvent, AuditRecorder, AuditSeverity
from hems.services.store import ExamStore

logger = logging.getLogger(__name__)

ZERO = timedelta(0)


def format_duration(value: Optional[timedelta]) -> str:
    """Render as HH:MM:SS. Hours are not wrapped at 24; zero and negative render as 00:00:00."""
    if value is None or value <= ZERO:
        return "00:00:00"
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


@dataclass(frozen=True)
class SecureTimestamp:
    attempt_id: int
    server_time: datetime
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    remaining: timedelta
    is_expired: bool
    hash: str

    @property
    def formatted_remaining(self) -> str:
        return format_duration(self.remaining)

    @property
    def total_seconds_remaining(self) -> int:
        return max(0, int(self.remaining.total_seconds()))


@dataclass
class TimingAssessment:
    """Advisory signal; never used to block an attempt."""
    attempt_id: int
    suspicious: bool = False
    server_elapsed_seconds: float = 0.0
    client_elapsed_seconds: Optional[float] = None
    deficit_seconds: float = 0.0
    mismatch_count: int = 0
    reasons: List[str] = field(default_factory=list)


class TimerIntegrityEngine:
    def __init__(self, db: Session, clock: Clock = utcnow, audit: Optional[AuditRecorder] = None):
        self.db = db
        self.clock = clock
        self.store = ExamStore(db)
        self.audit = audit or AuditRecorder(db, clock)

    def exam_duration(self, exam_id: int) -> timedelta:
        exam = self.store.get_exam(exam_id)
        if exam is None:
            return ZERO
        return timedelta(minutes=exam.duration_minutes)

    def elapsed(self, attempt_id: int) -> Optional[timedelta]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return None
        return self.clock() - attempt.start_date_time

    def remaining_time(self, attempt_id: int) -> timedelta:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return ZERO
        remaining = self.exam_duration(attempt.exam_id) - (self.clock() - attempt.start_date_time)
        return remaining if remaining > ZERO else ZERO

    def is_expired(self, attempt_id: int) -> bool:
        return self.remaining_time(attempt_id) <= ZERO

    # ============= Tamper-evident timestamps =============

    @staticmethod
    def _digest(attempt_id: int, server_time: datetime) -> str:
        message = f"{attempt_id}|{server_time.isoformat()}".encode()
        return hmac.new(settings.TIMESTAMP_SECRET.get_secret_value().encode(), message, hashlib.sha256).hexdigest()

    def secure_timestamp(self, attempt_id: int) -> SecureTimestamp:
        now = self.clock()
        attempt = self.store.get_attempt(attempt_id)
        start = attempt.start_date_time if attempt else None
        end = start + self.exam_duration(attempt.exam_id) if attempt else None
        remaining = ZERO if attempt and attempt.is_submitted else self.remaining_time(attempt_id)
        return SecureTimestamp(
            attempt_id=attempt_id,
            server_time=now,
            start_time=start,
            end_time=end,
            remaining=remaining,
            is_expired=remaining <= ZERO,
            hash=self._digest(attempt_id, now),
        )

    def validate_timestamp_hash(self, attempt_id: int, server_time: datetime, hash_value: Optional[str]) -> bool:
        if not hash_value or server_time is None:
            return False
        valid = hmac.compare_digest(self._digest(attempt_id, server_time), hash_value)
        if not valid:
            self.audit.record(
                AuditEvent.TIMESTAMP_TAMPERED,
                f"Timestamp hash mismatch for attempt {attempt_id}",
                severity=AuditSeverity.WARNING,
                attempt_id=attempt_id,
                details={"server_time": server_time.isoformat()},
            )
        return valid

    # ============= Elapsed-time integrity =============

    def validate_exam_time_integrity(self, attempt_id: int, client_reported_elapsed: timedelta) -> bool:
        """False when the client claims less elapsed time than the server can prove has passed."""
        server_elapsed = self.elapsed(attempt_id)
        if server_elapsed is None:
            return False
        tolerance = timedelta(seconds=settings.TIMING_TOLERANCE_SECONDS)
        return client_reported_elapsed >= server_elapsed - tolerance

    def detect_suspicious_timing_activity(self, attempt_id: int,
                                          client_reported_elapsed: Optional[timedelta] = None) -> TimingAssessment:
        assessment = TimingAssessment(attempt_id=attempt_id)
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return assessment

        server_elapsed = self.clock() - attempt.start_date_time
        assessment.server_elapsed_seconds = server_elapsed.total_seconds()
        previous = self.store.count_audit_events(AuditEvent.TIMING_MISMATCH, attempt_id)
        assessment.mismatch_count = previous

        if client_reported_elapsed is not None:
            assessment.client_elapsed_seconds = client_reported_elapsed.total_seconds()
            if not self.validate_exam_time_integrity(attempt_id, client_reported_elapsed):
                deficit = (server_elapsed - client_reported_elapsed).total_seconds()
                assessment.deficit_seconds = deficit
                assessment.mismatch_count = previous + 1
                assessment.reasons.append("client_elapsed_behind_server")
                if deficit >= settings.TIMING_LARGE_MISMATCH_SECONDS:
                    assessment.reasons.append("large_mismatch")
                if assessment.mismatch_count >= settings.TIMING_REPEAT_THRESHOLD:
                    assessment.reasons.append("repeated_mismatch")
                self.audit.record(
                    AuditEvent.TIMING_MISMATCH,
                    f"Client reported {assessment.client_elapsed_seconds:.0f}s elapsed, server measured "
                    f"{assessment.server_elapsed_seconds:.0f}s for attempt {attempt_id}",
                    severity=AuditSeverity.WARNING,
                    exam_id=attempt.exam_id,
                    attempt_id=attempt_id,
                    details={"deficit_seconds": deficit, "mismatch_count": assessment.mismatch_count},
                )

        allowed = self.exam_duration(attempt.exam_id) + timedelta(minutes=settings.OVERTIME_GRACE_MINUTES)
        if not attempt.is_submitted and server_elapsed > allowed:
            assessment.reasons.append("open_past_deadline")
            self.audit.record(
                AuditEvent.TIMING_OVERTIME,
                f"Attempt {attempt_id} still open {format_duration(server_elapsed - allowed)} past its deadline",
                severity=AuditSeverity.WARNING,
                exam_id=attempt.exam_id,
                attempt_id=attempt_id,
            )

        # A single small mismatch inside the large threshold is treated as latency noise.
        assessment.suspicious = any(r in assessment.reasons for r in ("large_mismatch", "repeated_mismatch", "open_past_deadline"))
        if assessment.suspicious:
            logger.warning(f"Suspicious timing on attempt {attempt_id}: {', '.join(assessment.reasons)}")
        return assessment
