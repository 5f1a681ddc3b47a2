"""
Scoring of submitted attempts.

Grading reads only the answer set and the exam's correct choices, never its
own earlier output, so regrading an attempt always reproduces the same score.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from hems.core.clock import Clock, utcnow
from hems.core.results import Result, not_found, precondition, storage_guarded
from hems.services.audit import AuditEvent, AuditRecorder
from hems.services.store import ExamStore

logger = logging.getLogger(__name__)

GRADE_BANDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))


def letter_grade(percentage: float) -> str:
    for floor, letter in GRADE_BANDS:
        if percentage >= floor:
            return letter
    return "F"


@dataclass(frozen=True)
class GradingResult:
    attempt_id: int
    total_questions: int
    correct: int
    incorrect: int
    unanswered: int
    percentage: float
    grade: str


class GradingEngine:
    def __init__(self, db: Session, clock: Clock = utcnow, audit: Optional[AuditRecorder] = None):
        self.db = db
        self.clock = clock
        self.store = ExamStore(db)
        self.audit = audit or AuditRecorder(db, clock)

    def calculate_score(self, attempt_id: int) -> int:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return 0
        correct = self.store.correct_choice_ids(attempt.exam_id)
        return sum(1 for a in self.store.list_answers(attempt_id)
                   if a.choice_id is not None and correct.get(a.question_id) == a.choice_id)

    @staticmethod
    def calculate_percentage(score: float, total: float) -> float:
        if total <= 0:
            return 0.0
        pct = score / total * 100
        return round(min(100.0, max(0.0, pct)), 2)

    def get_grading_result(self, attempt_id: int) -> Optional[GradingResult]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return None
        total = self.store.count_questions(attempt.exam_id)
        answers = self.store.list_answers(attempt_id)
        answered = sum(1 for a in answers if a.choice_id is not None)
        correct = self.calculate_score(attempt_id)
        pct = self.calculate_percentage(correct, total)
        return GradingResult(
            attempt_id=attempt_id,
            total_questions=total,
            correct=correct,
            incorrect=answered - correct,
            unanswered=max(0, total - answered),
            percentage=pct,
            grade=letter_grade(pct),
        )

    @storage_guarded
    def grade_exam(self, attempt_id: int) -> Result[GradingResult]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            return not_found("attempt_not_found", "Exam attempt not found")
        if not attempt.is_submitted:
            return precondition("attempt_not_submitted", "Exam must be submitted before grading")

        result = self.get_grading_result(attempt_id)
        attempt.score = float(result.correct)
        attempt.percentage = result.percentage
        attempt.graded_date_time = self.clock()
        self.db.commit()

        self.audit.record(
            AuditEvent.EXAM_GRADED,
            f"Attempt {attempt_id} graded {result.correct}/{result.total_questions} ({result.percentage}%)",
            exam_id=attempt.exam_id,
            attempt_id=attempt_id,
            details={"score": result.correct, "percentage": result.percentage, "grade": result.grade},
        )
        return Result.success(result)

    def grade_all_submissions(self, exam_id: int) -> List[Result]:
        results = [self.grade_exam(a.id) for a in self.store.list_submitted_attempts(exam_id)]
        failed = sum(1 for r in results if not r.ok)
        logger.info(f"Graded {len(results) - failed}/{len(results)} submissions for exam {exam_id}")
        return results

    def validate_grading_criteria(self, exam_id: int) -> bool:
        """True when the exam has questions and each has exactly one correct choice."""
        questions = self.store.list_questions(exam_id)
        if not questions:
            return False
        for q in questions:
            if sum(1 for c in self.store.list_choices(q.id) if c.is_correct) != 1:
                logger.warning(f"Question {q.id} of exam {exam_id} does not have exactly one correct choice")
                return False
        return True
