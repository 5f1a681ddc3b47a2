from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, timedelta
from hems.api.deps import get_exam_context, get_exam_manager, raise_for
from hems.core.results import ErrorKind, Result
from hems.services.exam_session import ExamSessionManager, RequestContext
from hems.services.timer import format_duration

router = APIRouter()

class AnswerIn(BaseModel):
    choice_id: int

class FlagIn(BaseModel):
    flagged: bool = True

class AnswerOut(BaseModel):
    question_id: int
    choice_id: Optional[int] = None
    is_flagged: bool

class AttemptOut(BaseModel):
    attempt_id: int
    exam_id: int
    is_submitted: bool
    total_questions: int
    answered: int
    flagged: int
    unanswered: int
    remaining_seconds: int
    formatted_remaining: str
    score: Optional[float] = None
    percentage: Optional[float] = None
    answers: List[AnswerOut]

class GradingOut(BaseModel):
    total_questions: int
    correct: int
    incorrect: int
    unanswered: int
    percentage: float
    grade: str

class SubmissionOut(BaseModel):
    attempt_id: int
    submitted_at: datetime
    automatic: bool
    result: Optional[GradingOut] = None

class TimerOut(BaseModel):
    server_time: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    remaining_seconds: int
    formatted_remaining: str
    is_expired: bool
    hash: str

class TimerVerifyIn(BaseModel):
    server_time: datetime
    hash: str
    client_elapsed_seconds: Optional[float] = Field(default=None, ge=0)

class TimerVerifyOut(BaseModel):
    valid: bool
    suspicious: bool
    reasons: List[str]
    remaining_seconds: int

def _owned(manager: ExamSessionManager, ctx: RequestContext, attempt_id: int):
    attempt = manager.get_owned_attempt(ctx, attempt_id)
    if attempt is None: raise HTTPException(404, "Exam attempt not found")
    return attempt

def _grading_out(g) -> Optional[GradingOut]:
    if g is None: return None
    return GradingOut(total_questions=g.total_questions, correct=g.correct, incorrect=g.incorrect,
                      unanswered=g.unanswered, percentage=g.percentage, grade=g.grade)

@router.get("/{attempt_id}", response_model=AttemptOut)
def get_attempt(attempt_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    o = raise_for(manager.get_attempt_overview(ctx, attempt_id))
    return AttemptOut(attempt_id=o.attempt_id, exam_id=o.exam_id, is_submitted=o.is_submitted, total_questions=o.total_questions,
                      answered=o.answered, flagged=o.flagged, unanswered=o.unanswered,
                      remaining_seconds=int(o.remaining.total_seconds()), formatted_remaining=format_duration(o.remaining),
                      score=o.score, percentage=o.percentage,
                      answers=[AnswerOut(question_id=a.question_id, choice_id=a.choice_id, is_flagged=a.is_flagged) for a in o.answers])

@router.put("/{attempt_id}/answers/{question_id}", response_model=AnswerOut)
def save_answer(attempt_id: int, question_id: int, payload: AnswerIn, ctx: RequestContext = Depends(get_exam_context),
                manager: ExamSessionManager = Depends(get_exam_manager)):
    a = raise_for(manager.save_answer(ctx, attempt_id, question_id, payload.choice_id))
    return AnswerOut(question_id=a.question_id, choice_id=a.choice_id, is_flagged=a.is_flagged)

@router.put("/{attempt_id}/flags/{question_id}", response_model=AnswerOut)
def flag_question(attempt_id: int, question_id: int, payload: FlagIn, ctx: RequestContext = Depends(get_exam_context),
                  manager: ExamSessionManager = Depends(get_exam_manager)):
    a = raise_for(manager.flag_question(ctx, attempt_id, question_id, payload.flagged))
    return AnswerOut(question_id=a.question_id, choice_id=a.choice_id, is_flagged=a.is_flagged)

@router.post("/{attempt_id}/submit", response_model=SubmissionOut)
def submit_exam(attempt_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    receipt = raise_for(manager.submit_exam(ctx, attempt_id))
    return SubmissionOut(attempt_id=receipt.attempt_id, submitted_at=receipt.submitted_at, automatic=receipt.automatic,
                         result=_grading_out(receipt.grading))

@router.get("/{attempt_id}/timer", response_model=TimerOut)
def get_timer(attempt_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    attempt = _owned(manager, ctx, attempt_id)
    ts = manager.timer.secure_timestamp(attempt_id)
    if ts.is_expired and not attempt.is_submitted:
        manager.auto_submit(attempt_id)
    return TimerOut(server_time=ts.server_time, start_time=ts.start_time, end_time=ts.end_time,
                    remaining_seconds=ts.total_seconds_remaining, formatted_remaining=ts.formatted_remaining,
                    is_expired=ts.is_expired, hash=ts.hash)

@router.post("/{attempt_id}/timer/verify", response_model=TimerVerifyOut)
def verify_timer(attempt_id: int, payload: TimerVerifyIn, ctx: RequestContext = Depends(get_exam_context),
                 manager: ExamSessionManager = Depends(get_exam_manager)):
    _owned(manager, ctx, attempt_id)
    server_time = payload.server_time.replace(tzinfo=None)
    if not manager.timer.validate_timestamp_hash(attempt_id, server_time, payload.hash):
        raise_for(Result.failure(ErrorKind.INTEGRITY_VIOLATION, "timestamp_tampered", "Timestamp does not match the server record"))
    elapsed = timedelta(seconds=payload.client_elapsed_seconds) if payload.client_elapsed_seconds is not None else None
    assessment = manager.timer.detect_suspicious_timing_activity(attempt_id, elapsed)
    remaining = manager.timer.remaining_time(attempt_id)
    return TimerVerifyOut(valid=True, suspicious=assessment.suspicious, reasons=assessment.reasons,
                          remaining_seconds=int(remaining.total_seconds()))

@router.get("/{attempt_id}/result", response_model=GradingOut)
def get_result(attempt_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    attempt = _owned(manager, ctx, attempt_id)
    if not attempt.is_submitted: raise HTTPException(409, "Exam has not been submitted")
    return _grading_out(manager.grading.get_grading_result(attempt_id))
