from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List
from datetime import datetime
from hems.api.deps import get_exam_context, get_exam_manager, raise_for
from hems.models.orm import Question
from hems.services.exam_session import ExamSessionManager, RequestContext

router = APIRouter()

class ChoiceOut(BaseModel):
    id: int
    text: str
    order: int

class QuestionOut(BaseModel):
    id: int
    exam_id: int
    order: int
    text: str
    choices: List[ChoiceOut]

class ExamOut(BaseModel):
    id: int
    title: str
    academic_year: int
    duration_minutes: int
    question_count: int

class AttemptStarted(BaseModel):
    attempt_id: int
    exam_id: int
    start_date_time: datetime
    remaining_seconds: int
    questions: List[QuestionOut]

def question_out(manager: ExamSessionManager, q: Question) -> QuestionOut:
    # Correctness flags never leave the server.
    choices = [ChoiceOut(id=c.id, text=c.choice_text, order=c.choice_order) for c in manager.store.list_choices(q.id)]
    return QuestionOut(id=q.id, exam_id=q.exam_id, order=q.question_order, text=q.question_text, choices=choices)

@router.get("", response_model=List[ExamOut])
def list_exams(ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    return [ExamOut(id=e.id, title=e.title, academic_year=e.academic_year, duration_minutes=e.duration_minutes,
                    question_count=manager.store.count_questions(e.id)) for e in manager.get_available_exams()]

@router.post("/{exam_id}/start", response_model=AttemptStarted, status_code=201)
def start_exam(exam_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    user = manager.store.get_user(ctx.user_id)
    if user is None or user.must_change_password:
        raise HTTPException(403, "Change your password before starting the exam")
    attempt = raise_for(manager.start_exam(ctx, exam_id))
    remaining = manager.timer.remaining_time(attempt.id)
    return AttemptStarted(attempt_id=attempt.id, exam_id=attempt.exam_id, start_date_time=attempt.start_date_time,
                          remaining_seconds=int(remaining.total_seconds()),
                          questions=[question_out(manager, q) for q in manager.get_exam_questions(exam_id)])

@router.get("/questions/{question_id}/next", response_model=QuestionOut)
def next_question(question_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    return question_out(manager, raise_for(manager.navigate(ctx, question_id, forward=True)))

@router.get("/questions/{question_id}/previous", response_model=QuestionOut)
def previous_question(question_id: int, ctx: RequestContext = Depends(get_exam_context), manager: ExamSessionManager = Depends(get_exam_manager)):
    return question_out(manager, raise_for(manager.navigate(ctx, question_id, forward=False)))
