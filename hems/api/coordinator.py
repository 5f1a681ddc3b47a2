from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from hems.api.deps import raise_for, require_coordinator
from hems.core.auth import TokenData
from hems.core.clock import Clock, get_clock
from hems.core.config import settings
from hems.core.database import get_db
from hems.jobs.grading_job import regrade_exam_job, sweep_expired_attempts_job
from hems.jobs.queue import queue
from hems.services.exam_admin import ExamAdministration

router = APIRouter()

class ExamCreate(BaseModel):
    title: str
    academic_year: int
    duration_minutes: int

class ExamRow(BaseModel):
    id: int
    title: str
    academic_year: int
    duration_minutes: int
    is_published: bool

class QuestionCreate(BaseModel):
    text: str
    choices: List[str] = Field(min_length=2)
    correct_index: int = Field(ge=0)

class QuestionCreated(BaseModel):
    id: int
    exam_id: int
    order: int

class CredentialIssue(BaseModel):
    password: str
    expires_at: Optional[datetime] = None

class CredentialOut(BaseModel):
    id: int
    exam_id: int
    is_active: bool
    expiry_date: Optional[datetime] = None

def _admin(user: TokenData, db: Session, clock: Clock) -> ExamAdministration:
    return ExamAdministration(db, clock, user_id=user.user_id)

def _exam_row(e) -> ExamRow:
    return ExamRow(id=e.id, title=e.title, academic_year=e.academic_year, duration_minutes=e.duration_minutes, is_published=e.is_published)

def _credential_out(c) -> CredentialOut:
    return CredentialOut(id=c.id, exam_id=c.exam_id, is_active=c.is_active, expiry_date=c.expiry_date)

@router.get("/exams", response_model=List[ExamRow])
def list_exams(user: TokenData = Depends(require_coordinator), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [_exam_row(e) for e in _admin(user, db, clock).list_exams()]

@router.post("/exams", response_model=ExamRow, status_code=201)
def create_exam(payload: ExamCreate, user: TokenData = Depends(require_coordinator), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return _exam_row(raise_for(_admin(user, db, clock).create_exam(payload.title, payload.academic_year, payload.duration_minutes)))

@router.post("/exams/{exam_id}/questions", response_model=QuestionCreated, status_code=201)
def add_question(exam_id: int, payload: QuestionCreate, user: TokenData = Depends(require_coordinator),
                 db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    q = raise_for(_admin(user, db, clock).add_question(exam_id, payload.text, payload.choices, payload.correct_index))
    return QuestionCreated(id=q.id, exam_id=q.exam_id, order=q.question_order)

@router.post("/exams/{exam_id}/publish", response_model=ExamRow)
def publish_exam(exam_id: int, user: TokenData = Depends(require_coordinator), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return _exam_row(raise_for(_admin(user, db, clock).publish_exam(exam_id)))

@router.post("/exams/{exam_id}/session-credentials", response_model=CredentialOut, status_code=201)
def issue_credential(exam_id: int, payload: CredentialIssue, user: TokenData = Depends(require_coordinator),
                     db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    expires_at = payload.expires_at.replace(tzinfo=None) if payload.expires_at else None
    return _credential_out(raise_for(_admin(user, db, clock).issue_session_credential(exam_id, payload.password, expires_at)))

@router.post("/session-credentials/{credential_id}/deactivate", response_model=CredentialOut)
def deactivate_credential(credential_id: int, user: TokenData = Depends(require_coordinator),
                          db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return _credential_out(raise_for(_admin(user, db, clock).deactivate_session_credential(credential_id)))

@router.post("/exams/{exam_id}/regrade", status_code=202)
def regrade_exam(exam_id: int, user: TokenData = Depends(require_coordinator)):
    job = queue.enqueue(regrade_exam_job, exam_id, job_timeout=settings.JOB_TIMEOUT_SECONDS)
    return {"job_id": job.get_id(), "exam_id": exam_id}

@router.post("/attempts/sweep-expired", status_code=202)
def sweep_expired(user: TokenData = Depends(require_coordinator)):
    job = queue.enqueue(sweep_expired_attempts_job, job_timeout=settings.JOB_TIMEOUT_SECONDS)
    return {"job_id": job.get_id()}
