from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List
from sqlalchemy import select
from sqlalchemy.orm import Session
from marisa.core.auth import get_current_user
from marisa.core.database import get_db
from marisa.models.orm import Course, User, UserCourseProgress
from marisa.services import courses as svc

router = APIRouter()

class QuizAnswer(BaseModel):
    question_id: str
    selected_option_id: str

class QuizSubmission(BaseModel):
    answers: List[QuizAnswer] = Field(min_length=1)

@router.get("")
def list_courses(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    courses = list(db.scalars(select(Course).where(Course.is_published.is_(True)).order_by(Course.created_at.desc())))
    progress = {
        p.course_id: p for p in db.scalars(select(UserCourseProgress).where(UserCourseProgress.user_id == user.id))
    }
    return {"data": [
        {**c.to_dict(), "total_steps": len(c.steps), "progress": progress[c.id].to_dict() if c.id in progress else None}
        for c in courses
    ]}

@router.get("/{course_id}")
def get_course(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    course = svc.get_course(db, course_id, published_only=True)
    progress = svc.get_progress(db, user.id, course.id)
    return {"data": {**svc.learner_course_view(course), "progress": progress.to_dict() if progress else None}}

@router.post("/{course_id}/start", status_code=201)
def start(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    course = svc.get_course(db, course_id, published_only=True)
    return {"data": svc.start_course(db, user, course).to_dict()}

@router.post("/{course_id}/steps/{step_id}/submit")
def submit(course_id: str, step_id: str, payload: QuizSubmission, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    svc.get_course(db, course_id, published_only=True)
    step = svc.get_step(db, course_id, step_id)
    attempt = svc.submit_step_quiz(db, user, step, [a.model_dump() for a in payload.answers])
    return {"data": {
        "attempt": attempt.to_dict(),
        "passed": attempt.passed,
        "score": attempt.score,
        "total_questions": attempt.total_questions,
    }}

@router.post("/{course_id}/steps/{step_id}/complete")
def complete(course_id: str, step_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    course = svc.get_course(db, course_id, published_only=True)
    step = svc.get_step(db, course_id, step_id)
    return {"data": svc.complete_step(db, user, course, step).to_dict()}

@router.get("/{course_id}/progress")
def progress(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    course = svc.get_course(db, course_id, published_only=True)
    prog = svc.get_progress(db, user.id, course.id)
    attempts = svc.list_attempts(db, user.id, [s.id for s in course.steps])
    return {"data": {"progress": prog.to_dict() if prog else None, "attempts": [a.to_dict() for a in attempts]}}

@router.get("/{course_id}/steps/{step_id}/attempts")
def attempts(course_id: str, step_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    step = svc.get_step(db, course_id, step_id)
    return {"data": [a.to_dict() for a in svc.list_attempts(db, user.id, [step.id])]}
