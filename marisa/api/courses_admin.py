import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import require_admin
from marisa.core.database import get_db
from marisa.models.orm import Course, CourseStep, EvaluationQuestion, QuestionOption, User
from marisa.services import courses as svc

logger = logging.getLogger(__name__)
router = APIRouter()


class CourseIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    is_published: bool = False

class CourseUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_published: Optional[bool] = None

class StepIn(BaseModel):
    order_index: int = Field(ge=0)
    title: str = Field(min_length=1, max_length=255)
    content: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    has_evaluation: bool = False
    evaluation_required: bool = False
    min_score: Optional[int] = Field(default=None, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)

class StepUpdate(BaseModel):
    order_index: Optional[int] = Field(default=None, ge=0)
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    has_evaluation: Optional[bool] = None
    evaluation_required: Optional[bool] = None
    min_score: Optional[int] = Field(default=None, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)

class OptionIn(BaseModel):
    option_text: str = Field(min_length=1)
    is_correct: bool = False
    order_index: Optional[int] = None

class QuestionIn(BaseModel):
    order_index: int = Field(ge=0)
    question_text: str = Field(min_length=1)
    question_image_url: Optional[str] = None
    question_video_url: Optional[str] = None
    question_audio_url: Optional[str] = None
    options: List[OptionIn] = Field(min_length=2)

    @model_validator(mode="after")
    def exactly_one_correct(self):
        if sum(1 for o in self.options if o.is_correct) != 1:
            raise ValueError("exactly one option must be correct")
        return self


def _options(question_id: str, options: List[OptionIn]) -> List[QuestionOption]:
    return [
        QuestionOption(
            question_id=question_id,
            option_text=o.option_text,
            is_correct=o.is_correct,
            order_index=o.order_index if o.order_index is not None else i,
        )
        for i, o in enumerate(options)
    ]

def _question(db: Session, course_id: str, step_id: str, question_id: str) -> EvaluationQuestion:
    svc.get_step(db, course_id, step_id)
    q = db.get(EvaluationQuestion, question_id)
    if q is None or q.step_id != step_id:
        raise HTTPException(404, "Question not found")
    return q

def _question_view(q: EvaluationQuestion):
    return {**q.to_dict(), "options": [o.to_dict() for o in q.options]}


# ---------- courses ----------

@router.get("")
def list_courses(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    courses = db.scalars(select(Course).order_by(Course.created_at.desc()))
    return {"data": [{**c.to_dict(), "total_steps": len(c.steps)} for c in courses]}

@router.get("/{course_id}")
def get_course(course_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": svc.admin_course_view(svc.get_course(db, course_id))}

@router.post("", status_code=201)
def create_course(payload: CourseIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    course = Course(created_by=admin.id, **payload.model_dump())
    db.add(course)
    db.commit()
    logger.info(f"Admin {admin.id} created course {course.id}")
    return {"data": course.to_dict()}

@router.put("/{course_id}")
def update_course(course_id: str, payload: CourseUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    course = svc.get_course(db, course_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None or field == "description":
            setattr(course, field, value)
    db.commit()
    return {"data": course.to_dict()}

@router.delete("/{course_id}")
def delete_course(course_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    course = svc.get_course(db, course_id)
    db.delete(course)
    db.commit()
    logger.info(f"Admin {admin.id} deleted course {course_id}")
    return {"data": {"message": "Course deleted"}}


# ---------- steps ----------

@router.post("/{course_id}/steps", status_code=201)
def create_step(course_id: str, payload: StepIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    course = svc.get_course(db, course_id)
    step = CourseStep(course_id=course.id, **payload.model_dump())
    db.add(step)
    db.commit()
    return {"data": step.to_dict()}

@router.put("/{course_id}/steps/{step_id}")
def update_step(course_id: str, step_id: str, payload: StepUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    step = svc.get_step(db, course_id, step_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in ("order_index", "title", "has_evaluation", "evaluation_required"):
            continue
        setattr(step, field, value)
    db.commit()
    return {"data": step.to_dict()}

@router.delete("/{course_id}/steps/{step_id}")
def delete_step(course_id: str, step_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    step = svc.get_step(db, course_id, step_id)
    db.delete(step)
    db.commit()
    return {"data": {"message": "Step deleted"}}


# ---------- questions ----------

@router.post("/{course_id}/steps/{step_id}/questions", status_code=201)
def create_question(course_id: str, step_id: str, payload: QuestionIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    step = svc.get_step(db, course_id, step_id)
    q = EvaluationQuestion(step_id=step.id, **payload.model_dump(exclude={"options"}))
    db.add(q)
    db.flush()
    q.options.extend(_options(q.id, payload.options))
    db.commit()
    return {"data": _question_view(q)}

@router.put("/{course_id}/steps/{step_id}/questions/{question_id}")
def update_question(course_id: str, step_id: str, question_id: str, payload: QuestionIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    q = _question(db, course_id, step_id, question_id)
    for field, value in payload.model_dump(exclude={"options"}).items():
        setattr(q, field, value)
    q.options.clear()
    db.flush()
    q.options.extend(_options(q.id, payload.options))
    db.commit()
    return {"data": _question_view(q)}

@router.delete("/{course_id}/steps/{step_id}/questions/{question_id}")
def delete_question(course_id: str, step_id: str, question_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    q = _question(db, course_id, step_id, question_id)
    db.delete(q)
    db.commit()
    return {"data": {"message": "Question deleted"}}


# ---------- metrics ----------

@router.get("/{course_id}/metrics")
def course_metrics(course_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": svc.course_metrics(db, svc.get_course(db, course_id))}

@router.get("/{course_id}/users")
def course_users(course_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": svc.course_users(db, svc.get_course(db, course_id))}

@router.get("/{course_id}/users/{user_id}")
def course_user(course_id: str, user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": svc.course_user_detail(db, svc.get_course(db, course_id), user_id)}

@router.get("/{course_id}/steps/{step_id}/metrics")
def step_metrics(course_id: str, step_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": svc.step_metrics(db, svc.get_step(db, course_id, step_id))}
