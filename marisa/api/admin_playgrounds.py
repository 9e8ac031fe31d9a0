import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.auth import require_admin
from marisa.core.database import get_db
from marisa.models.orm import (
    Course, Evaluation, EvaluationCounter, ModelConfiguration, Playground, PlaygroundAuthorizedUser, Question, User,
)
from marisa.services.evaluations import counter_map, list_sessions, playground_metrics, session_detail

logger = logging.getLogger(__name__)
router = APIRouter()

AccessType = Literal["open", "email_restricted", "explicit_authorization"]
PaymentKind = Literal["per_hour", "per_task", "per_goal"]
# columns that an update may not null out
REQUIRED_FIELDS = {"name", "is_active", "is_paid", "access_control_type", "restricted_emails", "evaluation_goal", "course_required"}


class ModelIn(BaseModel):
    model_key: str = Field(min_length=1, max_length=50)
    model_name: str = Field(min_length=1)
    embed_code: str
    max_evaluations: int = Field(ge=1)

class OptionIn(BaseModel):
    label: str
    value: str

class QuestionIn(BaseModel):
    model_key: Optional[str] = None
    question_text: str = Field(min_length=1)
    question_type: Literal["select", "input_string", "boolean"]
    options: Optional[List[OptionIn]] = None
    order_index: int = 0
    required: bool = True

    @model_validator(mode="after")
    def select_needs_options(self):
        if self.question_type == "select" and not self.options:
            raise ValueError("select questions need options")
        return self

class PaymentTerms(BaseModel):
    is_paid: Optional[bool] = None
    payment_type: Optional[PaymentKind] = None
    payment_value: Optional[float] = Field(default=None, gt=0)
    max_time_per_task: Optional[int] = Field(default=None, gt=0)
    tasks_for_goal: Optional[int] = Field(default=None, gt=0)

class PlaygroundCreate(PaymentTerms):
    name: str = Field(min_length=3, max_length=255)
    type: Literal["ab_testing", "tuning"]
    description: Optional[str] = None
    support_text: Optional[str] = None
    access_control_type: AccessType = "open"
    restricted_emails: List[EmailStr] = []
    evaluation_goal: int = Field(default=0, ge=0)
    linked_course_id: Optional[str] = None
    course_required: bool = False
    is_paid: bool = False
    models: List[ModelIn] = []
    questions: List[QuestionIn] = []

    @model_validator(mode="after")
    def unique_model_keys(self):
        keys = [m.model_key for m in self.models]
        if len(keys) != len(set(keys)):
            raise ValueError("model_key must be unique within a playground")
        return self

class PlaygroundUpdate(PaymentTerms):
    name: Optional[str] = Field(default=None, min_length=3, max_length=255)
    description: Optional[str] = None
    support_text: Optional[str] = None
    is_active: Optional[bool] = None
    access_control_type: Optional[AccessType] = None
    restricted_emails: Optional[List[EmailStr]] = None
    evaluation_goal: Optional[int] = Field(default=None, ge=0)
    linked_course_id: Optional[str] = None
    course_required: Optional[bool] = None
    models: Optional[List[ModelIn]] = None
    questions: Optional[List[QuestionIn]] = None

class AccessControlUpdate(BaseModel):
    access_control_type: AccessType
    restricted_emails: List[EmailStr] = []

class AuthorizeUser(BaseModel):
    user_id: Optional[str] = None
    email: Optional[EmailStr] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def one_identifier(self):
        if not self.user_id and not self.email:
            raise ValueError("user_id or email is required")
        return self


def _check_payment(pg: Playground) -> None:
    if not pg.is_paid:
        return
    if not pg.payment_type or not pg.payment_value or pg.payment_value <= 0:
        raise HTTPException(400, "Paid playgrounds need payment_type and a positive payment_value")
    if pg.payment_type == "per_goal" and not pg.tasks_for_goal:
        raise HTTPException(400, "per_goal payment needs tasks_for_goal")

def _check_course(db: Session, course_id: Optional[str]) -> None:
    if course_id and db.get(Course, course_id) is None:
        raise HTTPException(400, "linked_course_id does not reference a course")

def _get(db: Session, playground_id: str) -> Playground:
    pg = db.get(Playground, playground_id)
    if pg is None:
        raise HTTPException(404, "Playground not found")
    return pg

def _owned(db: Session, playground_id: str, admin: User) -> Playground:
    pg = _get(db, playground_id)
    if pg.created_by != admin.id:
        raise HTTPException(403, detail={"message": "Only the playground owner can do this", "code": "not_owner"})
    return pg

def _question(pg_id: str, q: QuestionIn) -> Question:
    return Question(
        playground_id=pg_id,
        model_key=q.model_key,
        question_text=q.question_text,
        question_type=q.question_type,
        options=[o.model_dump() for o in q.options] if q.question_type == "select" and q.options else None,
        order_index=q.order_index,
        required=q.required,
    )

def _detail(db: Session, pg: Playground):
    counts = counter_map(db, pg.id)
    return {
        **pg.to_dict(),
        "models": [m.to_dict() for m in pg.models],
        "questions": [q.to_dict() for q in pg.questions],
        "counters": [{"model_key": m.model_key, "current_count": counts.get(m.model_key, 0), "max_evaluations": m.max_evaluations} for m in pg.models],
    }


@router.get("")
def list_playgrounds(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    rows = db.scalars(select(Playground).order_by(Playground.created_at.desc()))
    return {"data": [p.to_dict() for p in rows]}

@router.get("/{playground_id}")
def get_playground(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": _detail(db, _owned(db, playground_id, admin))}

@router.post("", status_code=201)
def create_playground(payload: PlaygroundCreate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    _check_course(db, payload.linked_course_id)
    fields = payload.model_dump(exclude={"models", "questions"})
    fields["restricted_emails"] = [e.lower() for e in fields["restricted_emails"]]
    pg = Playground(created_by=admin.id, **fields)
    _check_payment(pg)
    db.add(pg)
    db.flush()
    for m in payload.models:
        pg.models.append(ModelConfiguration(playground_id=pg.id, **m.model_dump()))
        pg.counters.append(EvaluationCounter(playground_id=pg.id, model_key=m.model_key, current_count=0))
    for q in payload.questions:
        pg.questions.append(_question(pg.id, q))
    db.commit()
    logger.info(f"Admin {admin.id} created playground {pg.id}")
    return {"data": _detail(db, pg), "message": "Playground created successfully"}

@router.put("/{playground_id}")
def update_playground(playground_id: str, payload: PlaygroundUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _owned(db, playground_id, admin)
    changes = payload.model_dump(exclude_unset=True, exclude={"models", "questions"})
    changes = {k: v for k, v in changes.items() if v is not None or k not in REQUIRED_FIELDS}
    if changes.get("restricted_emails") is not None:
        changes["restricted_emails"] = [e.lower() for e in changes["restricted_emails"]]
    if "linked_course_id" in changes:
        _check_course(db, changes["linked_course_id"])
    for field, value in changes.items():
        setattr(pg, field, value)
    _check_payment(pg)

    if payload.models is not None:
        existing = {m.model_key: m for m in pg.models}
        counted = {c.model_key for c in pg.counters}
        for m in payload.models:
            if m.model_key in existing:
                row = existing[m.model_key]
                row.model_name, row.embed_code, row.max_evaluations = m.model_name, m.embed_code, m.max_evaluations
            else:
                pg.models.append(ModelConfiguration(playground_id=pg.id, **m.model_dump()))
            if m.model_key not in counted:
                pg.counters.append(EvaluationCounter(playground_id=pg.id, model_key=m.model_key, current_count=0))

    if payload.questions is not None:
        answered = db.scalar(select(Evaluation.id).where(Evaluation.playground_id == pg.id).limit(1))
        if answered is not None:
            raise HTTPException(409, "Questions cannot be replaced once evaluations exist")
        pg.questions.clear()
        db.flush()
        for q in payload.questions:
            pg.questions.append(_question(pg.id, q))

    db.commit()
    return {"data": _detail(db, pg)}

@router.delete("/{playground_id}")
def delete_playground(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _owned(db, playground_id, admin)
    db.delete(pg)
    db.commit()
    logger.info(f"Admin {admin.id} deleted playground {playground_id}")
    return {"data": {"message": "Playground deleted"}}

@router.get("/{playground_id}/metrics")
def metrics(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"data": playground_metrics(db, _owned(db, playground_id, admin))}

@router.get("/{playground_id}/sessions")
def sessions(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    return {"data": list_sessions(db, pg.id)}

@router.get("/{playground_id}/sessions/{session_id}")
def session(playground_id: str, session_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    return {"data": session_detail(db, pg.id, session_id)}

@router.get("/{playground_id}/access-control")
def get_access_control(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    return {"data": {
        "playground_id": pg.id,
        "access_control_type": pg.access_control_type,
        "restricted_emails": pg.restricted_emails or [],
        "authorized_users": len(pg.authorized_users),
    }}

@router.put("/{playground_id}/access-control")
def update_access_control(playground_id: str, payload: AccessControlUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    pg.access_control_type = payload.access_control_type
    pg.restricted_emails = [e.lower() for e in payload.restricted_emails]
    db.commit()
    logger.info(f"Admin {admin.id} set access control of {pg.id} to {pg.access_control_type}")
    return {"data": {"playground_id": pg.id, "access_control_type": pg.access_control_type, "restricted_emails": pg.restricted_emails}}

@router.get("/{playground_id}/authorized-users")
def list_authorized(playground_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    rows = db.scalars(
        select(PlaygroundAuthorizedUser)
        .where(PlaygroundAuthorizedUser.playground_id == pg.id)
        .order_by(PlaygroundAuthorizedUser.authorized_at.desc())
    )
    return {"data": [
        {**r.to_dict(), "user": r.user.summary(), "authorizer": r.authorizer.summary() if r.authorizer else None}
        for r in rows
    ]}

@router.post("/{playground_id}/authorized-users", status_code=201)
def add_authorized(playground_id: str, payload: AuthorizeUser, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    pg = _get(db, playground_id)
    if payload.user_id:
        user = db.get(User, payload.user_id)
    else:
        user = db.scalar(select(User).where(User.email == payload.email.lower()))
    if user is None:
        raise HTTPException(404, "User not found")
    exists = db.scalar(
        select(PlaygroundAuthorizedUser.id).where(
            PlaygroundAuthorizedUser.playground_id == pg.id, PlaygroundAuthorizedUser.user_id == user.id
        )
    )
    if exists:
        raise HTTPException(409, "User is already authorized for this playground")
    row = PlaygroundAuthorizedUser(playground_id=pg.id, user_id=user.id, authorized_by=admin.id, notes=payload.notes)
    db.add(row)
    db.commit()
    logger.info(f"Admin {admin.id} authorized user {user.id} on playground {pg.id}")
    return {"data": {**row.to_dict(), "user": user.summary()}}

@router.delete("/{playground_id}/authorized-users/{user_id}")
def remove_authorized(playground_id: str, user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    row = db.scalar(
        select(PlaygroundAuthorizedUser).where(
            PlaygroundAuthorizedUser.playground_id == playground_id, PlaygroundAuthorizedUser.user_id == user_id
        )
    )
    if row is None:
        raise HTTPException(404, "Authorization not found")
    db.delete(row)
    db.commit()
    return {"data": {"message": "Authorization removed"}}
