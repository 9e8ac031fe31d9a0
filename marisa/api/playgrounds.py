from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session
from marisa.core.auth import get_current_user
from marisa.core.database import get_db
from marisa.models.orm import User
from marisa.services.access import list_accessible_playgrounds, require_playground
from marisa.services.evaluations import counter_map, pick_next_model, submit_evaluation, user_progress

router = APIRouter()

class Answer(BaseModel):
    question_id: str
    answer_text: Optional[str] = None
    answer_value: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)

class SubmitEvaluation(BaseModel):
    session_id: UUID
    model_key: str = Field(min_length=1)
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)
    answers: List[Answer] = Field(min_length=1)

@router.get("")
def list_playgrounds(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"data": [p.to_dict() for p in list_accessible_playgrounds(db, user)]}

@router.get("/{playground_id}")
def get_playground(playground_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    pg = require_playground(db, user, playground_id)
    counts = counter_map(db, pg.id)
    return {"data": {
        **pg.to_dict(),
        "models": [m.to_dict() for m in pg.models],
        "questions": [q.to_dict() for q in pg.questions],
        "counters": [{"model_key": m.model_key, "current_count": counts.get(m.model_key, 0), "max_evaluations": m.max_evaluations} for m in pg.models],
    }}

@router.post("/{playground_id}/evaluations", status_code=201)
def submit(playground_id: str, payload: SubmitEvaluation, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    pg = require_playground(db, user, playground_id)
    result = submit_evaluation(
        db, user, pg,
        session_id=str(payload.session_id),
        model_key=payload.model_key,
        answers=[a.model_dump() for a in payload.answers],
        time_spent_seconds=payload.time_spent_seconds,
    )
    return {"data": result}

@router.get("/{playground_id}/next-model")
def next_model(playground_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    pg = require_playground(db, user, playground_id)
    model = pick_next_model(db, pg)
    return {"data": {"model_key": model.model_key, "model_name": model.model_name}}

@router.get("/{playground_id}/progress")
def progress(playground_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    pg = require_playground(db, user, playground_id)
    return {"data": user_progress(db, user.id, pg.id)}
