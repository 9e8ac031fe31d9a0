from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marisa.core.auth import get_current_user, require_admin, require_roles
from marisa.core.database import get_db
from marisa.models.orm import Evaluation, QAEarning, Question, User
from marisa.services.earnings import summarize, transition_earning

router = APIRouter()

class RejectEarning(BaseModel):
    reason: str = Field(min_length=1)


def _row(e: QAEarning):
    return {
        **e.to_dict(),
        "playground": {"id": e.playground_id, "name": e.playground.name if e.playground else None},
        "user": e.user.summary() if e.user else None,
    }

def _page(db: Session, stmt, limit: int, offset: int):
    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(stmt.order_by(QAEarning.submitted_at.desc()).limit(limit).offset(offset))
    return {
        "data": [_row(e) for e in rows],
        "total": total,
        "page": offset // limit + 1,
        "limit": limit,
        "pages": -(-total // limit),
    }

def _answers(db: Session, earning: QAEarning):
    rows = db.execute(
        select(Evaluation, Question)
        .join(Question, Question.id == Evaluation.question_id)
        .where(Evaluation.session_id == earning.evaluation_id)
        .order_by(Question.order_index)
    ).all()
    return {
        "earning": _row(earning),
        "answers": [
            {
                "id": e.id,
                "question_id": e.question_id,
                "answer_text": e.answer_text,
                "answer_value": e.answer_value,
                "rating": e.rating,
                "question": {"question_text": q.question_text, "question_type": q.question_type, "options": q.options},
            }
            for e, q in rows
        ],
    }


# ---------- QA ----------

@router.get("")
def my_earnings(
    status: Optional[str] = None,
    playground_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_roles("qa")),
    db: Session = Depends(get_db),
):
    stmt = select(QAEarning).where(QAEarning.user_id == user.id)
    if status:
        stmt = stmt.where(QAEarning.status == status)
    if playground_id:
        stmt = stmt.where(QAEarning.playground_id == playground_id)
    return _page(db, stmt, limit, offset)

@router.get("/summary")
def my_summary(user: User = Depends(require_roles("qa")), db: Session = Depends(get_db)):
    earnings = db.scalars(select(QAEarning).where(QAEarning.user_id == user.id))
    return {"data": summarize(earnings)}

@router.get("/{earning_id}/answers")
def my_earning_answers(earning_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    earning = db.get(QAEarning, earning_id)
    if earning is None or earning.user_id != user.id:
        raise HTTPException(404, "Earning not found")
    return {"data": _answers(db, earning)}


# ---------- admin ----------

@router.get("/admin")
def all_earnings(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    playground_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    stmt = select(QAEarning)
    if status:
        stmt = stmt.where(QAEarning.status == status)
    if user_id:
        stmt = stmt.where(QAEarning.user_id == user_id)
    if playground_id:
        stmt = stmt.where(QAEarning.playground_id == playground_id)
    if start_date:
        stmt = stmt.where(QAEarning.submitted_at >= start_date)
    if end_date:
        stmt = stmt.where(QAEarning.submitted_at <= end_date)
    return _page(db, stmt, limit, offset)

@router.get("/admin/stats")
def stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    earnings = list(db.scalars(select(QAEarning)))
    return {"data": {**summarize(earnings), "unique_qas": len({e.user_id for e in earnings})}}

@router.get("/admin/{earning_id}/answers")
def earning_answers(earning_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    earning = db.get(QAEarning, earning_id)
    if earning is None:
        raise HTTPException(404, "Earning not found")
    return {"data": _answers(db, earning)}

@router.put("/admin/{earning_id}/approve")
def approve(earning_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"data": transition_earning(db, earning_id, "approve", admin.id).to_dict()}

@router.put("/admin/{earning_id}/pay")
def pay(earning_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"data": transition_earning(db, earning_id, "pay", admin.id).to_dict()}

@router.put("/admin/{earning_id}/reject")
def reject(earning_id: str, payload: RejectEarning, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"data": transition_earning(db, earning_id, "reject", admin.id, reason=payload.reason).to_dict()}
