"""
Evaluation submission and the per-playground read models built on evaluations.

A submission is one pass (session) over one model. The capacity check and the
counter increment are one conditional UPDATE, so two concurrent submissions
can never push a counter past its model's cap.
"""
import logging
import random
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func, select, update
from sqlalchemy.orm import Session

from marisa.core.errors import Conflict, NotFound, ValidationFailed
from marisa.models.orm import (
    Evaluation, EvaluationCounter, ModelConfiguration, Playground, QAEarning, Question, QuestionType, User, as_utc, utcnow,
)
from marisa.services.earnings import record_earning_safely

logger = logging.getLogger(__name__)


def _has_answer(answer: Dict[str, Any]) -> bool:
    for key in ("answer_text", "answer_value"):
        value = answer.get(key)
        if value is not None and str(value).strip():
            return True
    return answer.get("rating") is not None


def get_model(db: Session, playground_id: str, model_key: str) -> ModelConfiguration:
    model = db.scalar(
        select(ModelConfiguration).where(
            ModelConfiguration.playground_id == playground_id, ModelConfiguration.model_key == model_key
        )
    )
    if model is None:
        raise NotFound(f"Model '{model_key}' not found in this playground")
    return model


def ensure_counter(db: Session, playground_id: str, model_key: str) -> EvaluationCounter:
    counter = db.scalar(
        select(EvaluationCounter).where(
            EvaluationCounter.playground_id == playground_id, EvaluationCounter.model_key == model_key
        )
    )
    if counter is None:
        counter = EvaluationCounter(playground_id=playground_id, model_key=model_key, current_count=0)
        db.add(counter)
        db.flush()
    return counter


def validate_answers(playground: Playground, model_key: str, answers: List[Dict[str, Any]]) -> None:
    applicable = {q.id: q for q in playground.questions if q.model_key in (None, model_key)}
    seen = set()
    for answer in answers:
        qid = answer["question_id"]
        if qid not in applicable:
            raise ValidationFailed("Answer references a question outside this playground or model", details={"question_id": qid})
        if qid in seen:
            raise ValidationFailed("Each question may be answered once per session", details={"question_id": qid})
        seen.add(qid)

    answered = {a["question_id"] for a in answers if _has_answer(a)}
    missing = [q.id for q in applicable.values() if q.required and q.id not in answered]
    if missing:
        raise ValidationFailed("Required questions are unanswered", code="missing_answers", details={"question_ids": missing})


def session_exists(db: Session, session_id: str) -> bool:
    return db.scalar(select(Evaluation.id).where(Evaluation.session_id == session_id).limit(1)) is not None


def submit_evaluation(
    db: Session,
    user: User,
    playground: Playground,
    session_id: str,
    model_key: str,
    answers: List[Dict[str, Any]],
    time_spent_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    model = get_model(db, playground.id, model_key)
    validate_answers(playground, model_key, answers)
    if session_exists(db, session_id):
        raise Conflict("This session was already submitted", code="session_already_submitted")

    ensure_counter(db, playground.id, model_key)
    result = db.execute(
        update(EvaluationCounter)
        .where(
            EvaluationCounter.playground_id == playground.id,
            EvaluationCounter.model_key == model_key,
            EvaluationCounter.current_count < model.max_evaluations,
        )
        .values(current_count=EvaluationCounter.current_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise Conflict(f"Model '{model_key}' has reached its evaluation limit", code="model_capacity_reached")

    rows = [
        Evaluation(
            playground_id=playground.id,
            user_id=user.id,
            model_key=model_key,
            question_id=a["question_id"],
            answer_text=a.get("answer_text"),
            answer_value=a.get("answer_value"),
            rating=a.get("rating"),
            session_id=session_id,
        )
        for a in answers
    ]
    db.add_all(rows)
    db.commit()
    logger.info(f"User {user.id} submitted session {session_id} on playground {playground.id} model {model_key}")

    earning = record_earning_safely(db, user, playground, session_id, time_spent_seconds or 0)
    return {
        "session_id": session_id,
        "model_key": model_key,
        "evaluations": len(rows),
        "earning": earning.to_dict() if earning else None,
    }


def counter_map(db: Session, playground_id: str) -> Dict[str, int]:
    counters = db.scalars(select(EvaluationCounter).where(EvaluationCounter.playground_id == playground_id))
    return {c.model_key: c.current_count for c in counters}


def pick_next_model(db: Session, playground: Playground) -> ModelConfiguration:
    if not playground.models:
        raise NotFound("No models found")
    counts = counter_map(db, playground.id)
    available = [m for m in playground.models if counts.get(m.model_key, 0) < m.max_evaluations]
    if not available:
        raise Conflict("Every model in this playground has reached its evaluation limit", code="all_models_full")
    return random.choice(available)


def user_progress(db: Session, user_id: str, playground_id: str) -> Dict[str, Any]:
    rows = db.execute(
        select(Evaluation.model_key, func.count(distinct(Evaluation.session_id)))
        .where(Evaluation.playground_id == playground_id, Evaluation.user_id == user_id)
        .group_by(Evaluation.model_key)
    ).all()
    progress = {model_key: sessions for model_key, sessions in rows}
    return {"progress": progress, "total": sum(progress.values())}


def playground_metrics(db: Session, playground: Playground) -> Dict[str, Any]:
    evaluations = list(db.scalars(
        select(Evaluation).where(Evaluation.playground_id == playground.id).order_by(Evaluation.created_at.desc())
    ))
    by_question = defaultdict(list)
    for e in evaluations:
        by_question[e.question_id].append(e)

    select_metrics = []
    open_responses = []
    for q in playground.questions:
        answers = by_question.get(q.id, [])
        if q.question_type in (QuestionType.SELECT.value, QuestionType.BOOLEAN.value):
            dist = Counter(a.answer_value for a in answers if a.answer_value is not None)
            select_metrics.append({
                "question_id": q.id,
                "question_text": q.question_text,
                "model_key": q.model_key,
                "distribution": [{"answer_value": k, "count": v} for k, v in dist.most_common()],
                "total": sum(dist.values()),
            })
        else:
            for a in answers:
                if a.answer_text:
                    open_responses.append({
                        "question_id": q.id,
                        "question_text": q.question_text,
                        "model_key": a.model_key,
                        "answer_text": a.answer_text,
                        "created_at": a.to_dict()["created_at"],
                    })

    counts = counter_map(db, playground.id)
    counters = [
        {"model_key": m.model_key, "model_name": m.model_name, "current_count": counts.get(m.model_key, 0), "max_evaluations": m.max_evaluations}
        for m in playground.models
    ]
    sessions = len({e.session_id for e in evaluations})
    goal = playground.evaluation_goal or 0
    return {
        "counters": counters,
        "select_metrics": select_metrics,
        "open_responses": open_responses,
        "stats": {
            "total_evaluations": len(evaluations),
            "total_sessions": sessions,
            "unique_testers": len({e.user_id for e in evaluations}),
            "goal_progress": round(sessions / goal * 100, 2) if goal else None,
            "status": "in_progress" if playground.is_active else "completed",
        },
    }


def list_sessions(db: Session, playground_id: str) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(
            Evaluation.session_id,
            Evaluation.user_id,
            Evaluation.model_key,
            func.count(Evaluation.id),
            func.min(Evaluation.created_at),
        )
        .where(Evaluation.playground_id == playground_id)
        .group_by(Evaluation.session_id, Evaluation.user_id, Evaluation.model_key)
        .order_by(func.min(Evaluation.created_at).desc())
    ).all()
    users = {}
    if rows:
        user_ids = {r[1] for r in rows}
        users = {u.id: u.summary() for u in db.scalars(select(User).where(User.id.in_(user_ids)))}
    earnings = {
        e.evaluation_id: e
        for e in db.scalars(select(QAEarning).where(QAEarning.playground_id == playground_id))
    }
    result = []
    for session_id, user_id, model_key, answers, submitted_at in rows:
        earning = earnings.get(session_id)
        result.append({
            "session_id": session_id,
            "user": users.get(user_id),
            "model_key": model_key,
            "answers": answers,
            "submitted_at": as_utc(submitted_at).isoformat() if submitted_at else None,
            "earning_status": earning.status if earning else None,
            "time_spent_seconds": earning.time_spent_seconds if earning else None,
        })
    return result


def session_detail(db: Session, playground_id: str, session_id: str) -> Dict[str, Any]:
    rows = db.execute(
        select(Evaluation, Question)
        .join(Question, Question.id == Evaluation.question_id)
        .where(Evaluation.playground_id == playground_id, Evaluation.session_id == session_id)
        .order_by(Question.order_index)
    ).all()
    if not rows:
        raise NotFound("Session not found")
    first = rows[0][0]
    user = db.get(User, first.user_id)
    return {
        "session_id": session_id,
        "model_key": first.model_key,
        "user": user.summary() if user else None,
        "answers": [
            {**e.to_dict(), "question_text": q.question_text, "question_type": q.question_type}
            for e, q in rows
        ],
    }
