"""QA earnings: amount calculation, creation after a paid submission, and admin review transitions."""
import logging
import math
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marisa.core.errors import Conflict, NotFound, ValidationFailed
from marisa.models.orm import EarningStatus, PaymentType, Playground, QAEarning, User, UserRole, utcnow

logger = logging.getLogger(__name__)


def calculate_earning(
    payment_type: str,
    rate: float,
    time_spent_seconds: int = 0,
    max_time_per_task: Optional[int] = None,
    tasks_for_goal: Optional[int] = None,
    completed_before: int = 0,
) -> float:
    """
    Amount owed for one submitted task.

    per_hour pays the time spent, capped at `max_time_per_task` minutes, rounded to cents.
    per_task pays the flat rate. per_goal pays the rate only on the submission
    that completes a multiple of `tasks_for_goal`.
    """
    if payment_type == PaymentType.PER_HOUR.value:
        minutes = max(time_spent_seconds or 0, 0) / 60
        cap = max_time_per_task if max_time_per_task is not None else math.inf
        amount = round(rate * (min(minutes, cap) / 60), 2)
    elif payment_type == PaymentType.PER_TASK.value:
        amount = rate
    elif payment_type == PaymentType.PER_GOAL.value:
        if not tasks_for_goal or tasks_for_goal <= 0:
            raise ValueError("per_goal payment requires a positive tasks_for_goal")
        amount = rate if (completed_before + 1) % tasks_for_goal == 0 else 0.0
    else:
        raise ValueError(f"Unknown payment type: {payment_type}")
    return max(amount, 0.0)


def is_earning_eligible(user: User, playground: Playground) -> bool:
    return bool(
        playground.is_paid
        and user.role == UserRole.QA.value
        and playground.payment_type
        and playground.payment_value is not None
    )


def record_earning(db: Session, user: User, playground: Playground, session_id: str, time_spent_seconds: int = 0) -> QAEarning:
    # Serialise concurrent earnings of one user so the prior-task count is read in this transaction.
    db.execute(select(User.id).where(User.id == user.id).with_for_update())
    completed_before = db.scalar(
        select(func.count(QAEarning.id)).where(
            QAEarning.user_id == user.id, QAEarning.playground_id == playground.id
        )
    ) or 0
    amount = calculate_earning(
        playground.payment_type,
        playground.payment_value,
        time_spent_seconds,
        playground.max_time_per_task,
        playground.tasks_for_goal,
        completed_before,
    )
    earning = QAEarning(
        user_id=user.id,
        playground_id=playground.id,
        evaluation_id=session_id,
        task_name=playground.name,
        submitted_at=utcnow(),
        time_spent_seconds=time_spent_seconds or 0,
        amount=amount,
        status=EarningStatus.UNDER_REVIEW.value,
    )
    db.add(earning)
    db.commit()
    return earning


def record_earning_safely(db: Session, user: User, playground: Playground, session_id: str, time_spent_seconds: int = 0) -> Optional[QAEarning]:
    """Best-effort wrapper; a failure is logged and rolled back, never raised."""
    if not is_earning_eligible(user, playground):
        return None
    try:
        return record_earning(db, user, playground, session_id, time_spent_seconds)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record earning for user {user.id} session {session_id}: {e}", exc_info=True)
        return None


# action -> (allowed source statuses, target status)
TRANSITIONS = {
    "approve": ({EarningStatus.UNDER_REVIEW.value}, EarningStatus.READY_FOR_PAYMENT.value),
    "pay": ({EarningStatus.READY_FOR_PAYMENT.value}, EarningStatus.PAID.value),
    "reject": ({EarningStatus.UNDER_REVIEW.value, EarningStatus.READY_FOR_PAYMENT.value}, EarningStatus.REJECTED.value),
}


def transition_earning(db: Session, earning_id: str, action: str, actor_id: str, reason: Optional[str] = None) -> QAEarning:
    sources, target = TRANSITIONS[action]
    earning = db.get(QAEarning, earning_id)
    if earning is None:
        raise NotFound("Earning not found")
    if action == "reject" and not (reason and reason.strip()):
        raise ValidationFailed("A rejection reason is required")
    if earning.status not in sources:
        raise Conflict(f"Cannot {action} an earning with status {earning.status}", code="invalid_transition")

    earning.status = target
    if target == EarningStatus.PAID.value:
        earning.paid_at = utcnow()
    if target == EarningStatus.REJECTED.value:
        earning.rejected_reason = reason.strip()
    db.commit()
    logger.info(f"Earning {earning.id} -> {target} by {actor_id}")
    return earning


def summarize(earnings: Iterable[QAEarning]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {s.value: {"count": 0, "amount": 0.0} for s in EarningStatus}
    total_earned = 0.0
    total_tasks = 0
    for e in earnings:
        bucket = summary[e.status]
        bucket["count"] += 1
        bucket["amount"] = round(bucket["amount"] + e.amount, 2)
        total_tasks += 1
        if e.status != EarningStatus.REJECTED.value:
            total_earned += e.amount
    summary["total_earned"] = round(total_earned, 2)
    summary["total_tasks"] = total_tasks
    return summary
