"""Course progression, quiz scoring and the admin metrics computed from attempts."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marisa.core.errors import Conflict, NotFound, ValidationFailed
from marisa.models.orm import Course, CourseStep, User, UserCourseProgress, UserStepAttempt, utcnow

logger = logging.getLogger(__name__)


def get_course(db: Session, course_id: str, published_only: bool = False) -> Course:
    course = db.get(Course, course_id)
    if course is None or (published_only and not course.is_published):
        raise NotFound("Course not found")
    return course


def get_step(db: Session, course_id: str, step_id: str) -> CourseStep:
    step = db.get(CourseStep, step_id)
    if step is None or step.course_id != course_id:
        raise NotFound("Step not found")
    return step


def get_progress(db: Session, user_id: str, course_id: str) -> Optional[UserCourseProgress]:
    return db.scalar(
        select(UserCourseProgress).where(
            UserCourseProgress.user_id == user_id, UserCourseProgress.course_id == course_id
        )
    )


def learner_course_view(course: Course) -> Dict[str, Any]:
    """Course with steps, questions and options, without the correct-answer flags."""
    data = course.to_dict()
    data["steps"] = []
    for step in course.steps:
        s = step.to_dict()
        s["questions"] = []
        for q in step.questions:
            qd = q.to_dict()
            qd["options"] = [o.to_dict(exclude={"is_correct"}) for o in q.options]
            s["questions"].append(qd)
        data["steps"].append(s)
    return data


def admin_course_view(course: Course) -> Dict[str, Any]:
    data = course.to_dict()
    data["steps"] = [
        {**step.to_dict(), "questions": [{**q.to_dict(), "options": [o.to_dict() for o in q.options]} for q in step.questions]}
        for step in course.steps
    ]
    return data


def start_course(db: Session, user: User, course: Course) -> UserCourseProgress:
    """Idempotent: an existing progress row is returned unchanged."""
    existing = get_progress(db, user.id, course.id)
    if existing is not None:
        return existing
    first = course.steps[0] if course.steps else None
    progress = UserCourseProgress(user_id=user.id, course_id=course.id, current_step_id=first.id if first else None)
    db.add(progress)
    db.commit()
    logger.info(f"User {user.id} started course {course.id}")
    return progress


def score_answers(step: CourseStep, answers: List[Dict[str, str]]) -> Dict[str, Any]:
    """Score one quiz submission against the step's correct options."""
    questions = {q.id: q for q in step.questions}
    correct = {}
    for q in step.questions:
        match = [o.id for o in q.options if o.is_correct]
        correct[q.id] = match[0] if match else None

    seen = set()
    evaluated = []
    score = 0
    for answer in answers:
        qid = answer["question_id"]
        if qid not in questions:
            raise ValidationFailed("Answer references a question outside this step", details={"question_id": qid})
        if qid in seen:
            raise ValidationFailed("Each question may be answered once", details={"question_id": qid})
        seen.add(qid)
        is_correct = correct[qid] is not None and answer.get("selected_option_id") == correct[qid]
        if is_correct:
            score += 1
        evaluated.append({"question_id": qid, "selected_option_id": answer.get("selected_option_id"), "is_correct": is_correct})

    if step.evaluation_required:
        passed = score >= (step.min_score or 0)
    else:
        passed = True
    return {"score": score, "total_questions": len(questions), "passed": passed, "answers": evaluated}


def submit_step_quiz(db: Session, user: User, step: CourseStep, answers: List[Dict[str, str]]) -> UserStepAttempt:
    if not step.has_evaluation:
        raise ValidationFailed("This step does not have an evaluation", code="no_evaluation")

    prior_count, last_number = db.execute(
        select(func.count(UserStepAttempt.id), func.max(UserStepAttempt.attempt_number)).where(
            UserStepAttempt.user_id == user.id, UserStepAttempt.step_id == step.id
        )
    ).one()
    if step.max_attempts and prior_count >= step.max_attempts:
        raise Conflict("Maximum attempts reached for this step", code="max_attempts_reached")

    result = score_answers(step, answers)
    attempt = UserStepAttempt(
        user_id=user.id,
        step_id=step.id,
        attempt_number=(last_number or 0) + 1,
        score=result["score"],
        total_questions=result["total_questions"],
        passed=result["passed"],
        answers=result["answers"],
    )
    db.add(attempt)
    db.commit()
    return attempt


def has_passing_attempt(db: Session, user_id: str, step_id: str) -> bool:
    row = db.scalar(
        select(UserStepAttempt.id).where(
            UserStepAttempt.user_id == user_id,
            UserStepAttempt.step_id == step_id,
            UserStepAttempt.passed.is_(True),
        ).limit(1)
    )
    return row is not None


def complete_step(db: Session, user: User, course: Course, step: CourseStep) -> UserCourseProgress:
    progress = get_progress(db, user.id, course.id)
    if progress is None:
        raise NotFound("Course not started")
    if progress.completed:
        return progress

    if progress.current_step_id:
        current = db.get(CourseStep, progress.current_step_id)
    else:
        current = course.steps[0] if course.steps else None
    if current is not None and step.order_index > current.order_index:
        raise Conflict("Complete the current step first", code="step_not_reached")

    if step.has_evaluation and step.evaluation_required and not has_passing_attempt(db, user.id, step.id):
        raise ValidationFailed("You must pass the evaluation before completing this step", code="evaluation_not_passed")

    following = [s for s in course.steps if s.order_index > step.order_index]
    if following:
        nxt = min(following, key=lambda s: s.order_index)
        if current is None or nxt.order_index > current.order_index:
            progress.current_step_id = nxt.id
    else:
        progress.completed = True
        progress.completed_at = utcnow()
        logger.info(f"User {user.id} completed course {course.id}")
    db.commit()
    return progress


def list_attempts(db: Session, user_id: str, step_ids: Iterable[str]) -> List[UserStepAttempt]:
    step_ids = list(step_ids)
    if not step_ids:
        return []
    return list(db.scalars(
        select(UserStepAttempt)
        .where(UserStepAttempt.user_id == user_id, UserStepAttempt.step_id.in_(step_ids))
        .order_by(UserStepAttempt.attempted_at.desc(), UserStepAttempt.attempt_number.desc())
    ))


# ---------- metrics ----------

def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _average_score(attempts: List[UserStepAttempt]) -> float:
    scored = [a for a in attempts if a.total_questions]
    if not scored:
        return 0.0
    return round(sum(a.score / a.total_questions * 100 for a in scored) / len(scored), 2)


def _attempts_by_step(db: Session, course: Course) -> Dict[str, List[UserStepAttempt]]:
    step_ids = [s.id for s in course.steps]
    grouped: Dict[str, List[UserStepAttempt]] = {sid: [] for sid in step_ids}
    if step_ids:
        for a in db.scalars(select(UserStepAttempt).where(UserStepAttempt.step_id.in_(step_ids))):
            grouped[a.step_id].append(a)
    return grouped


def step_summary(step: CourseStep, attempts: List[UserStepAttempt]) -> Dict[str, Any]:
    first_pass: Dict[str, int] = {}
    for a in attempts:
        if a.passed and (a.user_id not in first_pass or a.attempt_number < first_pass[a.user_id]):
            first_pass[a.user_id] = a.attempt_number
    return {
        "step_id": step.id,
        "step_title": step.title,
        "step_order": step.order_index,
        "total_attempts": len(attempts),
        "unique_users": len({a.user_id for a in attempts}),
        "average_score": _average_score(attempts),
        "pass_rate": _pct(sum(1 for a in attempts if a.passed), len(attempts)),
        "average_attempts_to_pass": round(sum(first_pass.values()) / len(first_pass), 2) if first_pass else 0.0,
    }


def course_metrics(db: Session, course: Course) -> Dict[str, Any]:
    progresses = list(db.scalars(select(UserCourseProgress).where(UserCourseProgress.course_id == course.id)))
    completions = sum(1 for p in progresses if p.completed)
    by_step = _attempts_by_step(db, course)
    all_attempts = [a for attempts in by_step.values() for a in attempts]
    return {
        "course_id": course.id,
        "course_title": course.title,
        "total_enrollments": len(progresses),
        "total_completions": completions,
        "completion_rate": _pct(completions, len(progresses)),
        "average_score": _average_score(all_attempts),
        "step_metrics": [step_summary(s, by_step[s.id]) for s in course.steps],
    }


def course_users(db: Session, course: Course) -> List[Dict[str, Any]]:
    progresses = list(db.scalars(
        select(UserCourseProgress)
        .where(UserCourseProgress.course_id == course.id)
        .order_by(UserCourseProgress.started_at.desc())
    ))
    by_step = _attempts_by_step(db, course)
    steps = {s.id: s for s in course.steps}
    rows = []
    for p in progresses:
        mine = [a for attempts in by_step.values() for a in attempts if a.user_id == p.user_id]
        current = steps.get(p.current_step_id)
        rows.append({
            "user": p.user.summary(),
            "started_at": p.to_dict()["started_at"],
            "completed": p.completed,
            "completed_at": p.to_dict()["completed_at"],
            "current_step": {"id": current.id, "title": current.title, "order_index": current.order_index} if current else None,
            "total_attempts": len(mine),
            "passed_steps": len({a.step_id for a in mine if a.passed}),
            "average_score": _average_score(mine),
        })
    return rows


def course_user_detail(db: Session, course: Course, user_id: str) -> Dict[str, Any]:
    progress = get_progress(db, user_id, course.id)
    if progress is None:
        raise NotFound("User has not started this course")
    attempts = list_attempts(db, user_id, [s.id for s in course.steps])
    steps = []
    for s in course.steps:
        mine = [a for a in attempts if a.step_id == s.id]
        steps.append({
            "step_id": s.id,
            "title": s.title,
            "order_index": s.order_index,
            "has_evaluation": s.has_evaluation,
            "passed": any(a.passed for a in mine),
            "best_score": max((a.score for a in mine), default=None),
            "attempts": [a.to_dict() for a in mine],
        })
    return {"user": progress.user.summary(), "progress": progress.to_dict(), "steps": steps}


def step_metrics(db: Session, step: CourseStep) -> Dict[str, Any]:
    attempts = list(db.scalars(
        select(UserStepAttempt).where(UserStepAttempt.step_id == step.id).order_by(UserStepAttempt.attempted_at.desc())
    ))
    question_stats = []
    for q in step.questions:
        answered = [ans for a in attempts for ans in (a.answers or []) if ans.get("question_id") == q.id]
        right = sum(1 for ans in answered if ans.get("is_correct"))
        question_stats.append({
            "question_id": q.id,
            "question_text": q.question_text,
            "total_answers": len(answered),
            "correct_rate": _pct(right, len(answered)),
        })
    return {
        **step_summary(step, attempts),
        "questions": question_stats,
        "attempts": [{**a.to_dict(), "user": a.user.summary()} for a in attempts],
    }
