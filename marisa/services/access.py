"""
Playground access resolution.

`decide_access` is the whole decision table and touches no storage: the
explicit authorization lookup is passed in as a callable so the single and
bulk variants share one code path. Admins bypass everything, clients are
always gated by an explicit grant, every other role follows the
playground's access-control type.
"""
import enum
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marisa.core.errors import AccessDenied, NotFound
from marisa.models.orm import (
    AccessControlType, Playground, PlaygroundAuthorizedUser, User, UserCourseProgress, UserRole,
)


class AccessReason(str, enum.Enum):
    ADMIN = "admin"
    PLAYGROUND_NOT_FOUND = "playground_not_found"
    PLAYGROUND_INACTIVE = "playground_inactive"
    OPEN_ACCESS = "open_access"
    EMAIL_ALLOWED = "email_allowed"
    EMAIL_NOT_ALLOWED = "email_not_allowed"
    EXPLICITLY_AUTHORIZED = "explicitly_authorized"
    NOT_AUTHORIZED = "not_authorized"
    UNKNOWN_ACCESS_CONTROL = "unknown_access_control"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason


def _explicit(is_authorized: Callable[[], bool]) -> AccessDecision:
    if is_authorized():
        return AccessDecision(True, AccessReason.EXPLICITLY_AUTHORIZED)
    return AccessDecision(False, AccessReason.NOT_AUTHORIZED)


def decide_access(user: User, playground: Optional[Playground], is_authorized: Callable[[], bool]) -> AccessDecision:
    if user.role == UserRole.ADMIN.value:
        return AccessDecision(True, AccessReason.ADMIN)
    if playground is None:
        return AccessDecision(False, AccessReason.PLAYGROUND_NOT_FOUND)
    if not playground.is_active:
        return AccessDecision(False, AccessReason.PLAYGROUND_INACTIVE)
    if user.role == UserRole.CLIENT.value:
        return _explicit(is_authorized)

    access_type = playground.access_control_type
    if access_type == AccessControlType.OPEN.value:
        return AccessDecision(True, AccessReason.OPEN_ACCESS)
    if access_type == AccessControlType.EMAIL_RESTRICTED.value:
        if user.email in (playground.restricted_emails or []):
            return AccessDecision(True, AccessReason.EMAIL_ALLOWED)
        return AccessDecision(False, AccessReason.EMAIL_NOT_ALLOWED)
    if access_type == AccessControlType.EXPLICIT_AUTHORIZATION.value:
        return _explicit(is_authorized)
    return AccessDecision(False, AccessReason.UNKNOWN_ACCESS_CONTROL)


def is_explicitly_authorized(db: Session, user_id: str, playground_id: str) -> bool:
    row = db.scalar(
        select(PlaygroundAuthorizedUser.id).where(
            PlaygroundAuthorizedUser.user_id == user_id,
            PlaygroundAuthorizedUser.playground_id == playground_id,
        ).limit(1)
    )
    return row is not None


def resolve_access(db: Session, user: User, playground_id: str) -> AccessDecision:
    playground = db.get(Playground, playground_id)
    return decide_access(user, playground, lambda: is_explicitly_authorized(db, user.id, playground_id))


def list_accessible_playgrounds(db: Session, user: User) -> List[Playground]:
    """Active playgrounds the user may open, newest first."""
    newest = Playground.created_at.desc()
    if user.role == UserRole.ADMIN.value:
        return list(db.scalars(select(Playground).where(Playground.is_active.is_(True)).order_by(newest)))

    if user.role == UserRole.CLIENT.value:
        stmt = (
            select(Playground)
            .join(PlaygroundAuthorizedUser, PlaygroundAuthorizedUser.playground_id == Playground.id)
            .where(PlaygroundAuthorizedUser.user_id == user.id, Playground.is_active.is_(True))
            .order_by(newest)
        )
        return list(db.scalars(stmt))

    granted = set(db.scalars(
        select(PlaygroundAuthorizedUser.playground_id).where(PlaygroundAuthorizedUser.user_id == user.id)
    ))
    active = db.scalars(select(Playground).where(Playground.is_active.is_(True)).order_by(newest))
    return [p for p in active if decide_access(user, p, lambda p=p: p.id in granted).allowed]


def has_completed_course(db: Session, user_id: str, course_id: str) -> bool:
    progress = db.scalar(
        select(UserCourseProgress).where(
            UserCourseProgress.user_id == user_id, UserCourseProgress.course_id == course_id
        )
    )
    return bool(progress and progress.completed)


def require_playground(db: Session, user: User, playground_id: str) -> Playground:
    """Load a playground for a learner route, enforcing access and the linked-course gate."""
    decision = resolve_access(db, user, playground_id)
    if decision.reason == AccessReason.PLAYGROUND_NOT_FOUND:
        raise NotFound("Playground not found")
    playground = db.get(Playground, playground_id)
    if playground is None:
        raise NotFound("Playground not found")
    if not decision.allowed:
        raise AccessDenied("Access denied to this playground", code=decision.reason.value)

    if (
        user.role != UserRole.ADMIN.value
        and playground.linked_course_id
        and playground.course_required
        and not has_completed_course(db, user.id, playground.linked_course_id)
    ):
        raise AccessDenied(
            "Complete the linked course before accessing this playground",
            code="course_required",
            details={"course_id": playground.linked_course_id},
        )
    return playground
