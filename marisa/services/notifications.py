import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marisa.models.orm import Notification, NotificationDismissal, User, UserStatus, as_utc, utcnow
from marisa.services.mailer import send_bulk

logger = logging.getLogger(__name__)


def is_targeted(notification: Notification, user: User) -> bool:
    if notification.target_type == "all":
        return True
    if notification.target_type == "role":
        return notification.target_role == user.role
    if notification.target_type == "specific":
        return user.id in (notification.target_user_ids or [])
    return False


def visible_notifications(db: Session, user: User) -> List[Notification]:
    now = utcnow()
    dismissed = set(db.scalars(
        select(NotificationDismissal.notification_id).where(NotificationDismissal.user_id == user.id)
    ))
    active = db.scalars(
        select(Notification).where(Notification.is_active.is_(True)).order_by(Notification.created_at.desc())
    )
    return [
        n for n in active
        if n.id not in dismissed
        and (n.expires_at is None or as_utc(n.expires_at) > now)
        and is_targeted(n, user)
    ]


def dismiss(db: Session, notification: Notification, user: User) -> None:
    exists = db.scalar(
        select(NotificationDismissal.id).where(
            NotificationDismissal.notification_id == notification.id, NotificationDismissal.user_id == user.id
        )
    )
    if exists:
        return
    db.add(NotificationDismissal(notification_id=notification.id, user_id=user.id))
    try:
        db.commit()
    except IntegrityError:
        # concurrent dismissal of the same pair
        db.rollback()


def recipients(db: Session, notification: Notification) -> List[User]:
    users = db.scalars(select(User).where(User.status == UserStatus.ACTIVE.value))
    return [u for u in users if is_targeted(notification, u)]


def send_email_notification(db: Session, notification: Notification) -> int:
    """Email the message to every targeted active user. Failures are logged per recipient."""
    emails = [u.email for u in recipients(db, notification)]
    sent = send_bulk(emails, notification.title, notification.message)
    logger.info(f"Notification {notification.id} emailed to {sent}/{len(emails)} users")
    return sent


def dismissal_metrics(db: Session, notification: Notification) -> Dict[str, Any]:
    targeted = recipients(db, notification)
    dismissals = list(db.scalars(
        select(NotificationDismissal)
        .where(NotificationDismissal.notification_id == notification.id)
        .order_by(NotificationDismissal.dismissed_at.desc())
    ))
    return {
        "notification_id": notification.id,
        "targeted_users": len(targeted),
        "total_dismissals": len(dismissals),
        "dismissal_rate": round(len(dismissals) / len(targeted) * 100, 2) if targeted else 0.0,
        "dismissals": [{**d.to_dict(), "user": d.user.summary()} for d in dismissals],
    }
