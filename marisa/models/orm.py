import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    def to_dict(self, exclude: Optional[set] = None) -> Dict[str, Any]:
        """Convert model to a JSON-ready dictionary."""
        exclude = exclude or set()
        result = {}
        for column in self.__table__.columns:
            if column.name in exclude:
                continue
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = as_utc(value).isoformat()
            result[column.name] = value
        return result


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    TESTER = "tester"
    QA = "qa"
    CLIENT = "client"

class UserStatus(str, enum.Enum):
    PENDING_INVITE = "pending_invite"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    BLOCKED = "blocked"

class AccessControlType(str, enum.Enum):
    OPEN = "open"
    EMAIL_RESTRICTED = "email_restricted"
    EXPLICIT_AUTHORIZATION = "explicit_authorization"

class QuestionType(str, enum.Enum):
    SELECT = "select"
    INPUT_STRING = "input_string"
    BOOLEAN = "boolean"

class PaymentType(str, enum.Enum):
    PER_HOUR = "per_hour"
    PER_TASK = "per_task"
    PER_GOAL = "per_goal"

class EarningStatus(str, enum.Enum):
    UNDER_REVIEW = "under_review"
    READY_FOR_PAYMENT = "ready_for_payment"
    PAID = "paid"
    REJECTED = "rejected"

class BankAccountStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ========== Identity ==========

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.TESTER.value)
    status: Mapped[str] = mapped_column(String(20), default=UserStatus.ACTIVE.value)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    birth_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    primary_language: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    secondary_languages: Mapped[List[str]] = mapped_column(JSON, default=list)
    document_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    document_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    selfie_photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    education: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    slack_user_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    invited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    invited_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "full_name": self.full_name, "role": self.role}


# ========== Playgrounds ==========

class Playground(Base):
    __tablename__ = "playgrounds"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(20))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    support_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    access_control_type: Mapped[str] = mapped_column(String(30), default=AccessControlType.OPEN.value)
    restricted_emails: Mapped[List[str]] = mapped_column(JSON, default=list)
    evaluation_goal: Mapped[int] = mapped_column(Integer, default=0)
    linked_course_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("courses.id", ondelete="SET NULL"), nullable=True)
    course_required: Mapped[bool] = mapped_column(Boolean, default=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_time_per_task: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tasks_for_goal: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    models: Mapped[List["ModelConfiguration"]] = relationship(cascade="all, delete-orphan")
    counters: Mapped[List["EvaluationCounter"]] = relationship(cascade="all, delete-orphan")
    questions: Mapped[List["Question"]] = relationship(cascade="all, delete-orphan", order_by="Question.order_index")
    evaluations: Mapped[List["Evaluation"]] = relationship(cascade="all, delete-orphan")
    authorized_users: Mapped[List["PlaygroundAuthorizedUser"]] = relationship(cascade="all, delete-orphan")

class ModelConfiguration(Base):
    __tablename__ = "model_configurations"
    __table_args__ = (UniqueConstraint("playground_id", "model_key", name="uq_model_configuration"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"), index=True)
    model_key: Mapped[str] = mapped_column(String(50))
    model_name: Mapped[str] = mapped_column(String(255))
    embed_code: Mapped[str] = mapped_column(Text)
    max_evaluations: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class EvaluationCounter(Base):
    __tablename__ = "evaluation_counters"
    __table_args__ = (UniqueConstraint("playground_id", "model_key", name="uq_evaluation_counter"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"), index=True)
    model_key: Mapped[str] = mapped_column(String(50))
    current_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class Question(Base):
    __tablename__ = "questions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"), index=True)
    model_key: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    question_text: Mapped[str] = mapped_column(Text)
    question_type: Mapped[str] = mapped_column(String(20))
    options: Mapped[Optional[List[Dict[str, str]]]] = mapped_column(JSON, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    required: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Evaluation(Base):
    __tablename__ = "evaluations"
    __table_args__ = (
        Index("idx_evaluations_session", "session_id"),
        Index("idx_evaluations_playground_user", "playground_id", "user_id"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    model_key: Mapped[str] = mapped_column(String(50))
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id", ondelete="CASCADE"))
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answer_value: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    session_id: Mapped[str] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class PlaygroundAuthorizedUser(Base):
    __tablename__ = "playground_authorized_users"
    __table_args__ = (UniqueConstraint("playground_id", "user_id", name="uq_playground_authorized_user"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    authorized_by: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    authorized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship(foreign_keys=[user_id])
    authorizer: Mapped[Optional["User"]] = relationship(foreign_keys=[authorized_by])


# ========== Courses ==========

class Course(Base):
    __tablename__ = "courses"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    steps: Mapped[List["CourseStep"]] = relationship(cascade="all, delete-orphan", order_by="CourseStep.order_index")

class CourseStep(Base):
    __tablename__ = "course_steps"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(String(36), ForeignKey("courses.id", ondelete="CASCADE"), index=True)
    order_index: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(255))
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audio_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    has_evaluation: Mapped[bool] = mapped_column(Boolean, default=False)
    evaluation_required: Mapped[bool] = mapped_column(Boolean, default=False)
    min_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_attempts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    questions: Mapped[List["EvaluationQuestion"]] = relationship(cascade="all, delete-orphan", order_by="EvaluationQuestion.order_index")

class EvaluationQuestion(Base):
    __tablename__ = "evaluation_questions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    step_id: Mapped[str] = mapped_column(String(36), ForeignKey("course_steps.id", ondelete="CASCADE"), index=True)
    order_index: Mapped[int] = mapped_column(Integer)
    question_text: Mapped[str] = mapped_column(Text)
    question_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    question_video_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    question_audio_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    options: Mapped[List["QuestionOption"]] = relationship(cascade="all, delete-orphan", order_by="QuestionOption.order_index")

class QuestionOption(Base):
    __tablename__ = "question_options"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("evaluation_questions.id", ondelete="CASCADE"), index=True)
    option_text: Mapped[str] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class UserCourseProgress(Base):
    __tablename__ = "user_course_progress"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_user_course_progress"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    course_id: Mapped[str] = mapped_column(String(36), ForeignKey("courses.id", ondelete="CASCADE"), index=True)
    current_step_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("course_steps.id", ondelete="SET NULL"), nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship()

class UserStepAttempt(Base):
    __tablename__ = "user_step_attempts"
    __table_args__ = (UniqueConstraint("user_id", "step_id", "attempt_number", name="uq_user_step_attempt"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    step_id: Mapped[str] = mapped_column(String(36), ForeignKey("course_steps.id", ondelete="CASCADE"), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    score: Mapped[int] = mapped_column(Integer)
    total_questions: Mapped[int] = mapped_column(Integer)
    passed: Mapped[bool] = mapped_column(Boolean)
    answers: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship()
    step: Mapped["CourseStep"] = relationship()


# ========== Payouts ==========

class QAEarning(Base):
    __tablename__ = "qa_earnings"
    __table_args__ = (
        Index("idx_qa_earnings_user_playground", "user_id", "playground_id"),
        Index("idx_qa_earnings_status", "status"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    playground_id: Mapped[str] = mapped_column(String(36), ForeignKey("playgrounds.id", ondelete="CASCADE"))
    evaluation_id: Mapped[str] = mapped_column(String(36))  # session id of the paid pass
    task_name: Mapped[str] = mapped_column(String(255))
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, default=0)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(30), default=EarningStatus.UNDER_REVIEW.value)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship()
    playground: Mapped["Playground"] = relationship()

class BankAccount(Base):
    __tablename__ = "bank_accounts"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    account_type: Mapped[str] = mapped_column(String(20))
    agency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    pix_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    iban: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    swift_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    international_account_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BankAccountStatus.PENDING.value)
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ========== Notifications ==========

class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target_type: Mapped[str] = mapped_column(String(20))
    target_role: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    target_user_ids: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    dismissals: Mapped[List["NotificationDismissal"]] = relationship(cascade="all, delete-orphan")

class NotificationDismissal(Base):
    __tablename__ = "notification_dismissals"
    __table_args__ = (UniqueConstraint("notification_id", "user_id", name="uq_notification_dismissal"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    notification_id: Mapped[str] = mapped_column(String(36), ForeignKey("notifications.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    dismissed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship()
