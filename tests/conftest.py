import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_CREATE_ALL"] = "false"
os.environ["EMAIL_TRANSPORT"] = "dummy"
os.environ["OTP_BACKEND"] = "memory"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marisa.core.auth import create_token
from marisa.core.cache import MemoryOTPStore, get_otp_store
from marisa.core.database import get_db
from marisa.main import app
from marisa.models.orm import (
    Base, Course, CourseStep, EvaluationCounter, EvaluationQuestion, ModelConfiguration, Playground,
    PlaygroundAuthorizedUser, Question, QuestionOption, User,
)


@pytest.fixture()
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()

@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture()
def otp_store():
    return MemoryOTPStore(ttl_seconds=600)

@pytest.fixture()
def client(session_factory, otp_store):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_otp_store] = lambda: otp_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(role="tester", email=None, status="active", **kw):
        counter["n"] += 1
        user = User(email=email or f"{role}{counter['n']}@marisa.care", role=role, status=status, **kw)
        db.add(user)
        db.commit()
        return user
    return _make

def auth(user):
    return {"Authorization": f"Bearer {create_token(user)}"}

@pytest.fixture()
def admin(make_user):
    return make_user(role="admin", email="admin@marisa.care")


@pytest.fixture()
def make_playground(db):
    def _make(owner, models=(("model_a", 5),), questions=None, **kw):
        pg = Playground(name=kw.pop("name", "Voice assistant A/B"), type=kw.pop("type", "ab_testing"), created_by=owner.id, **kw)
        db.add(pg)
        db.flush()
        for key, cap in models:
            db.add(ModelConfiguration(playground_id=pg.id, model_key=key, model_name=key.upper(), embed_code="<iframe/>", max_evaluations=cap))
            db.add(EvaluationCounter(playground_id=pg.id, model_key=key, current_count=0))
        if questions is None:
            questions = [
                {"question_text": "Which answer was better?", "question_type": "select",
                 "options": [{"label": "Good", "value": "good"}, {"label": "Bad", "value": "bad"}]},
                {"question_text": "Comments", "question_type": "input_string", "required": False},
            ]
        for i, q in enumerate(questions):
            db.add(Question(playground_id=pg.id, order_index=i, **q))
        db.commit()
        db.refresh(pg)
        return pg
    return _make

def authorize(db, playground, user, by=None):
    db.add(PlaygroundAuthorizedUser(playground_id=playground.id, user_id=user.id, authorized_by=by.id if by else None))
    db.commit()


@pytest.fixture()
def make_course(db):
    def _make(owner, steps=2, quiz_on=(0,), required=True, min_score=1, max_attempts=None, published=True):
        course = Course(title="Evaluator onboarding", created_by=owner.id, is_published=published)
        db.add(course)
        db.flush()
        for i in range(steps):
            has_quiz = i in quiz_on
            step = CourseStep(
                course_id=course.id, order_index=i, title=f"Step {i + 1}", content="Read this.",
                has_evaluation=has_quiz, evaluation_required=has_quiz and required,
                min_score=min_score if has_quiz else None, max_attempts=max_attempts if has_quiz else None,
            )
            db.add(step)
            db.flush()
            if has_quiz:
                q = EvaluationQuestion(step_id=step.id, order_index=0, question_text="Pick the right one")
                db.add(q)
                db.flush()
                db.add(QuestionOption(question_id=q.id, option_text="Right", is_correct=True, order_index=0))
                db.add(QuestionOption(question_id=q.id, option_text="Wrong", is_correct=False, order_index=1))
        db.commit()
        db.refresh(course)
        return course
    return _make

def quiz_answers(step, correct=True):
    answers = []
    for q in step.questions:
        opt = next(o for o in q.options if o.is_correct == correct)
        answers.append({"question_id": q.id, "selected_option_id": opt.id})
    return answers
