from sqlalchemy import select

from conftest import auth, quiz_answers
from marisa.models.orm import UserCourseProgress, UserStepAttempt
from marisa.services.courses import score_answers


def _url(course, step, action):
    return f"/courses/{course.id}/steps/{step.id}/{action}"


def test_start_is_idempotent(client, admin, make_user, make_course):
    tester = make_user()
    course = make_course(admin)
    first = client.post(f"/courses/{course.id}/start", headers=auth(tester)).json()["data"]
    again = client.post(f"/courses/{course.id}/start", headers=auth(tester)).json()["data"]
    assert first["id"] == again["id"]
    assert first["current_step_id"] == course.steps[0].id

def test_unpublished_course_is_hidden(client, admin, make_user, make_course):
    course = make_course(admin, published=False)
    assert client.get(f"/courses/{course.id}", headers=auth(make_user())).status_code == 404

def test_learner_view_hides_correct_flags(client, admin, make_user, make_course):
    course = make_course(admin)
    data = client.get(f"/courses/{course.id}", headers=auth(make_user())).json()["data"]
    options = data["steps"][0]["questions"][0]["options"]
    assert options and all("is_correct" not in o for o in options)

def test_fourth_attempt_is_numbered_four(client, db, admin, make_user, make_course):
    tester = make_user()
    course = make_course(admin)
    step = course.steps[0]
    for correct in (False, True, False):
        client.post(_url(course, step, "submit"), json={"answers": quiz_answers(step, correct)}, headers=auth(tester))
    r = client.post(_url(course, step, "submit"), json={"answers": quiz_answers(step)}, headers=auth(tester))
    assert r.json()["data"]["attempt"]["attempt_number"] == 4
    db.expire_all()
    numbers = db.scalars(select(UserStepAttempt.attempt_number).where(UserStepAttempt.user_id == tester.id)).all()
    assert sorted(numbers) == [1, 2, 3, 4]

def test_max_attempts(client, admin, make_user, make_course):
    tester = make_user()
    course = make_course(admin, max_attempts=2)
    step = course.steps[0]
    for _ in range(2):
        assert client.post(_url(course, step, "submit"), json={"answers": quiz_answers(step, False)}, headers=auth(tester)).status_code == 200
    r = client.post(_url(course, step, "submit"), json={"answers": quiz_answers(step)}, headers=auth(tester))
    assert r.status_code == 409

def test_step_without_quiz(client, admin, make_user, make_course):
    course = make_course(admin)
    step = course.steps[1]
    r = client.post(_url(course, step, "submit"), json={"answers": [{"question_id": "x", "selected_option_id": "y"}]}, headers=auth(make_user()))
    assert r.status_code == 400

def test_required_quiz_gates_completion(client, db, admin, make_user, make_course):
    tester = make_user()
    course = make_course(admin)
    first, last = course.steps
    client.post(f"/courses/{course.id}/start", headers=auth(tester))

    r = client.post(_url(course, first, "complete"), headers=auth(tester))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "evaluation_not_passed"

    client.post(_url(course, first, "submit"), json={"answers": quiz_answers(first, False)}, headers=auth(tester))
    assert client.post(_url(course, first, "complete"), headers=auth(tester)).status_code == 400

    client.post(_url(course, first, "submit"), json={"answers": quiz_answers(first)}, headers=auth(tester))
    r = client.post(_url(course, first, "complete"), headers=auth(tester))
    assert r.json()["data"]["current_step_id"] == last.id
    assert r.json()["data"]["completed"] is False

    r = client.post(_url(course, last, "complete"), headers=auth(tester))
    assert r.json()["data"]["completed"] is True
    assert r.json()["data"]["completed_at"] is not None

    db.expire_all()
    progress = db.scalar(select(UserCourseProgress).where(UserCourseProgress.user_id == tester.id))
    assert progress.completed and progress.completed_at is not None

def test_cannot_skip_ahead_of_current_step(client, db, admin, make_user, make_course, make_playground):
    course = make_course(admin)
    first, last = course.steps
    pg = make_playground(admin, linked_course_id=course.id, course_required=True)
    tester = make_user()
    client.post(f"/courses/{course.id}/start", headers=auth(tester))

    r = client.post(_url(course, last, "complete"), headers=auth(tester))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "step_not_reached"

    db.expire_all()
    progress = db.scalar(select(UserCourseProgress).where(UserCourseProgress.user_id == tester.id))
    assert progress.completed is False and progress.current_step_id == first.id
    r = client.get(f"/playgrounds/{pg.id}", headers=auth(tester))
    assert r.json()["error"]["code"] == "course_required"

def test_complete_requires_started_course(client, admin, make_user, make_course):
    course = make_course(admin, quiz_on=())
    r = client.post(_url(course, course.steps[0], "complete"), headers=auth(make_user()))
    assert r.status_code == 404

def test_optional_quiz_always_passes(make_user, admin, make_course):
    course = make_course(admin, required=False, min_score=5)
    step = course.steps[0]
    result = score_answers(step, quiz_answers(step, False))
    assert result["passed"] is True and result["score"] == 0 and result["total_questions"] == 1

def test_min_score(admin, make_course):
    course = make_course(admin, min_score=1)
    step = course.steps[0]
    assert score_answers(step, quiz_answers(step))["passed"] is True
    assert score_answers(step, quiz_answers(step, False))["passed"] is False

def test_progress_and_attempts_endpoints(client, admin, make_user, make_course):
    tester = make_user()
    course = make_course(admin)
    step = course.steps[0]
    client.post(f"/courses/{course.id}/start", headers=auth(tester))
    client.post(_url(course, step, "submit"), json={"answers": quiz_answers(step)}, headers=auth(tester))

    data = client.get(f"/courses/{course.id}/progress", headers=auth(tester)).json()["data"]
    assert data["progress"]["course_id"] == course.id
    assert len(data["attempts"]) == 1
    assert len(client.get(_url(course, step, "attempts"), headers=auth(tester)).json()["data"]) == 1

    listing = client.get("/courses", headers=auth(tester)).json()["data"]
    assert listing[0]["progress"]["current_step_id"] == step.id


def test_admin_question_needs_one_correct_option(client, admin, make_course):
    course = make_course(admin, quiz_on=())
    step = course.steps[0]
    body = {
        "order_index": 0,
        "question_text": "Which is right?",
        "options": [{"option_text": "A", "is_correct": True}, {"option_text": "B", "is_correct": True}],
    }
    url = f"/admin/courses/{course.id}/steps/{step.id}/questions"
    assert client.post(url, json=body, headers=auth(admin)).status_code == 400
    body["options"][1]["is_correct"] = False
    r = client.post(url, json=body, headers=auth(admin))
    assert r.status_code == 201
    assert [o["order_index"] for o in r.json()["data"]["options"]] == [0, 1]

def test_admin_course_crud_and_metrics(client, admin, make_user):
    r = client.post("/admin/courses", json={"title": "Safety basics", "is_published": True}, headers=auth(admin))
    course_id = r.json()["data"]["id"]
    step = client.post(f"/admin/courses/{course_id}/steps", json={
        "order_index": 0, "title": "Intro", "has_evaluation": True, "evaluation_required": True, "min_score": 1,
    }, headers=auth(admin)).json()["data"]
    question = client.post(f"/admin/courses/{course_id}/steps/{step['id']}/questions", json={
        "order_index": 0, "question_text": "Pick A",
        "options": [{"option_text": "A", "is_correct": True}, {"option_text": "B"}],
    }, headers=auth(admin)).json()["data"]
    right = next(o["id"] for o in question["options"] if o["is_correct"])
    wrong = next(o["id"] for o in question["options"] if not o["is_correct"])

    learner = make_user()
    client.post(f"/courses/{course_id}/start", headers=auth(learner))
    submit = f"/courses/{course_id}/steps/{step['id']}/submit"
    client.post(submit, json={"answers": [{"question_id": question["id"], "selected_option_id": wrong}]}, headers=auth(learner))
    client.post(submit, json={"answers": [{"question_id": question["id"], "selected_option_id": right}]}, headers=auth(learner))
    client.post(f"/courses/{course_id}/steps/{step['id']}/complete", headers=auth(learner))

    m = client.get(f"/admin/courses/{course_id}/metrics", headers=auth(admin)).json()["data"]
    assert m["total_enrollments"] == 1 and m["total_completions"] == 1
    assert m["completion_rate"] == 100.0
    assert m["average_score"] == 50.0
    s = m["step_metrics"][0]
    assert s["total_attempts"] == 2 and s["pass_rate"] == 50.0 and s["average_attempts_to_pass"] == 2.0

    users = client.get(f"/admin/courses/{course_id}/users", headers=auth(admin)).json()["data"]
    assert users[0]["user"]["id"] == learner.id and users[0]["completed"] is True
    detail = client.get(f"/admin/courses/{course_id}/users/{learner.id}", headers=auth(admin)).json()["data"]
    assert detail["steps"][0]["passed"] is True
    step_m = client.get(f"/admin/courses/{course_id}/steps/{step['id']}/metrics", headers=auth(admin)).json()["data"]
    assert step_m["questions"][0]["correct_rate"] == 50.0

    assert client.delete(f"/admin/courses/{course_id}", headers=auth(admin)).status_code == 200
    assert client.get(f"/admin/courses/{course_id}", headers=auth(admin)).status_code == 404
    assert client.get("/admin/courses", headers=auth(learner)).status_code == 403
