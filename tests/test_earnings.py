import uuid

import pytest
from sqlalchemy import select

from conftest import auth
from marisa.models.orm import QAEarning
from marisa.services import earnings
from marisa.services.earnings import calculate_earning, summarize


@pytest.mark.parametrize("seconds", [0, 1, 59, 3600, 10 ** 6])
def test_per_task_is_flat(seconds):
    assert calculate_earning("per_task", 12.5, seconds, 10, None, 7) == 12.5

@pytest.mark.parametrize("n", [1, 2, 3, 7])
def test_per_goal_pays_once_per_goal(n):
    amounts = [calculate_earning("per_goal", 40.0, 0, None, n, k) for k in range(2 * n)]
    assert sum(amounts) == 80.0
    assert [k for k, a in enumerate(amounts) if a] == [n - 1, 2 * n - 1]

def test_per_goal_requires_goal_size():
    with pytest.raises(ValueError):
        calculate_earning("per_goal", 40.0, 0, None, None, 0)

def test_per_hour_monotonic_until_cap():
    cap_minutes = 30
    amounts = [calculate_earning("per_hour", 20.0, t, cap_minutes) for t in range(0, 3600, 45)]
    assert amounts == sorted(amounts)
    at_cap = calculate_earning("per_hour", 20.0, cap_minutes * 60, cap_minutes)
    assert at_cap == 10.0
    assert calculate_earning("per_hour", 20.0, 3 * 3600, cap_minutes) == at_cap

def test_per_hour_without_cap():
    assert calculate_earning("per_hour", 30.0, 5400) == 45.0

def test_unknown_payment_type():
    with pytest.raises(ValueError):
        calculate_earning("per_word", 1.0)

def test_amount_never_negative():
    assert calculate_earning("per_hour", 10.0, -120) == 0.0


def _submit(client, user, pg, seconds=60):
    body = {
        "session_id": str(uuid.uuid4()),
        "model_key": "model_a",
        "time_spent_seconds": seconds,
        "answers": [{"question_id": pg.questions[0].id, "answer_value": "good"}],
    }
    return client.post(f"/playgrounds/{pg.id}/evaluations", json=body, headers=auth(user))

def test_per_goal_scenario(client, db, admin, make_user, make_playground):
    qa = make_user(role="qa")
    pg = make_playground(admin, models=(("model_a", 100),), is_paid=True, payment_type="per_goal", payment_value=50.0, tasks_for_goal=3)
    for _ in range(2):
        assert _submit(client, qa, pg).status_code == 201

    amounts = [_submit(client, qa, pg).json()["data"]["earning"]["amount"] for _ in range(4)]
    assert amounts == [50.0, 0.0, 0.0, 50.0]

def test_testers_do_not_earn(client, db, admin, make_user, make_playground):
    tester = make_user(role="tester")
    pg = make_playground(admin, is_paid=True, payment_type="per_task", payment_value=3.0)
    r = _submit(client, tester, pg)
    assert r.status_code == 201
    assert r.json()["data"]["earning"] is None

def test_earning_failure_does_not_block_submission(client, db, admin, make_user, make_playground, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("rate service down")
    monkeypatch.setattr(earnings, "calculate_earning", boom)

    qa = make_user(role="qa")
    pg = make_playground(admin, is_paid=True, payment_type="per_task", payment_value=3.0)
    r = _submit(client, qa, pg)
    assert r.status_code == 201
    assert r.json()["data"]["evaluations"] == 1
    assert r.json()["data"]["earning"] is None
    assert db.scalars(select(QAEarning)).all() == []


def test_summary_excludes_rejected():
    rows = [
        QAEarning(amount=10.0, status="under_review"),
        QAEarning(amount=5.0, status="paid"),
        QAEarning(amount=7.0, status="rejected"),
    ]
    s = summarize(rows)
    assert s["total_earned"] == 15.0
    assert s["rejected"] == {"count": 1, "amount": 7.0}
    assert s["total_tasks"] == 3

def test_review_transitions(client, db, admin, make_user, make_playground):
    qa = make_user(role="qa")
    pg = make_playground(admin, is_paid=True, payment_type="per_task", payment_value=3.0)
    earning_id = _submit(client, qa, pg).json()["data"]["earning"]["id"]

    assert client.put(f"/earnings/admin/{earning_id}/pay", headers=auth(admin)).status_code == 409
    r = client.put(f"/earnings/admin/{earning_id}/approve", headers=auth(admin))
    assert r.json()["data"]["status"] == "ready_for_payment"
    r = client.put(f"/earnings/admin/{earning_id}/pay", headers=auth(admin))
    assert r.json()["data"]["status"] == "paid"
    assert r.json()["data"]["paid_at"] is not None
    assert r.json()["data"]["amount"] == 3.0

    r = client.put(f"/earnings/admin/{earning_id}/reject", json={"reason": "late"}, headers=auth(admin))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "invalid_transition"

def test_reject_requires_reason(client, admin, make_user, make_playground):
    qa = make_user(role="qa")
    pg = make_playground(admin, is_paid=True, payment_type="per_task", payment_value=3.0)
    earning_id = _submit(client, qa, pg).json()["data"]["earning"]["id"]
    assert client.put(f"/earnings/admin/{earning_id}/reject", json={}, headers=auth(admin)).status_code == 400
    r = client.put(f"/earnings/admin/{earning_id}/reject", json={"reason": "copy-paste answers"}, headers=auth(admin))
    assert r.json()["data"]["status"] == "rejected"
    assert r.json()["data"]["rejected_reason"] == "copy-paste answers"

def test_qa_listing_and_answers(client, admin, make_user, make_playground):
    qa = make_user(role="qa")
    pg = make_playground(admin, is_paid=True, payment_type="per_task", payment_value=3.0)
    _submit(client, qa, pg)
    _submit(client, qa, pg)

    r = client.get("/earnings", params={"limit": 1}, headers=auth(qa))
    body = r.json()
    assert body["total"] == 2 and body["pages"] == 2 and len(body["data"]) == 1

    summary = client.get("/earnings/summary", headers=auth(qa)).json()["data"]
    assert summary["under_review"]["count"] == 2
    assert summary["total_earned"] == 6.0

    earning_id = body["data"][0]["id"]
    answers = client.get(f"/earnings/{earning_id}/answers", headers=auth(qa)).json()["data"]["answers"]
    assert answers[0]["answer_value"] == "good"

    other = make_user(role="qa")
    assert client.get(f"/earnings/{earning_id}/answers", headers=auth(other)).status_code == 404
    assert client.get("/earnings/admin", headers=auth(qa)).status_code == 403
