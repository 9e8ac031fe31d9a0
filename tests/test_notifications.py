from datetime import datetime, timedelta, timezone

from conftest import auth
from marisa.services import notifications


def _create(client, admin, **body):
    payload = {"type": "banner", "title": "Heads up", "message": "New playground live", "target_type": "all"}
    payload.update(body)
    return client.post("/notifications/admin", json=payload, headers=auth(admin))


def test_targeting(client, admin, make_user):
    qa = make_user(role="qa")
    tester = make_user(role="tester")
    _create(client, admin, title="everyone")
    _create(client, admin, title="qa only", target_type="role", target_role="qa")
    _create(client, admin, title="tester only", target_type="specific", target_user_ids=[tester.id])

    titles = lambda user: sorted(n["title"] for n in client.get("/notifications", headers=auth(user)).json()["data"])
    assert titles(qa) == ["everyone", "qa only"]
    assert titles(tester) == ["everyone", "tester only"]

def test_target_fields_validated(client, admin):
    assert _create(client, admin, target_type="role").status_code == 400
    assert _create(client, admin, target_type="specific", target_user_ids=[]).status_code == 400

def test_expired_and_inactive_hidden(client, admin, make_user):
    tester = make_user()
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    _create(client, admin, title="expired", expires_at=past)
    off = _create(client, admin, title="off").json()["data"]
    client.put(f"/notifications/admin/{off['id']}", json={"is_active": False}, headers=auth(admin))
    assert client.get("/notifications", headers=auth(tester)).json()["data"] == []

def test_dismiss_is_idempotent(client, admin, make_user):
    tester = make_user()
    n = _create(client, admin).json()["data"]
    for _ in range(2):
        assert client.post(f"/notifications/{n['id']}/dismiss", headers=auth(tester)).status_code == 200
    assert client.get("/notifications", headers=auth(tester)).json()["data"] == []

    m = client.get(f"/notifications/admin/{n['id']}/metrics", headers=auth(admin)).json()["data"]
    assert m["total_dismissals"] == 1
    assert m["targeted_users"] == 2

def test_email_notification_sends_to_targeted_users(client, admin, make_user, monkeypatch):
    make_user(role="qa")
    make_user(role="qa", status="blocked")
    make_user(role="tester")
    sent = []
    monkeypatch.setattr(notifications, "send_bulk", lambda emails, subject, body: sent.extend(emails) or len(sent))

    r = _create(client, admin, type="email", target_type="role", target_role="qa")
    assert r.status_code == 201
    assert r.json()["data"]["emails_sent"] == 1
    assert len(sent) == 1 and sent[0].startswith("qa")

def test_email_failure_does_not_fail_creation(client, admin, monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("smtp down")
    monkeypatch.setattr(notifications, "send_bulk", broken)
    r = _create(client, admin, type="email")
    assert r.status_code == 201
    assert r.json()["data"]["emails_sent"] is None

def test_admin_list_and_delete(client, admin, make_user):
    n = _create(client, admin).json()["data"]
    assert len(client.get("/notifications/admin/all", headers=auth(admin)).json()["data"]) == 1
    assert client.delete(f"/notifications/admin/{n['id']}", headers=auth(admin)).status_code == 200
    assert client.post(f"/notifications/{n['id']}/dismiss", headers=auth(make_user())).status_code == 404
