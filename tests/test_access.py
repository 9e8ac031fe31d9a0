from types import SimpleNamespace

import pytest

from conftest import auth, authorize
from marisa.services.access import AccessReason, decide_access, list_accessible_playgrounds, resolve_access


def _user(role, email="b@x.com"):
    return SimpleNamespace(id="u1", role=role, email=email)

def _pg(access="open", active=True, emails=()):
    return SimpleNamespace(id="p1", is_active=active, access_control_type=access, restricted_emails=list(emails))

never = lambda: False
always = lambda: True


@pytest.mark.parametrize("access", ["open", "email_restricted", "explicit_authorization", "bogus"])
@pytest.mark.parametrize("active", [True, False])
def test_admin_always_allowed(access, active):
    d = decide_access(_user("admin"), _pg(access, active), never)
    assert d.allowed and d.reason == AccessReason.ADMIN

def test_missing_playground():
    d = decide_access(_user("tester"), None, always)
    assert not d.allowed and d.reason == AccessReason.PLAYGROUND_NOT_FOUND

def test_inactive_denied_before_anything_else():
    d = decide_access(_user("client"), _pg(active=False), always)
    assert d.reason == AccessReason.PLAYGROUND_INACTIVE

def test_client_on_open_playground_needs_grant():
    assert decide_access(_user("client"), _pg("open"), never).reason == AccessReason.NOT_AUTHORIZED
    d = decide_access(_user("client"), _pg("open"), always)
    assert d.allowed and d.reason == AccessReason.EXPLICITLY_AUTHORIZED

def test_client_on_email_restricted_ignores_email_list():
    pg = _pg("email_restricted", emails=["b@x.com"])
    assert not decide_access(_user("client", "b@x.com"), pg, never).allowed

@pytest.mark.parametrize("role", ["tester", "qa"])
def test_open_access(role):
    d = decide_access(_user(role), _pg("open"), never)
    assert d.allowed and d.reason == AccessReason.OPEN_ACCESS

def test_email_restricted_scenario():
    pg = _pg("email_restricted", emails=["a@x.com"])
    denied = decide_access(_user("tester", "b@x.com"), pg, always)
    assert not denied.allowed and denied.reason == AccessReason.EMAIL_NOT_ALLOWED
    allowed = decide_access(_user("tester", "a@x.com"), pg, never)
    assert allowed.allowed and allowed.reason == AccessReason.EMAIL_ALLOWED

def test_explicit_authorization_for_testers():
    pg = _pg("explicit_authorization")
    assert decide_access(_user("qa"), pg, always).reason == AccessReason.EXPLICITLY_AUTHORIZED
    assert decide_access(_user("qa"), pg, never).reason == AccessReason.NOT_AUTHORIZED

def test_unknown_access_control_is_denied():
    d = decide_access(_user("tester"), _pg("bogus"), always)
    assert not d.allowed and d.reason == AccessReason.UNKNOWN_ACCESS_CONTROL


@pytest.mark.parametrize("role", ["tester", "qa", "client"])
def test_bulk_listing_matches_single_resolver(db, make_user, make_playground, admin, role):
    user = make_user(role=role, email=f"{role}@x.com")
    pgs = [
        make_playground(admin, name="open"),
        make_playground(admin, name="open granted"),
        make_playground(admin, name="email hit", access_control_type="email_restricted", restricted_emails=[f"{role}@x.com"]),
        make_playground(admin, name="email miss", access_control_type="email_restricted", restricted_emails=["other@x.com"]),
        make_playground(admin, name="explicit", access_control_type="explicit_authorization"),
        make_playground(admin, name="explicit granted", access_control_type="explicit_authorization"),
        make_playground(admin, name="inactive granted", is_active=False),
    ]
    for pg in (pgs[1], pgs[5], pgs[6]):
        authorize(db, pg, user, admin)

    listed = {p.id for p in list_accessible_playgrounds(db, user)}
    resolved = {p.id for p in pgs if resolve_access(db, user, p.id).allowed}
    assert listed == resolved

def test_admin_listing_returns_active_playgrounds(db, admin, make_playground):
    active = make_playground(admin)
    make_playground(admin, is_active=False)
    assert [p.id for p in list_accessible_playgrounds(db, admin)] == [active.id]


def test_client_cannot_open_open_playground_without_grant(client, db, admin, make_user, make_playground):
    customer = make_user(role="client")
    pg = make_playground(admin)
    r = client.get(f"/playgrounds/{pg.id}", headers=auth(customer))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "not_authorized"

    authorize(db, pg, customer, admin)
    r = client.get(f"/playgrounds/{pg.id}", headers=auth(customer))
    assert r.status_code == 200
    assert r.json()["data"]["models"][0]["model_key"] == "model_a"

def test_unknown_playground_is_404(client, make_user):
    r = client.get("/playgrounds/does-not-exist", headers=auth(make_user()))
    assert r.status_code == 404

def test_course_gate(client, db, admin, make_user, make_playground, make_course):
    course = make_course(admin, steps=1, quiz_on=())
    pg = make_playground(admin, linked_course_id=course.id, course_required=True)
    tester = make_user()
    r = client.get(f"/playgrounds/{pg.id}", headers=auth(tester))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "course_required"

    client.post(f"/courses/{course.id}/start", headers=auth(tester))
    client.post(f"/courses/{course.id}/steps/{course.steps[0].id}/complete", headers=auth(tester))
    assert client.get(f"/playgrounds/{pg.id}", headers=auth(tester)).status_code == 200

def test_listing_endpoint(client, admin, make_user, make_playground):
    tester = make_user(email="a@x.com")
    visible = make_playground(admin, access_control_type="email_restricted", restricted_emails=["a@x.com"])
    make_playground(admin, access_control_type="explicit_authorization")
    r = client.get("/playgrounds", headers=auth(tester))
    assert r.status_code == 200
    assert [p["id"] for p in r.json()["data"]] == [visible.id]
