from fastapi.testclient import TestClient
from sqlmodel import Session

from conftest import make_principal
from portal.config import Settings
from portal.dependencies import get_current_user
from portal.main import create_app
from portal.permissions import ALL_PERMISSIONS
from portal.routers.auth import get_oauth_client, hash_admin_password
from portal.stores import SqlProfileStore

QUIZ = {
    "title_key": "Police Department",
    "description_key": "Serve and protect",
    "questions": [
        {"id": "q1", "text_key": "Why do you want to join?", "time_limit": 60},
        {"id": "q2", "text_key": "Describe a traffic stop.", "time_limit": 30},
    ],
}


def create_open_quiz(client, login, reviewer, **overrides):
    login(reviewer)
    response = client.post("/admin/quizzes", json={**QUIZ, **overrides})
    assert response.status_code == 200, response.text
    quiz_id = response.json()["id"]
    assert client.post(f"/admin/quizzes/{quiz_id}/open").json()["is_open"] is True
    return quiz_id


def apply(client, login, applicant, clock, quiz_id):
    login(applicant)
    attempt = client.post(f"/api/quizzes/{quiz_id}/attempts").json()
    attempt_id = attempt["id"]
    client.post(f"/api/attempts/{attempt_id}/begin", json={"captcha_token": "tok"})
    clock.advance(90)
    return client.post(f"/api/attempts/{attempt_id}/submit", json={"captcha_token": "tok"}).json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_full_application_flow(client, login, applicant, reviewer, verifier, notifier, clock):
    quiz_id = create_open_quiz(client, login, reviewer)

    login(applicant)
    listing = client.get("/api/quizzes").json()
    assert listing[0]["eligibility"] == "eligible"
    assert listing[0]["question_count"] == 2

    attempt = client.post(f"/api/quizzes/{quiz_id}/attempts").json()
    assert attempt["state"] == "rules"
    attempt_id = attempt["id"]

    response = client.post(f"/api/attempts/{attempt_id}/begin", json={})
    assert response.status_code == 422
    assert response.json()["error"] == "missing_captcha"

    state = client.post(f"/api/attempts/{attempt_id}/begin", json={"captcha_token": "tok"}).json()
    assert state["state"] == "taking"
    assert state["time_left"] == 60

    clock.advance(10)
    state = client.post(f"/api/attempts/{attempt_id}/next", json={"text": "Alpha"}).json()
    assert state["question"]["id"] == "q2"
    assert state["time_left"] == 30

    signal = client.post(f"/api/attempts/{attempt_id}/signals", json={"method": "switched_tab"}).json()
    assert signal["recorded"] is True
    assert signal["warning"]

    client.put(f"/api/attempts/{attempt_id}/answer", json={"text": "Be"})
    clock.advance(30)
    state = client.get(f"/api/attempts/{attempt_id}").json()
    assert state["state"] == "submitting"
    assert state["answers_recorded"] == 2

    verifier.ok = False
    response = client.post(f"/api/attempts/{attempt_id}/submit", json={"captcha_token": "used"})
    assert response.status_code == 422
    state = client.get(f"/api/attempts/{attempt_id}").json()
    assert state["state"] == "submit_failed"
    assert state["captcha_reset_required"] is True

    verifier.ok = True
    result = client.post(f"/api/attempts/{attempt_id}/submit", json={"captcha_token": "fresh"}).json()
    assert result["status"] == "pending"
    assert len(result["cheat_attempts"]) == 1

    mine = client.get("/api/my-submissions").json()
    assert [(a["answer"], a["time_taken"]) for a in mine[0]["answers"]] == [("Alpha", 10), ("Be", 30)]
    assert client.get("/api/quizzes").json()[0]["eligibility"] == "active_submission"
    response = client.post(f"/api/quizzes/{quiz_id}/attempts")
    assert response.status_code == 422
    assert response.json()["error"] == "active_submission"

    login(reviewer)
    pending = client.get("/admin/submissions", params={"status": "pending"}).json()
    assert [s["id"] for s in pending] == [result["submission_id"]]

    taken = client.post(f"/admin/submissions/{result['submission_id']}/take").json()
    assert taken["status"] == "taken"
    decided = client.post(
        f"/admin/submissions/{result['submission_id']}/decide",
        json={"outcome": "accepted", "reason": "Welcome"},
    ).json()
    assert decided["status"] == "accepted"
    assert notifier.event_names == ["SUBMISSION_RECEIVED", "SUBMISSION_TAKEN", "SUBMISSION_ACCEPTED"]


def test_claim_conflict_and_notification_prompt(
    client, login, applicant, reviewer, other_reviewer, notifier, clock
):
    quiz_id = create_open_quiz(client, login, reviewer)
    submission_id = apply(client, login, applicant, clock, quiz_id)["submission_id"]

    login(reviewer)
    assert client.post(f"/admin/submissions/{submission_id}/take").status_code == 200

    login(other_reviewer)
    response = client.post(f"/admin/submissions/{submission_id}/take")
    assert response.status_code == 409
    assert response.json()["error"] == "already_taken"

    login(reviewer)
    notifier.healthy = False
    response = client.post(f"/admin/submissions/{submission_id}/decide", json={"outcome": "refused"})
    assert response.status_code == 409
    assert response.json()["error"] == "notification_unavailable"

    response = client.post(
        f"/admin/submissions/{submission_id}/decide",
        json={"outcome": "refused", "reason": "Incomplete", "proceed_without_notification": True},
    )
    assert response.json()["status"] == "refused"


def test_release_and_delete(client, login, applicant, reviewer, other_reviewer, clock):
    quiz_id = create_open_quiz(client, login, reviewer)
    submission_id = apply(client, login, applicant, clock, quiz_id)["submission_id"]

    login(reviewer)
    client.post(f"/admin/submissions/{submission_id}/take")
    assert client.post(f"/admin/submissions/{submission_id}/release").json()["status"] == "pending"

    assert client.delete(f"/admin/submissions/{submission_id}").status_code == 403
    login(make_principal("1", "root", permissions=ALL_PERMISSIONS))
    assert client.delete(f"/admin/submissions/{submission_id}").json() == {"deleted": submission_id}
    assert client.get(f"/admin/submissions/{submission_id}").status_code == 404


def test_requires_login(client):
    assert client.get("/api/my-submissions").status_code == 401
    assert client.post("/api/quizzes/nope/attempts").status_code == 401
    assert client.get("/admin/submissions").status_code == 401


def test_admin_routes_check_permissions(client, login, applicant):
    login(applicant)
    response = client.get("/admin/submissions")
    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"
    assert client.post("/admin/quizzes", json=QUIZ).status_code == 403


def test_attempts_belong_to_their_owner(client, login, applicant, reviewer):
    quiz_id = create_open_quiz(client, login, reviewer)
    login(applicant)
    attempt_id = client.post(f"/api/quizzes/{quiz_id}/attempts").json()["id"]

    login(reviewer)
    assert client.get(f"/api/attempts/{attempt_id}").status_code == 404


def test_quiz_with_bad_time_limit_is_rejected(client, login, reviewer):
    login(reviewer)
    bad = {**QUIZ, "questions": [{"id": "q1", "text_key": "?", "time_limit": 0}]}
    response = client.post("/admin/quizzes", json=bad)
    assert response.status_code == 422
    assert response.json()["error"] == "invalid_time_limit"


def test_closed_quiz_cannot_be_started(client, login, applicant, reviewer):
    quiz_id = create_open_quiz(client, login, reviewer)
    client.post(f"/admin/quizzes/{quiz_id}/close")

    login(applicant)
    response = client.post(f"/api/quizzes/{quiz_id}/attempts")
    assert response.json()["error"] == "closed"


def test_export_and_audit_log(client, login, applicant, reviewer, clock):
    quiz_id = create_open_quiz(client, login, reviewer)
    submission_id = apply(client, login, applicant, clock, quiz_id)["submission_id"]

    login(reviewer)
    client.post(f"/admin/submissions/{submission_id}/take")
    response = client.get("/admin/submissions/export")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert response.content[:2] == b"PK"

    assert client.get("/admin/audit-log").status_code == 403
    login(make_principal("1", "root", permissions=ALL_PERMISSIONS))
    log = client.get("/admin/audit-log").json()
    assert len(log) == 1
    assert log[0]["admin_username"] == reviewer.username


def test_role_permissions_editor(client, login):
    login(make_principal("1", "root", permissions=ALL_PERMISSIONS))
    saved = client.put("/admin/permissions/50", json={"permissions": ["admin_submissions", "bogus"]}).json()
    assert saved["permissions"] == ["admin_submissions"]

    listing = client.get("/admin/permissions").json()
    assert listing["roles"] == {"50": ["admin_submissions"]}
    assert "_super_admin" in listing["catalogue"]


def test_me_and_revalidate(client, login, applicant, identity, engine, clock):
    login(applicant)
    assert client.get("/auth/me").json()["id"] == applicant.id
    assert client.post("/auth/revalidate").json() == {"revalidated": False}

    with Session(engine) as session:
        SqlProfileStore(session).upsert_profile(applicant.id, applicant.username, ["1"])
    identity.roles[applicant.id] = {"1", "5"}
    clock.advance(61)
    assert client.post("/auth/revalidate").json() == {"revalidated": True}

    identity.roles.clear()
    clock.advance(61)
    response = client.post("/auth/revalidate")
    assert response.status_code == 403
    assert response.json()["error"] == "not_in_guild"


class FakeOAuth:
    def authorize_url(self, state):
        return f"https://discord.example/authorize?state={state}"

    def exchange_code(self, code):
        assert code == "abc"
        return "access-token"

    def fetch_user(self, access_token):
        return {"id": "100", "username": "alice", "global_name": "Alice"}


def test_login_callback_stores_highest_role(client, app, identity):
    identity.roles["100"] = {"1", "5"}
    identity.guild_roles = [
        {"id": "1", "name": "Civilian", "position": 1},
        {"id": "5", "name": "Officer", "position": 8},
        {"id": "9", "name": "Chief", "position": 12},
    ]
    app.dependency_overrides[get_oauth_client] = lambda: FakeOAuth()

    response = client.get("/auth/login", follow_redirects=False)
    assert response.status_code == 303
    state = response.headers["location"].split("state=")[1]

    response = client.get("/auth/callback", params={"code": "abc", "state": state}, follow_redirects=False)
    assert response.status_code == 303

    me = client.get("/auth/me").json()
    assert (me["id"], me["username"], me["roles"]) == ("100", "Alice", ["1", "5"])
    assert me["highest_role"] == "Officer"


def test_login_callback_rejects_a_foreign_state(client, app, identity):
    identity.roles["100"] = {"1"}
    app.dependency_overrides[get_oauth_client] = lambda: FakeOAuth()
    client.get("/auth/login", follow_redirects=False)

    response = client.get("/auth/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False)
    assert response.status_code == 422
    assert response.json()["error"] == "oauth_state"
    assert client.get("/auth/me").status_code == 401


def test_login_without_oauth_configuration(client):
    response = client.get("/auth/login", follow_redirects=False)
    assert response.status_code == 502


def test_admin_gate(engine, identity, verifier, notifier, clock, reviewer):
    settings = Settings(session_secret="s" * 32, admin_panel_password_hash=hash_admin_password("hunter2"))
    app = create_app(settings, engine, identity, verifier, notifier, clock, background_tasks=False)
    app.dependency_overrides[get_current_user] = lambda: reviewer

    with TestClient(app) as client:
        response = client.get("/admin/submissions")
        assert response.status_code == 403
        assert response.json()["error"] == "admin_gate_required"

        response = client.post("/auth/admin-gate", data={"password": "hunter2"})
        assert response.json()["error"] == "missing_captcha"

        response = client.post("/auth/admin-gate", data={"password": "wrong", "captcha_token": "tok"})
        assert response.status_code == 403

        response = client.post("/auth/admin-gate", data={"password": "hunter2", "captcha_token": "tok"})
        assert response.json() == {"ok": True}
        assert client.get("/admin/submissions").status_code == 200


def test_abandoning_an_attempt(client, login, applicant, reviewer, app):
    quiz_id = create_open_quiz(client, login, reviewer)
    login(applicant)
    attempt_id = client.post(f"/api/quizzes/{quiz_id}/attempts").json()["id"]
    client.post(f"/api/attempts/{attempt_id}/begin", json={"captcha_token": "tok"})

    assert client.delete(f"/api/attempts/{attempt_id}").json() == {"abandoned": attempt_id, "state": "taking"}
    assert len(app.state.attempts) == 0
    assert client.get(f"/api/attempts/{attempt_id}").status_code == 404
