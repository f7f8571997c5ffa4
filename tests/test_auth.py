from school_app import db
from school_app.models import Campus, User, UserSession
from conftest import PASSWORD


def _login(client, email, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def test_login_returns_tokens_and_user(client, seed):
    resp = _login(client, "ADMIN@gvs.test")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["data"]["token_type"] == "Bearer"
    assert body["data"]["user"]["email"] == "admin@gvs.test"
    assert body["data"]["access_token"] and body["data"]["refresh_token"]


def test_login_wrong_password(client, seed):
    resp = _login(client, "admin@gvs.test", "not-the-password")
    assert resp.status_code == 401
    assert resp.get_json()["error"]["code"] == "invalid_credentials"


def test_login_missing_fields(client, seed):
    resp = client.post("/auth/login", json={"email": "admin@gvs.test"})
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_login_blocked_when_campus_inactive(client, app, seed):
    with app.app_context():
        db.session.get(Campus, seed.campus_id).is_active = False
        db.session.commit()
    resp = _login(client, "teacher@gvs.test")
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "campus_inactive"


def test_super_admin_login_ignores_campus_state(client, seed):
    assert _login(client, "root@platform.test").status_code == 200


def test_me_requires_token(client, seed):
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.get_json()["error"]["code"] == "unauthorized"


def test_me_with_bearer_token(client, seed):
    token = _login(client, "teacher@gvs.test").get_json()["data"]["access_token"]
    resp = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["user_type"] == "Teacher"
    assert data["campus"]["code"] == "GVS"


def test_tampered_token_is_rejected(client, seed):
    token = _login(client, "teacher@gvs.test").get_json()["data"]["access_token"]
    resp = client.get("/auth/me", headers={"Authorization": f"Bearer {token[:-2]}xx"})
    assert resp.status_code == 401


def test_refresh_issues_new_access_token(client, seed):
    tokens = _login(client, "student@gvs.test").get_json()["data"]
    resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    new_token = resp.get_json()["data"]["access_token"]
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200


def test_access_token_cannot_be_used_as_refresh_token(client, seed):
    tokens = _login(client, "student@gvs.test").get_json()["data"]
    resp = client.post("/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert resp.status_code == 401


def test_logout_revokes_session(client, seed):
    tokens = _login(client, "admin@gvs.test").get_json()["data"]
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}
    assert client.post("/auth/logout", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 401
    assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401


def test_change_password_keeps_current_session_only(client, app, seed):
    first = _login(client, "teacher@gvs.test").get_json()["data"]
    second = _login(client, "teacher@gvs.test").get_json()["data"]
    headers = {"Authorization": f"Bearer {first['access_token']}"}
    resp = client.post("/auth/change-password", headers=headers,
                       json={"current_password": PASSWORD, "new_password": "brand-new-pass"})
    assert resp.status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 200
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {second['access_token']}"}).status_code == 401
    assert _login(client, "teacher@gvs.test", "brand-new-pass").status_code == 200


def test_change_password_rejects_short_password(client, seed, auth):
    resp = client.post("/auth/change-password", headers=auth("teacher"),
                       json={"current_password": PASSWORD, "new_password": "short"})
    assert resp.status_code == 400


def test_forgot_password_does_not_reveal_accounts(client, seed, monkeypatch):
    sent = []
    monkeypatch.setattr("school_app.auth.services.send_templated_email",
                        lambda template, to, **ctx: sent.append((template, to, ctx)) or True)
    known = client.post("/auth/forgot-password", json={"email": "parent@gvs.test"})
    unknown = client.post("/auth/forgot-password", json={"email": "nobody@gvs.test"})
    assert known.status_code == unknown.status_code == 200
    assert known.get_json()["data"] == unknown.get_json()["data"]
    assert [s[1] for s in sent] == ["parent@gvs.test"]


def test_reset_password_flow(client, app, seed, monkeypatch):
    sent = []
    monkeypatch.setattr("school_app.auth.services.send_templated_email",
                        lambda template, to, **ctx: sent.append(ctx) or True)
    client.post("/auth/forgot-password", json={"email": "parent@gvs.test"})
    token = sent[0]["reset_token"]

    resp = client.post("/auth/reset-password", json={"token": token, "password": "reset-pass-1"})
    assert resp.status_code == 200
    assert _login(client, "parent@gvs.test", "reset-pass-1").status_code == 200

    # Token is bound to the old password hash
    again = client.post("/auth/reset-password", json={"token": token, "password": "reset-pass-2"})
    assert again.status_code == 400
    assert again.get_json()["error"]["code"] == "invalid_token"


def test_login_records_session_and_last_login(client, app, seed):
    _login(client, "admin@gvs.test")
    with app.app_context():
        user = db.session.get(User, seed.users["admin"])
        assert user.last_login is not None
        assert UserSession.query.filter_by(user_id_fk=user.user_id).count() == 1
