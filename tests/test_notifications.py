from school_app import db
from school_app.models import User


def _notify(client, headers, **payload):
    body = {"title": "Sports day", "message": "Friday, wear house colours."}
    body.update(payload)
    return client.post("/notifications", headers=headers, json=body)


def test_campus_notification_reaches_every_active_user(client, app, seed, auth):
    with app.app_context():
        db.session.get(User, seed.users["student2"]).is_active = False
        db.session.commit()
    resp = _notify(client, auth("admin"))
    assert resp.status_code == 201
    assert resp.get_json()["data"]["recipient_count"] == 5
    assert client.get("/notifications/unseen-count", headers=auth("other_admin")).get_json()["data"]["unseen"] == 0


def test_target_user_types_filter(client, seed, auth):
    data = _notify(client, auth("admin"), target_user_types=["Teacher"]).get_json()["data"]
    assert data["recipient_count"] == 2
    assert data["target_user_types"] == ["Teacher"]
    assert _notify(client, auth("admin"), target_user_types=["Alien"]).status_code == 400


def test_class_scope_includes_parents(client, seed, auth, school_class):
    data = _notify(client, auth("teacher"), scope="class", class_id=school_class).get_json()["data"]
    assert data["recipient_count"] == 4
    unseen = client.get("/notifications/unseen-count", headers=auth("parent")).get_json()["data"]["unseen"]
    assert unseen == 1
    assert client.get("/notifications/unseen-count", headers=auth("teacher2")).get_json()["data"]["unseen"] == 0


def test_user_scope_validates_recipients(client, seed, auth):
    resp = _notify(client, auth("teacher"), scope="user", user_ids=[seed.users["student"], seed.users["other_student"]])
    assert resp.status_code == 400
    assert resp.get_json()["invalid_user_ids"] == [seed.users["other_student"]]

    resp = _notify(client, auth("teacher"), scope="user", user_ids=[seed.users["student"], seed.users["student"]])
    assert resp.get_json()["data"]["recipient_count"] == 1


def test_students_cannot_send(client, seed, auth):
    assert _notify(client, auth("student")).status_code == 403


def test_seen_tracking(client, seed, auth):
    first = _notify(client, auth("admin"), title="One").get_json()["data"]["notification_id"]
    _notify(client, auth("admin"), title="Two")
    h = auth("student")

    mine = client.get("/notifications/mine", headers=h).get_json()
    assert [n["title"] for n in mine["data"]["items"]] == ["Two", "One"]
    assert mine["meta"]["total"] == 2

    seen = client.post(f"/notifications/{first}/seen", headers=h)
    assert seen.status_code == 200
    unseen = client.get("/notifications/mine?unseen=true", headers=h).get_json()["data"]["items"]
    assert [n["title"] for n in unseen] == ["Two"]

    assert client.post("/notifications/seen-all", headers=h).get_json()["data"]["marked"] == 1
    assert client.get("/notifications/unseen-count", headers=h).get_json()["data"]["unseen"] == 0


def test_cannot_mark_someone_elses_notification(client, seed, auth):
    nid = _notify(client, auth("teacher"), scope="user", user_ids=[seed.users["student"]]).get_json()["data"]["notification_id"]
    assert client.post(f"/notifications/{nid}/seen", headers=auth("student2")).status_code == 404


def test_admin_list_has_delivery_stats(client, seed, auth):
    nid = _notify(client, auth("teacher"), scope="user", user_ids=[seed.users["student"], seed.users["parent"]]).get_json()["data"]["notification_id"]
    client.post(f"/notifications/{nid}/seen", headers=auth("parent"))
    items = client.get("/notifications", headers=auth("admin")).get_json()["data"]["items"]
    assert items[0]["delivery"] == {"recipients": 2, "seen": 1, "unseen": 1}


def test_delete_rules(client, seed, auth):
    nid = _notify(client, auth("teacher"), scope="user", user_ids=[seed.users["student"]]).get_json()["data"]["notification_id"]
    assert client.delete(f"/notifications/{nid}", headers=auth("teacher2")).status_code == 403
    assert client.delete(f"/notifications/{nid}", headers=auth("teacher")).status_code == 200
    assert client.get("/notifications/mine", headers=auth("student")).get_json()["meta"]["total"] == 0


def test_send_email_counts_deliveries(client, seed, auth, monkeypatch):
    sent = []
    monkeypatch.setattr("school_app.notifications.services.send_templated_email",
                        lambda template, to, **ctx: sent.append((template, to)) or True)
    data = _notify(client, auth("admin"), scope="user", send_email=True,
                   user_ids=[seed.users["student"], seed.users["parent"]]).get_json()["data"]
    assert data["emails_sent"] == 2
    assert {t for t, _ in sent} == {"notification"}


def test_email_failure_does_not_fail_request(client, seed, auth, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("smtp down")
    monkeypatch.setattr("school_app.notifications.services.send_templated_email", boom)
    resp = _notify(client, auth("admin"), scope="user", send_email=True, user_ids=[seed.users["student"]])
    assert resp.status_code == 201
    assert resp.get_json()["data"]["emails_sent"] == 0
