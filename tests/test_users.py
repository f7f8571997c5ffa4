from school_app import db
from school_app.models import User, CampusFeatures


def _new_user(**overrides):
    payload = {"email": "new.teacher@gvs.test", "password": "password123",
               "first_name": "Nia", "last_name": "Lee", "user_type": "Teacher"}
    payload.update(overrides)
    return payload


def test_admin_creates_user_in_own_campus(client, seed, auth):
    resp = client.post("/users", headers=auth("admin"), json=_new_user())
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["campus_id"] == seed.campus_id
    assert data["email"] == "new.teacher@gvs.test"
    assert "password_hash" not in data


def test_duplicate_email_conflicts(client, seed, auth):
    resp = client.post("/users", headers=auth("admin"), json=_new_user(email="teacher@gvs.test"))
    assert resp.status_code == 409


def test_teacher_cannot_create_users(client, seed, auth):
    resp = client.post("/users", headers=auth("teacher"), json=_new_user())
    assert resp.status_code == 403


def test_admin_cannot_create_super_admin(client, seed, auth):
    resp = client.post("/users", headers=auth("admin"), json=_new_user(user_type="Super Admin"))
    assert resp.status_code == 403


def test_super_admin_creates_user_for_chosen_campus(client, seed, auth):
    resp = client.post("/users", headers=auth("super"),
                       json=_new_user(campus_id=seed.other_campus_id))
    assert resp.status_code == 201
    assert resp.get_json()["data"]["campus_id"] == seed.other_campus_id


def test_student_creation_blocked_when_feature_disabled(client, app, seed, auth):
    with app.app_context():
        CampusFeatures.query.filter_by(campus_id_fk=seed.campus_id).first().student_parent_access = False
        db.session.commit()
    resp = client.post("/users", headers=auth("admin"),
                       json=_new_user(email="kid@gvs.test", user_type="Student"))
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "feature_disabled"


def test_parent_must_link_to_student(client, seed, auth):
    resp = client.post("/users", headers=auth("admin"), json=_new_user(
        email="mum@gvs.test", user_type="Parent", parent_of_id=seed.users["teacher"]))
    assert resp.status_code == 400

    resp = client.post("/users", headers=auth("admin"), json=_new_user(
        email="mum@gvs.test", user_type="Parent", parent_of_id=seed.users["student"]))
    assert resp.status_code == 201
    assert resp.get_json()["data"]["parent_of_id"] == seed.users["student"]


def test_list_users_is_campus_scoped_and_paginated(client, seed, auth):
    resp = client.get("/users?limit=2", headers=auth("admin"))
    body = resp.get_json()
    assert resp.status_code == 200
    assert len(body["data"]["items"]) == 2
    assert body["meta"]["total"] == 6
    assert body["meta"]["pages"] == 3

    students = client.get("/users?user_type=Student", headers=auth("admin")).get_json()["data"]["items"]
    assert {u["email"] for u in students} == {"student@gvs.test", "student2@gvs.test"}


def test_cannot_read_user_from_other_campus(client, seed, auth):
    resp = client.get(f"/users/{seed.users['other_student']}", headers=auth("admin"))
    assert resp.status_code == 404


def test_update_user_merges_meta(client, app, seed, auth):
    uid = seed.users["student"]
    client.put(f"/users/{uid}", headers=auth("admin"), json={"meta": {"roll_no": 7}})
    resp = client.patch(f"/users/{uid}", headers=auth("admin"), json={"meta": {"house": "blue"}, "phone": "555"})
    data = resp.get_json()["data"]
    assert data["meta"] == {"roll_no": 7, "house": "blue"}
    assert data["phone"] == "555"


def test_delete_user_soft_deletes(client, app, seed, auth):
    uid = seed.users["student2"]
    assert client.delete(f"/users/{uid}", headers=auth("admin")).status_code == 200
    with app.app_context():
        user = db.session.get(User, uid)
        assert user.is_deleted and not user.is_active
    assert client.get(f"/users/{uid}", headers=auth("admin")).status_code == 404


def test_cannot_delete_self(client, seed, auth):
    resp = client.delete(f"/users/{seed.users['admin']}", headers=auth("admin"))
    assert resp.status_code == 400
