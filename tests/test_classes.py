from datetime import timedelta
from school_app import db
from school_app.models import Assignment, utc_now


def _future(days=3):
    return (utc_now() + timedelta(days=days)).isoformat()


def _assignment(client, headers, class_id, **overrides):
    payload = {"class_id": class_id, "title": "Fractions worksheet", "description": "Pages 10-12",
               "due_date": _future(), "max_score": 20, "subject": "Maths"}
    payload.update(overrides)
    return client.post("/assignments", headers=headers, json=payload)


def test_create_class_and_duplicate_name(client, seed, auth):
    h = auth("admin")
    resp = client.post("/classes", headers=h, json={"name": "Grade 6B", "academic_year": "2025-26"})
    assert resp.status_code == 201
    dup = client.post("/classes", headers=h, json={"name": "grade 6b", "academic_year": "2025-26"})
    assert dup.status_code == 409
    other_year = client.post("/classes", headers=h, json={"name": "Grade 6B", "academic_year": "2026-27"})
    assert other_year.status_code == 201

    years = client.get("/classes/academic-years", headers=h).get_json()["data"]["items"]
    assert years == ["2026-27", "2025-26"]


def test_class_teacher_must_be_campus_teacher(client, seed, auth):
    resp = client.post("/classes", headers=auth("admin"), json={
        "name": "Grade 7", "academic_year": "2025-26", "class_teacher_id": seed.users["student"]})
    assert resp.status_code == 400


def test_teacher_cannot_create_class(client, seed, auth):
    resp = client.post("/classes", headers=auth("teacher"), json={"name": "X", "academic_year": "2025-26"})
    assert resp.status_code == 403


def test_assign_students_reports_skips(client, seed, auth, school_class):
    resp = client.post(f"/classes/{school_class}/students", headers=auth("admin"), json={
        "student_ids": [seed.users["student"], seed.users["teacher"], seed.users["other_student"]]})
    data = resp.get_json()["data"]
    assert data["added"] == []
    reasons = {s["user_id"]: s["reason"] for s in data["skipped"]}
    assert reasons[seed.users["student"]] == "already assigned"
    assert reasons[seed.users["teacher"]] == "not a student"
    assert reasons[seed.users["other_student"]] == "not found in campus"


def test_remove_students(client, seed, auth, school_class):
    resp = client.post(f"/classes/{school_class}/students/remove", headers=auth("admin"),
                       json={"student_ids": [seed.users["student2"], 4242]})
    data = resp.get_json()["data"]
    assert data["removed"] == [seed.users["student2"]]
    assert data["not_assigned"] == [4242]
    assert data["class"]["student_ids"] == [seed.users["student"]]


def test_class_invisible_to_other_campus(client, seed, auth, school_class):
    assert client.get(f"/classes/{school_class}", headers=auth("other_admin")).status_code == 404


def test_student_and_parent_see_student_classes(client, seed, auth, school_class):
    sid = seed.users["student"]
    for who in ("student", "parent"):
        resp = client.get(f"/students/{sid}/classes", headers=auth(who))
        assert resp.status_code == 200
        assert [c["class_id"] for c in resp.get_json()["data"]["items"]] == [school_class]
    assert client.get(f"/students/{sid}/classes", headers=auth("student2")).status_code == 403


def test_assignment_lifecycle(client, app, seed, auth, school_class):
    teacher = auth("teacher")
    resp = _assignment(client, teacher, school_class)
    assert resp.status_code == 201
    assignment_id = resp.get_json()["data"]["assignment_id"]

    sub = client.post(f"/assignments/{assignment_id}/submissions", headers=auth("student"),
                      json={"content": "1/2 + 1/4 = 3/4"})
    assert sub.status_code == 201
    submission = sub.get_json()["data"]
    assert submission["is_late"] is False

    too_high = client.post(f"/submissions/{submission['submission_id']}/grade", headers=teacher, json={"grade": 25})
    assert too_high.status_code == 400
    not_a_number = client.post(f"/submissions/{submission['submission_id']}/grade", headers=teacher,
                               data='{"grade": NaN}', content_type="application/json")
    assert not_a_number.status_code == 400
    graded = client.post(f"/submissions/{submission['submission_id']}/grade", headers=teacher,
                         json={"grade": 18, "feedback": "Good"})
    assert graded.get_json()["data"]["grade"] == 18

    resubmit = client.post(f"/assignments/{assignment_id}/submissions", headers=auth("student"),
                           json={"content": "again"})
    assert resubmit.status_code == 409

    stats = client.get(f"/assignments/{assignment_id}", headers=teacher).get_json()["data"]["stats"]
    assert stats["total_submissions"] == 1
    assert stats["pending_submissions"] == 1
    assert stats["submission_rate"] == 50.0
    assert stats["average_grade"] == 18


def test_assignment_due_date_must_be_future(client, seed, auth, school_class):
    resp = _assignment(client, auth("teacher"), school_class, due_date=(utc_now() - timedelta(hours=1)).isoformat())
    assert resp.status_code == 400


def test_unrelated_teacher_cannot_create_assignment(client, seed, auth, school_class):
    resp = _assignment(client, auth("teacher2"), school_class)
    assert resp.status_code == 403


def test_student_not_enrolled_cannot_submit(client, seed, auth, school_class):
    assignment_id = _assignment(client, auth("teacher"), school_class).get_json()["data"]["assignment_id"]
    client.post(f"/classes/{school_class}/students/remove", headers=auth("admin"),
                json={"student_ids": [seed.users["student2"]]})
    resp = client.post(f"/assignments/{assignment_id}/submissions", headers=auth("student2"), json={"content": "x"})
    assert resp.status_code == 403


def test_student_assignment_statuses(client, app, seed, auth, school_class):
    h = auth("teacher")
    first = _assignment(client, h, school_class, title="Essay").get_json()["data"]["assignment_id"]
    second = _assignment(client, h, school_class, title="Poem").get_json()["data"]["assignment_id"]
    client.post(f"/assignments/{first}/submissions", headers=auth("student"), json={"content": "done"})
    with app.app_context():
        db.session.get(Assignment, second).due_date = utc_now() - timedelta(days=1)
        db.session.commit()

    items = client.get(f"/students/{seed.users['student']}/assignments", headers=auth("parent")).get_json()["data"]["items"]
    statuses = {i["assignment"]["title"]: i["status"] for i in items}
    assert statuses == {"Essay": "submitted", "Poem": "overdue"}


def test_campus_assignment_stats(client, seed, auth, school_class):
    h = auth("teacher")
    _assignment(client, h, school_class)
    _assignment(client, h, school_class, title="Later", due_date=_future(30))
    data = client.get("/assignments/stats", headers=h).get_json()["data"]
    assert data["total_assignments"] == 2
    assert data["active_assignments"] == 2
    assert len(data["upcoming_deadlines"]) == 1


def test_assignment_status_filter_validation(client, seed, auth):
    assert client.get("/assignments?status=bogus", headers=auth("admin")).status_code == 400
