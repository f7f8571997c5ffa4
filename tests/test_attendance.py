import io
from datetime import timedelta
from openpyxl import load_workbook
from school_app.models import utc_now


def _day(offset=0):
    return (utc_now().date() - timedelta(days=offset)).isoformat()


def _mark(client, headers, class_id, user_ids, status, day=None):
    return client.post("/attendance/mark", headers=headers, json={
        "user_ids": user_ids, "status": status, "user_type": "Student",
        "class_id": class_id, "date": day or _day(),
    })


def test_mark_attendance_upserts_per_day(client, seed, auth, school_class):
    h = auth("teacher")
    sid = seed.users["student"]
    first = _mark(client, h, school_class, [sid], "absent")
    assert first.status_code == 201
    second = _mark(client, h, school_class, [sid], "present")
    assert second.status_code == 201

    items = client.get(f"/attendance/class/{school_class}/date/{_day()}", headers=h).get_json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["status"] == "present"


def test_future_date_rejected(client, seed, auth, school_class):
    future = (utc_now().date() + timedelta(days=2)).isoformat()
    resp = _mark(client, auth("teacher"), school_class, [seed.users["student"]], "present", future)
    assert resp.status_code == 400


def test_bulk_reports_per_user_errors(client, seed, auth, school_class):
    resp = client.post("/attendance/bulk", headers=auth("teacher"), json={
        "class_id": school_class, "user_type": "Student", "date": _day(),
        "records": [
            {"user_id": seed.users["student"], "status": "late"},
            {"user_id": seed.users["teacher"], "status": "present"},
            {"user_id": seed.users["student2"], "status": "sleeping"},
            {"user_id": seed.users["other_student"], "status": "present"},
        ],
    })
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["successful_count"] == 1
    assert data["error_count"] == 3
    assert data["total_processed"] == 4


def test_batch_with_no_successes_is_an_error(client, seed, auth, school_class):
    resp = _mark(client, auth("teacher"), school_class, [seed.users["teacher"]], "present")
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"]["code"] == "attendance_not_marked"
    assert body["data"]["error_count"] == 1


def test_students_cannot_mark_attendance(client, seed, auth, school_class):
    assert _mark(client, auth("student"), school_class, [seed.users["student"]], "present").status_code == 403


def test_class_report_summary_and_bands(client, seed, auth, school_class):
    h = auth("teacher")
    s1, s2 = seed.users["student"], seed.users["student2"]
    for offset in range(4):
        _mark(client, h, school_class, [s1], "present", _day(offset))
    _mark(client, h, school_class, [s2], "present", _day(0))
    _mark(client, h, school_class, [s2], "late", _day(1))
    _mark(client, h, school_class, [s2], "absent", _day(2))
    _mark(client, h, school_class, [s2], "leave", _day(3))

    report = client.get(f"/attendance/class/{school_class}/report", headers=h).get_json()["data"]
    rows = {r["student_id"]: r for r in report["students"]}
    assert rows[s1]["percentage"] == 100 and rows[s1]["band"] == "excellent"
    assert rows[s2]["percentage"] == 50 and rows[s2]["band"] == "needs_attention"
    assert report["students"][0]["student_id"] == s1
    assert report["summary"]["average_attendance"] == 75
    assert report["summary"]["excellent"] == 1


def test_class_report_rejects_inverted_range(client, seed, auth, school_class):
    resp = client.get(f"/attendance/class/{school_class}/report?start_date={_day()}&end_date={_day(5)}",
                      headers=auth("teacher"))
    assert resp.status_code == 400


def test_class_report_xlsx_export(client, seed, auth, school_class):
    _mark(client, auth("teacher"), school_class, [seed.users["student"]], "present")
    resp = client.get(f"/attendance/class/{school_class}/report?format=xlsx", headers=auth("teacher"))
    assert resp.status_code == 200
    ws = load_workbook(io.BytesIO(resp.data)).active
    assert ws.cell(row=1, column=2).value == "Student"
    assert ws.max_row == 3


def test_class_report_csv_export(client, seed, auth, school_class):
    resp = client.get(f"/attendance/class/{school_class}/report?format=csv", headers=auth("admin"))
    assert resp.status_code == 200
    assert resp.data.decode("utf-8").splitlines()[0].startswith("Student ID,Student")


def test_student_view_access_rules(client, seed, auth, school_class):
    sid = seed.users["student"]
    _mark(client, auth("teacher"), school_class, [sid], "present")
    assert client.get(f"/attendance/student/{sid}", headers=auth("student")).status_code == 200
    assert client.get(f"/attendance/student/{sid}", headers=auth("parent")).status_code == 200
    assert client.get(f"/attendance/student/{sid}", headers=auth("student2")).status_code == 403

    mine = client.get("/attendance/me", headers=auth("parent")).get_json()["data"]
    assert mine["student_id"] == sid
    assert mine["overall"]["present"] == 1
    assert mine["monthly"][0]["month"] == utc_now().strftime("%Y-%m")


def test_update_and_delete_record(client, seed, auth, school_class):
    record = _mark(client, auth("teacher"), school_class, [seed.users["student"]], "absent").get_json()["data"]["records"][0]
    rid = record["attendance_id"]
    resp = client.patch(f"/attendance/{rid}", headers=auth("teacher"), json={"status": "leave", "remarks": "Fever"})
    assert resp.get_json()["data"]["status"] == "leave"
    assert client.delete(f"/attendance/{rid}", headers=auth("teacher")).status_code == 403
    assert client.delete(f"/attendance/{rid}", headers=auth("admin")).status_code == 200
    summary = client.get(f"/attendance/user/{seed.users['student']}", headers=auth("admin")).get_json()["data"]["summary"]
    assert summary["total_days"] == 0
