from datetime import timedelta
from school_app.models import utc_now


def _meeting(client, headers, **overrides):
    payload = {
        "meeting_name": "Parent-teacher sync",
        "start_time": (utc_now() + timedelta(days=1)).isoformat(),
        "location": "Room 12",
    }
    payload.update(overrides)
    return client.post("/meetings", headers=headers, json=payload)


def test_create_scheduled_meeting(client, seed, auth):
    resp = _meeting(client, auth("teacher"), participants=[seed.users["parent"], seed.users["student"]])
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["meeting_status"] == "scheduled"
    assert data["meeting_room_id"].startswith("room_")
    assert data["features"]["video_enabled"] is True
    assert data["features"]["recording_enabled"] is False
    roles = {p["user_id"]: p["role"] for p in data["participants"]}
    assert roles[seed.users["teacher"]] == "host"
    assert roles[seed.users["parent"]] == "participant"
    assert "audit_trail" not in data


def test_instant_meeting_goes_live(client, seed, auth):
    data = client.post("/meetings", headers=auth("admin"), json={
        "meeting_name": "Fire drill", "meeting_type": "instant"}).get_json()["data"]
    assert data["meeting_status"] == "live"
    assert data["actual_start"] is not None
    assert [a["action"] for a in data["audit_trail"]] == ["created", "started"]


def test_scheduled_meeting_needs_start_time(client, seed, auth):
    resp = client.post("/meetings", headers=auth("teacher"), json={"meeting_name": "No time"})
    assert resp.status_code == 400


def test_end_before_start_rejected(client, seed, auth):
    start = utc_now() + timedelta(days=1)
    resp = _meeting(client, auth("teacher"), start_time=start.isoformat(),
                    end_time=(start - timedelta(hours=1)).isoformat())
    assert resp.status_code == 400


def test_participants_must_belong_to_campus(client, seed, auth):
    resp = _meeting(client, auth("teacher"), participants=[seed.users["other_student"]])
    assert resp.status_code == 400
    assert resp.get_json()["invalid_user_ids"] == [seed.users["other_student"]]


def test_capacity_is_enforced(client, seed, auth):
    resp = _meeting(client, auth("teacher"), max_participants=2,
                    participants=[seed.users["student"], seed.users["parent"]])
    assert resp.status_code == 400

    meeting_id = _meeting(client, auth("teacher"), max_participants=2,
                          participants=[seed.users["student"]]).get_json()["data"]["meeting_id"]
    resp = client.post(f"/meetings/{meeting_id}/participants", headers=auth("teacher"),
                       json={"user_ids": [seed.users["parent"]]})
    assert resp.status_code == 400


def test_students_cannot_create_meetings(client, seed, auth):
    assert _meeting(client, auth("student")).status_code == 403


def test_visibility(client, seed, auth):
    meeting_id = _meeting(client, auth("teacher"), participants=[seed.users["student"]]).get_json()["data"]["meeting_id"]
    assert client.get(f"/meetings/{meeting_id}", headers=auth("student")).status_code == 200
    assert client.get(f"/meetings/{meeting_id}", headers=auth("student2")).status_code == 403
    admin_view = client.get(f"/meetings/{meeting_id}", headers=auth("admin")).get_json()["data"]
    assert admin_view["audit_trail"][0]["action"] == "created"
    assert client.get(f"/meetings/{meeting_id}", headers=auth("other_admin")).status_code == 404


def test_list_meetings(client, seed, auth):
    _meeting(client, auth("teacher"), participants=[seed.users["student"]])
    _meeting(client, auth("teacher2"), meeting_name="Staff only")
    admin = client.get("/meetings", headers=auth("admin")).get_json()
    assert admin["meta"]["total"] == 2
    student = client.get("/meetings/mine", headers=auth("student")).get_json()
    assert [m["meeting_name"] for m in student["data"]["items"]] == ["Parent-teacher sync"]
    upcoming = client.get("/meetings?upcoming=true", headers=auth("teacher2")).get_json()
    assert upcoming["meta"]["total"] == 1


def test_lifecycle_start_end(client, seed, auth):
    h = auth("teacher")
    meeting_id = _meeting(client, h).get_json()["data"]["meeting_id"]
    assert client.post(f"/meetings/{meeting_id}/end", headers=h).status_code == 409
    started = client.post(f"/meetings/{meeting_id}/start", headers=h)
    assert started.get_json()["data"]["meeting_status"] == "live"
    assert client.post(f"/meetings/{meeting_id}/start", headers=h).status_code == 409
    assert client.delete(f"/meetings/{meeting_id}", headers=h).status_code == 409
    ended = client.post(f"/meetings/{meeting_id}/end", headers=h).get_json()["data"]
    assert ended["meeting_status"] == "ended"
    assert ended["duration_minutes"] == 0
    assert client.patch(f"/meetings/{meeting_id}", headers=h, json={"location": "Hall"}).status_code == 409


def test_only_managers_can_change_meeting(client, seed, auth):
    meeting_id = _meeting(client, auth("teacher"), participants=[seed.users["student"]]).get_json()["data"]["meeting_id"]
    assert client.post(f"/meetings/{meeting_id}/start", headers=auth("student")).status_code == 403
    assert client.patch(f"/meetings/{meeting_id}", headers=auth("admin"), json={"location": "Hall"}).status_code == 200


def test_co_host_can_manage(client, seed, auth):
    meeting_id = _meeting(client, auth("teacher")).get_json()["data"]["meeting_id"]
    resp = client.post(f"/meetings/{meeting_id}/participants", headers=auth("teacher"),
                       json={"user_ids": [seed.users["teacher2"]], "role": "co_host"})
    assert resp.get_json()["data"]["added"] == [seed.users["teacher2"]]
    assert client.post(f"/meetings/{meeting_id}/start", headers=auth("teacher2")).status_code == 200


def test_update_merges_features(client, seed, auth):
    meeting_id = _meeting(client, auth("teacher")).get_json()["data"]["meeting_id"]
    resp = client.patch(f"/meetings/{meeting_id}", headers=auth("teacher"),
                        json={"features": {"recording_enabled": True}})
    features = resp.get_json()["data"]["features"]
    assert features["recording_enabled"] is True
    assert features["video_enabled"] is True
    bad = client.patch(f"/meetings/{meeting_id}", headers=auth("teacher"), json={"features": {"holograms": True}})
    assert bad.status_code == 400


def test_add_and_remove_participants(client, seed, auth):
    h = auth("teacher")
    meeting_id = _meeting(client, h, participants=[seed.users["student"]]).get_json()["data"]["meeting_id"]
    added = client.post(f"/meetings/{meeting_id}/participants", headers=h,
                        json={"user_ids": [seed.users["student"], seed.users["parent"]]}).get_json()["data"]
    assert added == {"added": [seed.users["parent"]], "already_present": [seed.users["student"]]}

    removed = client.post(f"/meetings/{meeting_id}/participants/remove", headers=h,
                          json={"user_ids": [seed.users["parent"], seed.users["student2"]]}).get_json()["data"]
    assert removed == {"removed": [seed.users["parent"]], "not_found": [seed.users["student2"]]}

    host = client.post(f"/meetings/{meeting_id}/participants/remove", headers=h,
                       json={"user_ids": [seed.users["teacher"]]})
    assert host.status_code == 400


def test_cancel_hides_meeting(client, seed, auth):
    h = auth("teacher")
    meeting_id = _meeting(client, h).get_json()["data"]["meeting_id"]
    resp = client.delete(f"/meetings/{meeting_id}", headers=h)
    assert resp.get_json()["data"]["meeting_status"] == "cancelled"
    assert client.get(f"/meetings/{meeting_id}", headers=h).status_code == 404
