import os
import pytest
from sqlalchemy.exc import OperationalError
from school_app import db
from school_app.models import BackupRecord
from school_app.super_admin import backup
from conftest import PASSWORD


def test_super_admin_routes_are_guarded(client, seed, auth):
    assert client.get("/super-admin/dashboard").status_code == 401
    resp = client.get("/super-admin/dashboard", headers=auth("admin"))
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "forbidden"


def test_dashboard_counts(client, seed, auth):
    data = client.get("/super-admin/dashboard", headers=auth("super")).get_json()["data"]
    assert data["campuses"] == {"total": 2, "active": 2, "inactive": 0}
    assert data["users_by_type"]["Teacher"] == 2
    assert data["users_by_type"]["Super Admin"] == 1
    assert data["total_users"] == 9
    assert data["maintenance_mode"] is False

    client.post("/super-admin/campuses", headers=auth("super"), json={"name": "New Public School", "code": "nps"})
    data = client.get("/super-admin/dashboard", headers=auth("super")).get_json()["data"]
    assert data["campuses"]["total"] == 3


def test_campus_crud(client, seed, auth):
    h = auth("super")
    resp = client.post("/super-admin/campuses", headers=h, json={"name": "New Public School", "code": "nps"})
    assert resp.status_code == 201
    campus = resp.get_json()["data"]
    assert campus["code"] == "NPS"
    assert campus["subscription_plan"] == "basic"

    assert client.post("/super-admin/campuses", headers=h, json={"name": "Again", "code": "NPS"}).status_code == 409
    assert client.post("/super-admin/campuses", headers=h, json={"code": "X1"}).status_code == 400
    assert client.post("/super-admin/campuses", headers=h,
                       json={"name": "Plan", "code": "X2", "subscription_plan": "platinum"}).status_code == 400

    found = client.get("/super-admin/campuses?search=valley", headers=h).get_json()
    assert [c["code"] for c in found["data"]["items"]] == ["GVS"]
    assert found["meta"]["total"] == 1

    cid = campus["campus_id"]
    updated = client.put(f"/super-admin/campuses/{cid}", headers=h,
                         json={"website": "https://nps.test", "subscription_plan": "pro"}).get_json()["data"]
    assert (updated["website"], updated["subscription_plan"]) == ("https://nps.test", "pro")
    assert client.put(f"/super-admin/campuses/{cid}", headers=h, json={"code": "gvs"}).status_code == 409
    assert client.get("/super-admin/campuses/9999", headers=h).status_code == 404


def test_toggle_campus_blocks_login(client, seed, auth):
    resp = client.post(f"/super-admin/campuses/{seed.campus_id}/toggle", headers=auth("super"))
    assert resp.get_json()["data"] == {"campus_id": seed.campus_id, "is_active": False}

    login = client.post("/auth/login", json={"email": "teacher@gvs.test", "password": PASSWORD})
    assert login.status_code == 403
    inactive = client.get("/super-admin/campuses?is_active=false", headers=auth("super")).get_json()
    assert [c["campus_id"] for c in inactive["data"]["items"]] == [seed.campus_id]

    health = client.get(f"/super-admin/campuses/{seed.campus_id}/health", headers=auth("super")).get_json()["data"]
    assert health["health_status"] == "critical"
    assert "Campus is suspended" in health["issues"]

    client.post(f"/super-admin/campuses/{seed.campus_id}/toggle", headers=auth("super"))
    assert client.post("/auth/login", json={"email": "teacher@gvs.test", "password": PASSWORD}).status_code == 200


def test_onboard_new_school(client, app, seed, auth, monkeypatch):
    monkeypatch.setattr("school_app.users.services.send_templated_email", lambda *a, **k: True)
    resp = client.post("/super-admin/onboard", headers=auth("super"), json={
        "campus": {"name": "River Side School", "code": "rss", "contact_email": "office@rss.test"},
        "admin": {"email": "admin@rss.test", "first_name": "Rita", "password": "longpassword1"},
        "bank_details": {"bank_name": "State Bank", "account_holder_name": "River Side School",
                         "account_number": "99887766", "ifsc_code": "SBIN0000002"},
        "payment_gateway": {"gateway_provider": "cashfree", "webhook_secret": "s3cret"},
    })
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["onboarding_complete"] is True
    assert {k: v["status"] for k, v in data["setup_status"].items()} == {
        "campus": "completed", "features": "completed", "admin": "completed",
        "bank_details": "completed", "payment_gateway": "completed"}
    assert data["admin"]["user_type"] == "Admin"
    assert data["admin"]["campus_id"] == data["campus"]["campus_id"]

    login = client.post("/auth/login", json={"email": "admin@rss.test", "password": "longpassword1"})
    assert login.status_code == 200


def test_onboard_reports_failed_steps(client, seed, auth):
    resp = client.post("/super-admin/onboard", headers=auth("super"), json={
        "campus": {"name": "Lake View School", "code": "lvs"},
        "admin": {"email": "admin@gvs.test", "first_name": "Dup", "password": "longpassword1"},
        "payment_gateway": {"gateway_provider": "paypal"},
    })
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["onboarding_complete"] is False
    steps = data["setup_status"]
    assert steps["campus"]["status"] == "completed"
    assert steps["admin"]["status"] == "failed"
    assert steps["bank_details"]["status"] == "skipped"
    assert steps["payment_gateway"] == {"status": "failed", "error": "Invalid data format or type", "code": "VAL_002"}
    assert data["admin"] is None

    missing = client.post("/super-admin/onboard", headers=auth("super"), json={"campus": {"name": "X", "code": "x"}})
    assert missing.status_code == 400


def test_payment_troubleshooting_and_compliance(client, seed, auth):
    h = auth("super")
    report = client.get(f"/super-admin/campuses/{seed.campus_id}/troubleshoot-payments", headers=h).get_json()["data"]
    assert {i["type"] for i in report["issues"]} == {"missing_bank_details", "no_gateway"}
    assert report["summary"]["high"] == 2

    compliance = client.get("/super-admin/compliance", headers=h).get_json()["data"]
    assert compliance["summary"]["total"] == 2
    assert compliance["summary"]["needs_attention"] == 2
    assert all(s["security_score"] == 80 for s in compliance["schools"])


def test_platform_analytics(client, seed, auth):
    data = client.get("/super-admin/analytics", headers=auth("super")).get_json()["data"]
    by_code = {row["campus_name"]: row for row in data["campuses"]}
    assert by_code["Green Valley School"]["total_users"] == 6
    assert by_code["Hill Top School"]["total_users"] == 2
    assert by_code["Green Valley School"]["growth_rate"] == 100.0
    assert data["totals"]["users"] == 8
    assert data["totals"]["revenue"] == 0.0


def test_system_messages(client, seed, auth):
    h = auth("super")
    general = client.post("/super-admin/system-messages", headers=h,
                          json={"title": "Upgrade", "content": "Saturday night", "message_type": "warning"})
    assert general.status_code == 201
    teachers = client.post("/super-admin/system-messages", headers=h, json={
        "title": "Training", "content": "Quiz tools", "message_type": "popup", "target_user_type": "Teacher",
    }).get_json()["data"]

    assert client.post("/super-admin/system-messages", headers=h,
                       json={"title": "Bad", "content": "x", "message_type": "shout"}).status_code == 400
    assert client.post("/super-admin/system-messages", headers=h, json={
        "title": "Bad", "content": "x", "start_date": "2026-03-02", "end_date": "2026-03-01",
    }).status_code == 400

    titles = lambda name: {m["title"] for m in client.get(  # noqa: E731
        "/system-messages/active", headers=auth(name)).get_json()["data"]["items"]}
    assert titles("teacher") == {"Upgrade", "Training"}
    assert titles("student") == {"Upgrade"}

    toggled = client.post(f"/super-admin/system-messages/{teachers['message_id']}/toggle", headers=h).get_json()
    assert toggled["data"]["is_active"] is False
    assert titles("teacher") == {"Upgrade"}

    assert client.delete(f"/super-admin/system-messages/{teachers['message_id']}", headers=h).status_code == 200
    assert len(client.get("/super-admin/system-messages", headers=h).get_json()["data"]["items"]) == 1
    assert client.delete(f"/super-admin/system-messages/{teachers['message_id']}", headers=h).status_code == 404


def test_maintenance_mode(client, seed, auth):
    h = auth("super")
    assert client.put("/super-admin/maintenance", headers=h, json={"enabled": True}).get_json()["data"] == {
        "maintenance_mode": True}

    blocked = client.get("/auth/me", headers=auth("teacher"))
    assert blocked.status_code == 503
    assert blocked.get_json()["error"]["code"] == "maintenance"
    assert client.get("/auth/me", headers=h).status_code == 200
    assert client.get("/health").status_code == 200
    assert client.post("/auth/login", json={"email": "root@platform.test", "password": PASSWORD}).status_code == 200

    client.put("/super-admin/maintenance", headers=h, json={"enabled": False})
    assert client.get("/auth/me", headers=auth("teacher")).status_code == 200
    assert client.get("/super-admin/maintenance", headers=h).get_json()["data"]["maintenance_mode"] is False


def test_health_endpoint(client):
    data = client.get("/health").get_json()["data"]
    assert data["status"] == "healthy"
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["cache"] == "ok"
    assert data["version"] == "1.0.0"


def _backup(client, auth, **payload):
    return client.post("/super-admin/backups", headers=auth("super"), json=payload)


def test_full_backup_and_status(client, seed, auth):
    status = client.get("/super-admin/backups/status", headers=auth("super")).get_json()["data"]
    assert status["health"] == "critical"
    assert status["last_backup"] is None

    resp = _backup(client, auth)
    assert resp.status_code == 201
    record = resp.get_json()["data"]
    assert record["status"] == "completed"
    assert record["table_counts"]["campuses"] == 2
    assert record["table_counts"]["users"] == 9
    assert "backup_records" not in record["table_counts"]
    assert len(record["checksum"]) == 64

    status = client.get("/super-admin/backups/status", headers=auth("super")).get_json()["data"]
    assert status["health"] == "healthy"
    assert status["totals"]["completed"] == 1
    listed = client.get("/super-admin/backups", headers=auth("super")).get_json()["data"]["items"]
    assert [b["backup_id"] for b in listed] == [record["backup_id"]]


def test_scoped_and_typed_backups(client, seed, auth):
    assert _backup(client, auth, backup_type="incremental").status_code == 409
    assert _backup(client, auth, backup_type="weekly").status_code == 400

    scoped = _backup(client, auth, campus_ids=[seed.campus_id]).get_json()["data"]
    assert scoped["table_counts"]["users"] == 6
    assert scoped["table_counts"]["campuses"] == 1
    assert "notification_recipients" not in scoped["table_counts"]

    payments = _backup(client, auth, backup_type="payment_only").get_json()["data"]
    assert "users" not in payments["table_counts"]
    assert payments["table_counts"]["payment_transactions"] == 0

    incremental = _backup(client, auth, backup_type="incremental")
    assert incremental.status_code == 201
    assert "campuses" in incremental.get_json()["data"]["table_counts"]


def test_backup_validation_and_restore_plan(client, app, seed, auth):
    backup_id = _backup(client, auth).get_json()["data"]["backup_id"]
    h = auth("super")

    check = client.post(f"/super-admin/backups/{backup_id}/validate", headers=h).get_json()["data"]
    assert check["valid"] is True

    plan = client.post(f"/super-admin/backups/{backup_id}/restore", headers=h, json={}).get_json()["data"]
    assert plan["status"] == "planned"
    assert plan["restore_type"] == "full"
    assert plan["total_rows"] >= 11

    partial = client.post(f"/super-admin/backups/{backup_id}/restore", headers=h,
                          json={"tables": ["campuses"], "create_restore_point": False}).get_json()["data"]
    assert partial["restore_type"] == "partial"
    assert partial["tables"] == {"campuses": 2}
    assert any("No restore point" in w for w in partial["warnings"])

    assert client.post(f"/super-admin/backups/{backup_id}/restore", headers=h,
                       json={"tables": ["nope"]}).status_code == 400
    assert client.post("/super-admin/backups/missing/validate", headers=h).status_code == 404

    with app.app_context():
        path = db.session.get(BackupRecord, backup_id).file_path
    with open(path, "ab") as fh:
        fh.write(b"tampered")
    check = client.post(f"/super-admin/backups/{backup_id}/validate", headers=h).get_json()["data"]
    assert check["valid"] is False
    assert check["checks"]["checksum_match"] is False
    assert client.post(f"/super-admin/backups/{backup_id}/restore", headers=h, json={}).status_code == 409


def test_backup_cleanup_keeps_newest(client, app, seed, auth, monkeypatch):
    monkeypatch.setitem(app.config, "BACKUP_MAX_COUNT", 1)
    first = _backup(client, auth).get_json()["data"]["backup_id"]
    second = _backup(client, auth).get_json()["data"]["backup_id"]
    with app.app_context():
        first_path = db.session.get(BackupRecord, first).file_path

    result = client.post("/super-admin/backups/cleanup", headers=auth("super")).get_json()["data"]
    assert result["deleted"] == [first]
    assert result["freed_bytes"] > 0
    assert not os.path.exists(first_path)
    listed = client.get("/super-admin/backups", headers=auth("super")).get_json()["data"]["items"]
    assert [b["backup_id"] for b in listed] == [second]


def test_backup_marked_failed_on_database_error(app, seed, monkeypatch):
    def broken(*args):
        raise OperationalError("SELECT * FROM users", {}, Exception("disk I/O error"))

    monkeypatch.setattr("school_app.super_admin.backup._snapshot", broken)
    with app.app_context():
        with pytest.raises(OperationalError):
            backup.initiate_backup("full")
        record = BackupRecord.query.one()
        assert record.status == "failed"
        assert "disk I/O error" in record.error_message


def test_disaster_recovery_plan(client, seed, auth):
    plan = client.get("/super-admin/backups/disaster-recovery-plan", headers=auth("super")).get_json()["data"]
    assert (plan["rto_hours"], plan["rpo_hours"]) == (4, 1)
    assert [p["step"] for p in plan["procedures"]] == [1, 2, 3, 4, 5, 6]


def test_backup_cli(app, seed):
    result = app.test_cli_runner().invoke(args=["backup", "--type", "full", "--no-cleanup"])
    assert result.exit_code == 0
    assert "completed" in result.output
    with app.app_context():
        assert BackupRecord.query.filter_by(status="completed").count() == 1

    result = app.test_cli_runner().invoke(args=["create-super-admin", "--email", "ops@platform.test",
                                                "--password", "longpassword1"])
    assert "Super Admin 'ops@platform.test' created." in result.output
    result = app.test_cli_runner().invoke(args=["create-super-admin", "--email", "ops@platform.test",
                                                "--password", "longpassword1"])
    assert "already exists" in result.output
