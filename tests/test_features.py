from school_app import db
from school_app.features import services
from school_app.models import CampusFeatures


def test_get_features_for_own_campus(client, seed, auth):
    resp = client.get("/campus-features", headers=auth("teacher"))
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["campus_id"] == seed.campus_id
    assert data["features"]["meetings"] is True and data["features"]["payments"] is True


def test_only_super_admin_updates_features(client, seed, auth):
    resp = client.put("/campus-features", headers=auth("admin"), json={"features": {"chat": False}})
    assert resp.status_code == 403

    resp = client.put("/campus-features", headers=auth("super"),
                      json={"campus_id": seed.campus_id, "features": {"chat": False}})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["features"]["chat"] is False


def test_unknown_or_non_boolean_flags_rejected(client, seed, auth):
    h = auth("super")
    resp = client.put("/campus-features", headers=h, json={"campus_id": seed.campus_id, "features": {"teleport": True}})
    assert resp.status_code == 400
    resp = client.put("/campus-features", headers=h, json={"campus_id": seed.campus_id, "features": {"chat": "no"}})
    assert resp.status_code == 400


def test_disabling_meetings_blocks_meeting_routes(client, seed, auth):
    resp = client.post("/campus-features/meetings/disable", headers=auth("super"), json={"campus_id": seed.campus_id})
    assert resp.status_code == 200

    check = client.get("/campus-features/check/meetings", headers=auth("teacher"))
    assert check.get_json()["data"]["enabled"] is False

    resp = client.get("/meetings", headers=auth("teacher"))
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "feature_disabled"

    client.post("/campus-features/meetings/enable", headers=auth("super"), json={"campus_id": seed.campus_id})
    assert client.get("/meetings", headers=auth("teacher")).status_code == 200


def test_missing_record_means_enabled(app, seed):
    with app.app_context():
        CampusFeatures.query.filter_by(campus_id_fk=seed.other_campus_id).delete()
        db.session.commit()
        assert services.is_feature_enabled(seed.other_campus_id, "payments") is True


def test_reset_restores_defaults(app, seed):
    with app.app_context():
        services.update_campus_features(seed.campus_id, {"chat": False, "payments": False})
        record = services.reset_to_defaults(seed.campus_id)
        assert all(record.flags().values())


def test_bulk_update_reports_failures(client, seed, auth):
    resp = client.post("/campus-features/bulk", headers=auth("super"), json={
        "campus_ids": [seed.campus_id, 99999],
        "features": {"curriculum": False},
    })
    data = resp.get_json()["data"]
    assert data["updated"] == [seed.campus_id]
    assert data["failed"][0]["campus_id"] == 99999


def test_all_features_lists_every_campus(client, seed, auth):
    items = client.get("/campus-features/all", headers=auth("super")).get_json()["data"]["items"]
    assert {i["campus_id"] for i in items} == {seed.campus_id, seed.other_campus_id}
