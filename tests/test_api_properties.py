from __future__ import annotations

import datetime as dt

from sqlalchemy import event

from conftest import PROPERTY_PAYLOAD, auth_header, register


def _create(client, token, **overrides):
    return client.post("/api/properties", json={**PROPERTY_PAYLOAD, **overrides}, headers=auth_header(token))


def test_guest_becomes_host_on_first_listing(client):
    token = register(client, email="host@example.com")["token"]

    resp = _create(client, token)
    assert resp.status_code == 201
    body = resp.json()
    assert body["remaining_listings"] == 1
    assert body["data"]["amenities"] == ["WiFi", "Parking"]
    assert body["data"]["location"]["city"] == "Chennai"

    me = client.get("/api/auth/me", headers=auth_header(token)).json()["user"]
    assert me["role"] == "host"
    assert me["properties_listed_this_month"] == 1


def test_free_listing_limit(client):
    token = register(client, email="host@example.com", role="host")["token"]
    assert _create(client, token).status_code == 201
    assert _create(client, token).json()["remaining_listings"] == 0

    resp = _create(client, token)
    assert resp.status_code == 403
    body = resp.json()
    assert body["success"] is False
    assert body["limit_reached"] is True
    assert body["limit"] == 2
    assert body["used"] == 2
    assert body["account_type"] == "free"
    assert "listing limit" in body["error"]


def test_rejected_listing_does_not_use_quota(client):
    token = register(client, email="host@example.com", role="host")["token"]

    assert _create(client, token, rent_type="weekly").status_code == 400
    assert _create(client, token, rent_amount=100).status_code == 400
    assert _create(client, token, coordinates={"latitude": 95, "longitude": 10}).status_code == 400
    assert _create(client, token, coordinates=None).status_code == 400

    me = client.get("/api/auth/me", headers=auth_header(token)).json()["user"]
    assert me["properties_listed_this_month"] == 0
    assert _create(client, token).json()["remaining_listings"] == 1


def test_listing_quota_resets_next_month(client, clock):
    token = register(client, email="host@example.com", role="host")["token"]
    clock.set_utcnow(dt.datetime.now(dt.timezone.utc))
    _create(client, token)
    _create(client, token)
    assert _create(client, token).status_code == 403

    clock.set_utcnow(dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=32))
    assert _create(client, token).status_code == 201


def test_list_filters_and_sorting(client):
    token = register(client, email="host@example.com", role="host")["token"]
    _create(client, token, title="Cheap room near the station", rent_amount=800, city="Pune", amenities=["WiFi"], max_guests=1, bedrooms=1)
    _create(client, token, title="Luxury villa with a pool", rent_amount=40000, city="Goa", amenities=["Pool"], max_guests=8, bedrooms=4)

    all_items = client.get("/api/properties").json()
    assert all_items["count"] == 2

    assert [p["title"] for p in client.get("/api/properties", params={"city": "pune"}).json()["data"]] == [
        "Cheap room near the station"
    ]
    assert client.get("/api/properties", params={"min_price": 1000}).json()["count"] == 1
    assert client.get("/api/properties", params={"max_price": 1000}).json()["count"] == 1
    assert client.get("/api/properties", params={"guests": 4}).json()["count"] == 1
    assert client.get("/api/properties", params={"bedrooms": 4}).json()["count"] == 1
    assert client.get("/api/properties", params={"amenities": "pool,gym"}).json()["count"] == 1
    assert client.get("/api/properties", params={"q": "villa"}).json()["count"] == 1

    asc = client.get("/api/properties", params={"sort_by": "price_asc"}).json()["data"]
    assert [p["rent_amount"] for p in asc] == [800, 40000]
    desc = client.get("/api/properties", params={"sort_by": "price_desc"}).json()["data"]
    assert [p["rent_amount"] for p in desc] == [40000, 800]


def test_my_and_user_properties(client):
    host = register(client, email="host@example.com", role="host")
    other = register(client, email="other@example.com", role="host")
    _create(client, host["token"])

    mine = client.get("/api/properties/my", headers=auth_header(host["token"])).json()
    assert mine["count"] == 1
    assert client.get("/api/properties/my", headers=auth_header(other["token"])).json()["count"] == 0
    assert client.get(f"/api/properties/user/{host['user']['id']}").json()["count"] == 1


def test_get_property_counts_views_and_stats(client):
    token = register(client, email="host@example.com", role="host")["token"]
    pid = _create(client, token).json()["data"]["id"]

    for expected in (1, 2, 3):
        resp = client.get(f"/api/properties/{pid}")
        assert resp.status_code == 200
        assert resp.json()["data"]["views"] == expected

    stats = client.get(f"/api/properties/{pid}/stats", headers=auth_header(token)).json()["data"]
    assert stats["views"] == 3
    assert len(stats["view_history"]) == 1
    assert stats["view_history"][0]["count"] == 3


def test_first_view_of_day_survives_concurrent_insert(client, engine):
    token = register(client, email="host@example.com", role="host")["token"]
    pid = _create(client, token).json()["data"]["id"]
    today = dt.datetime.now(dt.timezone.utc).date()
    fired = []

    def insert_row_first(conn, cursor, statement, parameters, context, executemany):
        # Another request creates today's row right after ours found none.
        if fired or not statement.startswith("UPDATE property_view_days") or cursor.rowcount:
            return
        fired.append(statement)
        cursor.connection.execute(
            "INSERT INTO property_view_days (property_id, day, count) VALUES (?, ?, 1)",
            (pid, today.isoformat()),
        )

    event.listen(engine, "after_cursor_execute", insert_row_first)
    try:
        resp = client.get(f"/api/properties/{pid}")
    finally:
        event.remove(engine, "after_cursor_execute", insert_row_first)

    assert resp.status_code == 200
    assert fired
    stats = client.get(f"/api/properties/{pid}/stats", headers=auth_header(token)).json()["data"]
    assert stats["view_history"] == [{"date": today.isoformat(), "count": 2}]


def test_stats_owner_only(client):
    token = register(client, email="host@example.com", role="host")["token"]
    pid = _create(client, token).json()["data"]["id"]
    stranger = register(client, email="s@example.com")["token"]
    assert client.get(f"/api/properties/{pid}/stats", headers=auth_header(stranger)).status_code == 403


def test_get_missing_property(client):
    resp = client.get("/api/properties/999")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Property not found"}


def test_update_property_owner_only(client):
    token = register(client, email="host@example.com", role="host")["token"]
    pid = _create(client, token).json()["data"]["id"]

    resp = client.put(f"/api/properties/{pid}", json={"rent_amount": 18000, "is_available": False}, headers=auth_header(token))
    assert resp.status_code == 200
    assert resp.json()["data"]["rent_amount"] == 18000
    assert resp.json()["data"]["price"] == 18000
    assert resp.json()["data"]["is_available"] is False

    other = register(client, email="other@example.com", role="host")["token"]
    resp = client.put(f"/api/properties/{pid}", json={"rent_amount": 9000}, headers=auth_header(other))
    assert resp.status_code == 403

    assert client.put(f"/api/properties/{pid}", json={"rent_type": "daily"}, headers=auth_header(token)).status_code == 400


def test_delete_property_cleans_images(client, monkeypatch):
    destroyed = []

    def fake_destroy(*, public_id):
        destroyed.append(public_id)
        return True

    monkeypatch.setattr("app.main.cloudinary_destroy", fake_destroy)
    token = register(client, email="host@example.com", role="host")["token"]
    url = "https://res.cloudinary.com/demo/image/upload/v17/urbanstay/properties/abc.jpg"
    pid = _create(client, token, images=[url]).json()["data"]["id"]

    other = register(client, email="other@example.com", role="host")["token"]
    assert client.delete(f"/api/properties/{pid}", headers=auth_header(other)).status_code == 403

    resp = client.delete(f"/api/properties/{pid}", headers=auth_header(token))
    assert resp.status_code == 200
    assert destroyed == ["urbanstay/properties/abc"]
    assert client.get(f"/api/properties/{pid}").status_code == 404


def test_delete_survives_cloudinary_failure(client, monkeypatch):
    def boom(*, public_id):
        raise RuntimeError("cloudinary down")

    monkeypatch.setattr("app.main.cloudinary_destroy", boom)
    token = register(client, email="host@example.com", role="host")["token"]
    url = "https://res.cloudinary.com/demo/image/upload/urbanstay/properties/abc.jpg"
    pid = _create(client, token, images=[url]).json()["data"]["id"]

    assert client.delete(f"/api/properties/{pid}", headers=auth_header(token)).status_code == 200


def test_like_toggle(client):
    token = register(client, email="host@example.com", role="host")["token"]
    pid = _create(client, token).json()["data"]["id"]
    fan = register(client, email="fan@example.com")["token"]

    assert client.get(f"/api/properties/{pid}/like-status", headers=auth_header(fan)).json()["liked"] is False
    resp = client.post(f"/api/properties/{pid}/like", headers=auth_header(fan)).json()
    assert resp == {"success": True, "liked": True, "likes": 1}
    assert client.get(f"/api/properties/{pid}/like-status", headers=auth_header(fan)).json()["liked"] is True
    resp = client.post(f"/api/properties/{pid}/like", headers=auth_header(fan)).json()
    assert resp == {"success": True, "liked": False, "likes": 0}


# ── Contact reveal ────────────────────────────────────────────────────────


def test_contact_quota_for_free_user(client):
    host_token = register(client, email="host@example.com", role="host", name="Owner")["token"]
    client.put("/api/auth/me", json={"phone": "+919876543210"}, headers=auth_header(host_token))
    first = _create(client, host_token).json()["data"]["id"]
    second = _create(client, host_token).json()["data"]["id"]

    viewer = register(client, email="viewer@example.com")["token"]
    resp = client.get(f"/api/properties/{first}/contact", headers=auth_header(viewer))
    assert resp.status_code == 200
    body = resp.json()
    assert body["data"] == {"owner_name": "Owner", "owner_phone": "+919876543210"}
    assert body["remaining"] == 0
    assert body["limit"] == 1
    assert body["used"] == 1

    resp = client.get(f"/api/properties/{second}/contact", headers=auth_header(viewer))
    assert resp.status_code == 403
    body = resp.json()
    assert body["limit_reached"] is True
    assert body["limit"] == 1
    assert body["used"] == 1
    assert body["account_type"] == "free"

    stats = client.get(f"/api/properties/{first}/stats", headers=auth_header(host_token)).json()["data"]
    assert stats["contact_requests"] == 1


def test_contact_missing_property_does_not_use_quota(client):
    viewer = register(client, email="viewer@example.com")["token"]
    assert client.get("/api/properties/404/contact", headers=auth_header(viewer)).status_code == 404
    me = client.get("/api/auth/me", headers=auth_header(viewer)).json()["user"]
    assert me["contact_views_used"] == 0


def test_contact_requires_login(client):
    assert client.get("/api/properties/1/contact").status_code == 401
