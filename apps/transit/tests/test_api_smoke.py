import datetime as dt
import uuid

import jwt

from helpers import ADMIN_HEADERS, make_rider, unique_phone
from transit_api.auth import create_access_token
from transit_api.config import settings


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers.get("X-Request-ID")


def test_metrics_exposes_domain_counters(client):
    client.get("/fares/quote", params={"distance_km": 1})
    r = client.get("/metrics")
    assert r.status_code == 200
    text = r.text
    assert "http_requests_total" in text
    assert "transit_checkout_sessions_total" in text
    assert "transit_settlements_total" in text


def test_first_sight_user_is_created(client):
    phone = unique_phone()
    user_id = str(uuid.uuid4())
    headers = {"Authorization": f"Bearer {create_access_token(user_id, phone)}"}
    r = client.get("/wallet", headers=headers)
    assert r.status_code == 200
    assert r.json() == {"balance": 0, "entries": []}


def test_expired_and_forged_tokens(client):
    now = dt.datetime.utcnow()
    expired = jwt.encode(
        {"sub": str(uuid.uuid4()), "phone": unique_phone(), "exp": int((now - dt.timedelta(minutes=1)).timestamp())},
        settings.JWT_SECRET,
        algorithm="HS256",
    )
    r = client.get("/wallet", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "token_expired"

    forged = jwt.encode({"sub": str(uuid.uuid4()), "phone": unique_phone()}, "wrong-secret", algorithm="HS256")
    r = client.get("/wallet", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "invalid_token"


def test_network_catalogue(client, network):
    r = client.get("/network/routes")
    assert r.status_code == 200
    assert network["route_id"] in {x["id"] for x in r.json()}


def test_admin_requires_token(client):
    r = client.post("/admin/routes", json={"start": "A", "end": "B"})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "admin_forbidden"
    r = client.post("/admin/routes", headers={"X-Admin-Token": "nope"}, json={"start": "A", "end": "B"})
    assert r.status_code == 403


def test_admin_sets_concession(client):
    rider = make_rider()
    r = client.post(f"/admin/users/{rider.id}/concession", headers=ADMIN_HEADERS, json={"concession_type": "Elderly"})
    assert r.status_code == 200, r.text
    assert r.json()["concession_type"] == "elderly"
    r = client.post(f"/admin/users/{rider.id}/concession", headers=ADMIN_HEADERS, json={"concession_type": "vip"})
    assert r.status_code == 400
    r = client.post(f"/admin/users/{uuid.uuid4()}/concession", headers=ADMIN_HEADERS, json={"concession_type": "child"})
    assert r.status_code == 404


def test_admin_rejects_duplicate_bus(client, network):
    r = client.post("/admin/routes", headers=ADMIN_HEADERS, json={"start": "X", "end": "Y"})
    route_id = r.json()["id"]
    name = f"DUP-{uuid.uuid4().hex[:6]}"
    assert client.post("/admin/buses", headers=ADMIN_HEADERS, json={"name": name, "route_id": route_id}).status_code == 201
    r = client.post("/admin/buses", headers=ADMIN_HEADERS, json={"name": name, "route_id": route_id})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "bus_exists"
