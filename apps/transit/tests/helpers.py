import json
import random
import uuid
from dataclasses import dataclass

from transit_shared.webhook_sig import sign_webhook


ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}
WEBHOOK_SECRET = "test-webhook-secret"


def unique_phone(prefix: str = "0091") -> str:
    return f"+{prefix}{random.randint(10_000_000, 99_999_999)}"


@dataclass
class Rider:
    id: uuid.UUID
    phone: str
    headers: dict


def make_rider(concession_type: str = "general") -> Rider:
    from transit_api.auth import create_access_token
    from transit_api.database import SessionLocal, engine
    from transit_api.models import Base, User

    Base.metadata.create_all(bind=engine)
    phone = unique_phone()
    with SessionLocal() as db:
        user = User(phone=phone, concession_type=concession_type)
        db.add(user)
        db.commit()
        user_id = user.id
    token = create_access_token(str(user_id), phone)
    return Rider(id=user_id, phone=phone, headers={"Authorization": f"Bearer {token}"})


def seed_network(client) -> dict:
    suffix = uuid.uuid4().hex[:6]
    r = client.post("/admin/routes", headers=ADMIN_HEADERS, json={"start": "Central", "end": f"Harbour {suffix}"})
    assert r.status_code == 201, r.text
    route_id = r.json()["id"]
    r = client.post("/admin/buses", headers=ADMIN_HEADERS, json={"name": f"B-{suffix}", "route_id": route_id})
    assert r.status_code == 201, r.text
    bus_id = r.json()["id"]
    r = client.post(
        "/admin/stations",
        headers=ADMIN_HEADERS,
        json={"route_id": route_id, "bus_id": bus_id, "name": "Market Square", "lat": 12.97, "lon": 77.59, "fare": 30},
    )
    assert r.status_code == 201, r.text
    return {"route_id": route_id, "bus_id": bus_id, "station_id": r.json()["id"]}


def checkout(client, rider: Rider, purchase_type: str, amount: int, headers: dict | None = None, **ctx):
    body = {"purchase_type": purchase_type, "amount": amount, **ctx}
    return client.post("/checkout", headers={**rider.headers, **(headers or {})}, json=body)


def post_webhook(client, event: str, payload: dict, secret: str = WEBHOOK_SECRET, ts: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    return client.post("/webhooks/checkout", content=body, headers=sign_webhook(secret, event, body, ts=ts))


def completed_event(session_id: str, amount_paid: int) -> dict:
    return {
        "type": "checkout.session.completed",
        "data": {"session_id": session_id, "amount_paid": amount_paid},
    }
