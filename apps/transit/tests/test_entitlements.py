import uuid
from datetime import datetime, timedelta

import pytest

from transit_api.entitlements import (
    EntitlementStore,
    RouteRef,
    add_months,
    effective_ticket_status,
    is_ticket_valid,
    ticket_invalid_reason,
)
from transit_api.errors import ConflictError, NotFoundError, NotValidForUse
from transit_api.models import Bus, Route, Station


store = EntitlementStore(ticket_ttl_hours=12, ticket_max_usage=1, pass_months=1)


def _route(db):
    r = Route(start="Central", end="Airport")
    db.add(r)
    db.flush()
    b = Bus(name=f"E-{uuid.uuid4().hex[:8]}", route_id=r.id)
    db.add(b)
    db.flush()
    return r, b


def _ticket(db, rider, now=None, max_usage=None):
    r, b = _route(db)
    s = store if max_usage is None else EntitlementStore(ticket_ttl_hours=12, ticket_max_usage=max_usage)
    t = s.create_ticket(
        db,
        user_id=rider.id,
        route=RouteRef.resolve(db, r.id),
        bus_id=b.id,
        start_station="Central",
        end_station="Airport",
        price=40,
        external_payment_ref=f"cs_test_{uuid.uuid4().hex}",
        now=now,
    )
    db.commit()
    return t


def test_add_months_clamps_day():
    assert add_months(datetime(2024, 1, 31, 9, 30), 1) == datetime(2024, 2, 29, 9, 30)
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)
    assert add_months(datetime(2024, 3, 10), 12) == datetime(2025, 3, 10)


def test_route_ref_requires_existing_route(db):
    ref = RouteRef.resolve(db, uuid.uuid4())
    assert ref.resolved is None
    with pytest.raises(NotFoundError):
        ref.require()


def test_new_ticket_is_valid(db, rider):
    t = _ticket(db, rider)
    assert t.status == "active"
    assert t.usage_count == 0
    assert t.payment_status == "paid"
    assert is_ticket_valid(t)
    assert t.expiry_date - t.created_at == timedelta(hours=12)


def test_single_use_ticket(db, rider):
    t = _ticket(db, rider)
    used = store.use_ticket(db, t.id, rider.id)
    db.commit()
    assert used.usage_count == 1
    assert used.status == "used"
    assert used.last_used is not None
    assert not is_ticket_valid(used)
    with pytest.raises(NotValidForUse) as exc:
        store.use_ticket(db, t.id, rider.id)
    assert exc.value.reason == "used"
    db.rollback()


def test_multi_use_ticket_flips_on_last_use(db, rider):
    t = _ticket(db, rider, max_usage=2)
    assert store.use_ticket(db, t.id, rider.id).status == "active"
    assert store.use_ticket(db, t.id, rider.id).status == "used"
    db.commit()


def test_expired_ticket_is_never_valid(db, rider):
    t = _ticket(db, rider, now=datetime.utcnow() - timedelta(hours=13))
    assert t.status == "active"
    assert not is_ticket_valid(t)
    assert ticket_invalid_reason(t) == "expired"
    assert effective_ticket_status(t) == "expired"
    with pytest.raises(NotValidForUse) as exc:
        store.use_ticket(db, t.id, rider.id)
    assert exc.value.reason == "expired"
    db.rollback()


def test_validity_at_explicit_instant(db, rider):
    now = datetime.utcnow()
    t = _ticket(db, rider, now=now)
    assert is_ticket_valid(t, now + timedelta(hours=11))
    assert not is_ticket_valid(t, now + timedelta(hours=12, seconds=1))


def test_sweep_materializes_expiry(db, rider):
    stale = _ticket(db, rider, now=datetime.utcnow() - timedelta(days=1))
    fresh = _ticket(db, rider)
    assert store.sweep_expired_tickets(db) >= 1
    db.commit()
    db.refresh(stale)
    db.refresh(fresh)
    assert stale.status == "expired"
    assert fresh.status == "active"


def test_cancel_ticket(db, rider):
    t = _ticket(db, rider)
    cancelled = store.cancel_ticket(db, t.id, rider.id)
    db.commit()
    assert cancelled.status == "cancelled"
    assert ticket_invalid_reason(cancelled) == "cancelled"
    with pytest.raises(ConflictError):
        store.cancel_ticket(db, t.id, rider.id)
    db.rollback()


def test_ticket_is_private_to_owner(db, rider):
    from helpers import make_rider

    t = _ticket(db, rider)
    other = make_rider()
    with pytest.raises(NotFoundError):
        store.get_ticket(db, t.id, other.id)
    with pytest.raises(NotFoundError):
        store.use_ticket(db, t.id, other.id)
    db.rollback()


def test_pass_lifecycle(db, rider):
    r, _ = _route(db)
    now = datetime(2031, 1, 31, 8, 0)
    p = store.create_pass(db, user_id=rider.id, route=RouteRef.resolve(db, r.id), fare=500, now=now)
    db.commit()
    assert p.expiry_date == datetime(2031, 2, 28, 8, 0)
    assert store.find_active_pass(db, rider.id, r.id, now=now).id == p.id
    assert store.find_active_pass(db, rider.id, r.id, now=datetime(2031, 3, 1)) is None
    usage = store.record_pass_usage(db, user_id=rider.id, pass_id=p.id, location="Gate 3", now=now)
    db.commit()
    assert usage.location == "Gate 3"
    assert [u.id for u in store.list_pass_usage(db, rider.id)] == [usage.id]
    with pytest.raises(NotValidForUse) as exc:
        store.record_pass_usage(db, user_id=rider.id, pass_id=p.id, now=datetime(2031, 3, 1))
    assert exc.value.reason == "expired"


def test_pass_requires_route(db, rider):
    with pytest.raises(NotFoundError):
        store.create_pass(db, user_id=rider.id, route=RouteRef.resolve(db, uuid.uuid4()), fare=500)
    db.rollback()


def test_ticket_routes(client, rider):
    from transit_api.database import SessionLocal

    with SessionLocal() as s:
        t = _ticket(s, rider)
        ticket_id = str(t.id)

    r = client.get("/tickets", headers=rider.headers)
    assert r.status_code == 200
    assert [x["id"] for x in r.json()["tickets"]] == [ticket_id]

    r = client.get(f"/tickets/{ticket_id}", headers=rider.headers)
    assert r.json()["is_valid"] is True

    r = client.post(f"/tickets/{ticket_id}/use", headers=rider.headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "used"
    assert r.json()["is_valid"] is False

    r = client.post(f"/tickets/{ticket_id}/use", headers=rider.headers)
    assert r.status_code == 409
    err = r.json()["error"]
    assert err["code"] == "not_valid_for_use"
    assert err["details"]["reason"] == "used"

    r = client.post(f"/tickets/{ticket_id}/cancel", headers=rider.headers)
    assert r.status_code == 409

    r = client.get("/tickets/not-a-uuid", headers=rider.headers)
    assert r.status_code == 400


def test_pass_routes(client, rider):
    from transit_api.database import SessionLocal

    r = client.get("/passes", headers=rider.headers)
    assert r.status_code == 404

    with SessionLocal() as s:
        route, _ = _route(s)
        p = store.create_pass(s, user_id=rider.id, route=RouteRef.resolve(s, route.id), fare=500)
        s.commit()
        pass_id = str(p.id)

    r = client.get("/passes", headers=rider.headers)
    assert r.status_code == 200
    assert r.json()["passes"][0]["id"] == pass_id
    assert r.json()["passes"][0]["is_valid"] is True

    r = client.post("/passes/usage", headers=rider.headers, json={"pass_id": pass_id, "location": "Depot"})
    assert r.status_code == 201, r.text
    r = client.get("/passes/usage", headers=rider.headers)
    assert [u["location"] for u in r.json()] == ["Depot"]


def test_admin_sweep_requires_token(client):
    assert client.post("/admin/tickets/sweep_expired").status_code == 403
    r = client.post("/admin/tickets/sweep_expired", headers={"X-Admin-Token": "test-admin-token"})
    assert r.status_code == 200
    assert "expired" in r.json()
