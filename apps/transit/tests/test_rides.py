import pytest

from helpers import make_rider
from transit_api.database import SessionLocal
from transit_api.fares import get_fare_calculator
from transit_api.maps import DistanceEstimate
from transit_api.models import Ride
from transit_api.ride_settlement import get_ride_settlement_service
from transit_api.wallet_ledger import WalletLedger


START = {"lat": 12.9716, "lng": 77.5946}
END = {"lat": 12.9352, "lng": 77.6245}


def _fund(rider, amount: int) -> None:
    with SessionLocal() as s:
        WalletLedger().credit(s, rider.id, amount, "seed")
        s.commit()


def _balance(rider) -> int:
    with SessionLocal() as s:
        return WalletLedger().get_balance(s, rider.id)


def _start(client, rider, kind="rides", **extra):
    return client.post(f"/{kind}/start", headers=rider.headers, json={**START, **extra})


def _end(client, rider, ride_id, kind="rides", **extra):
    return client.put(f"/{kind}/{ride_id}/end", headers=rider.headers, json={**END, **extra})


def test_ride_lifecycle_debits_fare(client, rider):
    _fund(rider, 500)
    r = _start(client, rider, start_station="MG Road")
    assert r.status_code == 201, r.text
    ride = r.json()
    assert ride["status"] == "active"
    assert ride["payment_status"] == "pending"

    r = client.get("/rides/active", headers=rider.headers)
    assert r.status_code == 200
    assert r.json()["id"] == ride["id"]

    r = _end(client, rider, ride["id"], end_station="Koramangala")
    assert r.status_code == 200, r.text
    body = r.json()
    done = body["ride"]
    assert done["status"] == "completed"
    assert done["payment_status"] == "paid"
    assert done["calculation_method"] == "haversine"
    assert done["end_station"] == "Koramangala"
    assert body["deduction"]["status"] == "success"
    expected = get_fare_calculator().compute_fare(done["distance_km"], "general")
    assert done["final_fare"] == expected.final_fare
    assert _balance(rider) == 500 - expected.final_fare

    assert client.get("/rides/active", headers=rider.headers).status_code == 404


def test_concession_applies_to_ride_fare(client):
    student = make_rider(concession_type="student")
    _fund(student, 500)
    ride_id = _start(client, student).json()["id"]
    done = _end(client, student, ride_id).json()["ride"]
    assert done["concession_type"] == "student"
    assert done["discount_percentage"] == 30
    assert done["original_fare"] == done["final_fare"] + done["discount_amount"]


def test_insufficient_funds_keeps_ride_completed(client, rider):
    _fund(rider, 5)
    ride_id = _start(client, rider).json()["id"]
    r = _end(client, rider, ride_id)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["ride"]["status"] == "completed"
    assert body["ride"]["payment_status"] == "failed"
    assert body["deduction"]["status"] == "insufficient_funds"
    assert "Available: 5" in body["deduction"]["message"]
    assert _balance(rider) == 5

    # The ride can be neither re-ended nor re-charged
    r = _end(client, rider, ride_id)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "ride_not_active"


def test_no_wallet_counts_as_insufficient(client, rider):
    ride_id = _start(client, rider).json()["id"]
    body = _end(client, rider, ride_id).json()
    assert body["deduction"]["status"] == "insufficient_funds"
    assert body["ride"]["payment_status"] == "failed"


def test_one_active_ride_per_user(client, rider):
    assert _start(client, rider).status_code == 201
    r = _start(client, rider)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "active_ride_exists"
    r = _start(client, rider, kind="trips")
    assert r.status_code == 400


def test_cannot_end_someone_elses_ride(client, rider):
    ride_id = _start(client, rider).json()["id"]
    other = make_rider()
    assert _end(client, other, ride_id).status_code == 404


def test_trips_always_use_haversine(client, rider, monkeypatch):
    svc = get_ride_settlement_service()

    def fail_fetch(*args, **kwargs):
        raise AssertionError("trips must not call the distance API")

    monkeypatch.setattr(svc.estimator, "api_key", "configured")
    monkeypatch.setattr(svc.estimator, "_fetch", fail_fetch)
    _fund(rider, 500)
    trip_id = _start(client, rider, kind="trips").json()["id"]
    r = _end(client, rider, trip_id, kind="trips")
    assert r.status_code == 200, r.text
    assert r.json()["ride"]["kind"] == "trip"
    assert r.json()["ride"]["calculation_method"] == "haversine"
    # a trip id is not visible under /rides
    assert _end(client, rider, trip_id, kind="rides").status_code == 404


def test_ride_uses_external_estimate_when_available(client, rider, monkeypatch):
    svc = get_ride_settlement_service()
    monkeypatch.setattr(svc.estimator, "api_key", "configured")
    monkeypatch.setattr(svc.estimator, "cache_ttl", 0)
    monkeypatch.setattr(
        svc.estimator, "_fetch", lambda origin, destination: DistanceEstimate(distance_km=10.0, duration_min=22, method="external_api")
    )
    _fund(rider, 500)
    ride_id = _start(client, rider).json()["id"]
    done = _end(client, rider, ride_id).json()["ride"]
    assert done["calculation_method"] == "external_api"
    assert done["distance_km"] == 10.0
    assert done["final_fare"] == 100
    assert _balance(rider) == 400


def test_ride_history_is_paginated(client, rider):
    _fund(rider, 1000)
    for _ in range(3):
        ride_id = _start(client, rider).json()["id"]
        _end(client, rider, ride_id)
    r = client.get("/rides", headers=rider.headers, params={"page": 1, "limit": 2})
    assert r.status_code == 200
    js = r.json()
    assert js["total"] == 3
    assert js["total_pages"] == 2
    assert len(js["rides"]) == 2
    r = client.get("/rides", headers=rider.headers, params={"page": 2, "limit": 2})
    assert len(r.json()["rides"]) == 1
    assert client.get("/trips", headers=rider.headers).json()["total"] == 0


@pytest.mark.parametrize("coords", [{"lat": 95, "lng": 0}, {"lat": 0, "lng": -181}])
def test_rejects_bad_coordinates(client, rider, coords):
    r = client.post("/rides/start", headers=rider.headers, json=coords)
    assert r.status_code == 422


def test_completed_ride_is_persisted(client, rider):
    _fund(rider, 500)
    ride_id = _start(client, rider).json()["id"]
    _end(client, rider, ride_id)
    with SessionLocal() as s:
        row = s.query(Ride).filter(Ride.user_id == rider.id).one()
        assert row.status == "completed"
        assert row.payment_message.startswith(f"{row.final_fare} deducted")
        assert WalletLedger().verify_balance(s, rider.id)
