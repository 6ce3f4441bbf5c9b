import httpx
import pytest

from transit_api import maps as maps_mod
from transit_api.errors import ValidationError
from transit_api.maps import DistanceEstimator, GeoPoint


BANGALORE = GeoPoint(12.9716, 77.5946)
CHENNAI = GeoPoint(13.0827, 80.2707)


class DummyResponse:
    def __init__(self, status_code: int, data):
        self.status_code = status_code
        self._data = data

    def json(self):
        return self._data


def _fake_client(responses, calls):
    def factory(*args, **kwargs):
        class _Client:
            def __enter__(self_inner):
                return self_inner

            def __exit__(self_inner, exc_type, exc_val, exc_tb):
                return False

            def get(self_inner, url, params=None):
                calls.append((url, params))
                item = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(item, Exception):
                    raise item
                return item

        return _Client()

    return factory


def _ok_payload(meters: float, seconds: float) -> dict:
    return {
        "status": "OK",
        "rows": [{"elements": [{"status": "OK", "distance": {"value": meters}, "duration": {"value": seconds}}]}],
    }


def _estimator(**kw) -> DistanceEstimator:
    opts = dict(base_url="http://maps.test", api_key="k", max_retries=1, backoff=0, cache_ttl=0, avg_speed_kmph=40)
    opts.update(kw)
    return DistanceEstimator(**opts)


def test_external_estimate(monkeypatch):
    calls = []
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([DummyResponse(200, _ok_payload(12340, 1500))], calls))
    est = _estimator().estimate(BANGALORE, CHENNAI)
    assert est.method == "external_api"
    assert est.distance_km == 12.34
    assert est.duration_min == 25
    url, params = calls[0]
    assert url == "http://maps.test/maps/api/distancematrix/json"
    assert params["origins"] == "12.971600,77.594600"
    assert params["key"] == "k"


def test_no_api_key_uses_haversine(monkeypatch):
    calls = []
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([DummyResponse(200, _ok_payload(1, 1))], calls))
    est = _estimator(api_key="").estimate(BANGALORE, CHENNAI)
    assert est.method == "haversine"
    assert calls == []
    assert 280 < est.distance_km < 300


def test_non_ok_status_falls_back(monkeypatch):
    calls = []
    monkeypatch.setattr(
        maps_mod.httpx,
        "Client",
        _fake_client([DummyResponse(200, {"status": "REQUEST_DENIED", "rows": []})], calls),
    )
    est = _estimator().estimate(BANGALORE, CHENNAI)
    assert est.method == "haversine"
    assert len(calls) == 2  # one retry


def test_transport_error_falls_back(monkeypatch):
    calls = []
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([httpx.ConnectTimeout("boom")], calls))
    est = _estimator(max_retries=0).estimate(BANGALORE, CHENNAI)
    assert est.method == "haversine"
    assert len(calls) == 1


def test_retry_then_success(monkeypatch):
    calls = []
    responses = [DummyResponse(503, {}), DummyResponse(200, _ok_payload(2000, 300))]
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client(responses, calls))
    est = _estimator().estimate(BANGALORE, CHENNAI)
    assert est.method == "external_api"
    assert est.distance_km == 2.0
    assert est.duration_min == 5


def test_element_status_not_ok_falls_back(monkeypatch):
    payload = {"status": "OK", "rows": [{"elements": [{"status": "ZERO_RESULTS"}]}]}
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([DummyResponse(200, payload)], []))
    assert _estimator(max_retries=0).estimate(BANGALORE, CHENNAI).method == "haversine"


def test_cache_skips_second_call(monkeypatch):
    calls = []
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([DummyResponse(200, _ok_payload(5000, 600))], calls))
    est = _estimator(cache_ttl=60)
    est.estimate(BANGALORE, CHENNAI)
    est.estimate(BANGALORE, CHENNAI)
    assert len(calls) == 1


def test_trips_never_call_external(monkeypatch):
    calls = []
    monkeypatch.setattr(maps_mod.httpx, "Client", _fake_client([DummyResponse(200, _ok_payload(1, 1))], calls))
    est = _estimator().estimate(BANGALORE, CHENNAI, allow_external=False)
    assert est.method == "haversine"
    assert calls == []


def test_offline_duration_uses_average_speed():
    est = _estimator(api_key="").offline_estimate(GeoPoint(0, 0), GeoPoint(0, 1))
    # one degree of longitude at the equator
    assert est.distance_km == pytest.approx(111.19, abs=0.01)
    assert est.duration_min == round(111.19 / 40 * 60)


def test_rejects_out_of_range_coordinates():
    with pytest.raises(ValidationError):
        _estimator().estimate(GeoPoint(91, 0), CHENNAI)
