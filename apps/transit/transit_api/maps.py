from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
from prometheus_client import Counter

from .config import settings
from .errors import ValidationError
from .utils import haversine_km, valid_coordinate


logger = logging.getLogger("transit.maps")

DISTANCE_ESTIMATES = Counter(
    "transit_distance_estimates_total",
    "Distance estimates by calculation method",
    ["method"],
)

METHOD_EXTERNAL = "external_api"
METHOD_HAVERSINE = "haversine"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class DistanceEstimate:
    distance_km: float
    duration_min: int
    method: str


class DistanceMatrixError(RuntimeError):
    pass


class DistanceEstimator:
    """Road distance via a distance-matrix API, falling back to haversine.

    ``estimate`` never raises for provider problems: missing API key, timeouts,
    non-2xx answers, non-OK statuses and malformed payloads all degrade to the
    great-circle estimate.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: float | None = None,
        avg_speed_kmph: float | None = None,
        cache_ttl: int | None = None,
    ) -> None:
        self.base_url = (base_url or settings.DISTANCE_MATRIX_BASE_URL).rstrip("/")
        self.api_key = (api_key if api_key is not None else settings.DISTANCE_MATRIX_API_KEY or "").strip()
        self.timeout = float(timeout if timeout is not None else settings.MAPS_TIMEOUT_SECS)
        self.max_retries = max(0, int(max_retries if max_retries is not None else settings.MAPS_MAX_RETRIES))
        self.backoff = float(backoff if backoff is not None else settings.MAPS_BACKOFF_SECS)
        self.avg_speed_kmph = max(1e-3, float(avg_speed_kmph if avg_speed_kmph is not None else settings.AVG_SPEED_KMPH))
        self.cache_ttl = max(0, int(cache_ttl if cache_ttl is not None else settings.MAPS_ROUTE_CACHE_SECS))
        self._cache: dict[str, tuple[datetime, DistanceEstimate]] = {}

    def _cache_get(self, key: str) -> DistanceEstimate | None:
        if self.cache_ttl <= 0:
            return None
        ent = self._cache.get(key)
        if not ent:
            return None
        exp, val = ent
        if exp >= datetime.now(timezone.utc):
            return val
        self._cache.pop(key, None)
        return None

    def _cache_set(self, key: str, value: DistanceEstimate) -> None:
        if self.cache_ttl <= 0:
            return
        self._cache[key] = (datetime.now(timezone.utc) + timedelta(seconds=self.cache_ttl), value)

    def offline_estimate(self, origin: GeoPoint, destination: GeoPoint) -> DistanceEstimate:
        dist = haversine_km(origin.lat, origin.lng, destination.lat, destination.lng)
        mins = int(round(dist / self.avg_speed_kmph * 60.0))
        return DistanceEstimate(distance_km=round(dist, 2), duration_min=mins, method=METHOD_HAVERSINE)

    def _fetch(self, origin: GeoPoint, destination: GeoPoint) -> DistanceEstimate:
        url = f"{self.base_url}/maps/api/distancematrix/json"
        params = {
            "origins": f"{origin.lat:.6f},{origin.lng:.6f}",
            "destinations": f"{destination.lat:.6f},{destination.lng:.6f}",
            "key": self.api_key,
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.get(url, params=params)
        if resp.status_code >= 400:
            raise DistanceMatrixError(f"bad_status_{resp.status_code}")
        body = resp.json() or {}
        if (body.get("status") or "").upper() != "OK":
            raise DistanceMatrixError(f"status_{body.get('status')}")
        try:
            element = body["rows"][0]["elements"][0]
            if (element.get("status") or "").upper() != "OK":
                raise DistanceMatrixError(f"element_status_{element.get('status')}")
            meters = float(element["distance"]["value"])
            seconds = float(element["duration"]["value"])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise DistanceMatrixError("malformed_payload") from exc
        if meters < 0 or seconds < 0:
            raise DistanceMatrixError("negative_values")
        return DistanceEstimate(
            distance_km=round(meters / 1000.0, 2),
            duration_min=int(round(seconds / 60.0)),
            method=METHOD_EXTERNAL,
        )

    def estimate(self, origin: GeoPoint, destination: GeoPoint, allow_external: bool = True) -> DistanceEstimate:
        for pt in (origin, destination):
            if not valid_coordinate(pt.lat, pt.lng):
                raise ValidationError("coordinates out of range", code="invalid_coordinates", details={"lat": pt.lat, "lng": pt.lng})
        if not allow_external or not self.api_key:
            result = self.offline_estimate(origin, destination)
            DISTANCE_ESTIMATES.labels(result.method).inc()
            return result
        cache_key = f"{origin.lat:.6f},{origin.lng:.6f}|{destination.lat:.6f},{destination.lng:.6f}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                result = self._fetch(origin, destination)
                self._cache_set(cache_key, result)
                DISTANCE_ESTIMATES.labels(result.method).inc()
                return result
            except Exception as exc:
                last_err = exc
                if attempt < self.max_retries:
                    time.sleep(self.backoff * (2 ** attempt))
        logger.warning("distance matrix unavailable (%s); falling back to haversine", last_err)
        result = self.offline_estimate(origin, destination)
        DISTANCE_ESTIMATES.labels(result.method).inc()
        return result


_estimator: DistanceEstimator | None = None


def get_distance_estimator() -> DistanceEstimator:
    global _estimator
    if _estimator is None:
        _estimator = DistanceEstimator()
    return _estimator
