from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..errors import ValidationError
from ..fares import CONCESSION_TYPES, FareCalculator, get_fare_calculator
from ..maps import DistanceEstimator, GeoPoint, get_distance_estimator
from ..schemas import DistanceEstimateOut, FareBreakdownOut, FareQuoteOut


router = APIRouter(prefix="/fares", tags=["fares"])


@router.get("/quote", response_model=FareQuoteOut)
def quote(
    distance_km: Optional[float] = Query(default=None),
    concession_type: str = Query(default="general"),
    from_lat: Optional[float] = Query(default=None),
    from_lng: Optional[float] = Query(default=None),
    to_lat: Optional[float] = Query(default=None),
    to_lng: Optional[float] = Query(default=None),
    calculator: FareCalculator = Depends(get_fare_calculator),
    estimator: DistanceEstimator = Depends(get_distance_estimator),
):
    concession = concession_type.lower()
    if concession not in CONCESSION_TYPES:
        raise ValidationError("Unknown concession type", code="invalid_concession", details={"allowed": list(CONCESSION_TYPES)})
    coords = (from_lat, from_lng, to_lat, to_lng)
    estimate = None
    if distance_km is None:
        if any(c is None for c in coords):
            raise ValidationError("Provide distance_km or from/to coordinates", code="missing_fields")
        estimate = estimator.estimate(GeoPoint(from_lat, from_lng), GeoPoint(to_lat, to_lng))
        distance_km = estimate.distance_km
    fare = calculator.compute_fare(distance_km, concession)
    return FareQuoteOut(
        distance_km=distance_km,
        fare=FareBreakdownOut(**fare.as_dict()),
        estimate=DistanceEstimateOut(
            distance_km=estimate.distance_km, duration_min=estimate.duration_min, method=estimate.method
        ) if estimate else None,
    )
