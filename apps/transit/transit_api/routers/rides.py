import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..errors import NotFoundError
from ..models import Ride, User
from ..ride_settlement import RideSettlementService, get_ride_settlement_service
from ..schemas import DeductionOut, RideEndIn, RideEndOut, RideOut, RidesListOut, RideStartIn
from ..utils import parse_uuid


def _to_ride_out(r: Ride) -> RideOut:
    return RideOut(
        id=str(r.id),
        kind=r.kind,
        status=r.status,
        route_id=str(r.route_id) if r.route_id else None,
        bus_id=str(r.bus_id) if r.bus_id else None,
        start_station=r.start_station,
        end_station=r.end_station,
        start_lat=r.start_lat,
        start_lng=r.start_lng,
        end_lat=r.end_lat,
        end_lng=r.end_lng,
        started_at=r.started_at,
        ended_at=r.ended_at,
        distance_km=r.distance_km,
        duration_min=r.duration_min,
        calculation_method=r.calculation_method,
        concession_type=r.concession_type,
        original_fare=r.original_fare,
        discount_amount=r.discount_amount,
        discount_percentage=r.discount_percentage,
        final_fare=r.final_fare,
        payment_status=r.payment_status,
    )


def make_ride_router(kind: str) -> APIRouter:
    """Routes for one ride kind; rides and trips share the settlement flow."""
    router = APIRouter(prefix=f"/{kind}s", tags=[f"{kind}s"])

    @router.post("/start", response_model=RideOut, status_code=201)
    def start(
        payload: RideStartIn,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        svc: RideSettlementService = Depends(get_ride_settlement_service),
    ):
        ride = svc.start_ride(
            db,
            user,
            payload.lat,
            payload.lng,
            kind=kind,
            route_id=parse_uuid(payload.route_id, "route_id"),
            bus_id=parse_uuid(payload.bus_id, "bus_id"),
            start_station=payload.start_station,
        )
        return _to_ride_out(ride)

    @router.put("/{ride_id}/end", response_model=RideEndOut)
    def end(
        ride_id: str,
        payload: RideEndIn,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        svc: RideSettlementService = Depends(get_ride_settlement_service),
    ):
        ride, deduction = svc.end_ride(
            db,
            parse_uuid(ride_id, f"{kind}_id"),
            user,
            payload.lat,
            payload.lng,
            end_station=payload.end_station,
            kind=kind,
        )
        return RideEndOut(ride=_to_ride_out(ride), deduction=DeductionOut(**deduction.as_dict()))

    @router.get("/active", response_model=RideOut)
    def active(
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        svc: RideSettlementService = Depends(get_ride_settlement_service),
    ):
        ride = svc.get_active_ride(db, user.id, kind=kind)
        if ride is None:
            raise NotFoundError(f"No active {kind} found")
        return _to_ride_out(ride)

    @router.get("", response_model=RidesListOut)
    def history(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        svc: RideSettlementService = Depends(get_ride_settlement_service),
    ):
        rows, total = svc.list_rides(db, user.id, kind, page=page, limit=limit)
        return RidesListOut(
            rides=[_to_ride_out(r) for r in rows],
            total=total,
            page=page,
            total_pages=int(math.ceil(total / limit)) if total else 0,
        )

    return router


router = make_ride_router("ride")
