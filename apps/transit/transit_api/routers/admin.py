import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import get_db, require_admin
from ..entitlements import EntitlementStore, get_entitlement_store
from ..errors import ConflictError, NotFoundError, ValidationError
from ..fares import CONCESSION_TYPES
from ..models import Bus, Route, Station, User
from ..schemas import BusIn, BusOut, ConcessionIn, RouteIn, RouteOut, StationIn, StationOut
from ..utils import parse_uuid


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger("transit.admin")


@router.post("/routes", response_model=RouteOut, status_code=201)
def create_route(payload: RouteIn, db: Session = Depends(get_db)):
    r = Route(start=payload.start.strip(), end=payload.end.strip())
    db.add(r)
    db.commit()
    logger.info("route created id=%s %s -> %s", r.id, r.start, r.end)
    return RouteOut(id=str(r.id), start=r.start, end=r.end)


@router.post("/buses", response_model=BusOut, status_code=201)
def create_bus(payload: BusIn, db: Session = Depends(get_db)):
    route_id = parse_uuid(payload.route_id, "route_id")
    if db.get(Route, route_id) is None:
        raise NotFoundError("Route not found")
    b = Bus(name=payload.name.strip(), route_id=route_id, capacity=payload.capacity)
    try:
        with db.begin_nested():
            db.add(b)
    except IntegrityError:
        raise ConflictError("Bus name already taken", code="bus_exists") from None
    db.commit()
    return BusOut(id=str(b.id), name=b.name, route_id=str(b.route_id), capacity=b.capacity)


@router.post("/stations", response_model=StationOut, status_code=201)
def create_station(payload: StationIn, db: Session = Depends(get_db)):
    route_id = parse_uuid(payload.route_id, "route_id")
    bus_id = parse_uuid(payload.bus_id, "bus_id")
    if db.get(Route, route_id) is None:
        raise NotFoundError("Route not found")
    bus = db.get(Bus, bus_id)
    if bus is None:
        raise NotFoundError("Bus not found")
    if bus.route_id != route_id:
        raise ValidationError("Bus does not serve this route", code="bus_not_on_route")
    s = Station(route_id=route_id, bus_id=bus_id, name=payload.name.strip(), lat=payload.lat, lon=payload.lon, fare=payload.fare)
    db.add(s)
    db.commit()
    return StationOut(
        id=str(s.id), route_id=str(s.route_id), bus_id=str(s.bus_id), name=s.name, lat=s.lat, lon=s.lon, fare=s.fare
    )


@router.post("/users/{user_id}/concession")
def set_concession(user_id: str, payload: ConcessionIn, db: Session = Depends(get_db)):
    concession = payload.concession_type.strip().lower()
    if concession not in CONCESSION_TYPES:
        raise ValidationError("Unknown concession type", code="invalid_concession", details={"allowed": list(CONCESSION_TYPES)})
    u = db.get(User, parse_uuid(user_id, "user_id"))
    if u is None:
        raise NotFoundError("User not found")
    u.concession_type = concession
    db.commit()
    logger.info("concession for user=%s set to %s", u.id, concession)
    return {"user_id": str(u.id), "concession_type": concession}


@router.post("/tickets/sweep_expired")
def sweep_expired(db: Session = Depends(get_db), store: EntitlementStore = Depends(get_entitlement_store)):
    count = store.sweep_expired_tickets(db)
    db.commit()
    return {"expired": count}
