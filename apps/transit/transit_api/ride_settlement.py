from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from prometheus_client import Counter
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InsufficientFunds, NotFoundError, ValidationError
from .fares import FareCalculator, get_fare_calculator
from .maps import DistanceEstimator, GeoPoint, get_distance_estimator
from .models import Ride, User
from .utils import valid_coordinate
from .wallet_ledger import WalletLedger, get_wallet_ledger


logger = logging.getLogger("transit.rides")

RIDE_SETTLEMENTS = Counter(
    "transit_ride_settlements_total",
    "Completed rides by fare debit outcome",
    ["kind", "deduction"],  # deduction: success|insufficient_funds|error
)

KINDS = ("ride", "trip")


@dataclass(frozen=True)
class DeductionResult:
    status: str  # success|insufficient_funds|error
    message: str

    def as_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


class RideSettlementService:
    """Closes rides and trips: distance, fare, then a wallet debit.

    Completion is committed before the debit is attempted; a failed debit
    only changes ``payment_status``, never the completed ride.
    """

    def __init__(
        self,
        estimator: DistanceEstimator | None = None,
        calculator: FareCalculator | None = None,
        ledger: WalletLedger | None = None,
    ) -> None:
        self.estimator = estimator or get_distance_estimator()
        self.calculator = calculator or get_fare_calculator()
        self.ledger = ledger or get_wallet_ledger()

    def get_active_ride(self, db: Session, user_id: uuid.UUID, kind: str | None = None) -> Ride | None:
        q = db.query(Ride).filter(Ride.user_id == user_id, Ride.status == "active")
        if kind:
            q = q.filter(Ride.kind == kind)
        return q.one_or_none()

    def list_rides(self, db: Session, user_id: uuid.UUID, kind: str, page: int = 1, limit: int = 10) -> tuple[list[Ride], int]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))
        base = db.query(Ride).filter(Ride.user_id == user_id, Ride.kind == kind)
        total = base.with_entities(func.count(Ride.id)).scalar() or 0
        rows = base.order_by(Ride.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        return rows, int(total)

    def start_ride(
        self,
        db: Session,
        user: User,
        lat: float,
        lng: float,
        kind: str = "ride",
        route_id: uuid.UUID | None = None,
        bus_id: uuid.UUID | None = None,
        start_station: str | None = None,
        now: datetime | None = None,
    ) -> Ride:
        if kind not in KINDS:
            raise ValidationError("Unknown ride kind", code="invalid_kind")
        if not valid_coordinate(lat, lng):
            raise ValidationError("coordinates out of range", code="invalid_coordinates")
        if self.get_active_ride(db, user.id) is not None:
            raise ValidationError(f"User already has an active {kind}", code="active_ride_exists")
        ride = Ride(
            user_id=user.id,
            kind=kind,
            route_id=route_id,
            bus_id=bus_id,
            start_station=start_station,
            start_lat=lat,
            start_lng=lng,
            started_at=now or datetime.utcnow(),
            status="active",
            payment_status="pending",
        )
        try:
            with db.begin_nested():
                db.add(ride)
        except IntegrityError:
            raise ValidationError(f"User already has an active {kind}", code="active_ride_exists") from None
        logger.info("%s started id=%s user=%s", kind, ride.id, user.id)
        return ride

    def end_ride(
        self,
        db: Session,
        ride_id: uuid.UUID,
        user: User,
        lat: float,
        lng: float,
        end_station: str | None = None,
        kind: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Ride, DeductionResult]:
        ride = db.get(Ride, ride_id)
        if ride is None or ride.user_id != user.id or (kind and ride.kind != kind):
            raise NotFoundError(f"{(kind or 'ride').capitalize()} not found")
        if ride.status != "active":
            raise ValidationError(f"{ride.kind.capitalize()} is not active", code="ride_not_active")
        if not valid_coordinate(lat, lng):
            raise ValidationError("coordinates out of range", code="invalid_coordinates")

        # Trips are the simple variant: great-circle distance only
        estimate = self.estimator.estimate(
            GeoPoint(ride.start_lat, ride.start_lng),
            GeoPoint(lat, lng),
            allow_external=ride.kind == "ride",
        )
        concession = (user.concession_type or "general").lower()
        fare = self.calculator.compute_fare(estimate.distance_km, concession)
        ended_at = now or datetime.utcnow()

        res = db.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.status == "active")
            .values(
                status="completed",
                end_lat=lat,
                end_lng=lng,
                ended_at=ended_at,
                end_station=end_station,
                distance_km=estimate.distance_km,
                duration_min=estimate.duration_min,
                calculation_method=estimate.method,
                concession_type=fare.concession_type,
                original_fare=fare.original_fare,
                discount_amount=fare.discount_amount,
                discount_percentage=fare.discount_percentage,
                final_fare=fare.final_fare,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise ValidationError(f"{ride.kind.capitalize()} is not active", code="ride_not_active")
        db.commit()
        db.refresh(ride)
        logger.info(
            "%s completed id=%s distance=%.2f method=%s fare=%s",
            ride.kind, ride.id, ride.distance_km, ride.calculation_method, ride.final_fare,
        )

        deduction = self._charge(db, ride)
        RIDE_SETTLEMENTS.labels(ride.kind, deduction.status).inc()
        return ride, deduction

    def _charge(self, db: Session, ride: Ride) -> DeductionResult:
        fare = int(ride.final_fare or 0)
        if fare <= 0:
            result, payment_status = DeductionResult("success", "No fare due"), "paid"
        else:
            reason = f"Ride fare - {ride.distance_km:.2f}km ({ride.concession_type} concession)"
            try:
                balance = self.ledger.debit(db, ride.user_id, fare, reason, related_id=str(ride.id))
                result = DeductionResult(
                    "success",
                    f"{fare} deducted from wallet. Savings: {ride.discount_amount}. New balance: {balance}",
                )
                payment_status = "paid"
            except InsufficientFunds as exc:
                result = DeductionResult(
                    "insufficient_funds",
                    f"Insufficient funds. Required: {exc.required}, Available: {exc.available}",
                )
                payment_status = "failed"
            except Exception as exc:
                db.rollback()
                logger.exception("fare debit failed for ride %s", ride.id)
                result = DeductionResult("error", f"Payment error: {exc}")
                payment_status = "failed"
        db.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.payment_status == "pending")
            .values(payment_status=payment_status, payment_message=result.message[:256])
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(ride)
        return result


def get_ride_settlement_service() -> RideSettlementService:
    return RideSettlementService()
