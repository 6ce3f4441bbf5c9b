from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..checkout import (
    CheckoutContext,
    PaymentSessionCoordinator,
    PurchaseType,
    get_checkout_coordinator,
    resolve_idempotency_key,
)
from ..models import User
from ..schemas import CheckoutIn, CheckoutOut
from ..utils import parse_uuid


router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutOut)
def create_checkout(
    payload: CheckoutIn,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: PaymentSessionCoordinator = Depends(get_checkout_coordinator),
):
    purchase_type = PurchaseType.parse(payload.purchase_type or "")
    ctx = CheckoutContext(
        route_id=parse_uuid(payload.route_id, "route_id"),
        station_id=parse_uuid(payload.station_id, "station_id"),
        bus_id=parse_uuid(payload.bus_id, "bus_id"),
    )
    result = coordinator.create_session(
        db,
        user,
        purchase_type,
        payload.amount if payload.amount is not None else 0,
        ctx,
        idempotency_key=resolve_idempotency_key(idempotency_key),
    )
    db.commit()
    p = result.payment
    return CheckoutOut(
        payment_id=str(p.id),
        checkout_url=p.checkout_url,
        session_id=p.external_session_id,
        status=p.status,
        reused=result.reused,
    )
