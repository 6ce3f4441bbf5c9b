from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..errors import NotFoundError
from ..models import Payment, User
from ..schemas import PaymentOut, PaymentsListOut
from ..utils import parse_uuid


router = APIRouter(prefix="/payments", tags=["payments"])


def _to_payment_out(p: Payment) -> PaymentOut:
    return PaymentOut(
        id=str(p.id),
        purchase_type=p.purchase_type,
        amount=p.amount,
        status=p.status,
        checkout_url=p.checkout_url,
        external_session_id=p.external_session_id,
        route_id=str(p.route_id) if p.route_id else None,
        station_id=str(p.station_id) if p.station_id else None,
        bus_id=str(p.bus_id) if p.bus_id else None,
        failure_reason=p.failure_reason,
        created_at=p.created_at,
        settled_at=p.settled_at,
    )


@router.get("", response_model=PaymentsListOut)
def list_payments(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = db.query(Payment).filter(Payment.user_id == user.id).order_by(Payment.created_at.desc()).limit(100).all()
    return PaymentsListOut(payments=[_to_payment_out(p) for p in rows])


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(payment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    p = db.get(Payment, parse_uuid(payment_id, "payment_id"))
    if p is None or p.user_id != user.id:
        raise NotFoundError("Payment not found")
    return _to_payment_out(p)
