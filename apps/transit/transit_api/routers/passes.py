from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..entitlements import EntitlementStore, get_entitlement_store, is_pass_valid
from ..errors import NotFoundError
from ..models import PassUsage, User
from ..schemas import PassesListOut, PassOut, PassUsageIn, PassUsageOut
from ..utils import parse_uuid


router = APIRouter(prefix="/passes", tags=["passes"])


def _to_usage_out(u: PassUsage) -> PassUsageOut:
    return PassUsageOut(id=str(u.id), pass_id=str(u.pass_id), location=u.location, scanned_at=u.scanned_at)


@router.get("", response_model=PassesListOut)
def active_passes(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    now = datetime.utcnow()
    rows = store.list_active_passes(db, user.id, now=now)
    if not rows:
        raise NotFoundError("No active passes found")
    return PassesListOut(
        passes=[
            PassOut(
                id=str(p.id),
                route_id=str(p.route_id),
                fare=p.fare,
                purchase_date=p.purchase_date,
                expiry_date=p.expiry_date,
                is_valid=is_pass_valid(p, now),
            )
            for p in rows
        ]
    )


@router.post("/usage", response_model=PassUsageOut, status_code=201)
def record_usage(
    payload: PassUsageIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    usage = store.record_pass_usage(
        db,
        user_id=user.id,
        pass_id=parse_uuid(payload.pass_id, "pass_id"),
        location=payload.location,
    )
    db.commit()
    return _to_usage_out(usage)


@router.get("/usage", response_model=list[PassUsageOut])
def usage_history(
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    return [_to_usage_out(u) for u in store.list_pass_usage(db, user.id, limit=limit)]
