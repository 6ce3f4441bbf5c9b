from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..entitlements import EntitlementStore, effective_ticket_status, get_entitlement_store, is_ticket_valid
from ..models import Ticket, User
from ..schemas import TicketOut, TicketsListOut
from ..utils import parse_uuid


router = APIRouter(prefix="/tickets", tags=["tickets"])


def _to_ticket_out(t: Ticket, now: datetime | None = None) -> TicketOut:
    now = now or datetime.utcnow()
    return TicketOut(
        id=str(t.id),
        route_id=str(t.route_id),
        bus_id=str(t.bus_id),
        start_station=t.start_station,
        end_station=t.end_station,
        price=t.price,
        status=effective_ticket_status(t, now),
        usage_count=t.usage_count,
        max_usage=t.max_usage,
        expiry_date=t.expiry_date,
        last_used=t.last_used,
        payment_status=t.payment_status,
        is_valid=is_ticket_valid(t, now),
    )


@router.get("", response_model=TicketsListOut)
def list_tickets(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    now = datetime.utcnow()
    return TicketsListOut(tickets=[_to_ticket_out(t, now) for t in store.list_tickets(db, user.id)])


@router.get("/{ticket_id}", response_model=TicketOut)
def get_ticket(
    ticket_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    return _to_ticket_out(store.get_ticket(db, parse_uuid(ticket_id, "ticket_id"), user.id))


@router.post("/{ticket_id}/use", response_model=TicketOut)
def use_ticket(
    ticket_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    t = store.use_ticket(db, parse_uuid(ticket_id, "ticket_id"), user.id)
    db.commit()
    return _to_ticket_out(t)


@router.post("/{ticket_id}/cancel", response_model=TicketOut)
def cancel_ticket(
    ticket_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    t = store.cancel_ticket(db, parse_uuid(ticket_id, "ticket_id"), user.id)
    db.commit()
    return _to_ticket_out(t)
