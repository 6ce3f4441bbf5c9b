from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, NotFoundError, NotValidForUse
from .models import Pass, PassUsage, Route, Ticket


logger = logging.getLogger("transit.entitlements")

TICKET_ACTIVE = "active"
TICKET_USED = "used"
TICKET_EXPIRED = "expired"
TICKET_CANCELLED = "cancelled"


@dataclass(frozen=True)
class RouteSnapshot:
    id: uuid.UUID
    start: str
    end: str


@dataclass(frozen=True)
class RouteRef:
    """A route id plus, once looked up, the route's details."""

    id: uuid.UUID
    resolved: RouteSnapshot | None = None

    @classmethod
    def resolve(cls, db: Session, route_id: uuid.UUID) -> "RouteRef":
        row = db.get(Route, route_id)
        if row is None:
            return cls(id=route_id)
        return cls(id=route_id, resolved=RouteSnapshot(id=row.id, start=row.start, end=row.end))

    def require(self) -> RouteSnapshot:
        if self.resolved is None:
            raise NotFoundError("Route not found", details={"route_id": str(self.id)})
        return self.resolved


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's length."""
    idx = moment.month - 1 + months
    year = moment.year + idx // 12
    month = idx % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def ticket_invalid_reason(ticket: Ticket, now: datetime | None = None) -> str | None:
    now = now or datetime.utcnow()
    if ticket.payment_status != "paid":
        return "unpaid"
    if ticket.status == TICKET_CANCELLED:
        return "cancelled"
    if ticket.status == TICKET_USED:
        return "used"
    if ticket.status == TICKET_EXPIRED or now > ticket.expiry_date:
        return "expired"
    if ticket.usage_count >= ticket.max_usage:
        return "usage_exhausted"
    if ticket.status != TICKET_ACTIVE:
        return "inactive"
    return None


def is_ticket_valid(ticket: Ticket, now: datetime | None = None) -> bool:
    return ticket_invalid_reason(ticket, now) is None


def effective_ticket_status(ticket: Ticket, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    if ticket.status == TICKET_ACTIVE and now > ticket.expiry_date:
        return TICKET_EXPIRED
    return ticket.status


def is_pass_valid(p: Pass, now: datetime | None = None) -> bool:
    return p.expiry_date > (now or datetime.utcnow())


class EntitlementStore:
    def __init__(self, ticket_ttl_hours: int | None = None, ticket_max_usage: int | None = None, pass_months: int | None = None):
        self.ticket_ttl = timedelta(hours=ticket_ttl_hours if ticket_ttl_hours is not None else settings.TICKET_TTL_HOURS)
        self.ticket_max_usage = max(1, int(ticket_max_usage if ticket_max_usage is not None else settings.TICKET_MAX_USAGE))
        self.pass_months = max(1, int(pass_months if pass_months is not None else settings.PASS_VALIDITY_MONTHS))

    # Tickets

    def create_ticket(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        route: RouteRef,
        bus_id: uuid.UUID,
        start_station: str,
        end_station: str,
        price: int,
        external_payment_ref: str,
        now: datetime | None = None,
    ) -> Ticket:
        now = now or datetime.utcnow()
        route.require()
        t = Ticket(
            user_id=user_id,
            route_id=route.id,
            bus_id=bus_id,
            start_station=start_station,
            end_station=end_station,
            price=price,
            external_payment_ref=external_payment_ref,
            status=TICKET_ACTIVE,
            usage_count=0,
            max_usage=self.ticket_max_usage,
            expiry_date=now + self.ticket_ttl,
            payment_status="paid",
            created_at=now,
        )
        db.add(t)
        db.flush()
        logger.info("ticket issued id=%s user=%s ref=%s", t.id, user_id, external_payment_ref)
        return t

    def find_ticket_by_payment_ref(self, db: Session, external_payment_ref: str) -> Ticket | None:
        return db.query(Ticket).filter(Ticket.external_payment_ref == external_payment_ref).one_or_none()

    def get_ticket(self, db: Session, ticket_id: uuid.UUID, user_id: uuid.UUID) -> Ticket:
        t = db.get(Ticket, ticket_id)
        if t is None or t.user_id != user_id:
            raise NotFoundError("Ticket not found")
        return t

    def list_tickets(self, db: Session, user_id: uuid.UUID, limit: int = 100) -> list[Ticket]:
        return (
            db.query(Ticket)
            .filter(Ticket.user_id == user_id)
            .order_by(Ticket.created_at.desc())
            .limit(limit)
            .all()
        )

    def use_ticket(self, db: Session, ticket_id: uuid.UUID, user_id: uuid.UUID, now: datetime | None = None) -> Ticket:
        now = now or datetime.utcnow()
        res = db.execute(
            update(Ticket)
            .where(
                Ticket.id == ticket_id,
                Ticket.user_id == user_id,
                Ticket.status == TICKET_ACTIVE,
                Ticket.expiry_date >= now,
                Ticket.usage_count < Ticket.max_usage,
                Ticket.payment_status == "paid",
            )
            .values(
                usage_count=Ticket.usage_count + 1,
                last_used=now,
                status=case((Ticket.usage_count + 1 >= Ticket.max_usage, TICKET_USED), else_=Ticket.status),
            )
            .execution_options(synchronize_session=False)
        )
        t = self.get_ticket(db, ticket_id, user_id)
        db.refresh(t)
        if res.rowcount != 1:
            reason = ticket_invalid_reason(t, now) or "unknown"
            logger.info("ticket use refused id=%s reason=%s", ticket_id, reason)
            raise NotValidForUse(reason)
        return t

    def cancel_ticket(self, db: Session, ticket_id: uuid.UUID, user_id: uuid.UUID) -> Ticket:
        res = db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.user_id == user_id, Ticket.status == TICKET_ACTIVE)
            .values(status=TICKET_CANCELLED)
            .execution_options(synchronize_session=False)
        )
        t = self.get_ticket(db, ticket_id, user_id)
        db.refresh(t)
        if res.rowcount != 1:
            raise ConflictError("Ticket is not active", code="ticket_not_active", details={"status": t.status})
        return t

    def sweep_expired_tickets(self, db: Session, now: datetime | None = None) -> int:
        now = now or datetime.utcnow()
        res = db.execute(
            update(Ticket)
            .where(Ticket.status == TICKET_ACTIVE, Ticket.expiry_date < now)
            .values(status=TICKET_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        count = int(res.rowcount or 0)
        if count:
            logger.info("expired %d tickets", count)
        return count

    # Passes

    def create_pass(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        route: RouteRef,
        fare: int,
        payment_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> Pass:
        now = now or datetime.utcnow()
        route.require()
        p = Pass(
            user_id=user_id,
            route_id=route.id,
            fare=fare,
            payment_id=payment_id,
            purchase_date=now,
            expiry_date=add_months(now, self.pass_months),
        )
        db.add(p)
        db.flush()
        logger.info("pass issued id=%s user=%s route=%s", p.id, user_id, route.id)
        return p

    def find_active_pass(self, db: Session, user_id: uuid.UUID, route_id: uuid.UUID, now: datetime | None = None) -> Pass | None:
        now = now or datetime.utcnow()
        return (
            db.query(Pass)
            .filter(Pass.user_id == user_id, Pass.route_id == route_id, Pass.expiry_date > now)
            .order_by(Pass.expiry_date.desc())
            .first()
        )

    def list_active_passes(self, db: Session, user_id: uuid.UUID, now: datetime | None = None) -> list[Pass]:
        now = now or datetime.utcnow()
        return (
            db.query(Pass)
            .filter(Pass.user_id == user_id, Pass.expiry_date > now)
            .order_by(Pass.expiry_date.desc())
            .all()
        )

    def record_pass_usage(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        pass_id: uuid.UUID,
        location: str | None = None,
        now: datetime | None = None,
    ) -> PassUsage:
        now = now or datetime.utcnow()
        p = db.get(Pass, pass_id)
        if p is None or p.user_id != user_id:
            raise NotFoundError("Pass not found")
        if not is_pass_valid(p, now):
            raise NotValidForUse("expired", subject="Pass")
        usage = PassUsage(pass_id=p.id, user_id=user_id, location=location, scanned_at=now)
        db.add(usage)
        db.flush()
        return usage

    def list_pass_usage(self, db: Session, user_id: uuid.UUID, limit: int = 100) -> list[PassUsage]:
        return (
            db.query(PassUsage)
            .filter(PassUsage.user_id == user_id)
            .order_by(PassUsage.scanned_at.desc())
            .limit(limit)
            .all()
        )


_store: EntitlementStore | None = None


def get_entitlement_store() -> EntitlementStore:
    global _store
    if _store is None:
        _store = EntitlementStore()
    return _store
