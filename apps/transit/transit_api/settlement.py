from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .checkout import PurchaseType
from .config import settings
from .database import SessionLocal
from .entitlements import EntitlementStore, RouteRef, get_entitlement_store
from .errors import AppError, NotFoundError, ServiceUnavailable
from .models import Payment, Station
from .wallet_ledger import WalletLedger, get_wallet_ledger


logger = logging.getLogger("transit.settlement")

SETTLEMENTS = Counter(
    "transit_settlements_total",
    "Settlement attempts by outcome",
    ["purchase_type", "result"],
)

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
REJECTED = "rejected"
FAILED = "failed"
EXPIRED = "expired"


@dataclass(frozen=True)
class SettlementOutcome:
    status: str
    payment_id: str
    purchase_type: str
    entitlement_id: str | None = None
    detail: str | None = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "payment_id": self.payment_id,
            "purchase_type": self.purchase_type,
            "entitlement_id": self.entitlement_id,
            "detail": self.detail,
        }


def _as_decimal(value) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class EntitlementIssueError(RuntimeError):
    """An entitlement could not be issued for a payment that passed validation."""


def _settle_wallet_topup(proc: "SettlementProcessor", db: Session, payment: Payment, now: datetime) -> Optional[str]:
    proc.ledger.credit(db, payment.user_id, payment.amount, "Wallet top-up via checkout", related_id=str(payment.id))
    return None


def _settle_pass(proc: "SettlementProcessor", db: Session, payment: Payment, now: datetime) -> Optional[str]:
    existing = proc.store.find_active_pass(db, payment.user_id, payment.route_id, now)
    if existing is not None:
        logger.info("pass already active for user=%s route=%s; payment=%s", payment.user_id, payment.route_id, payment.id)
        return str(existing.id)
    route = RouteRef.resolve(db, payment.route_id)
    p = proc.store.create_pass(db, user_id=payment.user_id, route=route, fare=payment.amount, payment_id=payment.id, now=now)
    return str(p.id)


def _settle_ticket(proc: "SettlementProcessor", db: Session, payment: Payment, now: datetime) -> Optional[str]:
    existing = proc.store.find_ticket_by_payment_ref(db, payment.external_session_id)
    if existing is not None:
        return str(existing.id)
    station = db.get(Station, payment.station_id) if payment.station_id else None
    if station is None:
        raise EntitlementIssueError(f"station {payment.station_id} not found")
    route = RouteRef.resolve(db, payment.route_id or station.route_id)
    snapshot = route.require()
    t = proc.store.create_ticket(
        db,
        user_id=payment.user_id,
        route=route,
        bus_id=payment.bus_id or station.bus_id,
        start_station=snapshot.start,
        end_station=station.name,
        price=payment.amount,
        external_payment_ref=payment.external_session_id,
        now=now,
    )
    return str(t.id)


EntitlementStrategy = Callable[["SettlementProcessor", Session, Payment, datetime], Optional[str]]

STRATEGIES: dict[PurchaseType, EntitlementStrategy] = {
    PurchaseType.WALLET_TOPUP: _settle_wallet_topup,
    PurchaseType.PASS: _settle_pass,
    PurchaseType.TICKET: _settle_ticket,
}

_missing = set(PurchaseType) - set(STRATEGIES)
if _missing:
    raise RuntimeError(f"no settlement strategy for {sorted(p.value for p in _missing)}")


class SettlementProcessor:
    """Turns provider-confirmed payments into wallet credit, tickets or passes, once.

    The pending -> completed flip is a compare-and-set executed in the same
    transaction as the entitlement write, so concurrent or replayed
    deliveries for one session id settle exactly once.
    """

    def __init__(
        self,
        ledger: WalletLedger | None = None,
        store: EntitlementStore | None = None,
        session_factory: sessionmaker = SessionLocal,
        max_attempts: int | None = None,
    ) -> None:
        self.ledger = ledger or get_wallet_ledger()
        self.store = store or get_entitlement_store()
        self.session_factory = session_factory
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.SETTLEMENT_MAX_ATTEMPTS))

    def _outcome(self, payment: Payment, status: str, entitlement_id: str | None = None, detail: str | None = None) -> SettlementOutcome:
        SETTLEMENTS.labels(payment.purchase_type, status).inc()
        return SettlementOutcome(
            status=status,
            payment_id=str(payment.id),
            purchase_type=payment.purchase_type,
            entitlement_id=entitlement_id,
            detail=detail,
        )

    def _terminal_outcome(self, payment: Payment) -> SettlementOutcome:
        if payment.status == "completed":
            return self._outcome(payment, ALREADY_SETTLED)
        return self._outcome(payment, FAILED, detail=payment.failure_reason)

    def _find(self, db: Session, session_id: str) -> Payment:
        payment = db.query(Payment).filter(Payment.external_session_id == session_id).one_or_none()
        if payment is None:
            raise NotFoundError("Payment not found", details={"session_id": session_id})
        return payment

    def _fail(self, db: Session, payment: Payment, reason: str) -> bool:
        res = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == "pending")
            .values(status="failed", failure_reason=reason[:256], settled_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        return res.rowcount == 1

    def settle(self, db: Session, session_id: str, amount_paid: int | Decimal, now: datetime | None = None) -> SettlementOutcome:
        now = now or datetime.utcnow()
        payment = self._find(db, session_id)
        if payment.status != "pending":
            return self._terminal_outcome(payment)

        if _as_decimal(amount_paid) != Decimal(payment.amount):
            if self._fail(db, payment, f"amount_mismatch: expected {payment.amount}, paid {amount_paid}"):
                logger.warning("settlement rejected payment=%s expected=%s paid=%s", payment.id, payment.amount, amount_paid)
                return self._outcome(payment, REJECTED, detail="amount_mismatch")
            return self._terminal_outcome(payment)

        purchase_type = PurchaseType(payment.purchase_type)
        res = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == "pending")
            .values(status="completed", amount_paid=payment.amount, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        if res.rowcount != 1:
            # Another delivery settled (or failed) this payment first
            return self._terminal_outcome(payment)

        try:
            entitlement_id = STRATEGIES[purchase_type](self, db, payment, now)
        except AppError as exc:
            raise EntitlementIssueError(exc.message) from exc
        db.flush()
        logger.info("settled payment=%s type=%s entitlement=%s", payment.id, purchase_type.value, entitlement_id)
        return self._outcome(payment, SETTLED, entitlement_id=entitlement_id)

    def expire(self, db: Session, session_id: str) -> SettlementOutcome:
        payment = self._find(db, session_id)
        if payment.status == "pending" and self._fail(db, payment, "session_expired"):
            return self._outcome(payment, EXPIRED)
        return self._terminal_outcome(payment)

    def record_failure(self, session_id: str, exc: Exception) -> None:
        """Best-effort bookkeeping in its own transaction after a failed attempt."""
        try:
            with self.session_factory() as db:
                payment = db.query(Payment).filter(Payment.external_session_id == session_id).one_or_none()
                if payment is None or payment.status != "pending":
                    return
                attempts = int(payment.settlement_attempts or 0) + 1
                values = {"settlement_attempts": attempts, "failure_reason": f"{type(exc).__name__}: {exc}"[:256]}
                if attempts >= self.max_attempts:
                    values["status"] = "failed"
                    values["settled_at"] = datetime.utcnow()
                db.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status == "pending")
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if attempts >= self.max_attempts:
                    logger.error("payment %s marked failed after %d settlement attempts", payment.id, attempts)
        except Exception:
            logger.exception("could not record settlement failure for session %s", session_id)

    def process_completed(self, session_id: str, amount_paid: int | Decimal) -> SettlementOutcome:
        """Settle in a dedicated transaction; unexpected errors become a retryable 5xx."""
        db = self.session_factory()
        try:
            outcome = self.settle(db, session_id, amount_paid)
            db.commit()
            return outcome
        except NotFoundError:
            db.rollback()
            SETTLEMENTS.labels("unknown", "not_found").inc()
            logger.warning("settlement for unknown session %s", session_id)
            raise
        except Exception as exc:
            db.rollback()
            SETTLEMENTS.labels("unknown", "error").inc()
            logger.exception("settlement failed for session %s", session_id)
            self.record_failure(session_id, exc)
            raise ServiceUnavailable("Settlement failed, retry later", code="settlement_failed", status_code=500) from exc
        finally:
            db.close()

    def process_expired(self, session_id: str) -> SettlementOutcome:
        db = self.session_factory()
        try:
            outcome = self.expire(db, session_id)
            db.commit()
            return outcome
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


_processor: SettlementProcessor | None = None


def get_settlement_processor() -> SettlementProcessor:
    global _processor
    if _processor is None:
        _processor = SettlementProcessor()
    return _processor
