from __future__ import annotations

import logging
import uuid
from datetime import datetime

from prometheus_client import Counter
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InsufficientFunds, ValidationError
from .models import Wallet, WalletEntry


logger = logging.getLogger("transit.wallet")

WALLET_EVENTS = Counter(
    "transit_wallet_events_total",
    "Wallet ledger operations",
    ["operation", "result"],
)


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer", code="invalid_amount", details={"amount": amount})
    return amount


class WalletLedger:
    """Per-user balance with an append-only entry log.

    Balance changes are single conditional UPDATE statements, so two debits
    racing on the same wallet cannot both pass the funds check. The entry row
    is written in the caller's transaction together with the balance change;
    the caller owns commit/rollback.
    """

    def get_wallet(self, db: Session, user_id: uuid.UUID) -> Wallet | None:
        return db.query(Wallet).filter(Wallet.user_id == user_id).one_or_none()

    def get_or_create_wallet(self, db: Session, user_id: uuid.UUID) -> Wallet:
        w = self.get_wallet(db, user_id)
        if w is not None:
            return w
        dialect = db.get_bind().dialect.name
        now = datetime.utcnow()
        values = {"id": uuid.uuid4(), "user_id": user_id, "balance": 0, "created_at": now, "updated_at": now}
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            db.execute(insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
        else:
            try:
                with db.begin_nested():
                    db.add(Wallet(**values))
            except IntegrityError:
                logger.info("wallet for %s created concurrently", user_id)
        return db.query(Wallet).filter(Wallet.user_id == user_id).one()

    def get_balance(self, db: Session, user_id: uuid.UUID) -> int:
        bal = db.execute(select(Wallet.balance).where(Wallet.user_id == user_id)).scalar_one_or_none()
        return int(bal or 0)

    def _append(self, db: Session, wallet: Wallet, direction: str, amount: int, reason: str, related_id: str | None) -> int:
        db.refresh(wallet)
        signed = amount if direction == "credit" else -amount
        db.add(
            WalletEntry(
                wallet_id=wallet.id,
                direction=direction,
                amount=amount,
                amount_signed=signed,
                reason=(reason or direction)[:256],
                related_id=str(related_id) if related_id is not None else None,
                balance_after=wallet.balance,
            )
        )
        db.flush()
        return int(wallet.balance)

    def credit(self, db: Session, user_id: uuid.UUID, amount: int, reason: str, related_id: str | None = None) -> int:
        _check_amount(amount)
        wallet = self.get_or_create_wallet(db, user_id)
        db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + amount, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        balance = self._append(db, wallet, "credit", amount, reason, related_id)
        WALLET_EVENTS.labels("credit", "success").inc()
        logger.info("wallet credit user=%s amount=%s balance=%s related=%s", user_id, amount, balance, related_id)
        return balance

    def debit(self, db: Session, user_id: uuid.UUID, amount: int, reason: str, related_id: str | None = None) -> int:
        _check_amount(amount)
        wallet = self.get_or_create_wallet(db, user_id)
        res = db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            available = self.get_balance(db, user_id)
            WALLET_EVENTS.labels("debit", "insufficient_funds").inc()
            logger.info("wallet debit refused user=%s amount=%s available=%s", user_id, amount, available)
            raise InsufficientFunds(required=amount, available=available)
        balance = self._append(db, wallet, "debit", amount, reason, related_id)
        WALLET_EVENTS.labels("debit", "success").inc()
        logger.info("wallet debit user=%s amount=%s balance=%s related=%s", user_id, amount, balance, related_id)
        return balance

    def list_entries(self, db: Session, user_id: uuid.UUID, limit: int = 50) -> list[WalletEntry]:
        wallet = self.get_wallet(db, user_id)
        if wallet is None:
            return []
        return (
            db.query(WalletEntry)
            .filter(WalletEntry.wallet_id == wallet.id)
            .order_by(WalletEntry.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
            .all()
        )

    def verify_balance(self, db: Session, user_id: uuid.UUID) -> bool:
        """True when the stored balance equals the signed sum of its entries."""
        wallet = self.get_wallet(db, user_id)
        if wallet is None:
            return True
        total = db.execute(
            select(func.coalesce(func.sum(WalletEntry.amount_signed), 0)).where(WalletEntry.wallet_id == wallet.id)
        ).scalar_one()
        db.refresh(wallet)
        return int(total) == int(wallet.balance)


_ledger: WalletLedger | None = None


def get_wallet_ledger() -> WalletLedger:
    global _ledger
    if _ledger is None:
        _ledger = WalletLedger()
    return _ledger
