from __future__ import annotations

import enum
import hashlib
import logging
import random
import string
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import DuplicateIdempotencyKey, NotFoundError, ProviderError, ServiceUnavailable, ValidationError
from .models import Bus, Payment, Route, Station, User
from .provider_cb import CircuitBreaker


logger = logging.getLogger("transit.checkout")

CHECKOUT_SESSIONS = Counter(
    "transit_checkout_sessions_total",
    "Checkout session requests",
    ["purchase_type", "result"],  # result: created|reused|invalid|provider_error|conflict
)


class PurchaseType(str, enum.Enum):
    WALLET_TOPUP = "wallet_topup"
    PASS = "pass"
    TICKET = "ticket"

    @classmethod
    def parse(cls, value: str) -> "PurchaseType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValidationError(
                "Unknown purchase type",
                code="invalid_purchase_type",
                details={"allowed": [p.value for p in cls]},
            ) from None


@dataclass(frozen=True)
class CheckoutContext:
    route_id: uuid.UUID | None = None
    station_id: uuid.UUID | None = None
    bus_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ProviderSession:
    id: str
    url: str


@dataclass(frozen=True)
class CheckoutResult:
    payment: Payment
    reused: bool

    @property
    def payment_id(self) -> uuid.UUID:
        return self.payment.id

    @property
    def checkout_url(self) -> str:
        return self.payment.checkout_url


class CheckoutProvider(Protocol):
    def create_session(
        self,
        *,
        amount: int,
        purchase_type: PurchaseType,
        metadata: dict,
        idempotency_key: str,
    ) -> ProviderSession:
        ...


class MockCheckoutProvider:
    """Dev/test provider. Replays the same session for a repeated idempotency key."""

    def __init__(self) -> None:
        self._sessions: dict[str, ProviderSession] = {}
        self._lock = threading.Lock()
        self.calls = 0

    def create_session(self, *, amount: int, purchase_type: PurchaseType, metadata: dict, idempotency_key: str) -> ProviderSession:
        with self._lock:
            self.calls += 1
            existing = self._sessions.get(idempotency_key)
            if existing is not None:
                return existing
            rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
            sid = f"cs_test_{int(time.time() * 1000)}_{rand}"
            sess = ProviderSession(id=sid, url=f"https://checkout.stripe.com/pay/{sid}")
            self._sessions[idempotency_key] = sess
            return sess


class HttpCheckoutProvider:
    """Hosted-checkout API client. The idempotency key travels in the ``Idempotency-Key`` header."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.base_url = (base_url or settings.CHECKOUT_PROVIDER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.CHECKOUT_PROVIDER_API_KEY
        self.timeout = float(timeout if timeout is not None else settings.CHECKOUT_TIMEOUT_SECS)
        self.breaker = breaker or CircuitBreaker(
            "create_session",
            settings.CHECKOUT_CB_THRESHOLD,
            settings.CHECKOUT_CB_COOLDOWN_SECS,
            enabled=settings.CHECKOUT_CB_ENABLED,
        )

    def create_session(self, *, amount: int, purchase_type: PurchaseType, metadata: dict, idempotency_key: str) -> ProviderSession:
        if not self.breaker.allowed():
            raise ProviderError("Checkout provider temporarily unavailable", code="provider_circuit_open")
        body = {
            "mode": "payment",
            "amount": amount,
            "currency": settings.CHECKOUT_CURRENCY,
            "success_url": settings.CHECKOUT_SUCCESS_URL,
            "cancel_url": settings.CHECKOUT_CANCEL_URL,
            "metadata": {"purchase_type": purchase_type.value, **metadata},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(f"{self.base_url}/v1/checkout/sessions", json=body, headers=headers)
        except httpx.HTTPError as exc:
            self.breaker.record(False)
            logger.warning("checkout provider unreachable: %s", exc)
            raise ProviderError("Checkout provider unreachable") from exc
        if r.status_code == 409:
            # Provider saw this key with different parameters; a later retry may succeed
            self.breaker.record(True)
            raise DuplicateIdempotencyKey("Checkout request collided with an in-flight request", details={"idempotency_key": idempotency_key})
        if r.status_code >= 400:
            self.breaker.record(False)
            logger.warning("checkout provider returned %s", r.status_code)
            raise ProviderError("Checkout provider error", details={"provider_status": r.status_code})
        try:
            data = r.json() or {}
            sess = ProviderSession(id=str(data["id"]), url=str(data["url"]))
        except (ValueError, KeyError, TypeError) as exc:
            self.breaker.record(False)
            raise ProviderError("Malformed checkout provider response") from exc
        self.breaker.record(True)
        return sess


def resolve_idempotency_key(header_value: str | None) -> str | None:
    """Normalize a caller-supplied Idempotency-Key; max length 64."""
    key = (header_value or "").strip()
    if not key:
        return None
    if len(key) > 64:
        raise ValidationError("Idempotency key too long", code="invalid_idempotency_key")
    return key


def _match(column, value):
    return column.is_(None) if value is None else column == value


class PaymentSessionCoordinator:
    def __init__(self, provider: CheckoutProvider, dedup_window_secs: int | None = None) -> None:
        self.provider = provider
        self.dedup_window = timedelta(
            seconds=max(1, int(dedup_window_secs if dedup_window_secs is not None else settings.CHECKOUT_DEDUP_WINDOW_SECS))
        )

    def validate(self, db: Session, purchase_type: PurchaseType, amount: int, ctx: CheckoutContext) -> CheckoutContext:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Missing or invalid required field: amount", code="invalid_amount")
        if purchase_type is PurchaseType.TICKET:
            if ctx.station_id is None or ctx.bus_id is None:
                raise ValidationError("Missing required fields for ticket: station_id and bus_id", code="missing_fields")
            station = db.get(Station, ctx.station_id)
            if station is None:
                raise NotFoundError("Station not found", details={"station_id": str(ctx.station_id)})
            bus = db.get(Bus, ctx.bus_id)
            if bus is None:
                raise NotFoundError("Bus not found", details={"bus_id": str(ctx.bus_id)})
            if bus.route_id != station.route_id:
                raise ValidationError("Bus does not serve the station's route", code="bus_not_on_route")
            return CheckoutContext(route_id=station.route_id, station_id=station.id, bus_id=bus.id)
        if purchase_type is PurchaseType.PASS:
            if ctx.route_id is None:
                raise ValidationError("Missing required field for pass: route_id", code="missing_fields")
            if db.get(Route, ctx.route_id) is None:
                raise NotFoundError("Route not found", details={"route_id": str(ctx.route_id)})
            return CheckoutContext(route_id=ctx.route_id)
        return CheckoutContext()

    def find_recent_pending(
        self, db: Session, user_id: uuid.UUID, purchase_type: PurchaseType, amount: int, ctx: CheckoutContext, now: datetime
    ) -> Payment | None:
        return (
            db.query(Payment)
            .filter(
                Payment.user_id == user_id,
                Payment.purchase_type == purchase_type.value,
                Payment.status == "pending",
                Payment.amount == amount,
                Payment.created_at >= now - self.dedup_window,
                _match(Payment.route_id, ctx.route_id),
                _match(Payment.station_id, ctx.station_id),
                _match(Payment.bus_id, ctx.bus_id),
            )
            .order_by(Payment.created_at.desc())
            .first()
        )

    def derive_idempotency_key(
        self, db: Session, user_id: uuid.UUID, purchase_type: PurchaseType, amount: int, ctx: CheckoutContext, now: datetime
    ) -> str:
        """Same intent within one dedup bucket maps to the same key.

        The count of already-finished payments for the intent, over all time,
        is part of the key. It only grows, so a purchase repeated after
        settlement never maps back onto an earlier session.
        """
        window = self.dedup_window.total_seconds()
        bucket = int(now.timestamp() // window)
        finished = (
            db.query(func.count(Payment.id))
            .filter(
                Payment.user_id == user_id,
                Payment.purchase_type == purchase_type.value,
                Payment.amount == amount,
                Payment.status != "pending",
                _match(Payment.route_id, ctx.route_id),
                _match(Payment.station_id, ctx.station_id),
                _match(Payment.bus_id, ctx.bus_id),
            )
            .scalar()
            or 0
        )
        raw = f"{user_id}|{purchase_type.value}|{amount}|{ctx.route_id}|{ctx.station_id}|{ctx.bus_id}|{bucket}|{finished}"
        return "chk_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:48]

    def create_session(
        self,
        db: Session,
        user: User,
        purchase_type: PurchaseType,
        amount: int,
        ctx: CheckoutContext,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> CheckoutResult:
        now = now or datetime.utcnow()
        try:
            ctx = self.validate(db, purchase_type, amount, ctx)
        except (ValidationError, NotFoundError):
            CHECKOUT_SESSIONS.labels(purchase_type.value, "invalid").inc()
            raise

        if idempotency_key:
            prior = (
                db.query(Payment)
                .filter(Payment.user_id == user.id, Payment.idempotency_key == idempotency_key)
                .order_by(Payment.created_at.desc())
                .first()
            )
            if prior is not None:
                if prior.purchase_type != purchase_type.value or prior.amount != amount:
                    CHECKOUT_SESSIONS.labels(purchase_type.value, "conflict").inc()
                    raise DuplicateIdempotencyKey("Idempotency key reused for a different checkout", details={"payment_id": str(prior.id)})
                CHECKOUT_SESSIONS.labels(purchase_type.value, "reused").inc()
                return CheckoutResult(payment=prior, reused=True)

        recent = self.find_recent_pending(db, user.id, purchase_type, amount, ctx, now)
        if recent is not None:
            CHECKOUT_SESSIONS.labels(purchase_type.value, "reused").inc()
            logger.info("checkout dedup user=%s type=%s payment=%s", user.id, purchase_type.value, recent.id)
            return CheckoutResult(payment=recent, reused=True)

        key = idempotency_key or self.derive_idempotency_key(db, user.id, purchase_type, amount, ctx, now)
        metadata = {
            "user_id": str(user.id),
            "route_id": str(ctx.route_id) if ctx.route_id else None,
            "station_id": str(ctx.station_id) if ctx.station_id else None,
            "bus_id": str(ctx.bus_id) if ctx.bus_id else None,
        }
        try:
            session = self.provider.create_session(amount=amount, purchase_type=purchase_type, metadata=metadata, idempotency_key=key)
        except DuplicateIdempotencyKey:
            CHECKOUT_SESSIONS.labels(purchase_type.value, "conflict").inc()
            raise
        except ProviderError:
            CHECKOUT_SESSIONS.labels(purchase_type.value, "provider_error").inc()
            raise

        payment = Payment(
            user_id=user.id,
            purchase_type=purchase_type.value,
            amount=amount,
            external_session_id=session.id,
            checkout_url=session.url,
            idempotency_key=key,
            status="pending",
            route_id=ctx.route_id,
            station_id=ctx.station_id,
            bus_id=ctx.bus_id,
            created_at=now,
        )
        try:
            with db.begin_nested():
                db.add(payment)
        except IntegrityError:
            existing = db.query(Payment).filter(Payment.external_session_id == session.id).one_or_none()
            if existing is not None and existing.user_id == user.id and existing.status == "pending":
                CHECKOUT_SESSIONS.labels(purchase_type.value, "reused").inc()
                return CheckoutResult(payment=existing, reused=True)
            CHECKOUT_SESSIONS.labels(purchase_type.value, "conflict").inc()
            raise DuplicateIdempotencyKey("Checkout session already bound to another payment")
        except SQLAlchemyError:
            logger.exception("orphaned checkout session %s (user=%s type=%s amount=%s)", session.id, user.id, purchase_type.value, amount)
            CHECKOUT_SESSIONS.labels(purchase_type.value, "persist_error").inc()
            raise ServiceUnavailable("Could not record checkout session, please retry", code="checkout_persist_failed")
        CHECKOUT_SESSIONS.labels(purchase_type.value, "created").inc()
        logger.info("checkout created user=%s type=%s payment=%s session=%s", user.id, purchase_type.value, payment.id, session.id)
        return CheckoutResult(payment=payment, reused=False)


_provider: CheckoutProvider | None = None


def get_checkout_provider() -> CheckoutProvider:
    global _provider
    if _provider is None:
        if settings.CHECKOUT_PROVIDER.lower() == "http":
            _provider = HttpCheckoutProvider()
        else:
            _provider = MockCheckoutProvider()
    return _provider


def get_checkout_coordinator() -> PaymentSessionCoordinator:
    return PaymentSessionCoordinator(get_checkout_provider())
