import uuid
from datetime import datetime, timedelta
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid() -> uuid.UUID:
    return uuid.uuid4()


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    concession_type = Column(String(16), nullable=False, default="general")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    wallet = relationship("Wallet", uselist=False, back_populates="user")


# Network catalogue: weak references for entitlements, lookup only
class Route(Base):
    __tablename__ = "routes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    start = Column(String(128), nullable=False)
    end = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Bus(Base):
    __tablename__ = "buses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(64), nullable=False, unique=True)
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=False, index=True)
    capacity = Column(Integer, nullable=False, default=40)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Station(Base):
    __tablename__ = "stations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=False, index=True)
    bus_id = Column(UUID(as_uuid=True), ForeignKey("buses.id"), nullable=False)
    name = Column(String(128), nullable=False)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    fare = Column(Integer, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("external_session_id", name="uq_payments_external_session"),
        Index("ix_payments_user_type_status", "user_id", "purchase_type", "status"),
        Index("ix_payments_created_at", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    purchase_type = Column(String(16), nullable=False)  # wallet_topup|pass|ticket
    amount = Column(Integer, nullable=False)
    external_session_id = Column(String(128), nullable=False)
    checkout_url = Column(String(512), nullable=False)
    idempotency_key = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending|completed|failed
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=True)
    station_id = Column(UUID(as_uuid=True), ForeignKey("stations.id"), nullable=True)
    bus_id = Column(UUID(as_uuid=True), ForeignKey("buses.id"), nullable=True)
    amount_paid = Column(Integer, nullable=True)
    failure_reason = Column(String(256), nullable=True)
    settlement_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    settled_at = Column(DateTime, nullable=True)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_nonnegative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)
    balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="wallet")
    entries = relationship("WalletEntry", back_populates="wallet")


class WalletEntry(Base):
    __tablename__ = "wallet_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_entries_amount_positive"),
        Index("ix_wallet_entries_wallet_created", "wallet_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    wallet_id = Column(UUID(as_uuid=True), ForeignKey("wallets.id"), nullable=False)
    direction = Column(String(8), nullable=False)  # credit|debit
    amount = Column(Integer, nullable=False)
    amount_signed = Column(Integer, nullable=False)
    reason = Column(String(256), nullable=False)
    related_id = Column(String(64), nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    wallet = relationship("Wallet", back_populates="entries")


def _ticket_expiry() -> datetime:
    return datetime.utcnow() + timedelta(hours=12)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("external_payment_ref", name="uq_tickets_external_payment_ref"),
        CheckConstraint("usage_count <= max_usage", name="ck_tickets_usage_bounded"),
        Index("ix_tickets_user_status", "user_id", "status"),
        Index("ix_tickets_expiry", "expiry_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=False)
    bus_id = Column(UUID(as_uuid=True), ForeignKey("buses.id"), nullable=False)
    start_station = Column(String(128), nullable=False)
    end_station = Column(String(128), nullable=False)
    price = Column(Integer, nullable=False)
    external_payment_ref = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default="active")  # active|used|expired|cancelled
    usage_count = Column(Integer, nullable=False, default=0)
    max_usage = Column(Integer, nullable=False, default=1)
    expiry_date = Column(DateTime, nullable=False, default=_ticket_expiry)
    last_used = Column(DateTime, nullable=True)
    payment_status = Column(String(16), nullable=False, default="paid")  # pending|paid|failed
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Pass(Base):
    __tablename__ = "passes"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_passes_payment"),
        Index("ix_passes_user_route_expiry", "user_id", "route_id", "expiry_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=False)
    fare = Column(Integer, nullable=False)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True)
    purchase_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    expiry_date = Column(DateTime, nullable=False)


class PassUsage(Base):
    __tablename__ = "pass_usages"
    __table_args__ = (
        Index("ix_pass_usages_user_scanned", "user_id", "scanned_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    pass_id = Column(UUID(as_uuid=True), ForeignKey("passes.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    location = Column(String(256), nullable=True)
    scanned_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index(
            "uq_rides_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_rides_user_created", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    kind = Column(String(8), nullable=False, default="ride")  # ride|trip
    route_id = Column(UUID(as_uuid=True), ForeignKey("routes.id"), nullable=True)
    bus_id = Column(UUID(as_uuid=True), ForeignKey("buses.id"), nullable=True)
    start_station = Column(String(128), nullable=True)
    end_station = Column(String(128), nullable=True)
    start_lat = Column(Float, nullable=False)
    start_lng = Column(Float, nullable=False)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_lat = Column(Float, nullable=True)
    end_lng = Column(Float, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="active")  # active|completed|cancelled
    distance_km = Column(Float, nullable=True)
    duration_min = Column(Integer, nullable=True)
    calculation_method = Column(String(16), nullable=True)  # external_api|haversine
    concession_type = Column(String(16), nullable=True)
    original_fare = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    discount_percentage = Column(Integer, nullable=True)
    final_fare = Column(Integer, nullable=True)
    payment_status = Column(String(16), nullable=False, default="pending")  # pending|paid|failed
    payment_message = Column(String(256), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
