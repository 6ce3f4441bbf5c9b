from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect


ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def test_schema_has_expected_columns(db):
    from transit_api.database import engine

    insp = inspect(engine)
    pcols = {c["name"] for c in insp.get_columns("payments")}
    for name in ("external_session_id", "idempotency_key", "status", "amount_paid", "settlement_attempts"):
        assert name in pcols
    tcols = {c["name"] for c in insp.get_columns("tickets")}
    for name in ("usage_count", "max_usage", "expiry_date", "external_payment_ref", "payment_status"):
        assert name in tcols
    ride_indexes = {ix["name"]: ix for ix in insp.get_indexes("rides")}
    assert ride_indexes["uq_rides_one_active_per_user"]["unique"]


def test_alembic_upgrade_builds_fresh_database(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path}/migrated.db"
    monkeypatch.setenv("DB_URL", url)
    cfg = Config(str(ALEMBIC_INI))
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")

    insp = inspect(create_engine(url))
    for table in ("users", "routes", "payments", "wallets", "wallet_entries", "tickets", "passes", "pass_usages", "rides"):
        assert insp.has_table(table)
