import os
import sys
import tempfile
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[3]
_SHARED_PATH = _ROOT / "libs" / "transit_shared"
if _SHARED_PATH.exists():
    sys.path.insert(0, str(_SHARED_PATH))
_APP_PATH = Path(__file__).resolve().parents[1]
if str(_APP_PATH) not in sys.path:
    sys.path.insert(0, str(_APP_PATH))


# Ensure sensible defaults for tests before app import
_DB_DIR = tempfile.mkdtemp(prefix="transit-tests-")
os.environ["ENV"] = "dev"
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/transit.db"
os.environ["AUTO_CREATE_SCHEMA"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CHECKOUT_PROVIDER"] = "mock"
os.environ["DISTANCE_MATRIX_API_KEY"] = ""
os.environ["MAPS_BACKOFF_SECS"] = "0"
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")


@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient
    from transit_api.main import app

    return TestClient(app)


@pytest.fixture()
def db():
    from transit_api.database import SessionLocal, engine
    from transit_api.models import Base

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def rider():
    from helpers import make_rider

    return make_rider()


@pytest.fixture()
def network(client):
    from helpers import seed_network

    return seed_network(client)
