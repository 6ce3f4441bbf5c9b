from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # Handlers run on the threadpool; wait on the file lock instead of failing fast
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(settings.DB_URL, pool_pre_ping=True, future=True, connect_args=_connect_args(settings.DB_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
