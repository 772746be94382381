# src/infrastructure/db/session.py

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from src.infrastructure.settings import DATABASE_URL, DB_TIMEOUT_SECONDS


def _engine_options(url: str) -> dict:
    options = {
        "echo": False,
        "future": True,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        # Bounded connect and statement time so a stalled datastore fails fast.
        timeout_ms = int(DB_TIMEOUT_SECONDS * 1000)
        options["pool_timeout"] = DB_TIMEOUT_SECONDS
        options["connect_args"] = {
            "connect_timeout": int(DB_TIMEOUT_SECONDS),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    elif url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    return options


engine: Engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))


class Base(DeclarativeBase):
    pass


# Transitions flush explicitly; nothing is written behind the caller's back.
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)


@contextmanager
def get_db_session() -> Iterator[Session]:
    """One unit of work for scripts: commit on success, roll back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
