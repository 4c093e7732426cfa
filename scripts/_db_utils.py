from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///lims.db"


def create_script_engine(db_url: str):
    engine = create_engine(db_url, future=True, pool_pre_ping=True)
    if db_url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _fk_on(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


@contextmanager
def script_session(db_url: str | None = None):
    """One-shot session for maintenance scripts; commits on success, always disposes the engine."""
    engine = create_script_engine(db_url or DEFAULT_DATABASE_URL)
    s: Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
