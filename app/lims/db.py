from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator
from typing import TypeVar

from flask import Flask, abort, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Pool settings for managed Postgres.
_POSTGRES_POOL = {"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}


def engine_options(db_url: str) -> dict[str, object]:
    opts: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update(_POSTGRES_POOL)
    return opts


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_options(db_url))
    if db_url.startswith("sqlite"):
        _enable_sqlite_foreign_keys(engine)
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine, class_=Session, autoflush=False, expire_on_commit=False
    )


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def db_session(app: Flask | None = None) -> Session:
    """Request-scoped session, created on first use and closed at teardown."""
    s = g.get("db_session")
    if s is not None:
        return s
    if app is None:
        from flask import current_app

        app = current_app
    g.db_session = app.extensions["sqlalchemy_sessionmaker"]()
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    try:
        s.close()
    except Exception:
        logger.exception("Failed to close request session")


def get_scoped(s: Session, model: type[T], obj_id: int | None, lab_id: int, *, label: str | None = None) -> T:
    """
    Fetch a tenant-owned row by primary key. Rows from another lab are treated as missing.
    """
    from app.lims.errors import NotFoundError

    obj = s.get(model, obj_id) if obj_id is not None else None
    if obj is None or getattr(obj, "lab_id", None) != lab_id:
        raise NotFoundError(f"{label or model.__name__} not found")
    return obj


def get_scoped_or_404(s: Session, model: type[T], obj_id: int, lab_id: int) -> T:
    obj = s.get(model, obj_id)
    if obj is None or getattr(obj, "lab_id", None) != lab_id:
        abort(404)
    return obj


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
