from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Tables the API cannot serve without. Checked once at startup.
REQUIRED_TABLES = (
    "users",
    "audit_events",
    "system_logs",
    "subscription_plans",
    "subscriptions",
    "payments",
    "payment_events",
    "feature_flags",
    "messages",
    "message_reads",
)


def build_engine(db_url: str) -> Engine:
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update({"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30})
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        # SQLite ignores ON DELETE CASCADE unless asked per connection.
        @event.listens_for(engine, "connect")
        def _sqlite_fk_on(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def db_session() -> Session:
    """Request-scoped session, closed by teardown_db_session."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        s = current_app.extensions["sqlalchemy_sessionmaker"]()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        return
    try:
        s.close()
    except Exception:
        current_app.logger.warning("Failed to close request DB session", exc_info=True)
    g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """Non-request helper for scripts and tests: commits on success, rolls back on error."""
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def ping(s: Session) -> str | None:
    """Returns None when the DB answers, otherwise the error text."""
    try:
        s.execute(text("SELECT 1"))
        return None
    except Exception as e:
        return str(e)


def missing_tables(engine: Engine) -> list[str]:
    insp = sa_inspect(engine)
    return [t for t in REQUIRED_TABLES if not insp.has_table(t)]
