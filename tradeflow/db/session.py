"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
from contextlib import contextmanager

from tradeflow.core.config import settings


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let pysqlite honour SAVEPOINT and explicit BEGIN.

    The driver otherwise issues its own BEGIN lazily and breaks nested
    transactions (see the SQLAlchemy pysqlite dialect notes).
    """
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine, applying pool settings only where the backend supports them."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        **kwargs,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Verify the schema on startup.

    Schema is managed by Alembic migrations. In DEBUG mode missing tables
    are created directly so a local sqlite database works out of the box.
    """
    from sqlalchemy import inspect
    from tradeflow.core.logging import get_logger
    from tradeflow.db import models  # noqa

    logger = get_logger(__name__)

    existing_tables = inspect(engine).get_table_names()
    required_tables = ["rfqs", "quotes", "orders", "invoices", "sequence_counters"]
    missing = [t for t in required_tables if t not in existing_tables]

    if not missing:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")
        return

    if settings.DEBUG:
        logger.warning(f"Missing tables {missing}; DEBUG=true so creating schema directly")
        Base.metadata.create_all(bind=engine)
    else:
        logger.error(f"Missing tables {missing}. Run `alembic upgrade head` before serving traffic.")
