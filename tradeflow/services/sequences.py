"""
Sequence allocator for human-readable reference numbers.

Numbers look like ``QT-2026-0001``. Each (kind, scope, year) has its own
counter row which is claimed with a single UPDATE, so concurrent callers
serialize on the row lock instead of racing on "max + 1".
"""
import random
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tradeflow.core.logging import get_logger
from tradeflow.db.models import SequenceCounter

logger = get_logger(__name__)


PREFIXES = {
    "quote": "QT",
    "order": "ORD",
    "invoice": "INV",
    "purchase_order": "PO",
    "payment": "PAY",
}


def format_number(prefix: str, year: int, value: int) -> str:
    """Zero-pad to four digits; wider values are kept whole."""
    return f"{prefix}-{year}-{value:04d}"


def fallback_number(prefix: str, year: int) -> str:
    """Timestamp-derived number. Uniqueness is best-effort only."""
    millis = int(time.time() * 1000)
    return f"{prefix}-{year}-T{millis}{random.randint(0, 999):03d}"


def _counter_filter(kind: str, scope_key: str, year: int):
    return (
        SequenceCounter.kind == kind,
        SequenceCounter.scope_key == scope_key,
        SequenceCounter.year == year,
    )


def _ensure_counter(db: Session, kind: str, scope_key: str, year: int) -> None:
    values = {"kind": kind, "scope_key": scope_key, "year": year, "last_value": 0}
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        stmt = pg_insert(SequenceCounter).values(**values).on_conflict_do_nothing(
            index_elements=["kind", "scope_key", "year"]
        )
    elif dialect == "sqlite":
        stmt = sqlite_insert(SequenceCounter).values(**values).on_conflict_do_nothing(
            index_elements=["kind", "scope_key", "year"]
        )
    else:
        exists = db.execute(
            select(SequenceCounter.id).where(*_counter_filter(kind, scope_key, year))
        ).first()
        if exists:
            return
        stmt = insert(SequenceCounter).values(**values)

    db.execute(stmt)


def _claim(db: Session, kind: str, scope_key: str, year: int) -> int:
    with db.begin_nested():
        _ensure_counter(db, kind, scope_key, year)
        db.execute(
            update(SequenceCounter)
            .where(*_counter_filter(kind, scope_key, year))
            .values(last_value=SequenceCounter.last_value + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return db.execute(
            select(SequenceCounter.last_value).where(*_counter_filter(kind, scope_key, year))
        ).scalar_one()


def next_number(db: Session, kind: str, scope_key: str = "", year: Optional[int] = None) -> str:
    """
    Allocate the next number for ``kind`` within ``scope_key`` and ``year``.

    Runs inside the caller's transaction. If the counter cannot be claimed the
    caller is not blocked: a timestamp-derived number is returned instead and
    a warning is logged.
    """
    if kind not in PREFIXES:
        raise ValueError(f"Unknown sequence kind '{kind}'. Valid kinds: {', '.join(PREFIXES)}")

    prefix = PREFIXES[kind]
    year = year or datetime.utcnow().year

    try:
        value = _claim(db, kind, scope_key or "", year)
    except SQLAlchemyError as e:
        number = fallback_number(prefix, year)
        logger.warning(
            f"Sequence allocation failed for {kind}/{scope_key or '-'}/{year}: {e}. "
            f"Using non-sequential fallback {number}"
        )
        return number

    return format_number(prefix, year, value)
