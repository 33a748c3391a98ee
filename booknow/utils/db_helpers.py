"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers
- Dialect-specific INSERT for atomic upserts
"""

from typing import Optional, TypeVar, Type
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

T = TypeVar('T')


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return dialect_name(db) == 'postgresql'
    except Exception:
        return False


def is_sqlite(db: Session) -> bool:
    """Check if the database is SQLite"""
    try:
        return dialect_name(db) == 'sqlite'
    except Exception:
        return True  # Default to SQLite for safety


def upsert_insert(db: Session, model):
    """
    Return an INSERT construct that supports ``on_conflict_do_update``.

    Both PostgreSQL and SQLite (3.24+) implement ON CONFLICT; anything else
    is rejected rather than silently degrading to read-modify-write.
    """
    if is_postgres(db):
        return postgresql.insert(model)
    if is_sqlite(db):
        return sqlite.insert(model)
    raise RuntimeError(f"Atomic upsert not supported on dialect {dialect_name(db)}")


def acquire_row_lock(db: Session, model: Type[T], filter_condition) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row

    Returns:
        The locked model instance, or None if not found

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)

    # SQLite serializes writers itself; only PostgreSQL gets FOR UPDATE
    if is_postgres(db):
        query = query.with_for_update()

    return query.first()
