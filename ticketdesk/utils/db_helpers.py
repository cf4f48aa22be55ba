"""
Database Helper Utilities for Concurrency Control

Provides:
- PostgreSQL detection (locking is a no-op elsewhere)
- Row locking helpers
- Queue-style reads for background workers
"""

from typing import Optional, TypeVar, Type
from sqlalchemy.orm import Session

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return db.bind.dialect.name == 'postgresql'
    except AttributeError:
        return False


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Locking is only applied on PostgreSQL; SQLite serialises writers.

    Example:
        booking = acquire_row_lock(db, Booking, Booking.bokun_booking_id == code)
    """
    query = db.query(model).filter(filter_condition)

    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        else:
            query = query.with_for_update()

    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get queued records with skip_locked to prevent worker race conditions.

    Two workers sweeping the same table will each get a disjoint batch.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()
