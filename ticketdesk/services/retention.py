"""
Booking retention: the only path that hard-deletes bookings.

Disabled unless BOOKING_RETENTION_ENABLED is set.
"""

import calendar
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..repositories.booking_repository import BookingRepository
from ..utils.logging_config import get_logger
from .storage import BlobStore

logger = get_logger(__name__)


def subtract_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 - months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def purge_old_bookings(
    db: Session,
    settings: Settings,
    store: BlobStore,
    now: Optional[datetime] = None,
) -> Dict:
    if not settings.booking_retention_enabled:
        return {"enabled": False, "deleted": 0, "files_deleted": 0}

    cutoff = subtract_months(now or datetime.utcnow(), settings.booking_retention_months)
    deleted, paths = BookingRepository(db).purge_older_than(cutoff)
    db.commit()

    files_deleted = sum(1 for path in paths if store.delete(path))
    if deleted:
        logger.info(f"Retention: deleted {deleted} bookings before {cutoff.date()} ({files_deleted} files)")
    return {"enabled": True, "cutoff": cutoff.isoformat(), "deleted": deleted, "files_deleted": files_deleted}
