"""
Booking Repository

Every read excludes soft-deleted (cancelled) bookings unless the caller
asks for them with `include_cancelled=True`.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, Query

from ..models.booking import Booking, BookingStatus
from ..models.message import Message
from ..models.conversation import Conversation
from ..models.message_attachment import MessageAttachment
from ..models.download_token import DownloadToken
from ..utils.db_helpers import acquire_row_lock
from ..utils.phone import format_e164, last_digits

logger = logging.getLogger(__name__)

# Fields upstream mutations may write. Status, reference number, guide,
# audio credentials and send timestamps belong to operators.
UPSTREAM_FIELDS = frozenset({
    "bokun_product_id",
    "product_name",
    "booking_channel",
    "customer_name",
    "customer_email",
    "customer_phone",
    "tour_date",
    "pax",
    "pax_details",
    "participants",
    "has_audio_guide",
})

SORTABLE_COLUMNS = {
    "tour_date": Booking.tour_date,
    "created_at": Booking.created_at,
    "customer_name": Booking.customer_name,
    "status": Booking.status,
    "pax": Booking.pax,
    "updated_at": Booking.updated_at,
}


class BookingRepository:
    def __init__(self, db: Session):
        self.db = db

    def _base(self, include_cancelled: bool = False) -> Query:
        query = self.db.query(Booking)
        if not include_cancelled:
            query = query.filter(Booking.deleted_at.is_(None))
        return query

    def get(self, booking_id: str, include_cancelled: bool = False) -> Optional[Booking]:
        return self._base(include_cancelled).filter(Booking.id == booking_id).first()

    def get_by_confirmation_code(self, code: str, include_cancelled: bool = False) -> Optional[Booking]:
        return self._base(include_cancelled).filter(Booking.bokun_booking_id == code).first()

    @staticmethod
    def _filtered(
        query: Query,
        status: Optional[str] = None,
        product_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> Query:
        if status:
            query = query.filter(Booking.status == status)
        if product_id:
            query = query.filter(Booking.bokun_product_id == str(product_id))
        if date_from:
            query = query.filter(Booking.tour_date >= date_from)
        if date_to:
            query = query.filter(Booking.tour_date <= date_to)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                Booking.customer_name.ilike(pattern),
                Booking.bokun_booking_id.ilike(pattern),
                Booking.reference_number.ilike(pattern),
                Booking.customer_email.ilike(pattern),
                # Participant names live in the JSON list
                cast(Booking.participants, String).ilike(pattern),
            ))
        return query

    def list(
        self,
        status: Optional[str] = None,
        product_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        sort_by: str = "tour_date",
        sort_dir: str = "asc",
        page: int = 1,
        page_size: int = 20,
        include_cancelled: bool = False,
    ) -> Tuple[List[Booking], int]:
        query = self._filtered(self._base(include_cancelled), status, product_id, date_from, date_to, search)

        column = SORTABLE_COLUMNS.get(sort_by, Booking.tour_date)
        query = query.order_by(column.desc() if sort_dir == "desc" else column.asc())

        total = query.count()
        items = query.offset((page - 1) * page_size).limit(page_size).all()
        return items, total

    def list_from(
        self,
        date_from: datetime,
        date_to: Optional[datetime] = None,
        status: Optional[str] = None,
        product_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Booking]:
        """Bookings from `date_from` on, by tour date, for the daily view."""
        query = self._filtered(self._base(), status, product_id, date_from, date_to, search)
        return query.order_by(Booking.tour_date.asc()).limit(limit).all()

    def unsent_between(self, start: datetime, end: datetime, product_ids: Optional[List[str]] = None) -> List[Booking]:
        """Bookings touring in [start, end) whose tickets have not gone out."""
        query = self._base().filter(
            Booking.tour_date >= start,
            Booking.tour_date < end,
            Booking.tickets_sent_at.is_(None),
        )
        if product_ids:
            query = query.filter(Booking.bokun_product_id.in_(product_ids))
        return query.order_by(Booking.tour_date.asc()).all()

    def upsert(self, code: str, fields: Dict) -> Tuple[Booking, bool]:
        """
        Create or update by confirmation code. Returns (booking, created).

        Only upstream-owned fields are written. A non-empty participant
        list is never replaced by NULL or an empty list. A cancelled
        booking is returned untouched.
        """
        values = {k: v for k, v in fields.items() if k in UPSTREAM_FIELDS}

        existing = acquire_row_lock(self.db, Booking, Booking.bokun_booking_id == code)
        if existing is None:
            booking = Booking(
                bokun_booking_id=code,
                status=BookingStatus.PENDING_TICKET.value,
                **values
            )
            try:
                with self.db.begin_nested():
                    self.db.add(booking)
                return booking, True
            except IntegrityError:
                # Concurrent writer created it first; fall through to update
                logger.info(f"Booking {code} created concurrently, merging")
                existing = acquire_row_lock(self.db, Booking, Booking.bokun_booking_id == code)

        if existing.is_cancelled:
            return existing, False

        self._merge(existing, values)
        self.db.flush()
        return existing, False

    def enrich(self, booking: Booking, fields: Dict) -> Booking:
        """Apply detail-fetch fields with the same merge rule as upsert."""
        if booking.is_cancelled:
            return booking
        self._merge(booking, {k: v for k, v in fields.items() if k in UPSTREAM_FIELDS})
        self.db.flush()
        return booking

    @staticmethod
    def _merge(booking: Booking, values: Dict):
        for key, value in values.items():
            if key == "participants":
                if not value and booking.participants:
                    continue
            if key in ("customer_email", "customer_phone", "booking_channel") and not value:
                continue
            setattr(booking, key, value)

    def cancel(self, booking: Booking, at: Optional[datetime] = None) -> Booking:
        booking.cancel(at or datetime.utcnow())
        self.db.flush()
        return booking

    def find_future_not_in(
        self,
        codes: Iterable[str],
        now: datetime,
        product_ids: Optional[List[str]] = None
    ) -> List[Booking]:
        """Local future bookings the upstream listing did not return."""
        query = self._base().filter(Booking.tour_date >= now)
        code_list = list(codes)
        if code_list:
            query = query.filter(Booking.bokun_booking_id.notin_(code_list))
        if product_ids:
            query = query.filter(Booking.bokun_product_id.in_(product_ids))
        return query.order_by(Booking.tour_date.asc()).all()

    def needing_enrichment(self, limit: Optional[int] = None) -> List[Booking]:
        query = self._base().filter(or_(
            Booking.participants.is_(None),
            Booking.booking_channel.is_(None),
            Booking.customer_email.is_(None),
        )).order_by(Booking.tour_date.asc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def missing_audio_flag(self, product_id: str, limit: int) -> List[Booking]:
        return self._base().filter(
            Booking.bokun_product_id == product_id,
            Booking.has_audio_guide.is_(False),
        ).order_by(Booking.tour_date.desc()).limit(limit).all()

    def find_by_phone(self, phone: str) -> Optional[Booking]:
        """Most recent booking for a phone: exact match, then last 10 digits."""
        formatted = format_e164(phone)
        if not formatted:
            return None

        booking = self._base().filter(
            Booking.customer_phone == formatted
        ).order_by(Booking.tour_date.desc()).first()
        if booking:
            return booking

        tail = last_digits(formatted)
        if len(tail) < 10:
            return None
        return self._base().filter(
            Booking.customer_phone.like(f"%{tail}")
        ).order_by(Booking.tour_date.desc()).first()

    def count_missing_participants(self) -> int:
        return self._base().filter(Booking.participants.is_(None)).count()

    def count_missing_channel(self) -> int:
        return self._base().filter(Booking.booking_channel.is_(None)).count()

    def with_participants(self) -> List[Booking]:
        return self._base().filter(Booking.participants.isnot(None)).all()

    def count(self) -> int:
        return self._base().count()

    def stats(self, now: datetime) -> Dict:
        base = self._base()
        by_status = dict(
            self.db.query(Booking.status, func.count(Booking.id))
            .filter(Booking.deleted_at.is_(None))
            .group_by(Booking.status)
            .all()
        )
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "total": base.count(),
            "pending_ticket": by_status.get(BookingStatus.PENDING_TICKET.value, 0),
            "ticket_purchased": by_status.get(BookingStatus.TICKET_PURCHASED.value, 0),
            "upcoming": base.filter(Booking.tour_date >= now).count(),
            "today": base.filter(
                Booking.tour_date >= today_start,
                Booking.tour_date < today_start + timedelta(days=1),
            ).count(),
            "missing_participants": base.filter(Booking.participants.is_(None)).count(),
            "tickets_sent": base.filter(Booking.tickets_sent_at.isnot(None)).count(),
            "cancelled": self.db.query(Booking).filter(Booking.deleted_at.isnot(None)).count(),
        }

    def purge_older_than(self, cutoff: datetime) -> Tuple[int, List[str]]:
        """
        Hard-delete bookings whose tour date is before `cutoff`.

        Returns (deleted count, storage paths of their attachments) so
        the caller can remove the blobs.
        """
        ids = [row[0] for row in self.db.query(Booking.id).filter(Booking.tour_date < cutoff).all()]
        if not ids:
            return 0, []

        paths = [
            row[0] for row in
            self.db.query(MessageAttachment.storage_path).filter(MessageAttachment.booking_id.in_(ids)).all()
        ]
        self.db.query(DownloadToken).filter(DownloadToken.booking_id.in_(ids)).delete(synchronize_session=False)
        self.db.query(MessageAttachment).filter(MessageAttachment.booking_id.in_(ids)).delete(synchronize_session=False)
        self.db.query(Message).filter(Message.booking_id.in_(ids)).update(
            {Message.booking_id: None}, synchronize_session=False
        )
        self.db.query(Conversation).filter(Conversation.booking_id.in_(ids)).update(
            {Conversation.booking_id: None}, synchronize_session=False
        )
        deleted = self.db.query(Booking).filter(Booking.id.in_(ids)).delete(synchronize_session=False)
        self.db.flush()
        return deleted, paths
