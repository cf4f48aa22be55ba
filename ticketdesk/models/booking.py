import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, Boolean, JSON
from ..database import Base
from ..exceptions import InvalidTransitionError
import enum


class BookingStatus(str, enum.Enum):
    PENDING_TICKET = "pending_ticket"
    TICKET_PURCHASED = "ticket_purchased"


# Operators may undo a purchase marked by mistake
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING_TICKET: {BookingStatus.TICKET_PURCHASED},
    BookingStatus.TICKET_PURCHASED: {BookingStatus.PENDING_TICKET},
}


def transition_booking_status(current: str, target: str) -> BookingStatus:
    """Validate a status move and return the target enum."""
    current_status = BookingStatus(current)
    target_status = BookingStatus(target)
    if current_status == target_status:
        return target_status
    if target_status not in BOOKING_TRANSITIONS[current_status]:
        raise InvalidTransitionError("Booking", current_status.value, target_status.value)
    return target_status


class Booking(Base):
    """
    A customer's reservation for a tour product on a date.

    `bokun_booking_id` is the upstream confirmation code and the
    idempotency key for every upstream mutation.

    `participants` is NULL until the detail fetch has run, and an empty
    list when the fetch ran but found no names.
    """
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    bokun_booking_id = Column(String(64), unique=True, nullable=False)
    bokun_product_id = Column(String(32), nullable=True)
    product_name = Column(String(255), nullable=True)
    booking_channel = Column(String(100), nullable=True)

    customer_name = Column(String(255), nullable=False, default="Guest")
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    tour_date = Column(DateTime, nullable=False)
    pax = Column(Integer, default=1, nullable=False)
    pax_details = Column(JSON(none_as_null=True), nullable=True)  # [{"type": "Adult", "quantity": 2}]
    participants = Column(JSON(none_as_null=True), nullable=True)  # [{"name": "...", "category": "..."}]

    status = Column(String(30), default=BookingStatus.PENDING_TICKET.value, nullable=False)
    reference_number = Column(String(100), nullable=True)
    guide_name = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Audio guide
    has_audio_guide = Column(Boolean, default=False, nullable=False)
    audio_guide_url = Column(String(500), nullable=True)
    audio_guide_username = Column(String(100), nullable=True)
    audio_guide_password = Column(String(100), nullable=True)

    # Delivery tracking
    tickets_sent_at = Column(DateTime, nullable=True)
    audio_guide_sent_at = Column(DateTime, nullable=True)

    # Operator wizard progress
    wizard_started_at = Column(DateTime, nullable=True)
    wizard_last_step = Column(Integer, nullable=True)
    wizard_abandoned_at = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)  # Soft delete

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_booking_tour_date", "tour_date"),
        Index("ix_booking_status", "status"),
        Index("ix_booking_product", "bokun_product_id"),
        Index("ix_booking_customer_phone", "customer_phone"),
        Index("ix_booking_deleted", "deleted_at"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_audio_credentials(self) -> bool:
        return bool(self.audio_guide_username and self.audio_guide_password)

    def cancel(self, at: datetime):
        """Soft-cancel; the row stays for audit."""
        if self.cancelled_at is None:
            self.cancelled_at = at
        if self.deleted_at is None:
            self.deleted_at = at

    def record_wizard_progress(self, action: str, step: Optional[int], at: datetime):
        """
        Track the operator's send wizard. `abandon` marks the booking for
        the unsent-ticket reminder; every other action clears the mark.
        """
        if action == "abandon":
            self.wizard_abandoned_at = at
            return
        if action == "start" or (action == "progress" and self.wizard_started_at is None):
            self.wizard_started_at = at
        if action in ("start", "progress", "save_exit") and step is not None:
            self.wizard_last_step = step
        self.wizard_abandoned_at = None

    def __repr__(self):
        return f"<Booking {self.bokun_booking_id} {self.tour_date} status={self.status}>"
