import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index, Integer, ForeignKey
from ..database import Base

ALLOWED_MIME_TYPES = ("application/pdf",)
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024


class MessageAttachment(Base):
    """A ticket PDF uploaded for a booking."""
    __tablename__ = "message_attachments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    message_id = Column(String(36), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)

    original_name = Column(String(255), nullable=False)
    stored_name = Column(String(255), nullable=False)
    storage_path = Column(String(500), nullable=False)
    mime_type = Column(String(100), default="application/pdf", nullable=False)
    size = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_attachment_booking", "booking_id"),
        Index("ix_attachment_message", "message_id"),
    )

    def __repr__(self):
        return f"<MessageAttachment {self.original_name} ({self.size} bytes)>"
