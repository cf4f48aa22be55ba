import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index, Integer, ForeignKey, UniqueConstraint
from ..database import Base
import enum


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Conversation(Base):
    """A customer thread, one per (phone number, channel)."""
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    phone_number = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    customer_name = Column(String(255), nullable=True)

    status = Column(String(20), default=ConversationStatus.ACTIVE.value, nullable=False)
    unread_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("phone_number", "channel", name="uq_conversation_phone_channel"),
        Index("ix_conversation_last_message", "last_message_at"),
        Index("ix_conversation_status", "status"),
    )

    @property
    def is_archived(self) -> bool:
        return self.status == ConversationStatus.ARCHIVED.value

    def mark_as_read(self):
        self.unread_count = 0

    def increment_unread(self):
        self.unread_count = (self.unread_count or 0) + 1

    def archive(self):
        self.status = ConversationStatus.ARCHIVED.value

    def reactivate(self):
        self.status = ConversationStatus.ACTIVE.value

    def touch(self, at: datetime):
        if self.last_message_at is None or at > self.last_message_at:
            self.last_message_at = at

    def __repr__(self):
        return f"<Conversation {self.channel} {self.phone_number} unread={self.unread_count}>"
