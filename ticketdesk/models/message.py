import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, ForeignKey, JSON
from ..database import Base
from ..exceptions import InvalidTransitionError
import enum


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessageChannel(str, enum.Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"
    EMAIL = "email"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# failed -> queued only happens through the retry path
MESSAGE_TRANSITIONS = {
    MessageStatus.PENDING: {MessageStatus.QUEUED, MessageStatus.FAILED},
    MessageStatus.QUEUED: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED},
    MessageStatus.DELIVERED: {MessageStatus.READ},
    MessageStatus.READ: set(),
    MessageStatus.FAILED: {MessageStatus.QUEUED},
}

# Moves a provider callback may make. A failed message only leaves
# failed through the retry path.
CALLBACK_TRANSITIONS = dict(MESSAGE_TRANSITIONS)
CALLBACK_TRANSITIONS[MessageStatus.FAILED] = set()

# Provider callback status -> our status
PROVIDER_STATUS_MAP = {
    "queued": MessageStatus.QUEUED,
    "accepted": MessageStatus.QUEUED,
    "sending": MessageStatus.QUEUED,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
}


class Message(Base):
    """
    One outbound or inbound message on a channel.

    Outbound delivery moves forward through
    pending -> queued -> sent -> delivered -> read; any non-terminal
    state may fail. `retry_count` counts failed attempts.
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)
    template_id = Column(String(36), ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True)

    channel = Column(String(20), nullable=False)
    direction = Column(String(20), default=MessageDirection.OUTBOUND.value, nullable=False)
    external_id = Column(String(100), nullable=True)  # Twilio SID / SendGrid message id
    recipient = Column(String(255), nullable=False)
    sender_name = Column(String(255), nullable=True)

    subject = Column(String(500), nullable=True)
    content = Column(Text, nullable=False, default="")
    template_variables = Column(JSON, nullable=True)
    media_urls = Column(JSON, nullable=True)
    attachment_ids = Column(JSON, nullable=True)  # ticket PDFs carried by this message
    content_sid = Column(String(64), nullable=True)  # WhatsApp approved template

    status = Column(String(20), default=MessageStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    queued_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_message_booking", "booking_id"),
        Index("ix_message_conversation", "conversation_id", "created_at"),
        Index("ix_message_external_id", "external_id"),
        Index("ix_message_status", "status", "channel"),
    )

    def _move_to(self, target: MessageStatus):
        current = MessageStatus(self.status)
        if target not in MESSAGE_TRANSITIONS[current]:
            raise InvalidTransitionError("Message", current.value, target.value)
        self.status = target.value

    def mark_queued(self):
        self._move_to(MessageStatus.QUEUED)
        self.queued_at = datetime.utcnow()
        self.error_message = None

    def mark_sent(self, external_id: Optional[str] = None):
        self._move_to(MessageStatus.SENT)
        self.sent_at = datetime.utcnow()
        if external_id:
            self.external_id = external_id

    def mark_delivered(self):
        self._move_to(MessageStatus.DELIVERED)
        self.delivered_at = datetime.utcnow()

    def mark_read(self):
        self._move_to(MessageStatus.READ)
        self.read_at = datetime.utcnow()
        if self.delivered_at is None:
            self.delivered_at = self.read_at

    def mark_failed(self, error: str, max_retries: int):
        self._move_to(MessageStatus.FAILED)
        self.failed_at = datetime.utcnow()
        self.error_message = (error or "Unknown error")[:2000]
        self.retry_count = min((self.retry_count or 0) + 1, max_retries)

    def can_retry(self, max_retries: int) -> bool:
        return self.status == MessageStatus.FAILED.value and (self.retry_count or 0) < max_retries

    def apply_provider_status(self, provider_status: str, error: Optional[str], max_retries: int) -> bool:
        """
        Apply a delivery-status callback.

        Callbacks arrive late and out of order; moves that the state
        machine does not allow are ignored. Returns True when the status
        changed.
        """
        target = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
        if target is None:
            return False
        current = MessageStatus(self.status)
        if target not in CALLBACK_TRANSITIONS[current]:
            return False
        if target == MessageStatus.FAILED:
            self.mark_failed(error or f"Provider reported {provider_status}", max_retries)
        elif target == MessageStatus.DELIVERED:
            self.mark_delivered()
        elif target == MessageStatus.READ:
            self.mark_read()
        elif target == MessageStatus.SENT:
            self.mark_sent()
        else:
            self.mark_queued()
        return True

    def __repr__(self):
        return f"<Message {self.channel} {self.direction} status={self.status}>"
