from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.message import Message, MessageStatus, MessageDirection
from ..utils.db_helpers import get_pending_with_skip_locked


class MessageRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields) -> Message:
        fields.setdefault("status", MessageStatus.PENDING.value)
        fields.setdefault("direction", MessageDirection.OUTBOUND.value)
        fields.setdefault("retry_count", 0)
        message = Message(**fields)
        self.db.add(message)
        self.db.flush()
        return message

    def get(self, message_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_by_external_id(self, external_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(Message.external_id == external_id).first()

    def for_booking(self, booking_id: str) -> List[Message]:
        return self.db.query(Message).filter(
            Message.booking_id == booking_id
        ).order_by(Message.created_at.desc()).all()

    def for_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        query = self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.asc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def retryable(self, max_retries: int, channel: Optional[str] = None, limit: int = 50) -> List[Message]:
        condition = (
            (Message.status == MessageStatus.FAILED.value)
            & (Message.retry_count < max_retries)
            & (Message.direction == MessageDirection.OUTBOUND.value)
        )
        if channel:
            condition = condition & (Message.channel == channel)
        return get_pending_with_skip_locked(
            self.db, Message, condition, order_by=Message.failed_at.asc(), limit=limit
        )

    def last_inbound_at(self, conversation_id: str) -> Optional[datetime]:
        return self.db.query(func.max(Message.created_at)).filter(
            Message.conversation_id == conversation_id,
            Message.direction == MessageDirection.INBOUND.value,
        ).scalar()

    def attach_booking_to_conversation(self, conversation_id: str, booking_id: str) -> int:
        """Backfill booking_id on the conversation's messages that have none."""
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.booking_id.is_(None),
        ).update({Message.booking_id: booking_id}, synchronize_session=False)
