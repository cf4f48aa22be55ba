from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.conversation import Conversation, ConversationStatus


class ConversationRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_by_phone(self, phone: str, channel: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.phone_number == phone,
            Conversation.channel == channel,
        ).first()

    def find_or_create(
        self,
        phone: str,
        channel: str,
        booking_id: Optional[str] = None,
        customer_name: Optional[str] = None
    ) -> Tuple[Conversation, bool]:
        """Returns (conversation, created). Never creates a duplicate pair."""
        existing = self.get_by_phone(phone, channel)
        if existing:
            if booking_id and not existing.booking_id:
                existing.booking_id = booking_id
            return existing, False

        conversation = Conversation(
            phone_number=phone,
            channel=channel,
            booking_id=booking_id,
            customer_name=customer_name,
            status=ConversationStatus.ACTIVE.value,
            unread_count=0,
        )
        try:
            with self.db.begin_nested():
                self.db.add(conversation)
        except IntegrityError:
            return self.get_by_phone(phone, channel), False
        return conversation, True

    def list(
        self,
        status: Optional[str] = None,
        channel: Optional[str] = None,
        unread_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Conversation], int]:
        query = self.db.query(Conversation)
        if status:
            query = query.filter(Conversation.status == status)
        if channel:
            query = query.filter(Conversation.channel == channel)
        if unread_only:
            query = query.filter(Conversation.unread_count > 0)
        query = query.order_by(Conversation.last_message_at.desc())

        total = query.count()
        items = query.offset((page - 1) * page_size).limit(page_size).all()
        return items, total
