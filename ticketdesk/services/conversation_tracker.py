"""
Conversation Tracker

One conversation per (phone number, channel). Inbound messages bump
the unread counter and last activity, and best-effort link the thread
to a booking by phone number. The WhatsApp 24-hour reply window is
derived from the latest inbound message and never stored.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..exceptions import NotFoundError
from ..models.conversation import Conversation
from ..models.message import Message, MessageChannel, MessageDirection, MessageStatus
from ..repositories.booking_repository import BookingRepository
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.message_repository import MessageRepository
from ..utils.logging_config import get_logger
from ..utils.phone import WHATSAPP_PREFIX, format_e164

logger = get_logger(__name__)

WHATSAPP_WINDOW = timedelta(hours=24)


def channel_for_address(address: str) -> str:
    if (address or "").lower().startswith(WHATSAPP_PREFIX):
        return MessageChannel.WHATSAPP.value
    return MessageChannel.SMS.value


class ConversationTracker:
    def __init__(self, db: Session):
        self.db = db
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.bookings = BookingRepository(db)

    def get(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def _link_by_phone(self, conversation: Conversation):
        if conversation.booking_id:
            return
        booking = self.bookings.find_by_phone(conversation.phone_number)
        if booking:
            conversation.booking_id = booking.id
            if not conversation.customer_name:
                conversation.customer_name = booking.customer_name
            logger.info(f"Conversation {conversation.id} linked to booking {booking.bokun_booking_id}")

    def record_inbound(
        self,
        from_: str,
        body: str,
        external_id: Optional[str] = None,
        profile_name: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> Optional[Message]:
        phone = format_e164(from_)
        if not phone:
            logger.warning(f"Inbound message with unusable sender '{from_}' ignored")
            return None

        if external_id:
            duplicate = self.messages.get_by_external_id(external_id)
            if duplicate:
                return duplicate

        now = received_at or datetime.utcnow()
        channel = channel_for_address(from_)
        conversation, created = self.conversations.find_or_create(phone, channel, customer_name=profile_name)
        self._link_by_phone(conversation)
        if conversation.is_archived:
            conversation.reactivate()

        message = self.messages.create(
            conversation_id=conversation.id,
            booking_id=conversation.booking_id,
            channel=channel,
            direction=MessageDirection.INBOUND.value,
            external_id=external_id,
            recipient=phone,
            sender_name=profile_name,
            content=body or "",
            status=MessageStatus.DELIVERED.value,
            delivered_at=now,
        )
        message.created_at = now
        conversation.increment_unread()
        conversation.touch(now)
        self.db.commit()

        logger.log_with_context(
            logging.INFO,
            f"Inbound {channel} message from {phone}" + (" (new conversation)" if created else ""),
            entity_type="conversation",
            entity_id=conversation.id,
            unread=conversation.unread_count,
        )
        return message

    def record_outbound(self, message: Message) -> Optional[Conversation]:
        """Attach an outbound WhatsApp/SMS message to its conversation."""
        if message.channel not in (MessageChannel.WHATSAPP.value, MessageChannel.SMS.value):
            return None
        phone = format_e164(message.recipient)
        if not phone:
            return None
        conversation, _ = self.conversations.find_or_create(phone, message.channel, booking_id=message.booking_id)
        message.conversation_id = conversation.id
        conversation.touch(message.sent_at or datetime.utcnow())
        self.db.flush()
        return conversation

    def mark_read(self, conversation: Conversation) -> Conversation:
        conversation.mark_as_read()
        self.db.commit()
        return conversation

    def archive(self, conversation: Conversation) -> Conversation:
        conversation.archive()
        self.db.commit()
        return conversation

    def reactivate(self, conversation: Conversation) -> Conversation:
        conversation.reactivate()
        self.db.commit()
        return conversation

    def link_to_booking(self, conversation: Conversation, booking_id: str) -> Conversation:
        booking = self.bookings.get(booking_id, include_cancelled=True)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        conversation.booking_id = booking.id
        if not conversation.customer_name:
            conversation.customer_name = booking.customer_name
        updated = self.messages.attach_booking_to_conversation(conversation.id, booking.id)
        self.db.commit()
        logger.info(f"Conversation {conversation.id} linked to {booking.bokun_booking_id} ({updated} messages)")
        return conversation

    def whatsapp_window(self, conversation: Conversation, now: Optional[datetime] = None) -> Dict:
        """Free-form replies are allowed for 24h after the customer's last message."""
        if conversation.channel != MessageChannel.WHATSAPP.value:
            return {"applies": False, "open": True, "remaining_minutes": None, "last_inbound_at": None}

        now = now or datetime.utcnow()
        last_inbound = self.messages.last_inbound_at(conversation.id)
        if last_inbound is None:
            return {"applies": True, "open": False, "remaining_minutes": 0, "last_inbound_at": None}

        remaining = (last_inbound + WHATSAPP_WINDOW) - now
        remaining_minutes = max(0, int(remaining.total_seconds() // 60))
        return {
            "applies": True,
            "open": remaining.total_seconds() > 0,
            "remaining_minutes": remaining_minutes,
            "last_inbound_at": last_inbound.isoformat(),
        }
