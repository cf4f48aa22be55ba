from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from .message import MessageResponse


class ConversationResponse(BaseModel):
    id: str
    phone_number: str
    channel: str
    booking_id: Optional[str] = None
    customer_name: Optional[str] = None
    status: str
    unread_count: int = 0
    last_message_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WhatsAppWindow(BaseModel):
    applies: bool
    open: bool
    remaining_minutes: Optional[int] = None
    last_inbound_at: Optional[str] = None


class ConversationDetail(ConversationResponse):
    messages: List[MessageResponse] = []
    window: WhatsAppWindow


class ReplyRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=4096)


class LinkBookingRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
