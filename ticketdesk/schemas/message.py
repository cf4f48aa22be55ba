from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.message import MessageChannel
from ..models.message_template import DEFAULT_LANGUAGE


class MessageResponse(BaseModel):
    id: str
    booking_id: Optional[str] = None
    conversation_id: Optional[str] = None
    template_id: Optional[str] = None
    channel: str
    direction: str
    external_id: Optional[str] = None
    recipient: str
    sender_name: Optional[str] = None
    subject: Optional[str] = None
    content: str
    media_urls: Optional[List[str]] = None
    status: str
    error_message: Optional[str] = None
    retry_count: int = 0
    queued_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CustomMessage(BaseModel):
    subject: Optional[str] = Field(None, max_length=500)
    content: str = Field(..., min_length=1, max_length=10000)


class SendTicketRequest(BaseModel):
    language: str = Field(default=DEFAULT_LANGUAGE, max_length=10)
    attachment_ids: List[str] = Field(..., min_length=1)
    custom_message: Optional[CustomMessage] = None


class ChannelAttemptResponse(BaseModel):
    channel: str
    message_id: Optional[str] = None
    success: bool
    error: Optional[str] = None
    external_id: Optional[str] = None


class DeliveryResponse(BaseModel):
    outcome: str
    success: bool
    channels: List[str]
    reason: str = ""
    fallback_used: bool = False
    attempts: List[ChannelAttemptResponse]


class PreviewRequest(BaseModel):
    booking_id: str
    language: str = Field(default=DEFAULT_LANGUAGE, max_length=10)


class ManualMessageRequest(BaseModel):
    channel: MessageChannel
    recipient: str = Field(..., min_length=3, max_length=255)
    content: str = Field(..., min_length=1, max_length=10000)
    subject: Optional[str] = Field(None, max_length=500)
    booking_id: Optional[str] = None

    @model_validator(mode='after')
    def email_needs_address(self):
        if self.channel == MessageChannel.EMAIL and "@" not in self.recipient:
            raise ValueError("Email recipient must be an email address")
        return self


class RetryFailedRequest(BaseModel):
    channel: Optional[MessageChannel] = None
    limit: Optional[int] = Field(None, ge=1, le=500)


class RetryFailedResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[ChannelAttemptResponse]


class TemplateResponse(BaseModel):
    id: str
    name: str
    slug: str
    channel: str
    language: str
    template_type: Optional[str] = None
    subject: Optional[str] = None
    content: str
    is_default: bool
    sort_order: Optional[int] = 0

    class Config:
        from_attributes = True


class TemplateListResponse(BaseModel):
    templates: List[TemplateResponse]
    languages: Dict[str, str]


class AttachmentResponse(BaseModel):
    id: str
    booking_id: str
    message_id: Optional[str] = None
    original_name: str
    mime_type: str
    size: int
    created_at: datetime

    class Config:
        from_attributes = True


class PreviewResponse(BaseModel):
    booking_id: str
    language: str
    previews: Dict[str, Dict[str, Any]]
