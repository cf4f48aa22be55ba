from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import re

from ..models.booking import BookingStatus


def _sanitize(v):
    """Strip script tags and inline event handlers from free text"""
    if isinstance(v, str):
        v = re.sub(r'<script[^>]*>.*?</script>', '', v, flags=re.IGNORECASE | re.DOTALL)
        v = re.sub(r'on\w+\s*=', '', v, flags=re.IGNORECASE)
    return v


class Participant(BaseModel):
    name: str
    category: str = "Guest"


class PaxDetail(BaseModel):
    type: str
    quantity: int


class BookingCreate(BaseModel):
    bokun_booking_id: str = Field(..., min_length=1, max_length=64, description="Confirmation code")
    bokun_product_id: Optional[str] = Field(None, max_length=32)
    product_name: Optional[str] = Field(None, max_length=255)
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=50)
    tour_date: datetime
    pax: int = Field(default=1, ge=1, le=100)
    participants: Optional[List[Participant]] = None
    reference_number: Optional[str] = Field(None, max_length=100)
    guide_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=2000)
    has_audio_guide: bool = False

    @field_validator('customer_name', 'notes', 'guide_name', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        return _sanitize(v)


class BookingUpdate(BaseModel):
    status: Optional[BookingStatus] = None
    reference_number: Optional[str] = Field(None, max_length=100)
    guide_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=2000)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=50)
    participants: Optional[List[Participant]] = None
    has_audio_guide: Optional[bool] = None
    audio_guide_url: Optional[str] = Field(None, max_length=500)
    audio_guide_username: Optional[str] = Field(None, max_length=100)
    audio_guide_password: Optional[str] = Field(None, max_length=100)
    wizard_last_step: Optional[int] = Field(None, ge=0, le=10)

    @field_validator('notes', 'guide_name', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        return _sanitize(v)


class BookingResponse(BaseModel):
    id: str
    bokun_booking_id: str
    bokun_product_id: Optional[str] = None
    product_name: Optional[str] = None
    booking_channel: Optional[str] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    tour_date: datetime
    pax: int
    pax_details: Optional[List[PaxDetail]] = None
    participants: Optional[List[Participant]] = None
    status: str
    reference_number: Optional[str] = None
    guide_name: Optional[str] = None
    notes: Optional[str] = None
    has_audio_guide: bool = False
    audio_guide_url: Optional[str] = None
    audio_guide_username: Optional[str] = None
    audio_guide_password: Optional[str] = None
    tickets_sent_at: Optional[datetime] = None
    audio_guide_sent_at: Optional[datetime] = None
    wizard_started_at: Optional[datetime] = None
    wizard_last_step: Optional[int] = None
    wizard_abandoned_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingStats(BaseModel):
    total: int
    pending_ticket: int
    ticket_purchased: int
    upcoming: int
    today: int
    missing_participants: int
    tickets_sent: int
    cancelled: int


class SyncRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000)
    full: bool = False


class ImportRequest(BaseModel):
    start_date: datetime
    end_date: datetime
    page_size: Optional[int] = Field(None, ge=1, le=200)


class SyncResponse(BaseModel):
    message: str
    report: Dict[str, Any]


class ChannelDetection(BaseModel):
    primary: Optional[str] = None
    fallback: Optional[str] = None
    channels: List[str] = []
    whatsapp_capable: bool = False
    description: str = ""


class WizardProgressRequest(BaseModel):
    step: Optional[int] = Field(None, ge=1, le=10)
    action: str = Field(..., pattern="^(start|progress|save_exit|abandon|complete)$")


class BookingDayGroup(BaseModel):
    date: str
    label: str
    is_today: bool
    is_tomorrow: bool
    total_bookings: int
    total_pax: int
    pending_count: int
    bookings: List[BookingResponse]


class GroupedBookingsResponse(BaseModel):
    grouped_bookings: List[BookingDayGroup]
    total_days: int
    total_bookings: int
