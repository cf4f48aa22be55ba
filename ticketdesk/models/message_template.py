import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, Boolean
from ..database import Base
import enum


class TemplateType(str, enum.Enum):
    TICKET_ONLY = "ticket_only"
    TICKET_WITH_AUDIO = "ticket_with_audio"


LANGUAGES = {
    "en": "English",
    "it": "Italiano",
    "es": "Español",
    "de": "Deutsch",
    "fr": "Français",
    "ja": "日本語",
    "el": "Ελληνικά",
    "tr": "Türkçe",
    "ko": "한국어",
    "pt": "Português",
    "ru": "Русский",
    "ar": "العربية",
    "zh": "中文",
    "nl": "Nederlands",
    "pl": "Polski",
}

DEFAULT_LANGUAGE = "en"


class MessageTemplate(Base):
    """Jinja2 text for one channel, language and ticket type."""
    __tablename__ = "message_templates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    channel = Column(String(20), nullable=False)
    language = Column(String(5), default=DEFAULT_LANGUAGE, nullable=False)
    template_type = Column(String(30), nullable=True)

    subject = Column(String(500), nullable=True)  # email only
    content = Column(Text, nullable=False)
    provider_template_id = Column(String(64), nullable=True)  # WhatsApp content SID

    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_template_lookup", "channel", "language", "template_type"),
    )

    def __repr__(self):
        return f"<MessageTemplate {self.slug}>"
