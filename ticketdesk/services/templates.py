"""
Message Templates

Templates are stored per channel, language and ticket type and rendered
with a sandboxed Jinja2 environment, so operators editing template text
cannot reach application internals.

Lookup order for a ticket send:
1. channel + language + type
2. channel + en + type
3. default template for channel + language
4. default template for channel + en
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.orm import Session

from ..exceptions import TemplateRenderError
from ..models.booking import Booking
from ..models.message import MessageChannel
from ..models.message_template import DEFAULT_LANGUAGE, LANGUAGES, MessageTemplate, TemplateType
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

_env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=False)


@dataclass
class RenderedMessage:
    content: str
    subject: Optional[str] = None
    template_id: Optional[str] = None
    content_sid: Optional[str] = None


def render_text(text: Optional[str], variables: Dict) -> str:
    if not text:
        return ""
    try:
        return _env.from_string(text).render(**variables)
    except TemplateError as e:
        raise TemplateRenderError(f"Template could not be rendered: {e}")


def booking_variables(booking: Booking, download_url: Optional[str] = None) -> Dict:
    tour_date = booking.tour_date
    return {
        "customer_name": booking.customer_name or "Guest",
        "customer_email": booking.customer_email or "",
        "tour_date": tour_date.strftime("%d/%m/%Y") if tour_date else "",
        "tour_time": tour_date.strftime("%H:%M") if tour_date else "",
        "product_name": booking.product_name or "",
        "pax": booking.pax or 1,
        "reference_number": booking.reference_number or "",
        "audio_guide_url": booking.audio_guide_url or "",
        "audio_guide_username": booking.audio_guide_username or "",
        "audio_guide_password": booking.audio_guide_password or "",
        "download_url": download_url or "",
    }


def template_type_for(booking: Booking) -> str:
    if booking.has_audio_guide:
        return TemplateType.TICKET_WITH_AUDIO.value
    return TemplateType.TICKET_ONLY.value


class TemplateRenderer:
    def __init__(self, db: Session):
        self.db = db

    def _active(self, channel: str):
        return self.db.query(MessageTemplate).filter(
            MessageTemplate.channel == channel,
            MessageTemplate.is_active.is_(True),
        )

    def find(self, channel: str, language: str, template_type: Optional[str]) -> Optional[MessageTemplate]:
        language = language if language in LANGUAGES else DEFAULT_LANGUAGE

        if template_type:
            for lang in dict.fromkeys([language, DEFAULT_LANGUAGE]):
                template = self._active(channel).filter(
                    MessageTemplate.language == lang,
                    MessageTemplate.template_type == template_type,
                ).order_by(MessageTemplate.sort_order.asc()).first()
                if template:
                    return template

        for lang in dict.fromkeys([language, DEFAULT_LANGUAGE]):
            template = self._active(channel).filter(
                MessageTemplate.language == lang,
                MessageTemplate.is_default.is_(True),
            ).first()
            if template:
                return template
        return None

    def render(self, template: MessageTemplate, variables: Dict) -> RenderedMessage:
        return RenderedMessage(
            content=render_text(template.content, variables),
            subject=render_text(template.subject, variables) or None,
            template_id=template.id,
            content_sid=template.provider_template_id,
        )

    def render_for_booking(
        self,
        booking: Booking,
        channel: str,
        language: str = DEFAULT_LANGUAGE,
        download_url: Optional[str] = None,
    ) -> RenderedMessage:
        template = self.find(channel, language, template_type_for(booking))
        if template is None:
            raise TemplateRenderError(f"No {channel} template for language '{language}'")
        return self.render(template, booking_variables(booking, download_url))

    def list(self, channel: Optional[str] = None, language: Optional[str] = None) -> List[MessageTemplate]:
        query = self.db.query(MessageTemplate).filter(MessageTemplate.is_active.is_(True))
        if channel:
            query = query.filter(MessageTemplate.channel == channel)
        if language:
            query = query.filter(MessageTemplate.language == language)
        return query.order_by(
            MessageTemplate.channel.asc(),
            MessageTemplate.sort_order.asc(),
            MessageTemplate.name.asc(),
        ).all()


_BOOKING_DETAILS = """Booking details
Date: {{ tour_date }}
Time: {{ tour_time }}
Reference: {{ reference_number }}
Guests: {{ pax }}"""

_AUDIO_DETAILS = """Audio guide
App: {{ audio_guide_url }}
Username: {{ audio_guide_username }}
Password: {{ audio_guide_password }}"""

DEFAULT_TEMPLATES = [
    {
        "name": "Email Ticket (English)",
        "slug": "email-ticket-en",
        "channel": MessageChannel.EMAIL.value,
        "template_type": TemplateType.TICKET_ONLY.value,
        "subject": "Your {{ product_name }} tickets for {{ tour_date }}",
        "content": "Dear {{ customer_name }},\n\nYour tickets are attached to this email. "
                   "Show the PDF at the entrance on your phone or printed.\n\n"
                   + _BOOKING_DETAILS + "\n\nPlease arrive 15 minutes before your entry time.\n\nEnjoy your visit!",
        "is_default": True,
    },
    {
        "name": "Email Ticket + Audio (English)",
        "slug": "email-ticket-audio-en",
        "channel": MessageChannel.EMAIL.value,
        "template_type": TemplateType.TICKET_WITH_AUDIO.value,
        "subject": "Your {{ product_name }} tickets and audio guide for {{ tour_date }}",
        "content": "Dear {{ customer_name }},\n\nYour tickets are attached to this email. "
                   "Show the PDF at the entrance on your phone or printed.\n\n"
                   + _BOOKING_DETAILS + "\n\n" + _AUDIO_DETAILS + "\n\nEnjoy your visit!",
    },
    {
        "name": "WhatsApp Ticket (English)",
        "slug": "whatsapp-ticket-en",
        "channel": MessageChannel.WHATSAPP.value,
        "template_type": TemplateType.TICKET_ONLY.value,
        "content": "Hello {{ customer_name }}! Here are your tickets for {{ tour_date }} at {{ tour_time }} "
                   "(ref. {{ reference_number }}, {{ pax }} guests).\n\n"
                   "Download: {{ download_url }}",
        "is_default": True,
    },
    {
        "name": "WhatsApp Ticket + Audio (English)",
        "slug": "whatsapp-ticket-audio-en",
        "channel": MessageChannel.WHATSAPP.value,
        "template_type": TemplateType.TICKET_WITH_AUDIO.value,
        "content": "Hello {{ customer_name }}! Here are your tickets for {{ tour_date }} at {{ tour_time }} "
                   "(ref. {{ reference_number }}, {{ pax }} guests).\n\n"
                   "Download: {{ download_url }}\n\n" + _AUDIO_DETAILS,
    },
    {
        "name": "SMS Ticket Alert (English)",
        "slug": "sms-ticket-alert-en",
        "channel": MessageChannel.SMS.value,
        "template_type": None,
        "content": "Hi {{ customer_name }}, your tickets for {{ tour_date }} {{ tour_time }} "
                   "were sent to {{ customer_email }}. Check your inbox and spam folder.",
        "is_default": True,
    },
]


def seed_default_templates(db: Session) -> int:
    """Insert the English defaults that are missing. Existing rows are left alone."""
    existing = {slug for (slug,) in db.query(MessageTemplate.slug).all()}
    created = 0
    for index, definition in enumerate(DEFAULT_TEMPLATES):
        if definition["slug"] in existing:
            continue
        db.add(MessageTemplate(
            language=DEFAULT_LANGUAGE,
            is_active=True,
            is_default=definition.get("is_default", False),
            sort_order=index,
            **{k: v for k, v in definition.items() if k != "is_default"}
        ))
        created += 1
    if created:
        db.commit()
        logger.info(f"Seeded {created} default message templates")
    return created
