"""
Channel Selector

Decides which channel(s) carry a booking's tickets:

- phone + WhatsApp capable    -> [whatsapp]
- email (+ phone for an alert) -> [email] or [email, sms]
- nothing usable               -> []
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models.booking import Booking
from ..models.message import MessageChannel
from ..utils.logging_config import get_logger
from .twilio_gateway import TwilioGateway

logger = get_logger(__name__)


@dataclass
class ChannelPlan:
    channels: List[str] = field(default_factory=list)
    whatsapp_capable: bool = False
    reason: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.channels

    @property
    def primary(self) -> Optional[str]:
        return self.channels[0] if self.channels else None


def plan_channels(has_phone: bool, has_email: bool, whatsapp_capable: bool) -> ChannelPlan:
    """Deterministic plan for a contact profile."""
    if has_phone and whatsapp_capable:
        return ChannelPlan([MessageChannel.WHATSAPP.value], True, "Phone number has WhatsApp")
    if has_email:
        if has_phone:
            return ChannelPlan(
                [MessageChannel.EMAIL.value, MessageChannel.SMS.value],
                False,
                "No WhatsApp; tickets by email with an SMS alert",
            )
        return ChannelPlan([MessageChannel.EMAIL.value], False, "No phone number; tickets by email")
    if has_phone:
        return ChannelPlan([], False, "Phone number has no WhatsApp and there is no email")
    return ChannelPlan([], False, "No phone number or email")


class ChannelSelector:
    def __init__(self, twilio: TwilioGateway):
        self.twilio = twilio

    def plan(self, booking: Booking, exclude: Optional[List[str]] = None) -> ChannelPlan:
        """
        Plan for a booking. `exclude` drops channels (used to re-plan
        after a WhatsApp failure).
        """
        exclude = set(exclude or [])
        has_phone = bool(booking.customer_phone)
        has_email = bool(booking.customer_email)

        capable = False
        if has_phone and MessageChannel.WHATSAPP.value not in exclude:
            capable = self.twilio.has_whatsapp(booking.customer_phone)

        plan = plan_channels(has_phone, has_email, capable)
        if exclude:
            plan.channels = [c for c in plan.channels if c not in exclude]
        logger.debug(f"Channel plan for {booking.bokun_booking_id}: {plan.channels} ({plan.reason})")
        return plan

    @staticmethod
    def describe(plan: ChannelPlan) -> Dict:
        fallback = plan.channels[1] if len(plan.channels) > 1 else None
        return {
            "primary": plan.primary,
            "fallback": fallback,
            "channels": plan.channels,
            "whatsapp_capable": plan.whatsapp_capable,
            "description": plan.reason,
        }
