"""
Unsent Ticket Reminders

Sends admins a WhatsApp summary of today's bookings (in
SCHEDULER_TIMEZONE) whose tickets have not gone out yet:
- one line per time slot with its booking count
- how many of them have an abandoned send wizard
- a link to the dashboard when ADMIN_DASHBOARD_URL is set

Runs at TICKET_REMINDER_TIMES through the scheduler.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..config import Settings
from ..models.booking import Booking
from ..repositories.booking_repository import BookingRepository
from ..utils.logging_config import get_logger
from .twilio_gateway import TwilioGateway

logger = get_logger(__name__)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> aware local time."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def local_day_bounds(now: datetime, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """[start, end) of the local day containing `now`, as naive UTC."""
    local_date = to_local(now, tz).date()
    start = datetime(local_date.year, local_date.month, local_date.day, tzinfo=tz)
    end = start + timedelta(days=1)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


def group_by_time_slot(bookings: List[Booking], tz: ZoneInfo) -> Dict[str, int]:
    slots: Dict[str, int] = {}
    for booking in sorted(bookings, key=lambda b: b.tour_date):
        slot = to_local(booking.tour_date, tz).strftime("%H:%M")
        slots[slot] = slots.get(slot, 0) + 1
    return slots


def build_reminder_message(bookings: List[Booking], tz: ZoneInfo, now: datetime, dashboard_url: str = "") -> str:
    count = len(bookings)
    day_label = to_local(now, tz).strftime("%a, %b %d")
    lines = [
        "🎫 *Ticket Reminder*",
        "",
        f"You have *{count} unsent ticket(s)* for today ({day_label}):",
        "",
    ]
    for slot, slot_count in group_by_time_slot(bookings, tz).items():
        lines.append(f"• {slot}: {slot_count} booking(s)")

    abandoned = sum(1 for b in bookings if b.wizard_abandoned_at is not None)
    if abandoned:
        lines.extend(["", f"⚠️ {abandoned} wizard(s) abandoned mid-process"])
    if dashboard_url:
        lines.extend(["", f"👉 {dashboard_url}"])
    return "\n".join(lines)


def send_ticket_reminder(
    db: Session,
    settings: Settings,
    now: Optional[datetime] = None,
    gateway: Optional[TwilioGateway] = None,
) -> Dict:
    """
    Send today's unsent-ticket summary to every admin number.

    Nothing is sent when all of today's tickets are out. One admin's
    failed send does not stop the others.
    """
    now = now or datetime.utcnow()
    tz = ZoneInfo(settings.scheduler_timezone)
    start, end = local_day_bounds(now, tz)
    bookings = BookingRepository(db).unsent_between(start, end, settings.eligible_product_id_list)

    result = {
        "date": to_local(now, tz).date().isoformat(),
        "unsent": len(bookings),
        "abandoned": sum(1 for b in bookings if b.wizard_abandoned_at is not None),
        "sent_to": 0,
        "errors": [],
    }

    if not bookings:
        logger.info(f"Ticket reminder: no unsent tickets for {result['date']}")
        return result

    admins = settings.admin_whatsapp_number_list
    if not admins:
        logger.warning(f"Ticket reminder: {len(bookings)} unsent tickets but no ADMIN_WHATSAPP_NUMBERS configured")
        return result

    message = build_reminder_message(bookings, tz, now, settings.admin_dashboard_url)
    gateway = gateway or TwilioGateway(settings)
    for phone in admins:
        sent = gateway.send_whatsapp(phone, body=message)
        if sent.success:
            result["sent_to"] += 1
        else:
            logger.error(f"Ticket reminder to {phone} failed: {sent.error}")
            result["errors"].append({"phone": phone, "error": sent.error})

    logger.info(f"Ticket reminder: {result['unsent']} unsent, sent to {result['sent_to']}/{len(admins)} admins")
    return result
