"""
Booking Mutations

The one place upstream data is turned into Booking rows. Both the
webhook processor and the reconciliation engine go through here, so
the merge rule (see BookingRepository.upsert) is identical for both.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import BookingDataError, WebhookValidationError
from ..models.booking import Booking
from ..repositories.booking_repository import BookingRepository
from ..utils.logging_config import get_logger
from ..utils.phone import format_e164

logger = get_logger(__name__)

CANCELLATION_EVENT_TYPES = frozenset({"cancelled", "bookings/cancelled"})
DEFAULT_PRODUCT_NAME = "Uffizi Tour"
DEFAULT_FIRST_NAME = "Guest"


@dataclass
class MutationSummary:
    count: int = 0
    ignored: int = 0
    cancelled: int = 0
    booking_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {"count": self.count, "ignored": self.ignored, "cancelled": self.cancelled}


def is_cancellation_event(event_type: Optional[str]) -> bool:
    return (event_type or "").strip().lower() in CANCELLATION_EVENT_TYPES


def webhook_event_type(payload: Dict) -> str:
    return str(payload.get("eventType") or payload.get("status") or "unknown")


def webhook_confirmation_code(payload: Dict) -> Optional[str]:
    code = payload.get("confirmationCode")
    if code:
        return str(code)
    for product_booking in payload.get("productBookings") or []:
        if isinstance(product_booking, dict) and product_booking.get("confirmationCode"):
            return str(product_booking["confirmationCode"])
    return None


def parse_upstream_datetime(value: Any) -> Optional[datetime]:
    """
    Epoch milliseconds, ISO-8601 strings and plain dates all become a
    naive UTC datetime. Anything else is None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_upstream_datetime(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def upstream_text(value: Any) -> str:
    """Upstream names and titles are strings, but numbers do turn up."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def upstream_count(value: Any, code: Any, error_cls=BookingDataError) -> int:
    """Participant count from an int or digit string; missing means 1."""
    if value is None or value == "":
        return 1
    invalid = error_cls(f"Booking {code} has an invalid participant count: {value!r}")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise invalid
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise invalid
    if count < 1:
        raise invalid
    return count


def customer_full_name(customer: Optional[Dict]) -> str:
    customer = customer if isinstance(customer, dict) else {}
    first = upstream_text(customer.get("firstName")) or DEFAULT_FIRST_NAME
    last = upstream_text(customer.get("lastName"))
    return f"{first} {last}".strip()


def consolidate_pax_details(fields: Optional[Dict]) -> Optional[List[Dict]]:
    """Sum price-category quantities by title: [{"type": "Adult", "quantity": 2}]"""
    fields = fields if isinstance(fields, dict) else {}
    entries = fields.get("priceCategoryBookings") or fields.get("pricingCategoryBookings") or []
    totals: Dict[str, int] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        pricing = entry.get("pricingCategory") if isinstance(entry.get("pricingCategory"), dict) else {}
        title = upstream_text(entry.get("bookedTitle")) or upstream_text(pricing.get("title")) or DEFAULT_FIRST_NAME
        try:
            quantity = int(entry.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity > 0:
            totals[title] = totals.get(title, 0) + quantity
    if not totals:
        return None
    return [{"type": title, "quantity": quantity} for title, quantity in totals.items()]


class BookingMutator:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.bookings = BookingRepository(db)
        self.eligible_product_ids = set(settings.eligible_product_id_list)

    def is_eligible(self, product_id: Any) -> bool:
        return product_id is not None and str(product_id) in self.eligible_product_ids

    # ==================
    # Webhook events
    # ==================

    def apply_webhook_event(self, payload: Dict, event_type: Optional[str] = None) -> MutationSummary:
        if not isinstance(payload, dict):
            raise WebhookValidationError("Payload is not a JSON object")

        event_type = event_type or webhook_event_type(payload)
        if is_cancellation_event(event_type):
            return self._apply_cancellation(payload)
        return self._apply_booking_event(payload)

    def _apply_cancellation(self, payload: Dict) -> MutationSummary:
        code = webhook_confirmation_code(payload)
        if not code:
            raise WebhookValidationError("Cancellation event without confirmation code")

        summary = MutationSummary()
        booking = self.bookings.get_by_confirmation_code(code)
        if booking is None:
            # Unknown or already cancelled: nothing to do, still a success
            logger.info(f"Cancellation for unknown booking {code}, ignoring")
            return summary

        self.bookings.cancel(booking, datetime.utcnow())
        summary.cancelled = 1
        summary.booking_ids.append(booking.id)
        logger.booking_cancelled(code, source="webhook")
        return summary

    def _apply_booking_event(self, payload: Dict) -> MutationSummary:
        product_bookings = payload.get("productBookings")
        if not isinstance(product_bookings, list):
            raise WebhookValidationError("No product bookings found")

        summary = MutationSummary()
        customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}

        for product_booking in product_bookings:
            if not isinstance(product_booking, dict):
                continue
            product = product_booking.get("product") if isinstance(product_booking.get("product"), dict) else {}
            product_id = product.get("id") or product_booking.get("productId")
            if not self.is_eligible(product_id):
                summary.ignored += 1
                continue

            code = payload.get("confirmationCode") or product_booking.get("confirmationCode")
            if not code:
                raise WebhookValidationError("Product booking without confirmation code")

            passengers = product_booking.get("passengers")
            if isinstance(passengers, list) and passengers:
                pax = len(passengers)
            else:
                pax = upstream_count(product_booking.get("totalParticipants"), code, WebhookValidationError)

            fields = {
                "bokun_product_id": str(product_id),
                "product_name": upstream_text(product.get("title")) or DEFAULT_PRODUCT_NAME,
                "customer_name": customer_full_name(customer),
                "customer_email": upstream_text(customer.get("email")) or None,
                "customer_phone": format_e164(
                    upstream_text(customer.get("phoneNumber") or customer.get("phone") or customer.get("mobilePhone"))
                ) or None,
                "tour_date": parse_upstream_datetime(product_booking.get("date")) or datetime.utcnow(),
                "pax": pax,
            }

            booking, created = self.bookings.upsert(str(code), fields)
            if booking.is_cancelled:
                logger.info(f"Booking {code} is cancelled locally, event not applied")
                summary.ignored += 1
                continue
            summary.count += 1
            summary.booking_ids.append(booking.id)
            logger.booking_upserted(str(code), created, source="webhook")

        return summary

    # ==================
    # Reconciliation search rows
    # ==================

    def apply_search_result(self, result: Dict, source: str = "sync") -> Tuple[Booking, bool]:
        """Upsert one product-booking-search row. Caller checks eligibility."""
        code = result.get("confirmationCode") or result.get("productConfirmationCode")
        if not code:
            raise BookingDataError("Search result without confirmation code")

        tour_date = parse_upstream_datetime(result.get("startDateTime")) or parse_upstream_datetime(
            result.get("startDate")
        )
        if tour_date is None:
            raise BookingDataError(f"Booking {code} has no start date")

        product = result.get("product") if isinstance(result.get("product"), dict) else {}
        customer = result.get("customer") if isinstance(result.get("customer"), dict) else {}

        fields = {
            "bokun_product_id": str(product.get("id") or result.get("productId")),
            "product_name": upstream_text(product.get("title")) or DEFAULT_PRODUCT_NAME,
            "customer_name": customer_full_name(customer),
            "customer_email": upstream_text(customer.get("email")) or None,
            "tour_date": tour_date,
            "pax": upstream_count(result.get("totalParticipants"), code),
            "pax_details": consolidate_pax_details(result.get("fields")),
        }
        booking, created = self.bookings.upsert(str(code), fields)
        if not booking.is_cancelled:
            logger.booking_upserted(str(code), created, source=source)
        return booking, created

    @staticmethod
    def search_result_product_id(result: Dict) -> Optional[str]:
        product = result.get("product") if isinstance(result.get("product"), dict) else {}
        product_id = product.get("id") or result.get("productId")
        return str(product_id) if product_id is not None else None

    @staticmethod
    def search_result_code(result: Dict) -> Optional[str]:
        code = result.get("confirmationCode") or result.get("productConfirmationCode")
        return str(code) if code else None
