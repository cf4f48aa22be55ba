"""
Extraction helpers for Bokun booking detail payloads.

Participant names can live in several places depending on how the
booking was made. Shapes are tried in a fixed priority order and the
first one that yields names wins:

1. activityBookings[].pricingCategoryBookings[].passengerInfo
2. activityBookings[].passengers[]
3. productBookings[].passengers[] / productBookings[].fields.passengers[]
4. passengers[]
5. guests[]
6. question/answer pairs (full name, or first + last name)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple


DEFAULT_CATEGORY = "Guest"


@dataclass
class ParticipantExtraction:
    participants: List[Dict[str, str]] = field(default_factory=list)
    shape: Optional[str] = None
    # Other shapes that produced a different set of names
    divergent_shapes: List[str] = field(default_factory=list)


@dataclass
class CustomerContact:
    email: Optional[str] = None
    phone: Optional[str] = None


def _as_list(value: Any) -> List:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Dict:
    return value if isinstance(value, dict) else {}


def _full_name(first: Any, last: Any) -> str:
    return " ".join(part.strip() for part in (first, last) if isinstance(part, str) and part.strip())


def _participant(name: str, category: Optional[str]) -> Dict[str, str]:
    return {"name": name, "category": (category or DEFAULT_CATEGORY).strip() or DEFAULT_CATEGORY}


def _person_name(person: Dict) -> str:
    name = _full_name(
        person.get("firstName") or person.get("first_name"),
        person.get("lastName") or person.get("last_name"),
    )
    if not name and isinstance(person.get("name"), str):
        name = person["name"].strip()
    return name


# ----------------------------------------------------------------------
# Shapes
# ----------------------------------------------------------------------

def _from_passenger_info(details: Dict) -> List[Dict[str, str]]:
    result = []
    for activity in _as_list(details.get("activityBookings")):
        for pcb in _as_list(_as_dict(activity).get("pricingCategoryBookings")):
            pcb = _as_dict(pcb)
            info = _as_dict(pcb.get("passengerInfo"))
            name = _full_name(info.get("firstName"), info.get("lastName"))
            if not name:
                continue
            pricing = _as_dict(pcb.get("pricingCategory"))
            category = pricing.get("fullTitle") or pricing.get("title") or pcb.get("bookedTitle")
            result.append(_participant(name, category))
    return result


def _passenger_list(passengers: Iterable) -> List[Dict[str, str]]:
    result = []
    for passenger in passengers:
        passenger = _as_dict(passenger)
        name = _person_name(passenger)
        if not name:
            continue
        category = (
            passenger.get("pricingCategoryTitle")
            or passenger.get("category")
            or passenger.get("type")
        )
        result.append(_participant(name, category))
    return result


def _from_activity_passengers(details: Dict) -> List[Dict[str, str]]:
    result = []
    for activity in _as_list(details.get("activityBookings")):
        result.extend(_passenger_list(_as_list(_as_dict(activity).get("passengers"))))
    return result


def _from_product_passengers(details: Dict) -> List[Dict[str, str]]:
    result = []
    for product_booking in _as_list(details.get("productBookings")):
        product_booking = _as_dict(product_booking)
        result.extend(_passenger_list(_as_list(product_booking.get("passengers"))))
        fields = _as_dict(product_booking.get("fields"))
        result.extend(_passenger_list(_as_list(fields.get("passengers"))))
    return result


def _from_top_level_passengers(details: Dict) -> List[Dict[str, str]]:
    return _passenger_list(_as_list(details.get("passengers")))


def _from_guests(details: Dict) -> List[Dict[str, str]]:
    return _passenger_list(_as_list(details.get("guests")))


def _answer_name(answers: List) -> str:
    values: Dict[str, str] = {}
    for item in answers:
        item = _as_dict(item)
        question = str(item.get("question") or item.get("label") or item.get("title") or "").lower()
        answer = item.get("answer") if item.get("answer") is not None else item.get("value")
        if not question or not isinstance(answer, str) or not answer.strip():
            continue
        if "full name" in question or question in ("name", "nome"):
            values.setdefault("full", answer.strip())
        elif "first" in question:
            values.setdefault("first", answer.strip())
        elif "last" in question or "surname" in question:
            values.setdefault("last", answer.strip())
    return values.get("full") or _full_name(values.get("first"), values.get("last"))


def _from_answers(details: Dict) -> List[Dict[str, str]]:
    result = []
    for activity in _as_list(details.get("activityBookings")):
        activity = _as_dict(activity)
        found = []
        for pcb in _as_list(activity.get("pricingCategoryBookings")):
            pcb = _as_dict(pcb)
            name = _answer_name(_as_list(pcb.get("answers")) or _as_list(pcb.get("questions")))
            if name:
                pricing = _as_dict(pcb.get("pricingCategory"))
                found.append(_participant(name, pricing.get("title") or pcb.get("bookedTitle")))
        if not found:
            name = _answer_name(_as_list(activity.get("answers")) or _as_list(activity.get("questions")))
            if name:
                found.append(_participant(name, None))
        result.extend(found)
    if not result:
        name = _answer_name(_as_list(details.get("answers")) or _as_list(details.get("questions")))
        if name:
            result.append(_participant(name, None))
    return result


PARTICIPANT_SHAPES: Tuple[Tuple[str, Any], ...] = (
    ("passenger_info", _from_passenger_info),
    ("activity_passengers", _from_activity_passengers),
    ("product_passengers", _from_product_passengers),
    ("passengers", _from_top_level_passengers),
    ("guests", _from_guests),
    ("answers", _from_answers),
)


def extract_participants(details: Optional[Dict]) -> ParticipantExtraction:
    """Normalised participants from the highest-priority shape that has any."""
    details = _as_dict(details)
    extraction = ParticipantExtraction()
    chosen_names = None

    for shape, extractor in PARTICIPANT_SHAPES:
        found = extractor(details)
        if not found:
            continue
        names = sorted(p["name"].lower() for p in found)
        if extraction.shape is None:
            extraction.participants = found
            extraction.shape = shape
            chosen_names = names
        elif names != chosen_names:
            extraction.divergent_shapes.append(shape)

    return extraction


# ----------------------------------------------------------------------
# Other detail fields
# ----------------------------------------------------------------------

def extract_booking_channel(details: Optional[Dict]) -> str:
    channel = _as_dict(_as_dict(details).get("bookingChannel"))
    title = channel.get("title")
    return title.strip() if isinstance(title, str) and title.strip() else "direct"


def extract_customer_contact(details: Optional[Dict]) -> CustomerContact:
    customer = _as_dict(_as_dict(details).get("customer"))
    email = customer.get("email")
    phone = customer.get("phoneNumber") or customer.get("phone") or customer.get("mobilePhone")
    return CustomerContact(
        email=email.strip() if isinstance(email, str) and email.strip() else None,
        phone=phone.strip() if isinstance(phone, str) and phone.strip() else None,
    )


def _product_ids(details: Dict) -> List[str]:
    ids = []
    for activity in _as_list(details.get("activityBookings")):
        activity = _as_dict(activity)
        product_id = _as_dict(activity.get("activity")).get("id") or activity.get("productId")
        if product_id is not None:
            ids.append(str(product_id))
    for product_booking in _as_list(details.get("productBookings")):
        product_booking = _as_dict(product_booking)
        product_id = product_booking.get("productId") or _as_dict(product_booking.get("product")).get("id")
        if product_id is not None:
            ids.append(str(product_id))
    return ids


def _rates(details: Dict) -> List[Dict]:
    rates = []
    for activity in _as_list(details.get("activityBookings")):
        activity = _as_dict(activity)
        rates.append(_as_dict(activity.get("rate")))
        for pcb in _as_list(activity.get("pricingCategoryBookings")):
            rates.append(_as_dict(_as_dict(pcb).get("rate")))
    for product_booking in _as_list(details.get("productBookings")):
        rates.append(_as_dict(_as_dict(product_booking).get("rate")))
    return [rate for rate in rates if rate]


def extract_has_audio_guide(
    details: Optional[Dict],
    audio_product_id: str,
    audio_rate_ids: List[str],
    audio_rate_codes: List[str],
    product_id: Optional[str] = None,
) -> bool:
    """
    True only for the audio-eligible product booked on an audio rate.

    A rate matches by id or by its code (internalName / title).
    """
    details = _as_dict(details)
    products = [str(product_id)] if product_id else _product_ids(details)
    if str(audio_product_id) not in products:
        return False

    rate_ids = {str(r) for r in audio_rate_ids}
    rate_codes = {c.upper() for c in audio_rate_codes}
    for rate in _rates(details):
        if rate.get("id") is not None and str(rate["id"]) in rate_ids:
            return True
        for key in ("internalName", "title"):
            value = rate.get(key)
            if isinstance(value, str) and value.strip().upper() in rate_codes:
                return True
    return False


def extract_status(details: Optional[Dict]) -> Optional[str]:
    status = _as_dict(details).get("status")
    return status.upper() if isinstance(status, str) else None
