# src/domain/events.py

from enum import Enum
from typing import Dict, Iterable


class EventType(str, Enum):
    # Checkout artifacts written before a booking is confirmed
    SERVICE_DRAFT = "service_draft"
    PRODUCT_DRAFT = "product_draft"
    CHECKOUT_PENDING = "checkout_pending"
    CART_DRAFT = "cart_draft"

    # Confirmed bookings
    BOOKING = "booking"
    SERVICE_BOOKING = "service_booking"
    PRODUCT_BOOKING = "product_booking"
    CHECKOUT_PAID = "checkout_paid"

    # Lifecycle
    CREATED = "created"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    RETURNED = "returned"
    REFUNDED = "refunded"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"


class EventClass(str, Enum):
    DRAFT = "draft"
    FINAL = "final"


_DRAFT_TYPES = frozenset(
    {
        EventType.SERVICE_DRAFT,
        EventType.PRODUCT_DRAFT,
        EventType.CHECKOUT_PENDING,
        EventType.CART_DRAFT,
    }
)

EVENT_CLASSIFICATION: Dict[EventType, EventClass] = {
    event_type: EventClass.DRAFT if event_type in _DRAFT_TYPES else EventClass.FINAL
    for event_type in EventType
}

# Event types a booking may be created with.
INITIAL_EVENT_TYPES = frozenset(
    _DRAFT_TYPES
    | {
        EventType.CREATED,
        EventType.BOOKING,
        EventType.SERVICE_BOOKING,
        EventType.PRODUCT_BOOKING,
    }
)


def classify(event_type: EventType) -> EventClass:
    return EVENT_CLASSIFICATION[EventType(event_type)]


def is_draft_event(event_type: EventType) -> bool:
    return classify(event_type) is EventClass.DRAFT


def is_final_event(event_type: EventType) -> bool:
    return classify(event_type) is EventClass.FINAL


def is_draft_only(event_types: Iterable[EventType]) -> bool:
    """
    True when a booking's log holds only draft events.
    Such bookings are checkout leftovers and stay out of the order list.
    An empty log is not draft-only.
    """
    seen = False
    for event_type in event_types:
        seen = True
        if is_final_event(event_type):
            return False
    return seen
