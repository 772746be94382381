from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.domain.events import EventType
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import BookingKind, NotificationStatus


# -----------------------------
# Bookings
# -----------------------------
class BookingCreateRequest(BaseModel):
    user_id: str
    items: list[dict[str, Any]]
    total: float
    address: str
    receiver_name: str
    receiver_phone: str
    receiver_email: str | None = None
    kind: str = "service"
    landmark: str | None = None
    pincode: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    preferred_date: str | None = None
    preferred_slot: str | None = None
    channel: str | None = None
    source: str | None = None
    device_id: str | None = None
    schema_version: int | None = None
    payload: dict[str, Any] | None = None
    idempotency_key: str | None = None
    initial_event: str = "created"


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    kind: BookingKind
    status: BookingStatus
    items: list[Any]
    total: float
    address: str
    landmark: str | None = None
    pincode: str | None = None
    receiver_name: str
    receiver_phone: str
    receiver_email: str | None = None
    preferred_date: str | None = None
    preferred_slot: str | None = None
    refund_amount: float | None = None
    refund_processed_at: datetime | None = None
    channel: str
    source: str
    event_count: int
    created_at: datetime
    updated_at: datetime


class BookingEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: EventType
    status: BookingStatus
    actor_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    sequence: int
    created_at: datetime


class BookingCreateResponse(BaseModel):
    success: bool = True
    booking: BookingOut


class BookingDetail(BaseModel):
    success: bool = True
    booking: BookingOut
    events: list[BookingEventOut]
    last_event: BookingEventOut | None = None
    allowed_actions: list[str] = Field(default_factory=list)


class BookingListItem(BookingOut):
    events: list[BookingEventOut] = Field(default_factory=list)
    last_event: BookingEventOut | None = None


class BookingListResponse(BaseModel):
    success: bool = True
    data: list[BookingListItem]


# -----------------------------
# Lifecycle actions
# -----------------------------
class CancelRequest(BaseModel):
    user_id: str | None = None
    reason: str | None = None


class RescheduleRequest(BaseModel):
    user_id: str | None = None
    new_date: str | None = None
    new_slot: str | None = None


class ReturnRequest(BaseModel):
    user_id: str | None = None
    reason: str | None = None


class AdminNotesRequest(BaseModel):
    admin_id: str | None = None
    notes: str | None = None


class AdminRejectRequest(BaseModel):
    admin_id: str | None = None
    reason: str | None = None


class RefundRequest(BaseModel):
    admin_id: str | None = None
    amount: float | None = None
    notes: str | None = None


class ActionResponse(BaseModel):
    success: bool = True
    status: str
    applied: bool


# -----------------------------
# Payments
# -----------------------------
class PaymentOrderRequest(BaseModel):
    booking_id: str
    amount: int
    nonce: str | None = None


class PaymentOrderResponse(BaseModel):
    success: bool = True
    orderId: str
    amount: int
    currency: str


# -----------------------------
# Notification worker
# -----------------------------
class NotificationTaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel: str
    kind: str
    recipient: str
    subject: str
    body: str
    meta: dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus
    attempts: int
    last_error: str | None = None
    created_at: datetime
    sent_at: datetime | None = None


class NotificationAttemptRequest(BaseModel):
    success: bool
    error: str | None = None
