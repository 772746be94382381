# src/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    String,
    Integer,
    Float,
    DateTime,
    Enum,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from enum import Enum as PyEnum
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.events import EventType
from src.domain.state_machine import BookingStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[PyEnum], name: str) -> Enum:
    # Persist the lowercase values, not the member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class BookingKind(str, PyEnum):
    SERVICE = "service"
    PRODUCT = "product"


class PaymentStatus(str, PyEnum):
    CREATED = "created"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"
    REFUNDED = "refunded"


OPEN_PAYMENT_STATUSES = (PaymentStatus.CREATED, PaymentStatus.PENDING)


class NotificationStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Booking(Base):
    """
    Current state of one order. Status only changes through
    BookingLedgerStore.conditional_update; event_count tracks the
    number of rows in booking_events for this booking.
    """

    __tablename__ = "bookings_ledger"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[BookingKind] = mapped_column(
        _enum_column(BookingKind, "booking_kind"),
        nullable=False,
        default=BookingKind.SERVICE,
    )
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    total: Mapped[float] = mapped_column(Float, nullable=False)

    address: Mapped[str] = mapped_column(Text, nullable=False)
    landmark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pincode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    receiver_name: Mapped[str] = mapped_column(String(128), nullable=False)
    receiver_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    receiver_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    preferred_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    preferred_slot: Mapped[str | None] = mapped_column(String(64), nullable=True)

    refund_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    refund_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="pwa")
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="homefix")
    device_id: Mapped[str] = mapped_column(String(128), nullable=False, default="unknown")

    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "checksum",
            name="uq_booking_checksum",
        ),
        CheckConstraint(
            "total > 0",
            name="ck_booking_total_positive",
        ),
        CheckConstraint(
            "event_count >= 0",
            name="ck_booking_event_count_nonnegative",
        ),
    )


class BookingEvent(Base):
    """Append-only audit record. One row per accepted transition."""

    __tablename__ = "booking_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings_ledger.id"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[EventType] = mapped_column(
        _enum_column(EventType, "booking_event_type"),
        nullable=False,
    )
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_event_status"),
        nullable=False,
    )
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_id",
            "sequence",
            name="uq_booking_event_sequence",
        ),
        CheckConstraint("sequence > 0", name="ck_booking_event_sequence_positive"),
    )


class NotificationTask(Base):
    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="email")
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[NotificationStatus] = mapped_column(
        _enum_column(NotificationStatus, "notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notification_dedupe_key"),
        CheckConstraint("attempts >= 0", name="ck_notification_attempts_nonnegative"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings_ledger.id"),
        nullable=False,
        index=True,
    )
    gateway: Mapped[str] = mapped_column(String(32), nullable=False, default="razorpay")
    gateway_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.CREATED,
    )
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("gateway_order_id", name="uq_payment_gateway_order_id"),
        UniqueConstraint("idempotency_key", name="uq_payment_idempotency_key"),
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        # At most one open payment per booking.
        Index(
            "uq_payment_open_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status IN ('created', 'pending')"),
            sqlite_where=text("status IN ('created', 'pending')"),
        ),
    )
