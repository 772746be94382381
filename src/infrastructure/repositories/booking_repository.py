# src/infrastructure/repositories/booking_repository.py

import hashlib
import json
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking, BookingKind, utc_now
from src.domain.exceptions import ConflictError, NotFoundError, ValidationError
from src.domain.state_machine import BookingStatus

logger = logging.getLogger(__name__)

# Columns a transition may write besides status/event_count/updated_at.
_MUTABLE_COLUMNS = frozenset(
    {
        "preferred_date",
        "preferred_slot",
        "payload",
        "refund_amount",
        "refund_processed_at",
        "meta",
    }
)


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _require_text(value: str | None, field: str) -> str:
    cleaned = str(value).strip() if value is not None else ""
    if not cleaned:
        raise ValidationError(f"{field} is required")
    return cleaned


class BookingLedgerStore:
    """
    Canonical per-order record. Every status change goes through
    conditional_update, which only writes when the stored status still
    equals the caller's expected status.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        items: list,
        total: float,
        address: str,
        receiver_name: str,
        receiver_phone: str,
        kind: BookingKind | str = BookingKind.SERVICE,
        receiver_email: str | None = None,
        landmark: str | None = None,
        pincode: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        preferred_date: str | None = None,
        preferred_slot: str | None = None,
        channel: str | None = None,
        source: str | None = None,
        device_id: str | None = None,
        schema_version: int | None = None,
        payload: dict | None = None,
        checksum: str | None = None,
    ) -> Booking:
        user_id = _require_text(user_id, "user_id")
        if not isinstance(items, list) or not items:
            raise ValidationError("items array empty")
        if total is None or total <= 0:
            raise ValidationError("total must be greater than zero")
        address = _require_text(address, "address")
        receiver_name = _require_text(receiver_name, "receiver_name")
        receiver_phone = _require_text(receiver_phone, "receiver_phone")
        try:
            kind = BookingKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown booking kind: {kind}") from exc

        booking = Booking(
            user_id=user_id,
            kind=kind,
            status=BookingStatus.PENDING,
            items=_json_safe(items),
            payload=_json_safe(payload or {}),
            total=total,
            address=address,
            landmark=landmark,
            pincode=pincode,
            latitude=latitude,
            longitude=longitude,
            receiver_name=receiver_name,
            receiver_phone=receiver_phone,
            receiver_email=(receiver_email or "").strip() or None,
            preferred_date=preferred_date,
            preferred_slot=preferred_slot,
            channel=channel or "pwa",
            source=source or "homefix",
            device_id=device_id or "unknown",
            schema_version=schema_version or 1,
            checksum=checksum or self.random_checksum(),
            meta={},
            event_count=1,
        )
        self.db.add(booking)
        self.db.flush()
        return booking

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        # populate_existing: conditional updates bypass the identity map.
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_checksum(self, checksum: str) -> Booking | None:
        stmt = select(Booking).where(Booking.checksum == checksum)
        return self.db.execute(stmt).scalar_one_or_none()

    def require(self, booking_id: str) -> Booking:
        booking = self.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def list_by_owner(self, owner_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == owner_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def conditional_update(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        mutation: dict,
        require_unset: Iterable[str] = (),
    ) -> Booking:
        """
        UPDATE ... WHERE id = :id AND status = :expected in one statement.

        ``mutation`` carries the new ``status`` plus any of the mutable
        columns. ``event_count`` is always bumped by one, since every
        accepted write appends exactly one event. Columns named in
        ``require_unset`` must still be NULL for the write to apply.
        """
        values = dict(mutation)
        new_status = BookingStatus(values.pop("status", expected_status))
        unknown = set(values) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable by a transition: {sorted(unknown)}")

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected_status)
        )
        for column in require_unset:
            stmt = stmt.where(getattr(Booking, column).is_(None))

        stmt = stmt.values(
            status=new_status,
            event_count=Booking.event_count + 1,
            updated_at=utc_now(),
            **values,
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        if result.rowcount != 1:
            current = self.get_by_id(booking_id)
            if current is None:
                raise NotFoundError("Booking not found")
            logger.info(
                "Conditional update lost: booking_id=%s expected=%s actual=%s",
                booking_id,
                expected_status.value,
                current.status.value,
            )
            raise ConflictError(
                f"Booking status changed concurrently (now '{current.status.value}')"
            )

        return self.get_by_id(booking_id)

    @staticmethod
    def checksum_for(user_id: str, idempotency_key: str) -> str:
        seed = f"{user_id}:{idempotency_key}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    @staticmethod
    def random_checksum() -> str:
        return uuid4().hex
