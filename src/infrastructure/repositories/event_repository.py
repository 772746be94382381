# src/infrastructure/repositories/event_repository.py

from collections import defaultdict

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.domain.events import EventType
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import BookingEvent


class EventLog:
    """
    Append-only journal of booking events. No update or delete.
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        booking_id: str,
        sequence: int,
        event_type: EventType,
        status: BookingStatus,
        actor_id: str | None = None,
        meta: dict | None = None,
    ) -> BookingEvent:
        event = BookingEvent(
            booking_id=booking_id,
            sequence=sequence,
            event_type=EventType(event_type),
            status=BookingStatus(status),
            actor_id=actor_id,
            meta=meta or {},
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_for_booking(self, booking_id: str) -> list[BookingEvent]:
        stmt = (
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .order_by(BookingEvent.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_bookings(self, booking_ids: list[str]) -> dict[str, list[BookingEvent]]:
        if not booking_ids:
            return {}

        stmt = (
            select(BookingEvent)
            .where(BookingEvent.booking_id.in_(booking_ids))
            .order_by(BookingEvent.booking_id, BookingEvent.sequence)
        )
        grouped: dict[str, list[BookingEvent]] = defaultdict(list)
        for event in self.db.execute(stmt).scalars().all():
            grouped[event.booking_id].append(event)
        return dict(grouped)

    @staticmethod
    def last_event(events: list[BookingEvent]) -> BookingEvent | None:
        return events[-1] if events else None
