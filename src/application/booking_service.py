import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from src.domain.authorization import AuthorizationGuard
from src.domain.events import INITIAL_EVENT_TYPES, EventType, is_draft_event, is_draft_only
from src.domain.exceptions import ConflictError, ValidationError
from src.domain.state_machine import BookingAction, BookingStateMachine
from src.infrastructure.db.models import (
    Booking,
    BookingEvent,
    NotificationTask,
    PaymentStatus,
    utc_now,
)
from src.infrastructure.repositories.booking_repository import BookingLedgerStore
from src.infrastructure.repositories.event_repository import EventLog
from src.infrastructure.repositories.notification_repository import NotificationOutbox
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

PAYMENT_RECORD_ATTEMPTS = 3

_NOTIFICATION_TEMPLATES: dict[str, tuple[str, str]] = {
    "booking_created": (
        "Booking Created",
        "Hi {name}, your booking {booking_id} has been created.",
    ),
    "booking_cancelled": (
        "Booking Cancelled",
        "Hi {name}, your booking {booking_id} has been cancelled.",
    ),
    "booking_rescheduled": (
        "Booking Rescheduled",
        "Hi {name}, your booking {booking_id} is now scheduled for {date} ({slot}).",
    ),
    "booking_return_init": (
        "Return Requested",
        "Hi {name}, we received your return request for booking {booking_id}.",
    ),
    "booking_return_approved": (
        "Return Approved",
        "Hi {name}, your return for booking {booking_id} has been approved.",
    ),
    "booking_return_rejected": (
        "Return Rejected",
        "Hi {name}, your return for booking {booking_id} was not approved: {reason}",
    ),
    "booking_return_completed": (
        "Return Completed",
        "Hi {name}, the return for booking {booking_id} is complete.",
    ),
    "booking_refund": (
        "Refund Processed",
        "Hi {name}, a refund of {amount} for booking {booking_id} has been processed.",
    ),
    "booking_payment_success": (
        "Payment Received",
        "Hi {name}, we received your payment of {amount} for booking {booking_id}.",
    ),
}


@dataclass
class TransitionResult:
    booking: Booking
    applied: bool
    event: BookingEvent | None = None
    notification: NotificationTask | None = None


@dataclass
class BookingView:
    booking: Booking
    events: list[BookingEvent] = field(default_factory=list)

    @property
    def last_event(self) -> BookingEvent | None:
        return EventLog.last_event(self.events)

    @property
    def allowed_actions(self) -> list[str]:
        """Actions a caller may request next. Payment success comes from the gateway only."""
        actions = BookingStateMachine.get_allowed_actions(self.booking.status)
        actions.discard(BookingAction.PAYMENT_SUCCESS)
        return sorted(action.value for action in actions)


def _require_text(value: str | None, message: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(message)
    return cleaned


class LedgerService:
    """Application service coordinating the booking lifecycle."""

    def __init__(self, db: Session):
        self.db = db
        self.store = BookingLedgerStore(db)
        self.events = EventLog(db)
        self.outbox = NotificationOutbox(db)
        self.payments = PaymentRepository(db)

    # -----------------------------
    # Create / read
    # -----------------------------
    def create_booking(
        self,
        user_id: str,
        items: list,
        total: float,
        address: str,
        receiver_name: str,
        receiver_phone: str,
        idempotency_key: str | None = None,
        initial_event: EventType | str = EventType.CREATED,
        **details,
    ) -> Booking:
        try:
            initial_event = EventType(initial_event)
        except ValueError as exc:
            raise ValidationError(f"Unknown event type: {initial_event}") from exc
        if initial_event not in INITIAL_EVENT_TYPES:
            raise ValidationError(f"Bookings cannot start with event '{initial_event.value}'")

        checksum = None
        if idempotency_key:
            checksum = BookingLedgerStore.checksum_for(user_id or "", idempotency_key)
            existing = self.store.get_by_checksum(checksum)
            if existing:
                logger.info("Duplicate create request. booking_id=%s", existing.id)
                return existing

        booking = self.store.create(
            user_id=user_id,
            items=items,
            total=total,
            address=address,
            receiver_name=receiver_name,
            receiver_phone=receiver_phone,
            checksum=checksum,
            **details,
        )
        self.events.append(
            booking_id=booking.id,
            sequence=booking.event_count,
            event_type=initial_event,
            status=booking.status,
            actor_id=booking.user_id,
            meta={
                "total": booking.total,
                "item_count": len(booking.items),
                "source": booking.source,
                "channel": booking.channel,
            },
        )
        if not is_draft_event(initial_event):
            self._notify(booking, "booking_created", booking.event_count)

        logger.info("Booking created. booking_id=%s user_id=%s", booking.id, booking.user_id)
        return booking

    def get_booking(self, booking_id: str) -> BookingView:
        booking = self.store.require(booking_id)
        return BookingView(booking=booking, events=self.events.list_for_booking(booking.id))

    def list_bookings(self, owner_id: str) -> list[BookingView]:
        owner_id = _require_text(owner_id, "owner is required")
        bookings = self.store.list_by_owner(owner_id)
        grouped = self.events.list_for_bookings([booking.id for booking in bookings])

        views = []
        for booking in bookings:
            events = grouped.get(booking.id, [])
            if is_draft_only(event.event_type for event in events):
                continue
            views.append(BookingView(booking=booking, events=events))
        return views

    # -----------------------------
    # Customer actions
    # -----------------------------
    def cancel(
        self,
        booking_id: str,
        user_id: str | None,
        reason: str | None = None,
    ) -> TransitionResult:
        booking = self.store.require(booking_id)
        actor = AuthorizationGuard.ensure_owner(booking.user_id, user_id)

        return self._apply(
            booking,
            BookingAction.CANCEL,
            actor_id=actor,
            meta={
                "reason": (reason or "").strip() or "user_cancelled",
                "at": utc_now().isoformat(),
            },
        )

    def reschedule(
        self,
        booking_id: str,
        user_id: str | None,
        new_date: str | None,
        new_slot: str | None,
    ) -> TransitionResult:
        if not (new_date or "").strip() or not (new_slot or "").strip():
            raise ValidationError("new_date and new_slot are required")
        new_date = new_date.strip()
        new_slot = new_slot.strip()

        booking = self.store.require(booking_id)
        actor = AuthorizationGuard.ensure_owner(booking.user_id, user_id)

        payload = dict(booking.payload or {})
        preferences = dict(payload.get("service_preferences") or {})
        preferences.update(preferred_date=new_date, preferred_slot=new_slot)
        payload["service_preferences"] = preferences

        return self._apply(
            booking,
            BookingAction.RESCHEDULE,
            actor_id=actor,
            meta={
                "old_date": booking.preferred_date,
                "old_slot": booking.preferred_slot,
                "new_date": new_date,
                "new_slot": new_slot,
            },
            values={
                "preferred_date": new_date,
                "preferred_slot": new_slot,
                "payload": payload,
            },
            context={"date": new_date, "slot": new_slot},
        )

    def request_return(
        self,
        booking_id: str,
        user_id: str | None,
        reason: str | None,
    ) -> TransitionResult:
        reason = _require_text(reason, "reason is required for returns")
        booking = self.store.require(booking_id)
        actor = AuthorizationGuard.ensure_owner(booking.user_id, user_id)

        return self._apply(
            booking,
            BookingAction.RETURN_REQUEST,
            actor_id=actor,
            meta={"reason": reason},
        )

    # -----------------------------
    # Admin actions
    # -----------------------------
    def approve_return(
        self,
        booking_id: str,
        admin_id: str | None,
        notes: str | None = None,
    ) -> TransitionResult:
        admin = AuthorizationGuard.ensure_admin(admin_id)
        booking = self.store.require(booking_id)

        return self._apply(
            booking,
            BookingAction.RETURN_APPROVE,
            actor_id=admin,
            meta={"approved_by": admin, "notes": notes or None},
        )

    def reject_return(
        self,
        booking_id: str,
        admin_id: str | None,
        reason: str | None,
    ) -> TransitionResult:
        admin = AuthorizationGuard.ensure_admin(admin_id)
        reason = _require_text(reason, "reason is required to reject a return")
        booking = self.store.require(booking_id)

        return self._apply(
            booking,
            BookingAction.RETURN_REJECT,
            actor_id=admin,
            meta={"rejected_by": admin, "reason": reason},
            context={"reason": reason},
        )

    def complete_return(
        self,
        booking_id: str,
        admin_id: str | None,
        notes: str | None = None,
    ) -> TransitionResult:
        admin = AuthorizationGuard.ensure_admin(admin_id)
        booking = self.store.require(booking_id)

        return self._apply(
            booking,
            BookingAction.RETURN_COMPLETE,
            actor_id=admin,
            meta={"completed_by": admin, "notes": notes or None},
        )

    def refund(
        self,
        booking_id: str,
        admin_id: str | None,
        amount: float | None,
        notes: str | None = None,
    ) -> TransitionResult:
        admin = AuthorizationGuard.ensure_admin(admin_id)
        if amount is None or amount <= 0:
            raise ValidationError("Valid refund amount required")

        booking = self.store.require(booking_id)
        if booking.refund_amount is not None:
            raise ConflictError("Refund already processed for this booking")
        if amount > booking.total:
            raise ValidationError("Refund amount exceeds booking total")

        meta = dict(booking.meta or {})
        meta["refund_notes"] = notes or None

        result = self._apply(
            booking,
            BookingAction.REFUND,
            actor_id=admin,
            meta={"amount": amount, "refund_by": admin, "notes": notes or None},
            values={
                "refund_amount": amount,
                "refund_processed_at": utc_now(),
                "meta": meta,
            },
            require_unset=("refund_amount",),
            context={"amount": amount},
        )

        payment = self.payments.get_latest_successful(booking.id)
        if payment:
            self.payments.resolve(
                payment.id,
                expected=(PaymentStatus.SUCCESS,),
                new_status=PaymentStatus.REFUNDED,
            )
        return result

    # -----------------------------
    # Payment outcomes
    # -----------------------------
    def record_payment_success(self, booking_id: str, meta: dict) -> TransitionResult:
        """
        Advances the booking to advance_paid where the lifecycle allows it,
        otherwise only records the event. Retries against a fresh status
        when a concurrent transition wins the race.
        """
        for attempt in range(1, PAYMENT_RECORD_ATTEMPTS + 1):
            booking = self.store.require(booking_id)
            if BookingStateMachine.can_apply(booking.status, BookingAction.PAYMENT_SUCCESS):
                next_status = BookingStateMachine.next_status(
                    booking.status, BookingAction.PAYMENT_SUCCESS
                )
            else:
                next_status = booking.status
                logger.warning(
                    "Payment captured for booking in status %s; status left unchanged. booking_id=%s",
                    booking.status.value,
                    booking.id,
                )

            try:
                updated = self.store.conditional_update(
                    booking.id, booking.status, {"status": next_status}
                )
            except ConflictError:
                if attempt == PAYMENT_RECORD_ATTEMPTS:
                    raise
                continue

            rule = BookingStateMachine.rule(BookingAction.PAYMENT_SUCCESS)
            event = self.events.append(
                booking_id=updated.id,
                sequence=updated.event_count,
                event_type=EventType.PAYMENT_SUCCESS,
                status=updated.status,
                meta=meta,
            )
            task = self._notify(
                updated,
                rule.notification_kind,
                updated.event_count,
                {"amount": meta.get("amount")},
            )
            return TransitionResult(booking=updated, applied=True, event=event, notification=task)

        raise ConflictError("Booking status kept changing")  # pragma: no cover

    def record_payment_failure(self, booking_id: str, meta: dict) -> TransitionResult:
        for attempt in range(1, PAYMENT_RECORD_ATTEMPTS + 1):
            booking = self.store.require(booking_id)
            try:
                updated = self.store.conditional_update(
                    booking.id, booking.status, {"status": booking.status}
                )
            except ConflictError:
                if attempt == PAYMENT_RECORD_ATTEMPTS:
                    raise
                continue

            event = self.events.append(
                booking_id=updated.id,
                sequence=updated.event_count,
                event_type=EventType.PAYMENT_FAILED,
                status=updated.status,
                meta=meta,
            )
            return TransitionResult(booking=updated, applied=True, event=event)

        raise ConflictError("Booking status kept changing")  # pragma: no cover

    # -----------------------------
    # Internals
    # -----------------------------
    def _apply(
        self,
        booking: Booking,
        action: BookingAction,
        actor_id: str,
        meta: dict,
        values: dict | None = None,
        require_unset: tuple[str, ...] = (),
        context: dict | None = None,
    ) -> TransitionResult:
        if BookingStateMachine.is_noop(booking.status, action):
            logger.info("No-op %s. booking_id=%s", action.value, booking.id)
            return TransitionResult(booking=booking, applied=False)

        rule = BookingStateMachine.rule(action)
        from_status = booking.status
        next_status = BookingStateMachine.next_status(from_status, action)

        try:
            updated = self.store.conditional_update(
                booking.id,
                from_status,
                {"status": next_status, **(values or {})},
                require_unset=require_unset,
            )
        except ConflictError:
            current = self.store.require(booking.id)
            if BookingStateMachine.is_noop(current.status, action):
                return TransitionResult(booking=current, applied=False)
            raise

        event = self.events.append(
            booking_id=updated.id,
            sequence=updated.event_count,
            event_type=rule.event_type,
            status=updated.status,
            actor_id=actor_id,
            meta=meta,
        )
        task = self._notify(updated, rule.notification_kind, updated.event_count, context)

        logger.info(
            "Booking transition applied. booking_id=%s action=%s %s -> %s",
            updated.id,
            action.value,
            from_status.value,
            updated.status.value,
        )
        return TransitionResult(booking=updated, applied=True, event=event, notification=task)

    def _notify(
        self,
        booking: Booking,
        kind: str,
        sequence: int,
        context: dict | None = None,
    ) -> NotificationTask:
        subject, template = _NOTIFICATION_TEMPLATES[kind]
        values = {
            "name": booking.receiver_name,
            "booking_id": booking.id,
            "date": booking.preferred_date,
            "slot": booking.preferred_slot,
            "reason": "",
            "amount": "",
        }
        values.update({key: value for key, value in (context or {}).items() if value is not None})

        return self.outbox.enqueue(
            kind=kind,
            recipient=booking.receiver_email or booking.receiver_phone,
            subject=subject,
            body=template.format(**values),
            metadata={
                "booking_id": booking.id,
                "customer_name": booking.receiver_name,
                "status": booking.status.value,
                **{key: value for key, value in (context or {}).items() if value is not None},
            },
            dedupe_key=f"{booking.id}:{sequence}:{kind}",
        )
