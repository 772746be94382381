# src/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Set

from src.domain.events import EventType
from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    RESCHEDULED = "rescheduled"
    ADVANCE_PAID = "advance_paid"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    RETURNED = "returned"
    REFUNDED = "refunded"


class BookingAction(str, Enum):
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    RETURN_REQUEST = "return_request"
    RETURN_APPROVE = "return_approve"
    RETURN_REJECT = "return_reject"
    RETURN_COMPLETE = "return_complete"
    REFUND = "refund"
    PAYMENT_SUCCESS = "payment_success"


@dataclass(frozen=True)
class TransitionRule:
    allowed_from: FrozenSet[BookingStatus]
    to_status: BookingStatus
    event_type: EventType
    notification_kind: str
    admin_only: bool = False


# Cannot be cancelled. Only cancelled also refuses a reschedule.
TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {
        BookingStatus.CANCELLED,
        BookingStatus.RETURN_REJECTED,
        BookingStatus.REFUNDED,
    }
)

_NON_TERMINAL = frozenset(set(BookingStatus) - TERMINAL_STATUSES)


class BookingStateMachine:
    """
    Central lifecycle controller for booking actions.
    Maps (current status, action) to the next status.
    """

    _RULES: Dict[BookingAction, TransitionRule] = {
        BookingAction.CANCEL: TransitionRule(
            allowed_from=_NON_TERMINAL,
            to_status=BookingStatus.CANCELLED,
            event_type=EventType.CANCELLED,
            notification_kind="booking_cancelled",
        ),
        BookingAction.RESCHEDULE: TransitionRule(
            allowed_from=frozenset(
                set(BookingStatus) - {BookingStatus.CANCELLED, BookingStatus.COMPLETED}
            ),
            to_status=BookingStatus.RESCHEDULED,
            event_type=EventType.RESCHEDULED,
            notification_kind="booking_rescheduled",
        ),
        BookingAction.RETURN_REQUEST: TransitionRule(
            allowed_from=frozenset({BookingStatus.COMPLETED}),
            to_status=BookingStatus.RETURN_REQUESTED,
            event_type=EventType.RETURN_REQUESTED,
            notification_kind="booking_return_init",
        ),
        BookingAction.RETURN_APPROVE: TransitionRule(
            allowed_from=frozenset({BookingStatus.RETURN_REQUESTED}),
            to_status=BookingStatus.RETURN_APPROVED,
            event_type=EventType.RETURN_APPROVED,
            notification_kind="booking_return_approved",
            admin_only=True,
        ),
        BookingAction.RETURN_REJECT: TransitionRule(
            allowed_from=frozenset({BookingStatus.RETURN_REQUESTED}),
            to_status=BookingStatus.RETURN_REJECTED,
            event_type=EventType.RETURN_REJECTED,
            notification_kind="booking_return_rejected",
            admin_only=True,
        ),
        BookingAction.RETURN_COMPLETE: TransitionRule(
            allowed_from=frozenset({BookingStatus.RETURN_APPROVED}),
            to_status=BookingStatus.RETURNED,
            event_type=EventType.RETURNED,
            notification_kind="booking_return_completed",
            admin_only=True,
        ),
        BookingAction.REFUND: TransitionRule(
            allowed_from=frozenset({BookingStatus.RETURNED}),
            to_status=BookingStatus.REFUNDED,
            event_type=EventType.REFUNDED,
            notification_kind="booking_refund",
            admin_only=True,
        ),
        BookingAction.PAYMENT_SUCCESS: TransitionRule(
            allowed_from=frozenset({BookingStatus.PENDING, BookingStatus.RESCHEDULED}),
            to_status=BookingStatus.ADVANCE_PAID,
            event_type=EventType.PAYMENT_SUCCESS,
            notification_kind="booking_payment_success",
        ),
    }

    # Repeating these actions on their own result is a no-op success.
    _IDEMPOTENT_ACTIONS: FrozenSet[BookingAction] = frozenset({BookingAction.CANCEL})

    @classmethod
    def rule(cls, action: BookingAction) -> TransitionRule:
        return cls._RULES[BookingAction(action)]

    @classmethod
    def can_apply(
        cls,
        from_status: BookingStatus,
        action: BookingAction,
    ) -> bool:
        """
        Returns True if the action is legal from the current status.
        """
        cls._ensure_valid_status(from_status)
        return from_status in cls.rule(action).allowed_from

    @classmethod
    def next_status(
        cls,
        from_status: BookingStatus,
        action: BookingAction,
    ) -> BookingStatus:
        """
        Returns the resulting status.
        Raises InvalidStateTransitionError if the action is illegal.
        """
        if not cls.can_apply(from_status, action):
            raise InvalidStateTransitionError(
                action=BookingAction(action).value,
                from_state=from_status.value,
            )
        return cls.rule(action).to_status

    @classmethod
    def is_noop(cls, from_status: BookingStatus, action: BookingAction) -> bool:
        """
        Returns True when the action was already applied, e.g. cancelling
        a cancelled booking.
        """
        cls._ensure_valid_status(from_status)
        action = BookingAction(action)
        return (
            action in cls._IDEMPOTENT_ACTIONS
            and from_status == cls._RULES[action].to_status
        )

    @classmethod
    def get_allowed_actions(cls, status: BookingStatus) -> Set[BookingAction]:
        """
        Returns the actions that are legal from the current status.
        """
        cls._ensure_valid_status(status)
        return {
            action
            for action, rule in cls._RULES.items()
            if status in rule.allowed_from
        }

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
