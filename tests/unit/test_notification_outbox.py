import pytest

from src.domain.exceptions import ConflictError, NotFoundError
from src.infrastructure.db.models import NotificationStatus
from src.infrastructure.repositories.notification_repository import NotificationOutbox, channel_for


def _enqueue(outbox, dedupe_key="b-1:2:booking_cancelled", recipient="asha@example.com"):
    return outbox.enqueue(
        kind="booking_cancelled",
        recipient=recipient,
        subject="Booking Cancelled",
        body="Your booking has been cancelled.",
        metadata={"booking_id": "b-1"},
        dedupe_key=dedupe_key,
    )


def test_channel_follows_recipient():
    assert channel_for("asha@example.com") == "email"
    assert channel_for("+919800000001") == "sms"


def test_enqueue_creates_pending_task(db):
    task = _enqueue(NotificationOutbox(db))

    assert task.status == NotificationStatus.PENDING
    assert task.attempts == 0
    assert task.channel == "email"


def test_same_dedupe_key_enqueues_once(db):
    outbox = NotificationOutbox(db)

    first = _enqueue(outbox)
    second = _enqueue(outbox)

    assert first.id == second.id
    assert len(outbox.list_pending()) == 1


def test_successful_attempt_marks_sent(db):
    outbox = NotificationOutbox(db)
    task = _enqueue(outbox)

    task = outbox.record_attempt(task.id, succeeded=True)

    assert task.status == NotificationStatus.SENT
    assert task.attempts == 1
    assert task.sent_at is not None
    assert outbox.list_pending() == []


def test_failures_dead_letter_at_max_attempts(db):
    outbox = NotificationOutbox(db, max_attempts=3)
    task = _enqueue(outbox, recipient="+919800000001")

    for _ in range(2):
        task = outbox.record_attempt(task.id, succeeded=False, error="sms provider timeout")
        assert task.status == NotificationStatus.PENDING

    task = outbox.record_attempt(task.id, succeeded=False, error="sms provider timeout")

    assert task.status == NotificationStatus.FAILED
    assert task.attempts == 3
    assert task.last_error == "sms provider timeout"


def test_resolved_task_rejects_attempts(db):
    outbox = NotificationOutbox(db)
    task = _enqueue(outbox)
    outbox.record_attempt(task.id, succeeded=True)

    with pytest.raises(ConflictError):
        outbox.record_attempt(task.id, succeeded=True)


def test_unknown_task(db):
    with pytest.raises(NotFoundError):
        NotificationOutbox(db).record_attempt("missing", succeeded=True)


def test_list_pending_is_oldest_first(db):
    outbox = NotificationOutbox(db)
    first = _enqueue(outbox, dedupe_key="b-1:1:booking_created")
    second = _enqueue(outbox, dedupe_key="b-1:2:booking_cancelled")

    assert [task.id for task in outbox.list_pending()] == [first.id, second.id]
    assert [task.id for task in outbox.list_for_booking("b-1")] == [first.id, second.id]
