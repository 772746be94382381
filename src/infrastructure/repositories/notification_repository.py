# src/infrastructure/repositories/notification_repository.py

import logging
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.domain.exceptions import ConflictError, NotFoundError
from src.infrastructure.db.models import NotificationStatus, NotificationTask, utc_now
from src.infrastructure.settings import NOTIFICATION_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


def channel_for(recipient: str) -> str:
    return "email" if "@" in recipient else "sms"


class NotificationOutbox:
    """
    Durable queue of outbound messages.

    The ledger only enqueues. Delivery happens in an external worker that
    reads pending tasks and reports each attempt back through
    record_attempt.
    """

    def __init__(self, db: Session, max_attempts: int = NOTIFICATION_MAX_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts

    def enqueue(
        self,
        kind: str,
        recipient: str,
        subject: str,
        body: str,
        metadata: dict | None = None,
        dedupe_key: str | None = None,
    ) -> NotificationTask:
        if dedupe_key:
            existing = self.db.execute(
                select(NotificationTask).where(NotificationTask.dedupe_key == dedupe_key)
            ).scalar_one_or_none()
            if existing:
                return existing

        task = NotificationTask(
            channel=channel_for(recipient),
            kind=kind,
            recipient=recipient,
            subject=subject,
            body=body,
            meta=metadata or {},
            status=NotificationStatus.PENDING,
            attempts=0,
            dedupe_key=dedupe_key or f"adhoc:{uuid4()}",
        )
        self.db.add(task)
        self.db.flush()
        return task

    def get(self, task_id: str) -> NotificationTask:
        task = self.db.execute(
            select(NotificationTask).where(NotificationTask.id == task_id)
        ).scalar_one_or_none()
        if not task:
            raise NotFoundError("Notification task not found")
        return task

    def list_pending(self, limit: int = 50) -> list[NotificationTask]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(NotificationTask)
            .where(NotificationTask.status == NotificationStatus.PENDING)
            .order_by(NotificationTask.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_booking(self, booking_id: str) -> list[NotificationTask]:
        stmt = (
            select(NotificationTask)
            .where(NotificationTask.dedupe_key.like(f"{booking_id}:%"))
            .order_by(NotificationTask.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def record_attempt(
        self,
        task_id: str,
        succeeded: bool,
        error: str | None = None,
    ) -> NotificationTask:
        """
        Worker callback for one delivery attempt. Failures stay pending
        until max_attempts, then the task is dead-lettered as failed.
        """
        stmt = (
            select(NotificationTask)
            .where(NotificationTask.id == task_id)
            .with_for_update()
        )
        task = self.db.execute(stmt).scalar_one_or_none()
        if not task:
            raise NotFoundError("Notification task not found")
        if task.status != NotificationStatus.PENDING:
            raise ConflictError(f"Notification task already {task.status.value}")

        task.attempts += 1
        if succeeded:
            task.status = NotificationStatus.SENT
            task.sent_at = utc_now()
            task.last_error = None
        else:
            task.last_error = error or "delivery failed"
            if task.attempts >= self.max_attempts:
                task.status = NotificationStatus.FAILED
                logger.warning(
                    "Notification dead-lettered. task_id=%s kind=%s attempts=%s",
                    task.id,
                    task.kind,
                    task.attempts,
                )

        self.db.flush()
        return task
