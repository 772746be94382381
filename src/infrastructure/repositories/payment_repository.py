# src/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentStatus,
    utc_now,
)


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(
        self,
        idempotency_key: str,
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.idempotency_key == idempotency_key)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_gateway_order_id(self, gateway_order_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.gateway_order_id == gateway_order_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_open_for_booking(self, booking_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status.in_(OPEN_PAYMENT_STATUSES))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_latest_successful(self, booking_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status == PaymentStatus.SUCCESS)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add(
        self,
        booking_id: str,
        gateway_order_id: str,
        idempotency_key: str,
        amount: int,
        currency: str,
        meta: dict,
        gateway: str = "razorpay",
    ) -> Payment:
        payment = Payment(
            booking_id=booking_id,
            gateway=gateway,
            gateway_order_id=gateway_order_id,
            idempotency_key=idempotency_key,
            amount=amount,
            currency=currency,
            status=PaymentStatus.CREATED,
            meta=meta,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def resolve(
        self,
        payment_id: str,
        expected: tuple[PaymentStatus, ...],
        new_status: PaymentStatus,
        **values,
    ) -> bool:
        """
        Moves a payment to new_status only if it is still in one of the
        expected statuses. Returns False when another writer got there first.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status.in_(expected))
            .values(status=new_status, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_stale_created(self, created_before: datetime) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.status == PaymentStatus.CREATED)
            .where(Payment.created_at < created_before)
            .order_by(Payment.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
