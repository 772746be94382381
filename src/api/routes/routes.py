import logging

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.schemas.schemas import (
    ActionResponse,
    AdminNotesRequest,
    AdminRejectRequest,
    BookingCreateRequest,
    BookingCreateResponse,
    BookingDetail,
    BookingEventOut,
    BookingListItem,
    BookingListResponse,
    BookingOut,
    CancelRequest,
    NotificationAttemptRequest,
    NotificationTaskOut,
    PaymentOrderRequest,
    PaymentOrderResponse,
    RefundRequest,
    RescheduleRequest,
    ReturnRequest,
)
from src.application.booking_service import LedgerService, TransitionResult
from src.application.payment_reconciler import PaymentReconciler
from src.domain.exceptions import ConflictError
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway, get_payment_gateway
from src.infrastructure.repositories.notification_repository import NotificationOutbox


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_caller_id(
    x_user_id: str | None = Header(default=None),
    hf_user_id: str | None = Cookie(default=None),
) -> str | None:
    return x_user_id or hf_user_id


async def get_raw_body(request: Request) -> bytes:
    # Signature is computed over the exact bytes received.
    return await request.body()


def _action_response(result: TransitionResult) -> ActionResponse:
    return ActionResponse(status=result.booking.status.value, applied=result.applied)


@router.get("/health")
def health():
    return {"status": "ok"}


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingCreateResponse)
def create_booking(
    request: BookingCreateRequest,
    db: Session = Depends(get_db),
):
    service = LedgerService(db)
    booking = service.create_booking(**request.model_dump())
    return BookingCreateResponse(booking=BookingOut.model_validate(booking))


@router.get("/bookings", response_model=BookingListResponse)
def list_bookings(
    owner: str = Query(default=""),
    db: Session = Depends(get_db),
):
    service = LedgerService(db)
    views = service.list_bookings(owner)

    data = []
    for view in views:
        item = BookingListItem.model_validate(view.booking)
        item.events = [BookingEventOut.model_validate(event) for event in view.events]
        item.last_event = (
            BookingEventOut.model_validate(view.last_event) if view.last_event else None
        )
        data.append(item)
    return BookingListResponse(data=data)


@router.get("/bookings/{booking_id}", response_model=BookingDetail)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
):
    view = LedgerService(db).get_booking(booking_id)
    return BookingDetail(
        booking=BookingOut.model_validate(view.booking),
        events=[BookingEventOut.model_validate(event) for event in view.events],
        last_event=(
            BookingEventOut.model_validate(view.last_event) if view.last_event else None
        ),
        allowed_actions=view.allowed_actions,
    )


@router.post("/bookings/{booking_id}/cancel", response_model=ActionResponse)
def cancel_booking(
    booking_id: str,
    request: CancelRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).cancel(
        booking_id,
        user_id=request.user_id,
        reason=request.reason,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/reschedule", response_model=ActionResponse)
def reschedule_booking(
    booking_id: str,
    request: RescheduleRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).reschedule(
        booking_id,
        user_id=request.user_id,
        new_date=request.new_date,
        new_slot=request.new_slot,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/return", response_model=ActionResponse)
def request_return(
    booking_id: str,
    request: ReturnRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).request_return(
        booking_id,
        user_id=request.user_id,
        reason=request.reason,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/return/approve", response_model=ActionResponse)
def approve_return(
    booking_id: str,
    request: AdminNotesRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).approve_return(
        booking_id,
        admin_id=request.admin_id,
        notes=request.notes,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/return/reject", response_model=ActionResponse)
def reject_return(
    booking_id: str,
    request: AdminRejectRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).reject_return(
        booking_id,
        admin_id=request.admin_id,
        reason=request.reason,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/return/complete", response_model=ActionResponse)
def complete_return(
    booking_id: str,
    request: AdminNotesRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).complete_return(
        booking_id,
        admin_id=request.admin_id,
        notes=request.notes,
    )
    return _action_response(result)


@router.post("/bookings/{booking_id}/refund", response_model=ActionResponse)
def refund_booking(
    booking_id: str,
    request: RefundRequest,
    db: Session = Depends(get_db),
):
    result = LedgerService(db).refund(
        booking_id,
        admin_id=request.admin_id,
        amount=request.amount,
        notes=request.notes,
    )
    return _action_response(result)


# -----------------------------
# Payments
# -----------------------------
@router.post("/payments/order", response_model=PaymentOrderResponse)
def create_payment_order(
    request: PaymentOrderRequest,
    caller_id: str | None = Depends(get_caller_id),
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    result = PaymentReconciler(db, gateway).create_order(
        booking_id=request.booking_id,
        amount=request.amount,
        caller_id=caller_id,
        nonce=request.nonce,
    )
    return PaymentOrderResponse(
        orderId=result.order_id,
        amount=result.amount,
        currency=result.currency,
    )


@router.post("/payments/webhook")
def payment_webhook(
    raw_body: bytes = Depends(get_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    reconciler = PaymentReconciler(db, gateway)

    try:
        outcome = reconciler.handle_webhook(raw_body, x_razorpay_signature)
    except (SQLAlchemyError, ConflictError):
        # Still acknowledged; the payment stays open and can be reconciled later.
        db.rollback()
        logger.exception("Webhook processing failed")
        return {"success": True, "processed": False}

    return {"success": True, "processed": outcome.processed, "reason": outcome.reason}


# -----------------------------
# Notification worker
# -----------------------------
@router.get("/notifications/tasks", response_model=list[NotificationTaskOut])
def list_notification_tasks(
    limit: int = Query(default=50),
    db: Session = Depends(get_db),
):
    return NotificationOutbox(db).list_pending(limit)


@router.post(
    "/notifications/tasks/{task_id}/attempt",
    response_model=NotificationTaskOut,
)
def record_notification_attempt(
    task_id: str,
    request: NotificationAttemptRequest,
    db: Session = Depends(get_db),
):
    return NotificationOutbox(db).record_attempt(
        task_id,
        succeeded=request.success,
        error=request.error,
    )
