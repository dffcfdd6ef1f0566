"""
Persistence for payments, their gateway transactions, webhook logs and
notification intents.

Status changes go through `transition_status`, a conditional UPDATE that only
matches rows still in a status the lifecycle table allows to move into the
target. Two writers racing for the same payment therefore cannot both win.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from academy_payments import lifecycle, models
from academy_payments.constants import (
    TRANSACTION_TYPE_PAYMENT,
    NotificationType,
    PaymentStatus,
    WebhookStatus,
)
from academy_payments.errors import ConflictError

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPE_MAX_LENGTH = models.WebhookLog.__table__.c.event_type.type.length


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _finish(db: Session, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


# enrollments

def get_enrollment(db: Session, enrollment_id: str, user_id: Optional[str] = None) -> Optional[models.Enrollment]:
    q = db.query(models.Enrollment).filter(models.Enrollment.id == enrollment_id)
    if user_id is not None:
        q = q.filter(models.Enrollment.user_id == user_id)
    return q.first()


def get_enrollment_by_user_and_skill(db: Session, user_id: str, skill: str) -> Optional[models.Enrollment]:
    return (
        db.query(models.Enrollment)
        .filter(models.Enrollment.user_id == user_id, models.Enrollment.skill == skill)
        .first()
    )


def create_enrollment(db: Session, **fields) -> models.Enrollment:
    enrollment = models.Enrollment(**fields)
    db.add(enrollment)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("User already enrolled in this course") from exc
    db.refresh(enrollment)
    logger.info("Created enrollment id=%s user=%s skill=%s", enrollment.id, enrollment.user_id, enrollment.skill)
    return enrollment


# payments

def get_payment(db: Session, payment_id: int) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.id == payment_id).first()


def get_payment_by_reference(db: Session, payment_reference: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.payment_reference == payment_reference).first()


def get_payment_by_gateway_reference(db: Session, transaction_ref: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.gateway_transaction_ref == transaction_ref).first()


def list_payments(db: Session, user_id: Optional[str] = None, status: Optional[str] = None,
                  stage: Optional[int] = None, enrollment_id: Optional[str] = None) -> List[models.Payment]:
    q = db.query(models.Payment)
    if user_id:
        q = q.filter(models.Payment.user_id == user_id)
    if status:
        q = q.filter(models.Payment.status == status.lower())
    if stage:
        q = q.filter(models.Payment.stage == stage)
    if enrollment_id:
        q = q.filter(models.Payment.enrollment_id == enrollment_id)
    return q.order_by(models.Payment.created_at.desc(), models.Payment.id.desc()).all()


def stage_payments(db: Session, enrollment_id: str, stage: int, statuses) -> List[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(
            models.Payment.enrollment_id == enrollment_id,
            models.Payment.stage == stage,
            models.Payment.status.in_(statuses),
        )
        .all()
    )


def completed_payments(db: Session, enrollment_id: str) -> List[models.Payment]:
    return list_payments(db, status=PaymentStatus.COMPLETED, enrollment_id=enrollment_id)


def create_payment(db: Session, **fields) -> models.Payment:
    fields.setdefault("status", PaymentStatus.PENDING)
    payment = models.Payment(**fields)
    db.add(payment)
    try:
        db.commit()
    except IntegrityError as exc:
        # partial unique index on open (enrollment, stage) attempts, or a reference clash
        db.rollback()
        logger.warning(
            "Payment insert rejected enrollment=%s stage=%s: %s",
            fields.get("enrollment_id"), fields.get("stage"), exc.orig,
        )
        raise ConflictError("A payment for this stage is already in progress") from exc
    db.refresh(payment)
    logger.info(
        "Created payment id=%s reference=%s stage=%s amount=%s",
        payment.id, payment.payment_reference, payment.stage, payment.amount,
    )
    return payment


def set_gateway_details(db: Session, payment: models.Payment, transaction_ref: str, checkout_url: str,
                        commit: bool = True) -> models.Payment:
    payment.gateway_transaction_ref = transaction_ref
    payment.checkout_url = checkout_url
    add_notification(db, payment, NotificationType.PAYMENT_INITIATED)
    _finish(db, commit)
    db.refresh(payment)
    return payment


def transition_status(db: Session, payment: models.Payment, target: str,
                      notification: Optional[str] = None, commit: bool = True, **fields) -> bool:
    """
    Move `payment` to `target` if no other writer got there first.

    Returns True when this call applied the change, False when the payment was
    already in `target` or a concurrent writer moved it first. Raises
    InvalidTransitionError when the loaded status cannot move to `target`.
    With `commit=False` the change is only flushed and the caller commits it
    together with its own writes.
    """
    if payment.status == target:
        return False
    lifecycle.ensure_transition(payment.status, target)

    sources = lifecycle.allowed_sources(target)
    now = utcnow()
    stmt = (
        update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status.in_(sources))
        .values(status=target, updated_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        db.refresh(payment)
        logger.warning(
            "Payment id=%s moved to %s before %s could be applied; discarding",
            payment.id, payment.status, target,
        )
        return False

    if notification:
        add_notification(db, payment, notification, status=target)
    _finish(db, commit)
    db.refresh(payment)
    logger.info("Payment id=%s reference=%s -> %s", payment.id, payment.payment_reference, target)
    return True


def expire_stale_payments(db: Session, now: Optional[datetime] = None) -> int:
    lifecycle.ensure_transition(PaymentStatus.PENDING, PaymentStatus.EXPIRED)
    now = now or utcnow()
    stmt = (
        update(models.Payment)
        .where(models.Payment.status == PaymentStatus.PENDING, models.Payment.expires_at < now)
        .values(status=PaymentStatus.EXPIRED, updated_at=now)
        .returning(models.Payment.id)
        .execution_options(synchronize_session=False)
    )
    expired_ids = [row[0] for row in db.execute(stmt)]
    if expired_ids:
        for payment in db.query(models.Payment).filter(models.Payment.id.in_(expired_ids)):
            add_notification(db, payment, NotificationType.PAYMENT_EXPIRED, status=PaymentStatus.EXPIRED)
    db.commit()
    if expired_ids:
        logger.info("Marked %s payments as expired", len(expired_ids))
    return len(expired_ids)


def queue_payment_reminders(db: Session, window: timedelta, now: Optional[datetime] = None) -> int:
    """Stage one reminder intent per pending payment expiring within `window`."""
    now = now or utcnow()
    stmt = (
        update(models.Payment)
        .where(
            models.Payment.status == PaymentStatus.PENDING,
            models.Payment.reminder_sent_at.is_(None),
            models.Payment.expires_at >= now,
            models.Payment.expires_at < now + window,
        )
        .values(reminder_sent_at=now)
        .returning(models.Payment.id)
        .execution_options(synchronize_session=False)
    )
    reminded_ids = [row[0] for row in db.execute(stmt)]
    if reminded_ids:
        for payment in db.query(models.Payment).filter(models.Payment.id.in_(reminded_ids)):
            add_notification(db, payment, NotificationType.PAYMENT_REMINDER)
    db.commit()
    if reminded_ids:
        logger.info("Queued payment reminders for %s payments", len(reminded_ids))
    return len(reminded_ids)


# transactions

def append_transaction(db: Session, payment: models.Payment, status: str,
                       external_reference: Optional[str] = None,
                       error_message: Optional[str] = None, commit: bool = True) -> models.Transaction:
    txn = models.Transaction(
        payment_id=payment.id,
        user_id=payment.user_id,
        transaction_type=TRANSACTION_TYPE_PAYMENT,
        amount=payment.amount,
        currency=payment.currency,
        status=status,
        transaction_reference=payment.payment_reference,
        external_reference=external_reference,
        description=payment.description,
        error_message=error_message,
    )
    db.add(txn)
    _finish(db, commit)
    db.refresh(txn)
    return txn


def transactions_for(db: Session, payment_id: int) -> List[models.Transaction]:
    return (
        db.query(models.Transaction)
        .filter(models.Transaction.payment_id == payment_id)
        .order_by(models.Transaction.id.desc())
        .all()
    )


def update_latest_transaction(db: Session, payment_id: int, status: str,
                              payment_method: Optional[str] = None,
                              commit: bool = True) -> Optional[models.Transaction]:
    txn = (
        db.query(models.Transaction)
        .filter(models.Transaction.payment_id == payment_id)
        .order_by(models.Transaction.id.desc())
        .first()
    )
    if txn is None:
        return None
    txn.status = status
    if payment_method:
        txn.payment_method = payment_method
    _finish(db, commit)
    db.refresh(txn)
    return txn


# webhook logs

def create_webhook_log(db: Session, provider: str, event_type: Optional[str], payload: str,
                       signature: Optional[str], signature_valid: bool) -> models.WebhookLog:
    if event_type is not None:
        event_type = str(event_type)[:WEBHOOK_EVENT_TYPE_MAX_LENGTH]
    log = models.WebhookLog(
        provider=provider,
        event_type=event_type,
        payload=payload,
        signature=signature,
        signature_valid=signature_valid,
        status=WebhookStatus.RECEIVED,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def finish_webhook_log(db: Session, log: models.WebhookLog, status: str,
                       result: Optional[dict] = None, error_message: Optional[str] = None) -> models.WebhookLog:
    log.status = status
    log.processing_result = result
    log.error_message = error_message
    log.attempts = (log.attempts or 0) + 1
    log.processed_at = utcnow()
    db.commit()
    db.refresh(log)
    return log


def failed_webhook_logs(db: Session, limit: int = 50, replayable_only: bool = False,
                        max_attempts: Optional[int] = None) -> List[models.WebhookLog]:
    q = db.query(models.WebhookLog).filter(models.WebhookLog.status == WebhookStatus.FAILED)
    if replayable_only:
        q = q.filter(models.WebhookLog.signature_valid.is_(True))
    if max_attempts is not None:
        q = q.filter(models.WebhookLog.attempts < max_attempts)
    return q.order_by(models.WebhookLog.id).limit(limit).all()


# notification outbox

def add_notification(db: Session, payment: models.Payment, event_type: str,
                     status: Optional[str] = None) -> models.OutboxEvent:
    """Stage a notification intent; committed together with the caller's change."""
    event = models.OutboxEvent(
        aggregate_id=payment.id,
        event_type=event_type,
        payload={
            "payment_id": payment.id,
            "payment_reference": payment.payment_reference,
            "user_id": payment.user_id,
            "enrollment_id": payment.enrollment_id,
            "stage": payment.stage,
            "amount": payment.amount,
            "status": status or payment.status,
            "customer_email": payment.customer_email,
        },
    )
    db.add(event)
    return event


def pending_notifications(db: Session, limit: int, max_attempts: int) -> List[models.OutboxEvent]:
    stmt = (
        select(models.OutboxEvent)
        .where(models.OutboxEvent.published.is_(False), models.OutboxEvent.attempts < max_attempts)
        .order_by(models.OutboxEvent.id)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())
