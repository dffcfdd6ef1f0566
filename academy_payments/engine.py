"""
Stage payment orchestration.

`PaymentEngine.initialize_payment` validates a stage payment request against
the enrollment's price basis, records a pending Payment, initializes it with
the gateway and keeps an append-only Transaction trail of each attempt.
`PaymentEngine.verify_payment` is the pull-based confirmation path; it shares
`apply_gateway_outcome` with the webhook path so both converge on the same
"set terminal status once" rule.
"""
import logging
import secrets
import time
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from academy_payments import config, lifecycle, pricing, store
from academy_payments.constants import (
    PAYMENT_REFERENCE_PREFIX,
    PAYMENT_STAGES,
    NotificationType,
    PaymentStatus,
    TransactionStatus,
)
from academy_payments.errors import ConflictError, NotFoundError, ValidationError
from academy_payments.gateway import MonnifyClient, VerifiedTransaction

logger = logging.getLogger(__name__)

_OUTCOME_SIDE_EFFECTS = {
    PaymentStatus.COMPLETED: (NotificationType.PAYMENT_SUCCESSFUL, TransactionStatus.SUCCESSFUL),
    PaymentStatus.FAILED: (NotificationType.PAYMENT_FAILED, TransactionStatus.FAILED),
    PaymentStatus.CANCELLED: (NotificationType.PAYMENT_CANCELLED, TransactionStatus.FAILED),
}


def generate_payment_reference(user_id: str, stage: int) -> str:
    millis = int(time.time() * 1000)
    return f"{PAYMENT_REFERENCE_PREFIX}-{user_id[:8].upper()}-{stage}-{millis}-{secrets.randbelow(10000):04d}"


def apply_gateway_outcome(db: Session, payment, status: str, payment_method: Optional[str] = None,
                          amount_paid: Optional[int] = None) -> bool:
    """
    Apply a settlement outcome reported by the gateway.

    Returns True if this call moved the payment, False if there was nothing to
    do (still pending at the gateway, or the same outcome already recorded).
    """
    if status not in _OUTCOME_SIDE_EFFECTS:
        return False
    if payment.status == status:
        return False

    notification, txn_status = _OUTCOME_SIDE_EFFECTS[status]
    fields = {}
    if status == PaymentStatus.COMPLETED:
        fields = {
            "paid_at": store.utcnow(),
            "payment_method": payment_method,
            "amount_paid": amount_paid if amount_paid is not None else payment.amount,
        }
    # status, outbox intent and transaction trail commit together
    applied = store.transition_status(db, payment, status, notification=notification, commit=False, **fields)
    if applied:
        store.update_latest_transaction(db, payment.id, txn_status, payment_method=payment_method, commit=False)
        db.commit()
        db.refresh(payment)
    return applied


class PaymentEngine:
    def __init__(self, gateway: MonnifyClient,
                 expiry_days: int = config.PAYMENT_EXPIRY_DAYS,
                 tolerance_percent: float = config.PAYMENT_AMOUNT_TOLERANCE_PERCENT,
                 redirect_url: str = config.PAYMENT_REDIRECT_URL):
        self.gateway = gateway
        self.expiry_days = expiry_days
        self.tolerance_percent = tolerance_percent
        self.redirect_url = redirect_url

    def initialize_payment(self, db: Session, user_id: str, enrollment_id: str, stage: int, amount,
                           customer_name: str, customer_email: str, customer_phone: Optional[str] = None):
        if stage not in PAYMENT_STAGES:
            raise ValidationError(f"Invalid payment stage: {stage}")

        enrollment = store.get_enrollment(db, enrollment_id, user_id=user_id)
        if enrollment is None:
            raise NotFoundError("Enrollment not found")

        expected = pricing.stage_amount(enrollment.skill, enrollment.scholarship_type, stage)
        if expected <= 0:
            raise ValidationError(f"Stage {stage} is fully covered by scholarship, nothing to pay")
        if not pricing.amount_within_tolerance(amount, expected, self.tolerance_percent):
            logger.warning(
                "Amount mismatch enrollment=%s stage=%s supplied=%s expected=%s",
                enrollment_id, stage, amount, expected,
            )
            raise ValidationError(f"Amount {amount} does not match stage {stage} amount {expected}")

        if store.stage_payments(db, enrollment.id, stage, [PaymentStatus.COMPLETED]):
            raise ConflictError(f"Stage {stage} has already been paid")
        if store.stage_payments(db, enrollment.id, stage, PaymentStatus.OPEN):
            raise ConflictError(f"A payment for stage {stage} is already in progress")

        description = f"Stage {stage} Payment - {enrollment.skill}"
        payment = store.create_payment(
            db,
            user_id=user_id,
            enrollment_id=enrollment.id,
            payment_reference=generate_payment_reference(user_id, stage),
            stage=stage,
            amount=expected,
            description=description,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            expires_at=store.utcnow() + timedelta(days=self.expiry_days),
        )

        try:
            result = self.gateway.initialize_transaction(
                amount=expected,
                customer_name=customer_name,
                customer_email=customer_email,
                customer_phone=customer_phone,
                description=description,
                payment_reference=payment.payment_reference,
                redirect_url=self.redirect_url,
                metadata={"paymentId": payment.id, "enrollmentId": enrollment.id, "stage": stage},
            )
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.error("Payment initialization failed payment=%s: %s", payment.id, message)
            store.transition_status(
                db, payment, PaymentStatus.FAILED,
                notification=NotificationType.PAYMENT_FAILED,
                commit=False,
                error_message=message,
            )
            store.append_transaction(db, payment, TransactionStatus.FAILED, error_message=message, commit=False)
            db.commit()
            raise

        store.set_gateway_details(db, payment, result.transaction_reference, result.checkout_url, commit=False)
        store.append_transaction(
            db, payment, TransactionStatus.INITIATED, external_reference=result.transaction_reference, commit=False
        )
        db.commit()
        db.refresh(payment)
        logger.info("Payment initialized id=%s reference=%s", payment.id, payment.payment_reference)
        return payment

    def verify_payment(self, db: Session, payment_reference: str) -> Dict:
        payment = store.get_payment_by_reference(db, payment_reference)
        if payment is None:
            raise NotFoundError("Payment not found")

        verified: VerifiedTransaction = self.gateway.verify_transaction(payment_reference)
        applied = False
        if lifecycle.is_terminal(payment.status):
            if verified.status != payment.status:
                logger.warning(
                    "Gateway reports %s for payment %s which is already %s; leaving it",
                    verified.gateway_status, payment.id, payment.status,
                )
        else:
            applied = apply_gateway_outcome(
                db, payment, verified.status,
                payment_method=verified.payment_method,
                amount_paid=verified.amount_paid,
            )

        logger.info(
            "Verified payment id=%s gateway_status=%s status=%s applied=%s",
            payment.id, verified.gateway_status, payment.status, applied,
        )
        return {
            "payment": payment,
            "gateway_status": verified.gateway_status,
            "payment_method": verified.payment_method,
            "amount_paid": verified.amount_paid,
            "applied": applied,
        }


def get_payment_details(db: Session, payment_id: int):
    payment = store.get_payment(db, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment, store.transactions_for(db, payment.id)


def enrollment_summary(db: Session, enrollment_id: str) -> Dict:
    enrollment = store.get_enrollment(db, enrollment_id)
    if enrollment is None:
        raise NotFoundError("Enrollment not found")

    completed = store.completed_payments(db, enrollment.id)
    total_paid = sum(p.amount_paid if p.amount_paid is not None else p.amount for p in completed)
    final_price = enrollment.final_price
    percentage = 0 if final_price == 0 else min(100, round(total_paid * 100 / final_price))
    return {
        "enrollment_id": enrollment.id,
        "skill": enrollment.skill,
        "scholarship_type": enrollment.scholarship_type,
        "final_price": final_price,
        "total_paid": total_paid,
        "remaining_balance": max(0, final_price - total_paid),
        "percentage_paid": percentage,
        "completed_stages": sorted(p.stage for p in completed),
        "next_stage": pricing.next_stage(
            [p.stage for p in completed], enrollment.skill, enrollment.scholarship_type
        ),
    }
