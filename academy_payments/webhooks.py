"""
Inbound gateway webhooks.

Every delivery is written to `webhook_logs` before anything else happens,
including deliveries whose signature does not validate. Once that row exists
the HTTP layer acknowledges with 200 regardless of the processing outcome;
failed rows are kept with their error and can be replayed.
"""
import hashlib
import hmac
import json
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from academy_payments import config, store
from academy_payments.constants import (
    MONNIFY_PROVIDER,
    MONNIFY_SUCCESSFUL_TRANSACTION,
    PaymentStatus,
    WebhookStatus,
)
from academy_payments.engine import apply_gateway_outcome
from academy_payments.gateway import normalize_payment_method

logger = logging.getLogger(__name__)

INVALID_SIGNATURE = "invalid signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret).encode()
    # header values arrive latin-1 decoded and may carry arbitrary bytes
    return hmac.compare_digest(expected, signature.strip().lower().encode("utf-8", "replace"))


def _event_data(payload: Dict) -> Dict:
    data = payload.get("eventData")
    return data if isinstance(data, dict) else payload


def _amount(value) -> Optional[int]:
    if value is None:
        return None
    return int(round(float(value)))


class WebhookProcessor:
    def __init__(self, secret: Optional[str] = config.MONNIFY_WEBHOOK_SECRET):
        self.secret = secret

    def handle_inbound_event(self, db: Session, raw_body: bytes, signature: Optional[str],
                             provider: str = MONNIFY_PROVIDER):
        """Log, verify and apply one delivery. Returns the WebhookLog row."""
        valid = verify_signature(raw_body, signature, self.secret)
        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None
        event_type = payload.get("eventType") if isinstance(payload, dict) else None

        log = store.create_webhook_log(
            db,
            provider=provider,
            event_type=event_type,
            payload=raw_body.decode("utf-8", errors="replace"),
            signature=signature,
            signature_valid=valid,
        )

        if not valid:
            logger.warning("Rejected %s webhook log=%s: invalid signature", provider, log.id)
            return store.finish_webhook_log(db, log, WebhookStatus.FAILED, error_message=INVALID_SIGNATURE)
        if not isinstance(payload, dict):
            return store.finish_webhook_log(db, log, WebhookStatus.FAILED, error_message="malformed payload")

        return self._process(db, log, payload)

    def replay_failed(self, db: Session, limit: int = config.WEBHOOK_REPLAY_BATCH_SIZE,
                      max_attempts: int = config.WEBHOOK_REPLAY_MAX_ATTEMPTS):
        """Re-run processing for failed deliveries that carried a valid signature."""
        replayed = []
        for log in store.failed_webhook_logs(db, limit=limit, replayable_only=True, max_attempts=max_attempts):
            try:
                payload = json.loads(log.payload)
            except ValueError:
                continue
            logger.info("Replaying webhook log=%s attempt=%s", log.id, log.attempts + 1)
            replayed.append(self._process(db, log, payload))
        return replayed

    def _process(self, db: Session, log, payload: Dict):
        try:
            result = self._apply(db, payload)
        except Exception as exc:
            db.rollback()
            logger.exception("Webhook log=%s processing failed", log.id)
            message = getattr(exc, "message", None) or str(exc)
            return store.finish_webhook_log(db, log, WebhookStatus.FAILED, error_message=message)
        return store.finish_webhook_log(db, log, WebhookStatus.PROCESSED, result=result)

    def _apply(self, db: Session, payload: Dict) -> Dict:
        event_type = payload.get("eventType")
        if event_type != MONNIFY_SUCCESSFUL_TRANSACTION:
            logger.info("Ignoring webhook event type %s", event_type)
            return {"action": "ignored", "event_type": event_type}

        data = _event_data(payload)
        transaction_ref = data.get("transactionReference")
        payment = None
        if transaction_ref:
            payment = store.get_payment_by_gateway_reference(db, transaction_ref)
        if payment is None and data.get("paymentReference"):
            payment = store.get_payment_by_reference(db, data["paymentReference"])
        if payment is None:
            logger.info("No payment for gateway transaction %s", transaction_ref)
            return {"action": "payment_not_found", "transaction_reference": transaction_ref}

        if payment.status == PaymentStatus.COMPLETED:
            return {"action": "already_completed", "payment_id": payment.id}

        applied = apply_gateway_outcome(
            db, payment, PaymentStatus.COMPLETED,
            payment_method=normalize_payment_method(data.get("paymentMethod")),
            amount_paid=_amount(data.get("amountPaid")),
        )
        return {
            "action": "completed" if applied else "no_change",
            "payment_id": payment.id,
            "status": payment.status,
        }
