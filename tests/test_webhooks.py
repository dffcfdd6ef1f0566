"""
Tests for webhook signature checks and settlement via push notifications.
"""
import json

import pytest

from academy_payments import models, store
from academy_payments.webhooks import compute_signature, verify_signature
from tests.helpers import WEBHOOK_SECRET, successful_transaction_event

GATEWAY_REF = "MNFY|20241018|000123"


def signed(body: bytes) -> str:
    return compute_signature(body, WEBHOOK_SECRET)


def outbox_types(db):
    return [e.event_type for e in db.query(models.OutboxEvent).order_by(models.OutboxEvent.id)]


class TestSignature:
    def test_valid_signature(self) -> None:
        body = successful_transaction_event(GATEWAY_REF)
        assert verify_signature(body, signed(body), WEBHOOK_SECRET)

    def test_uppercase_hex_accepted(self) -> None:
        body = successful_transaction_event(GATEWAY_REF)
        assert verify_signature(body, signed(body).upper(), WEBHOOK_SECRET)

    def test_single_byte_change_invalidates(self) -> None:
        body = successful_transaction_event(GATEWAY_REF)
        signature = signed(body)
        tampered = body.replace(b"20000.0", b"20001.0")
        assert not verify_signature(tampered, signature, WEBHOOK_SECRET)

    @pytest.mark.parametrize("signature", [None, "", "not-hex"])
    def test_missing_or_garbage_signature(self, signature) -> None:
        assert not verify_signature(b"{}", signature, WEBHOOK_SECRET)

    def test_non_ascii_signature_is_invalid(self) -> None:
        body = successful_transaction_event(GATEWAY_REF)
        assert not verify_signature(body, "\xe9" + "a" * 127, WEBHOOK_SECRET)
        assert not verify_signature(body, "☃", WEBHOOK_SECRET)

    def test_missing_secret(self) -> None:
        body = b"{}"
        assert not verify_signature(body, signed(body), None)


class TestHandleInboundEvent:
    def test_successful_transaction_completes_payment(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF)
        store.append_transaction(db, payment, "initiated", external_reference=GATEWAY_REF)
        body = successful_transaction_event(GATEWAY_REF, method="ACCOUNT_TRANSFER")

        log = webhook_processor.handle_inbound_event(db, body, signed(body))

        assert log.status == "processed"
        assert log.signature_valid is True
        assert log.processing_result["action"] == "completed"
        db.refresh(payment)
        assert payment.status == "completed"
        assert payment.payment_method == "account_transfer"
        assert payment.amount_paid == 20000
        assert payment.paid_at is not None
        assert store.transactions_for(db, payment.id)[0].status == "successful"
        assert outbox_types(db) == ["payment_successful"]

    def test_duplicate_delivery_is_idempotent(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF)
        body = successful_transaction_event(GATEWAY_REF)

        webhook_processor.handle_inbound_event(db, body, signed(body))
        db.refresh(payment)
        paid_at = payment.paid_at

        second = webhook_processor.handle_inbound_event(db, body, signed(body))

        assert second.status == "processed"
        assert second.processing_result["action"] == "already_completed"
        db.refresh(payment)
        assert payment.paid_at == paid_at
        assert payment.amount_paid == 20000
        assert outbox_types(db) == ["payment_successful"]
        assert db.query(models.WebhookLog).count() == 2

    def test_falls_back_to_payment_reference(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment()
        body = successful_transaction_event("MNFY|unknown", payment_ref=payment.payment_reference)

        webhook_processor.handle_inbound_event(db, body, signed(body))

        db.refresh(payment)
        assert payment.status == "completed"

    def test_invalid_signature_is_logged_without_mutation(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF)
        body = successful_transaction_event(GATEWAY_REF)

        log = webhook_processor.handle_inbound_event(db, body, "0" * 128)

        assert log.status == "failed"
        assert log.signature_valid is False
        assert log.error_message == "invalid signature"
        assert json.loads(log.payload)["eventType"] == "SUCCESSFUL_TRANSACTION"
        db.refresh(payment)
        assert payment.status == "pending"
        assert outbox_types(db) == []

    def test_missing_signature(self, db, make_payment, webhook_processor) -> None:
        make_payment(gateway_ref=GATEWAY_REF)
        log = webhook_processor.handle_inbound_event(db, successful_transaction_event(GATEWAY_REF), None)
        assert log.status == "failed"
        assert log.signature is None

    def test_oversized_fields_are_still_logged(self, db, webhook_processor) -> None:
        body = json.dumps({"eventType": "X" * 500, "eventData": {}}).encode()
        signature = "f" * 1000

        log = webhook_processor.handle_inbound_event(db, body, signature)

        assert log.status == "failed"
        assert log.signature == signature
        assert log.event_type == "X" * 64

    def test_non_string_event_type_is_logged(self, db, webhook_processor) -> None:
        body = json.dumps({"eventType": {"nested": True}}).encode()

        log = webhook_processor.handle_inbound_event(db, body, signed(body))

        assert log.status == "processed"
        assert log.processing_result["action"] == "ignored"
        assert "nested" in log.event_type

    def test_malformed_payload(self, db, webhook_processor) -> None:
        body = b"not json"
        log = webhook_processor.handle_inbound_event(db, body, signed(body))
        assert log.status == "failed"
        assert log.error_message == "malformed payload"

    def test_other_event_types_are_ignored(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF)
        body = json.dumps({"eventType": "SETTLEMENT", "eventData": {"transactionReference": GATEWAY_REF}}).encode()

        log = webhook_processor.handle_inbound_event(db, body, signed(body))

        assert log.status == "processed"
        assert log.processing_result == {"action": "ignored", "event_type": "SETTLEMENT"}
        db.refresh(payment)
        assert payment.status == "pending"

    def test_unknown_payment(self, db, webhook_processor) -> None:
        body = successful_transaction_event("MNFY|missing", payment_ref="WEB3NOVA-MISSING")
        log = webhook_processor.handle_inbound_event(db, body, signed(body))
        assert log.status == "processed"
        assert log.processing_result["action"] == "payment_not_found"

    def test_expired_payment_is_not_revived(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF, status="expired")
        body = successful_transaction_event(GATEWAY_REF)

        log = webhook_processor.handle_inbound_event(db, body, signed(body))

        assert log.status == "failed"
        assert "expired -> completed" in log.error_message
        db.refresh(payment)
        assert payment.status == "expired"


class TestReplay:
    def test_replays_failed_valid_deliveries(self, db, make_payment, webhook_processor) -> None:
        payment = make_payment(gateway_ref=GATEWAY_REF)
        body = successful_transaction_event(GATEWAY_REF)
        log = store.create_webhook_log(
            db, provider="monnify", event_type="SUCCESSFUL_TRANSACTION",
            payload=body.decode(), signature=signed(body), signature_valid=True,
        )
        store.finish_webhook_log(db, log, "failed", error_message="database unavailable")

        replayed = webhook_processor.replay_failed(db)

        assert [r.id for r in replayed] == [log.id]
        assert replayed[0].status == "processed"
        assert replayed[0].attempts == 2
        db.refresh(payment)
        assert payment.status == "completed"

    def test_skips_invalid_signatures_and_exhausted_logs(self, db, make_payment, webhook_processor) -> None:
        make_payment(gateway_ref=GATEWAY_REF)
        body = successful_transaction_event(GATEWAY_REF)
        webhook_processor.handle_inbound_event(db, body, "bad")

        exhausted = store.create_webhook_log(
            db, provider="monnify", event_type="SUCCESSFUL_TRANSACTION",
            payload=body.decode(), signature=signed(body), signature_valid=True,
        )
        for _ in range(3):
            store.finish_webhook_log(db, exhausted, "failed", error_message="boom")

        assert webhook_processor.replay_failed(db, max_attempts=3) == []


def test_settlement_commits_status_and_transaction_together(db, make_payment, webhook_processor, monkeypatch) -> None:
    payment = make_payment(gateway_ref=GATEWAY_REF)
    store.append_transaction(db, payment, "initiated", external_reference=GATEWAY_REF)
    original = store.update_latest_transaction
    calls = []

    def fails_once(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "update_latest_transaction", fails_once)
    body = successful_transaction_event(GATEWAY_REF)

    log = webhook_processor.handle_inbound_event(db, body, signed(body))

    assert log.status == "failed"
    db.refresh(payment)
    assert payment.status == "pending"
    assert payment.paid_at is None
    assert store.transactions_for(db, payment.id)[0].status == "initiated"
    assert outbox_types(db) == []

    replayed = webhook_processor.replay_failed(db)

    assert replayed[0].processing_result["action"] == "completed"
    db.refresh(payment)
    assert payment.status == "completed"
    assert store.transactions_for(db, payment.id)[0].status == "successful"
    assert outbox_types(db) == ["payment_successful"]
