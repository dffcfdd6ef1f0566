"""
Tests for the expiry sweep and concurrent settlement.
"""
from datetime import timedelta

from academy_payments import models, store
from academy_payments.engine import apply_gateway_outcome
from academy_payments.reconciliation import expire_stale_payments, run_reconciliation, send_payment_reminders
from academy_payments.webhooks import compute_signature
from tests.helpers import WEBHOOK_SECRET, successful_transaction_event


class TestExpirySweep:
    def test_expires_past_due_pending_once(self, db, make_payment) -> None:
        stale = make_payment(stage=1, expires_in=timedelta(hours=-1))
        fresh = make_payment(stage=2, expires_in=timedelta(days=3))

        assert expire_stale_payments(db) == 1
        assert expire_stale_payments(db) == 0

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == "expired"
        assert fresh.status == "pending"

        events = db.query(models.OutboxEvent).all()
        assert [(e.event_type, e.aggregate_id) for e in events] == [("payment_expired", stale.id)]
        assert events[0].payload["status"] == "expired"

    def test_non_pending_payments_are_untouched(self, db, make_payment) -> None:
        done = make_payment(stage=1, status="completed", expires_in=timedelta(days=-2))
        failed = make_payment(stage=2, status="failed", expires_in=timedelta(days=-2))

        assert expire_stale_payments(db) == 0
        db.refresh(done)
        db.refresh(failed)
        assert done.status == "completed"
        assert failed.status == "failed"

    def test_explicit_clock(self, db, make_payment) -> None:
        payment = make_payment(expires_in=timedelta(days=7))
        assert expire_stale_payments(db, now=store.utcnow() + timedelta(days=8)) == 1
        db.refresh(payment)
        assert payment.status == "expired"

    def test_expired_stage_can_be_retried(self, db, make_payment) -> None:
        make_payment(stage=1, expires_in=timedelta(hours=-1))
        expire_stale_payments(db)
        retry = make_payment(stage=1)
        assert retry.status == "pending"

    def test_sweeps_from_separate_sessions_expire_once(self, session_factory, make_payment) -> None:
        payment_id = make_payment(expires_in=timedelta(minutes=-10)).id

        first = session_factory()
        second = session_factory()
        try:
            assert second.get(models.Payment, payment_id).status == "pending"
            assert expire_stale_payments(first) == 1
            assert expire_stale_payments(second) == 0
        finally:
            first.close()
            second.close()

        check = session_factory()
        try:
            assert check.get(models.Payment, payment_id).status == "expired"
            assert [e.event_type for e in check.query(models.OutboxEvent)] == ["payment_expired"]
        finally:
            check.close()


class TestPaymentReminders:
    def test_reminds_payments_expiring_soon_once(self, db, make_payment) -> None:
        soon = make_payment(stage=1, expires_in=timedelta(days=1))
        later = make_payment(stage=2, expires_in=timedelta(days=5))

        assert send_payment_reminders(db, window_days=2) == 1
        assert send_payment_reminders(db, window_days=2) == 0

        events = db.query(models.OutboxEvent).all()
        assert [(e.event_type, e.aggregate_id) for e in events] == [("payment_reminder", soon.id)]
        assert events[0].payload["status"] == "pending"
        db.refresh(soon)
        db.refresh(later)
        assert soon.reminder_sent_at is not None
        assert soon.status == "pending"
        assert later.reminder_sent_at is None

    def test_skips_past_due_and_settled_payments(self, db, make_payment) -> None:
        make_payment(stage=1, expires_in=timedelta(hours=-1))
        make_payment(stage=2, status="completed", expires_in=timedelta(hours=12))

        assert send_payment_reminders(db, window_days=2) == 0
        assert db.query(models.OutboxEvent).count() == 0


def test_run_reconciliation(session_factory, db, make_payment, webhook_processor) -> None:
    make_payment(stage=1, expires_in=timedelta(minutes=-5))
    payment = make_payment(stage=2, gateway_ref="MNFY|2")
    body = successful_transaction_event("MNFY|2")
    log = store.create_webhook_log(
        db, provider="monnify", event_type="SUCCESSFUL_TRANSACTION",
        payload=body.decode(), signature=compute_signature(body, WEBHOOK_SECRET), signature_valid=True,
    )
    store.finish_webhook_log(db, log, "failed", error_message="lock timeout")

    summary = run_reconciliation(session_factory, processor=webhook_processor)

    assert summary == {"expired": 1, "reminders": 0, "webhooks_replayed": 1}
    db.refresh(payment)
    assert payment.status == "completed"


def test_concurrent_outcomes_settle_once(session_factory, make_payment) -> None:
    payment_id = make_payment().id

    webhook_session = session_factory()
    verify_session = session_factory()
    try:
        from_webhook = webhook_session.get(models.Payment, payment_id)
        from_verify = verify_session.get(models.Payment, payment_id)
        assert from_webhook.status == from_verify.status == "pending"

        assert apply_gateway_outcome(webhook_session, from_webhook, "completed", payment_method="card") is True
        assert apply_gateway_outcome(verify_session, from_verify, "failed") is False

        assert from_verify.status == "completed"
    finally:
        webhook_session.close()
        verify_session.close()

    check = session_factory()
    try:
        assert check.get(models.Payment, payment_id).status == "completed"
        outcomes = [e.event_type for e in check.query(models.OutboxEvent)]
        assert outcomes == ["payment_successful"]
    finally:
        check.close()


def test_sweep_and_late_webhook_race(db, make_payment, webhook_processor) -> None:
    payment = make_payment(gateway_ref="MNFY|late", expires_in=timedelta(seconds=-1))
    expire_stale_payments(db)

    body = successful_transaction_event("MNFY|late")
    log = webhook_processor.handle_inbound_event(db, body, compute_signature(body, WEBHOOK_SECRET))

    assert log.status == "failed"
    db.refresh(payment)
    assert payment.status == "expired"
