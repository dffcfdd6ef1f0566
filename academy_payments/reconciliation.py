import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from academy_payments import config, store
from academy_payments.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


def expire_stale_payments(db: Session, now: Optional[datetime] = None) -> int:
    """Expire every pending payment whose expiry has passed. Safe to run concurrently."""
    count = store.expire_stale_payments(db, now=now)
    logger.info("Payment reconciliation completed: %s payments marked as expired", count)
    return count


def send_payment_reminders(db: Session, now: Optional[datetime] = None,
                           window_days: int = config.PAYMENT_REMINDER_WINDOW_DAYS) -> int:
    """Queue a reminder for pending payments that expire within `window_days`. Each payment is reminded once."""
    count = store.queue_payment_reminders(db, timedelta(days=window_days), now=now)
    logger.info("Payment reminder run completed: %s reminders queued", count)
    return count


def run_reconciliation(session_factory: Callable[[], Session],
                       processor: Optional[WebhookProcessor] = None) -> Dict[str, int]:
    """
    One reconciliation tick: expire stale payments, remind students whose
    payments expire soon, then replay failed webhook deliveries. Failures are
    logged; the next tick tries again.
    """
    summary = {"expired": 0, "reminders": 0, "webhooks_replayed": 0}
    db = session_factory()
    try:
        try:
            summary["expired"] = expire_stale_payments(db)
        except Exception:
            db.rollback()
            logger.exception("Payment expiry sweep failed")
        try:
            summary["reminders"] = send_payment_reminders(db)
        except Exception:
            db.rollback()
            logger.exception("Payment reminder run failed")
        try:
            replayed = (processor or WebhookProcessor()).replay_failed(db)
            summary["webhooks_replayed"] = len(replayed)
        except Exception:
            db.rollback()
            logger.exception("Webhook replay failed")
    finally:
        db.close()
    return summary


def _sweeper_runloop(session_factory: Callable[[], Session], interval_seconds: int, stop: threading.Event):
    logger.info("Reconciliation sweeper running every %ss", interval_seconds)
    while not stop.is_set():
        started = time.monotonic()
        summary = run_reconciliation(session_factory)
        logger.info("Reconciliation tick done %s", summary)
        stop.wait(max(0.0, interval_seconds - (time.monotonic() - started)))
    logger.info("Reconciliation sweeper stopped")


_sweeper = None
_sweeper_stop = threading.Event()


def start_sweeper(session_factory: Callable[[], Session],
                  interval_seconds: int = config.RECONCILIATION_INTERVAL_SECONDS):
    global _sweeper
    if interval_seconds <= 0:
        logger.info("Reconciliation sweeper disabled")
        return None
    if _sweeper is None:
        _sweeper_stop.clear()
        _sweeper = threading.Thread(
            target=_sweeper_runloop,
            args=(session_factory, interval_seconds, _sweeper_stop),
            daemon=True,
        )
        _sweeper.start()
    return _sweeper


def stop_sweeper():
    global _sweeper
    _sweeper_stop.set()
    _sweeper = None


if __name__ == "__main__":
    from academy_payments import database

    logging.basicConfig(level=config.LOG_LEVEL)
    logger.info("Reconciliation run: %s", run_reconciliation(database.init_db(config.DATABASE_URL)))
