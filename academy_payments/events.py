import json
import logging
import threading
import time
from typing import Callable, Dict

import pika
from sqlalchemy.orm import Session

from academy_payments import config, database, pricing, store

logger = logging.getLogger(__name__)

EXCHANGE = "ums_events"
NOTIFICATION_ROUTING_PREFIX = "payment.notifications"
ENROLLMENT_ROUTING_KEY = "enrollment.events.#"
ENROLLMENT_CREATED = "EnrollmentCreated"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    """Publish one event to the topic exchange. Raises on broker errors."""
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        channel.basic_publish(
            exchange=EXCHANGE,
            routing_key=routing_key,
            body=json.dumps(event),
            properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
        )
    finally:
        connection.close()


def rabbitmq_publisher(rabbitmq_url: str = config.RABBITMQ_URL) -> Callable[[str, Dict], None]:
    def _publish(routing_key: str, event: Dict) -> None:
        publish_event(rabbitmq_url, routing_key, event)
    return _publish


def relay_outbox(db: Session, publisher: Callable[[str, Dict], None],
                 batch_size: int = config.OUTBOX_BATCH_SIZE,
                 max_attempts: int = config.OUTBOX_MAX_ATTEMPTS) -> int:
    """
    Deliver pending notification intents. Each event is marked published only
    after the publisher returns; failures stay pending with the error recorded.
    """
    published = 0
    for event in store.pending_notifications(db, limit=batch_size, max_attempts=max_attempts):
        message = {
            "type": event.event_type,
            "outbox_id": event.id,
            "payload": event.payload,
        }
        event.attempts = (event.attempts or 0) + 1
        try:
            publisher(f"{NOTIFICATION_ROUTING_PREFIX}.{event.event_type}", message)
        except Exception as exc:
            event.last_error = str(exc)
            logger.warning("Outbox event id=%s publish failed attempt=%s: %s", event.id, event.attempts, exc)
        else:
            event.published = True
            event.published_at = store.utcnow()
            event.last_error = None
            published += 1
        db.commit()
    if published:
        logger.info("Published %s notification events", published)
    return published


def _outbox_runloop(rabbitmq_url: str, poll_interval: float):
    publisher = rabbitmq_publisher(rabbitmq_url)
    while True:
        db = database.SessionLocal()
        try:
            relay_outbox(db, publisher)
        except Exception:
            logger.exception("Outbox relay tick failed")
        finally:
            db.close()
        time.sleep(poll_interval)


_relay = None
def start_outbox_relay(rabbitmq_url: str, poll_interval: float = config.OUTBOX_POLL_INTERVAL_SECONDS):
    global _relay
    if _relay is None:
        _relay = threading.Thread(target=_outbox_runloop, args=(rabbitmq_url, poll_interval), daemon=True)
        _relay.start()


def _process_enrollment_event(body: dict, db: Session):
    """
    Called when the enrollment service publishes EnrollmentCreated.
    Stores the price basis locally; an already known (user, skill) pair is left untouched.
    """
    if body.get("type") != ENROLLMENT_CREATED:
        logger.debug("Skipping enrollment event type %s", body.get("type"))
        return None

    payload = body.get("payload", {})
    user_id = payload.get("user_id") or payload.get("student_id")
    skill = payload.get("skill")
    scholarship_type = payload.get("scholarship_type", "none")

    existing = store.get_enrollment(db, payload.get("enrollment_id")) or \
        store.get_enrollment_by_user_and_skill(db, user_id, skill)
    if existing is not None:
        logger.info("Enrollment %s already known, ignoring duplicate event", existing.id)
        return existing

    return store.create_enrollment(
        db,
        id=str(payload["enrollment_id"]),
        user_id=user_id,
        skill=skill,
        scholarship_type=scholarship_type,
        class_location=payload.get("class_location"),
        course_price=pricing.base_price(skill),
        final_price=pricing.total_amount(skill, scholarship_type),
    )


def _consumer_runloop(database_url: str, rabbitmq_url: str, queue_name: str = ""):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    database.init_db(database_url)

    while True:
        conn = None
        try:
            params = pika.URLParameters(rabbitmq_url)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=True, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=EXCHANGE, queue=actual_queue, routing_key=ENROLLMENT_ROUTING_KEY)
            logger.info("Enrollment consumer bound queue=%s to %s with key=%s", actual_queue, EXCHANGE, ENROLLMENT_ROUTING_KEY)

            def callback(ch, method, properties, body):
                try:
                    payload = json.loads(body)
                    db = database.SessionLocal()
                    try:
                        _process_enrollment_event(payload, db)
                    finally:
                        db.close()
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                except Exception:
                    logger.exception("Error processing enrollment message")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in enrollment consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in enrollment consumer loop")
        finally:
            if conn is not None and conn.is_open:
                try:
                    conn.close()
                except pika.exceptions.AMQPError:
                    logger.debug("Connection already closing")

        logger.info("Enrollment consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None
def start_consumer(database_url: str, rabbitmq_url: str, queue_name: str = ""):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(target=_consumer_runloop, args=(database_url, rabbitmq_url, queue_name), daemon=True)
        _consumer.start()
