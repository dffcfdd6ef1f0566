from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)

from academy_payments.constants import DEFAULT_CURRENCY, PaymentStatus, TransactionStatus, WebhookStatus
from academy_payments.database import Base

_OPEN_STATUSES = "status IN ('pending', 'processing')"


class Enrollment(Base):
    __tablename__ = "enrollments"
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    skill = Column(String(64), nullable=False)
    scholarship_type = Column(String(16), nullable=False, default="none")
    class_location = Column(String(16), nullable=True)
    course_price = Column(Integer, nullable=False)
    final_price = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (UniqueConstraint("user_id", "skill", name="uq_enrollments_user_skill"),)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    enrollment_id = Column(String(64), ForeignKey("enrollments.id"), nullable=False, index=True)
    payment_reference = Column(String(128), nullable=False, unique=True)
    stage = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING, index=True)
    description = Column(String(255), nullable=True)
    customer_name = Column(String(128), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)
    gateway_transaction_ref = Column(String(128), nullable=True, unique=True)
    checkout_url = Column(String(512), nullable=True)
    payment_method = Column(String(32), nullable=True)
    amount_paid = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        # one open attempt per (enrollment, stage)
        Index(
            "uq_payments_open_stage",
            "enrollment_id",
            "stage",
            unique=True,
            postgresql_where=text(_OPEN_STATUSES),
            sqlite_where=text(_OPEN_STATUSES),
        ),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    status = Column(String(20), nullable=False, default=TransactionStatus.INITIATED)
    transaction_reference = Column(String(128), nullable=False)
    external_reference = Column(String(128), nullable=True, index=True)
    payment_method = Column(String(32), nullable=True)
    description = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    event_type = Column(String(64), nullable=True)
    payload = Column(Text, nullable=False)
    signature = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=WebhookStatus.RECEIVED, index=True)
    processing_result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """Notification intent, written in the same transaction as the status change."""

    __tablename__ = "outbox_events"
    id = Column(Integer, primary_key=True, index=True)
    aggregate_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    published = Column(Boolean, nullable=False, default=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    published_at = Column(DateTime(timezone=True), nullable=True)
