"""
Pytest configuration and fixtures.
"""
from datetime import timedelta
from typing import Callable
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from academy_payments import models, store
from academy_payments.database import Base
from academy_payments.gateway import InitializedTransaction, MonnifyClient
from academy_payments.webhooks import WebhookProcessor
from tests.helpers import USER_ID, WEBHOOK_SECRET


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def enrollment(db) -> models.Enrollment:
    """Smart Contract course on a half scholarship: 50,000 payable."""
    return store.create_enrollment(
        db,
        id="enr-001",
        user_id=USER_ID,
        skill="Smart Contract",
        scholarship_type="half",
        class_location="Online",
        course_price=100000,
        final_price=50000,
    )


@pytest.fixture
def gateway() -> MagicMock:
    mock_gateway = MagicMock(spec=MonnifyClient)
    mock_gateway.initialize_transaction.return_value = InitializedTransaction(
        transaction_reference="MNFY|20241018|000123",
        payment_reference="ignored",
        checkout_url="https://sandbox.sdk.monnify.com/checkout/MNFY|20241018|000123",
    )
    return mock_gateway


@pytest.fixture
def webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(secret=WEBHOOK_SECRET)


@pytest.fixture
def make_payment(db, enrollment) -> Callable[..., models.Payment]:
    counter = {"n": 0}

    def _make(stage: int = 1, status: str = "pending", expires_in: timedelta = timedelta(days=7),
              gateway_ref: str = None, amount: int = 20000) -> models.Payment:
        counter["n"] += 1
        return store.create_payment(
            db,
            user_id=enrollment.user_id,
            enrollment_id=enrollment.id,
            payment_reference=f"WEB3NOVA-TEST-{stage}-{counter['n']}",
            stage=stage,
            amount=amount,
            status=status,
            customer_email="student@example.com",
            gateway_transaction_ref=gateway_ref,
            expires_at=store.utcnow() + expires_in,
        )

    return _make

