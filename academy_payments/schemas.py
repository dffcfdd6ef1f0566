from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentInitialize(BaseModel):
    user_id: str = Field(..., min_length=1)
    enrollment_id: str = Field(..., min_length=1)
    stage: int = Field(..., ge=1, le=3)
    amount: float = Field(..., gt=0)
    customer_name: str = Field(..., min_length=1)
    customer_email: str = Field(..., min_length=3)
    customer_phone: Optional[str] = None


class PaymentInitialized(BaseModel):
    payment_id: int
    payment_reference: str
    checkout_url: Optional[str] = None
    amount: int
    expires_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_type: str
    amount: int
    currency: str
    status: str
    transaction_reference: str
    external_reference: Optional[str] = None
    payment_method: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    enrollment_id: str
    payment_reference: str
    stage: int
    amount: int
    currency: str
    status: str
    gateway_transaction_ref: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid: Optional[int] = None
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentDetail(PaymentOut):
    transactions: List[TransactionOut] = []


class PaymentVerification(BaseModel):
    payment: PaymentOut
    gateway_status: str
    payment_method: Optional[str] = None
    amount_paid: Optional[int] = None
    applied: bool


class StageInfo(BaseModel):
    stage: int
    percentage: int
    amount: int
    description: str


class PricingBreakdown(BaseModel):
    skill: str
    scholarship_type: str
    base_price: int
    discount_percent: int
    discount_amount: int
    final_price: int
    stages: List[StageInfo]


class EnrollmentSummary(BaseModel):
    enrollment_id: str
    skill: str
    scholarship_type: str
    final_price: int
    total_paid: int
    remaining_balance: int
    percentage_paid: int
    completed_stages: List[int]
    next_stage: Optional[StageInfo] = None


class WebhookLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    event_type: Optional[str] = None
    signature_valid: bool
    status: str
    processing_result: Optional[dict] = None
    error_message: Optional[str] = None
    attempts: int
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class ReconciliationResult(BaseModel):
    expired: int
