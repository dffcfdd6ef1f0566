PAYMENT_STAGES = (1, 2, 3)

PAYMENT_STAGE_PERCENTAGES = {
    1: 40,
    2: 40,
    3: 20,
}


def validate_stage_percentages(percentages) -> None:
    if sum(percentages.values()) != 100:
        raise ValueError(f"stage percentages must sum to 100, got {sum(percentages.values())}")


validate_stage_percentages(PAYMENT_STAGE_PERCENTAGES)


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    OPEN = (PENDING, PROCESSING)


class TransactionStatus:
    INITIATED = "initiated"
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REVERSED = "reversed"


class WebhookStatus:
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class NotificationType:
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_SUCCESSFUL = "payment_successful"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_EXPIRED = "payment_expired"
    PAYMENT_REMINDER = "payment_reminder"


TRANSACTION_TYPE_PAYMENT = "payment"

SCHOLARSHIP_DISCOUNTS = {
    "full": 100,
    "half": 50,
    "none": 0,
}

COURSE_PRICES = {
    "Smart Contract": 100000,
    "Web Development": 100000,
    "UI/UX Design": 100000,
    "Backend Development": 100000,
}

DEFAULT_CURRENCY = "NGN"
PAYMENT_REFERENCE_PREFIX = "WEB3NOVA"

MONNIFY_PROVIDER = "monnify"
MONNIFY_PAYMENT_METHODS = ["CARD", "ACCOUNT_TRANSFER", "USSD"]
MONNIFY_SUCCESSFUL_TRANSACTION = "SUCCESSFUL_TRANSACTION"

# gateway paymentStatus -> internal payment status
MONNIFY_STATUS_MAP = {
    "PAID": PaymentStatus.COMPLETED,
    "OVERPAID": PaymentStatus.COMPLETED,
    "PENDING": PaymentStatus.PENDING,
    "PARTIALLY_PAID": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "EXPIRED": PaymentStatus.EXPIRED,
}
