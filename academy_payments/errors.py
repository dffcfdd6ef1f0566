from typing import Optional


class PaymentServiceError(Exception):
    """Base class for errors surfaced to callers of the payment core."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentServiceError):
    status_code = 400


class NotFoundError(PaymentServiceError):
    status_code = 404


class ConflictError(PaymentServiceError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid payment status transition: {current} -> {target}")
        self.current = current
        self.target = target


class GatewayError(PaymentServiceError):
    """Auth or API failure against the payment gateway."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, upstream_message: Optional[str] = None):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_message = upstream_message
