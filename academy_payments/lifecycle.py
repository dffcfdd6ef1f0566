import logging

from academy_payments.constants import PaymentStatus
from academy_payments.errors import InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_valid_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    # completed only leaves through a refund, which is not a settlement outcome
    return status not in PaymentStatus.OPEN


def allowed_sources(target: str):
    """Statuses from which `target` may be entered."""
    if target not in VALID_TRANSITIONS:
        raise ValidationError(f"Unknown payment status: {target}")
    return sorted(src for src, targets in VALID_TRANSITIONS.items() if target in targets)


def ensure_transition(current: str, target: str) -> None:
    if not is_valid_transition(current, target):
        logger.warning("Rejected payment status transition %s -> %s", current, target)
        raise InvalidTransitionError(current, target)
