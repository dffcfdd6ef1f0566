"""
Course pricing: base price, scholarship discount and stage installments.

All amounts are whole Naira, rounded half-up.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional

from academy_payments.constants import COURSE_PRICES, PAYMENT_STAGE_PERCENTAGES, SCHOLARSHIP_DISCOUNTS
from academy_payments.errors import ValidationError


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def base_price(skill: str) -> int:
    if skill not in COURSE_PRICES:
        raise ValidationError(f"Unknown course skill: {skill}")
    return COURSE_PRICES[skill]


def discount_percent(scholarship_type: str) -> int:
    if scholarship_type not in SCHOLARSHIP_DISCOUNTS:
        raise ValidationError(f"Unknown scholarship type: {scholarship_type}")
    return SCHOLARSHIP_DISCOUNTS[scholarship_type]


def stage_percent(stage: int) -> int:
    if stage not in PAYMENT_STAGE_PERCENTAGES:
        raise ValidationError(f"Invalid payment stage: {stage}")
    return PAYMENT_STAGE_PERCENTAGES[stage]


def _discounted(skill: str, scholarship_type: str) -> Decimal:
    return Decimal(base_price(skill)) * (1 - Decimal(discount_percent(scholarship_type)) / 100)


def total_amount(skill: str, scholarship_type: str) -> int:
    return _round(_discounted(skill, scholarship_type))


def stage_amount(skill: str, scholarship_type: str, stage: int) -> int:
    pct = Decimal(stage_percent(stage)) / 100
    return _round(_discounted(skill, scholarship_type) * pct)


def stage_description(stage: int) -> str:
    labels = {1: "First Installment", 2: "Second Installment", 3: "Final Installment"}
    return f"{labels.get(stage, f'Stage {stage}')} ({stage_percent(stage)}%)"


def amount_within_tolerance(amount, expected: int, tolerance_percent: float = 1) -> bool:
    tolerance = Decimal(str(tolerance_percent)) / 100
    expected = Decimal(expected)
    low = expected * (1 - tolerance)
    high = expected * (1 + tolerance)
    return low <= Decimal(str(amount)) <= high


def payment_breakdown(skill: str, scholarship_type: str) -> Dict:
    price = base_price(skill)
    final = total_amount(skill, scholarship_type)
    return {
        "skill": skill,
        "scholarship_type": scholarship_type,
        "base_price": price,
        "discount_percent": discount_percent(scholarship_type),
        "discount_amount": price - final,
        "final_price": final,
        "stages": [
            {
                "stage": stage,
                "percentage": PAYMENT_STAGE_PERCENTAGES[stage],
                "amount": stage_amount(skill, scholarship_type, stage),
                "description": stage_description(stage),
            }
            for stage in sorted(PAYMENT_STAGE_PERCENTAGES)
        ],
    }


def next_stage(completed_stages: Iterable[int], skill: str, scholarship_type: str) -> Optional[Dict]:
    """First unpaid stage with its amount, or None once every stage is paid."""
    done = set(completed_stages)
    for stage in sorted(PAYMENT_STAGE_PERCENTAGES):
        if stage not in done:
            return {
                "stage": stage,
                "percentage": PAYMENT_STAGE_PERCENTAGES[stage],
                "amount": stage_amount(skill, scholarship_type, stage),
                "description": stage_description(stage),
            }
    return None
