"""
Commission calculator.

Splits a charge between the trainer and the business owner. Admin-role
trainers keep the whole amount; everyone else earns 70%.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from backend.app.models.enums import UserRole

CENT = Decimal("0.01")
ADMIN_RATE = Decimal("1.00")
TRAINER_RATE = Decimal("0.70")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionSplit:
    rate: Decimal
    trainer_amount: Decimal
    owner_amount: Decimal


def calc_commission(amount, trainer_role) -> CommissionSplit:
    """
    Compute the trainer/owner split for a charge.

    Both halves are rounded independently, so for some amounts they sum to
    one cent more or less than `amount`.

    Raises:
        ValueError: amount is not positive
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValueError("amount must be positive")

    if UserRole(trainer_role) == UserRole.ADMIN:
        return CommissionSplit(rate=ADMIN_RATE, trainer_amount=round_money(amount), owner_amount=Decimal("0.00"))

    return CommissionSplit(
        rate=TRAINER_RATE,
        trainer_amount=round_money(amount * TRAINER_RATE),
        owner_amount=round_money(amount * (1 - TRAINER_RATE)),
    )
