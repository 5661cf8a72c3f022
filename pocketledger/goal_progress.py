from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Goal:
    target_amount: Decimal
    current_amount: Decimal
    target_date: Optional[date] = None


@dataclass(frozen=True)
class GoalProgress:
    remaining: Decimal
    progress_percentage: Decimal
    is_complete: bool
    days_until_target: Optional[int]
    is_overdue: bool
    status: str


def evaluate_goal(goal: Goal, today: date) -> GoalProgress:
    target = _coerce_amount(goal.target_amount)
    current = _coerce_amount(goal.current_amount)
    remaining = max(ZERO, target - current)
    if target > ZERO:
        percentage = min(HUNDRED, current / target * HUNDRED)
    else:
        percentage = ZERO
    is_complete = current >= target

    days_until_target = None
    is_overdue = False
    if goal.target_date is not None:
        days_until_target = (goal.target_date - today).days
        is_overdue = days_until_target < 0 and not is_complete

    if is_complete:
        status = "completed"
    elif is_overdue:
        status = "overdue"
    else:
        status = "active"
    return GoalProgress(
        remaining=remaining,
        progress_percentage=percentage.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        is_complete=is_complete,
        days_until_target=days_until_target,
        is_overdue=is_overdue,
        status=status,
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
