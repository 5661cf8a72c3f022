from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
WARNING_THRESHOLD = Decimal("80")


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetRule:
    category_id: int
    month: str
    budgeted: Decimal


@dataclass(frozen=True)
class BudgetEvaluation:
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_over_budget: bool
    status: str


def month_range(month: str) -> Tuple[date, date]:
    try:
        year_text, month_text = month.strip().split("-")
        year, month_number = int(year_text), int(month_text)
        start = date(year, month_number, 1)
    except ValueError as exc:
        raise ValueError("Month must be in YYYY-MM format.") from exc
    return start, date(year, month_number, monthrange(year, month_number)[1])


def budget_status(spent: Decimal, budgeted: Decimal) -> Tuple[Decimal, str]:
    percentage = (spent / budgeted * HUNDRED) if budgeted > ZERO else ZERO
    if spent > budgeted:
        return percentage, "over"
    if percentage >= WARNING_THRESHOLD:
        return percentage, "warning"
    return percentage, "good"


def evaluate_budget(transactions: Iterable[Transaction], rule: BudgetRule) -> BudgetEvaluation:
    if rule.budgeted < ZERO:
        raise ValueError("rule.budgeted must be at least zero.")
    start_date, end_date = month_range(rule.month)
    filtered = [txn for txn in transactions if start_date <= txn.date <= end_date]
    spent = _sum_expenses(filtered, category_id=rule.category_id)
    percentage, status = budget_status(spent, rule.budgeted)
    return BudgetEvaluation(
        spent=spent,
        remaining=rule.budgeted - spent,
        percentage=percentage.quantize(CENT, rounding=ROUND_HALF_UP),
        is_over_budget=spent > rule.budgeted,
        status=status,
    )


def _sum_expenses(
    transactions: Iterable[Transaction],
    *,
    category_id: Optional[int] = None,
) -> Decimal:
    # Expenses are stored negative; spend is reported as a magnitude.
    total = ZERO
    for txn in transactions:
        if txn.type.strip().lower() != "expense":
            continue
        if category_id is not None and txn.category_id != category_id:
            continue
        total += _coerce_amount(txn.amount)
    return abs(total)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
