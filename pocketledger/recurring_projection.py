from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List

WEEKLY_DAYS = 7
SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
SUPPORTED_KINDS = {"income", "expense"}

STATUS_INACTIVE = "inactive"
STATUS_ENDED = "ended"
STATUS_DUE = "due"
STATUS_SCHEDULED = "scheduled"


@dataclass(frozen=True)
class RecurringRule:
    amount: Decimal
    start_date: date
    account_id: int
    kind: str = "expense"
    frequency: str = "monthly"
    interval: int = 1
    end_date: date | None = None
    last_processed: date | None = None
    is_active: bool = True
    category_id: int | None = None
    name: str | None = None


@dataclass(frozen=True)
class RuleStatus:
    status: str
    next_due_date: date | None
    is_due: bool


@dataclass(frozen=True)
class ProjectedEntry:
    date: date
    amount: Decimal
    account_id: int
    transaction_type: str
    category_id: int | None = None
    name: str | None = None
    source: str = "projected"


def advance(anchor: date, frequency: str, interval: int, steps: int = 1) -> date:
    """Move ``anchor`` forward by ``steps`` periods of ``interval`` units.

    Month and year steps keep the anchor's day, clamped to the target month.
    """
    normalized_frequency = _validate_frequency(frequency)
    interval = _validate_interval(interval)
    units = interval * steps
    if normalized_frequency == "daily":
        return anchor + timedelta(days=units)
    if normalized_frequency == "weekly":
        return anchor + timedelta(days=WEEKLY_DAYS * units)
    if normalized_frequency == "monthly":
        return _add_months(anchor, units, anchor.day)
    return _add_months(anchor, units * 12, anchor.day)


def next_due_date(rule: RecurringRule) -> date:
    return advance(rule.last_processed or rule.start_date, rule.frequency, rule.interval)


def rule_status(rule: RecurringRule, today: date) -> RuleStatus:
    if not rule.is_active:
        return RuleStatus(status=STATUS_INACTIVE, next_due_date=None, is_due=False)
    due = next_due_date(rule)
    if rule.end_date is not None and due > rule.end_date:
        return RuleStatus(status=STATUS_ENDED, next_due_date=None, is_due=False)
    if due <= today:
        return RuleStatus(status=STATUS_DUE, next_due_date=due, is_due=True)
    return RuleStatus(status=STATUS_SCHEDULED, next_due_date=due, is_due=False)


def project_rule(rule: RecurringRule, range_start: date, range_end: date) -> List[ProjectedEntry]:
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    if rule.amount <= 0:
        raise ValueError("rule.amount must be greater than zero.")
    kind = _validate_kind(rule.kind)
    if not rule.is_active:
        return []

    anchor = rule.last_processed or rule.start_date
    signed_amount = -rule.amount if kind == "expense" else rule.amount
    projections: List[ProjectedEntry] = []
    steps = 1
    current_date = advance(anchor, rule.frequency, rule.interval, steps)
    while current_date <= range_end:
        if rule.end_date is not None and current_date > rule.end_date:
            break
        if current_date >= range_start:
            projections.append(
                ProjectedEntry(
                    date=current_date,
                    amount=signed_amount,
                    account_id=rule.account_id,
                    transaction_type=kind,
                    category_id=rule.category_id,
                    name=rule.name,
                )
            )
        steps += 1
        current_date = advance(anchor, rule.frequency, rule.interval, steps)
    return projections


def project_rules(
    rules: Iterable[RecurringRule],
    range_start: date,
    range_end: date,
) -> List[ProjectedEntry]:
    projections: List[ProjectedEntry] = []
    for rule in rules:
        projections.extend(project_rule(rule, range_start, range_end))
    projections.sort(key=lambda entry: (entry.date, entry.account_id))
    return projections


def _validate_frequency(frequency: str) -> str:
    normalized = frequency.strip().lower()
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly rules are supported.")
    return normalized


def _validate_interval(interval: int) -> int:
    if interval < 1:
        raise ValueError("interval must be at least 1.")
    return interval


def _validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in SUPPORTED_KINDS:
        raise ValueError("Only income or expense rules are supported.")
    return normalized


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
