from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

ZERO = Decimal("0")

ENTRY_KINDS = {"income", "expense", "transfer"}
ACCOUNT_TYPES = {"checking", "savings", "credit_card", "loan", "investment", "cash"}
DEBT_ACCOUNT_TYPES = {"loan", "credit_card"}

Effect = Tuple[int, Decimal]


@dataclass(frozen=True)
class EntryState:
    """The balance-relevant fields of one ledger entry."""

    kind: str
    amount: Decimal
    account_id: Optional[int] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None


def is_debt_account(account_type: str) -> bool:
    return account_type.strip().lower() in DEBT_ACCOUNT_TYPES


def effective_delta(account_type: str, delta: Decimal) -> Decimal:
    """Signed change to ``current_balance`` for a raw entry delta.

    Debt accounts track what is owed, so money arriving reduces the balance
    and money leaving increases it.
    """
    delta = _coerce_amount(delta)
    if is_debt_account(account_type):
        return -delta
    return delta


def normalize_amount(kind: str, amount: Decimal) -> Decimal:
    normalized_kind = _validate_kind(kind)
    magnitude = abs(_coerce_amount(amount))
    if normalized_kind == "expense":
        return -magnitude
    return magnitude


def entry_effects(entry: EntryState) -> List[Effect]:
    kind = _validate_kind(entry.kind)
    amount = _coerce_amount(entry.amount)
    if kind == "transfer":
        if entry.from_account_id is None or entry.to_account_id is None:
            raise ValueError("Transfer entries require both source and destination accounts.")
        magnitude = abs(amount)
        return [
            (entry.from_account_id, -magnitude),
            (entry.to_account_id, magnitude),
        ]
    if entry.account_id is None:
        raise ValueError("Income and expense entries require an account.")
    return [(entry.account_id, normalize_amount(kind, amount))]


def reversed_effects(effects: List[Effect]) -> List[Effect]:
    return [(account_id, -delta) for account_id, delta in effects]


def touched_accounts(*entries: EntryState) -> List[int]:
    account_ids = set()
    for entry in entries:
        for account_id, _ in entry_effects(entry):
            account_ids.add(account_id)
    return sorted(account_ids)


def _validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in ENTRY_KINDS:
        raise ValueError("Transaction type must be income, expense, or transfer.")
    return normalized


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
