"""Keeps account balances in step with the ledger entries that touch them.

Every function takes the caller's connection so the entry write and the
balance updates share one database transaction. Rows are locked in ascending
id order before any read-modify-write.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from pocketledger.balance_engine import (
    EntryState,
    effective_delta,
    entry_effects,
    reversed_effects,
    touched_accounts,
)
from pocketledger.database import accounts
from pocketledger.errors import NotFound

logger = logging.getLogger(__name__)


def entry_state_from_row(row: Mapping) -> EntryState:
    return EntryState(
        kind=row["type"],
        amount=row["amount"],
        account_id=row["account_id"],
        from_account_id=row["from_account_id"],
        to_account_id=row["to_account_id"],
    )


def lock_accounts(conn: Connection, account_ids: Iterable[int]) -> None:
    ordered = sorted(set(account_ids))
    if not ordered:
        return
    conn.execute(
        select(accounts.c.id)
        .where(accounts.c.id.in_(ordered))
        .order_by(accounts.c.id.asc())
        .with_for_update()
    ).all()


def apply_delta(conn: Connection, account_id: int, delta: Decimal) -> Decimal:
    account_type = conn.execute(
        select(accounts.c.type).where(accounts.c.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if account_type is None:
        raise NotFound("Account not found.")
    effective = effective_delta(account_type, delta)
    conn.execute(
        update(accounts)
        .where(accounts.c.id == account_id)
        .values(current_balance=accounts.c.current_balance + effective)
    )
    logger.debug("Account %s balance moved by %s", account_id, effective)
    return effective


def apply_entry(conn: Connection, entry: EntryState) -> None:
    lock_accounts(conn, touched_accounts(entry))
    for account_id, delta in entry_effects(entry):
        apply_delta(conn, account_id, delta)


def revert_entry(conn: Connection, entry: EntryState) -> None:
    lock_accounts(conn, touched_accounts(entry))
    for account_id, delta in reversed_effects(entry_effects(entry)):
        apply_delta(conn, account_id, delta)


def replace_entry(conn: Connection, old: EntryState, new: EntryState) -> None:
    # Revert uses the stored state, apply uses the merged one.
    lock_accounts(conn, touched_accounts(old, new))
    for account_id, delta in reversed_effects(entry_effects(old)):
        apply_delta(conn, account_id, delta)
    for account_id, delta in entry_effects(new):
        apply_delta(conn, account_id, delta)
