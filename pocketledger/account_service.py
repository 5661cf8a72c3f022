from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.engine import Connection

from pocketledger.auth import enabled_currencies, load_user
from pocketledger.balance_engine import ZERO, is_debt_account
from pocketledger.currency_conversion import RateProvider
from pocketledger.database import accounts, recurring_transactions, transactions
from pocketledger.errors import Conflict
from pocketledger.fx_service import convert_amount_safe
from pocketledger.schemas import AccountPayload
from pocketledger.transaction_service import load_account, serialize_transaction

logger = logging.getLogger(__name__)

RECENT_TRANSACTION_LIMIT = 5


def serialize_account(row: Mapping, transaction_count: int | None = None) -> dict[str, Any]:
    data = {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "type": row["type"],
        "institution": row["institution"],
        "currency": row["currency"],
        "opening_balance": row["opening_balance"],
        "current_balance": row["current_balance"],
        "balance_change": row["current_balance"] - row["opening_balance"],
        "interest_rate": row["interest_rate"],
        "credit_limit": row["credit_limit"],
        "is_active": row["is_active"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if transaction_count is not None:
        data["transaction_count"] = transaction_count
    return data


def _touches_account(account_id: int):
    return or_(
        transactions.c.account_id == account_id,
        transactions.c.from_account_id == account_id,
        transactions.c.to_account_id == account_id,
    )


def count_account_transactions(conn: Connection, account_id: int) -> int:
    return conn.execute(
        select(func.count())
        .select_from(transactions)
        .where(_touches_account(account_id), transactions.c.deleted_at.is_(None))
    ).scalar_one()


def require_enabled_currency(conn: Connection, user_id: int, currency: str) -> None:
    if currency not in enabled_currencies(load_user(conn, user_id)):
        raise Conflict(f"Currency {currency} is not enabled for your account.")


def create_account(conn: Connection, user_id: int, payload: AccountPayload) -> dict[str, Any]:
    require_enabled_currency(conn, user_id, payload.currency)
    row = conn.execute(
        insert(accounts)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            institution=payload.institution,
            currency=payload.currency,
            opening_balance=payload.opening_balance,
            current_balance=payload.opening_balance,
            interest_rate=payload.interest_rate,
            credit_limit=payload.credit_limit,
            is_active=payload.is_active,
        )
        .returning(*accounts.c)
    ).mappings().first()
    logger.info("Created %s account %s for user %s", row["type"], row["id"], user_id)
    return serialize_account(row, transaction_count=0)


def list_accounts(
    conn: Connection,
    user_id: int,
    type: str | None = None,
    currency: str | None = None,
    is_active: bool | None = None,
) -> list[dict[str, Any]]:
    stmt = select(accounts).where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
    if type:
        stmt = stmt.where(accounts.c.type == type)
    if currency:
        stmt = stmt.where(accounts.c.currency == currency)
    if is_active is not None:
        stmt = stmt.where(accounts.c.is_active == is_active)
    rows = conn.execute(stmt.order_by(accounts.c.created_at.desc(), accounts.c.id.desc())).mappings().all()
    return [serialize_account(row, count_account_transactions(conn, row["id"])) for row in rows]


def get_account(conn: Connection, user_id: int, account_id: int) -> dict[str, Any]:
    row = load_account(conn, user_id, account_id)
    recent = conn.execute(
        select(transactions)
        .where(_touches_account(account_id), transactions.c.deleted_at.is_(None))
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(RECENT_TRANSACTION_LIMIT)
    ).mappings().all()
    data = serialize_account(row, count_account_transactions(conn, account_id))
    data["recent_transactions"] = [serialize_transaction(item) for item in recent]
    return data


def update_account(
    conn: Connection, user_id: int, account_id: int, changes: Mapping[str, Any]
) -> dict[str, Any]:
    load_account(conn, user_id, account_id)
    current = conn.execute(
        select(accounts).where(accounts.c.id == account_id).with_for_update()
    ).mappings().first()
    values = dict(changes)

    currency_changed = "currency" in values and values["currency"] != current["currency"]
    if currency_changed:
        require_enabled_currency(conn, user_id, values["currency"])
    debt_changed = "type" in values and is_debt_account(values["type"]) != is_debt_account(current["type"])
    if currency_changed or debt_changed:
        in_use = count_account_transactions(conn, account_id)
        if in_use and currency_changed:
            raise Conflict(
                f"Cannot change the currency of an account with {in_use} transactions."
            )
        if in_use and debt_changed:
            raise Conflict(
                f"Cannot switch between debt and asset account types with {in_use} transactions."
            )

    if "opening_balance" in values:
        shift = values["opening_balance"] - current["opening_balance"]
        values["current_balance"] = accounts.c.current_balance + shift

    row = conn.execute(
        update(accounts).where(accounts.c.id == account_id).values(**values).returning(*accounts.c)
    ).mappings().first()
    logger.info("Updated account %s for user %s", account_id, user_id)
    return serialize_account(row, count_account_transactions(conn, account_id))


def delete_account(conn: Connection, user_id: int, account_id: int) -> None:
    load_account(conn, user_id, account_id)
    in_use = count_account_transactions(conn, account_id)
    if in_use:
        raise Conflict(
            f"Cannot delete account with {in_use} associated transactions. "
            "Please delete or reassign transactions first."
        )
    rules = conn.execute(
        select(func.count())
        .select_from(recurring_transactions)
        .where(
            recurring_transactions.c.account_id == account_id,
            recurring_transactions.c.is_active.is_(True),
            recurring_transactions.c.deleted_at.is_(None),
        )
    ).scalar_one()
    if rules:
        raise Conflict(
            f"Cannot delete account with {rules} active recurring transactions. "
            "Please pause or delete them first."
        )
    conn.execute(
        update(accounts)
        .where(accounts.c.id == account_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None), is_active=False)
    )
    logger.info("Deleted account %s for user %s", account_id, user_id)


def summarize_accounts(
    rows: list[Mapping], base_currency: str, rate_provider: RateProvider
) -> dict[str, Any]:
    total_assets = ZERO
    total_liabilities = ZERO
    by_type: dict[str, dict[str, Any]] = {}
    by_currency: dict[str, dict[str, Any]] = {}
    for row in rows:
        balance = Decimal(row["current_balance"])
        converted = convert_amount_safe(balance, row["currency"], base_currency, rate_provider)
        if is_debt_account(row["type"]):
            total_liabilities += converted
        else:
            total_assets += converted
        type_bucket = by_type.setdefault(row["type"], {"count": 0, "total_balance": ZERO})
        type_bucket["count"] += 1
        type_bucket["total_balance"] += converted
        currency_bucket = by_currency.setdefault(
            row["currency"], {"count": 0, "total_balance": ZERO, "converted_balance": ZERO}
        )
        currency_bucket["count"] += 1
        currency_bucket["total_balance"] += balance
        currency_bucket["converted_balance"] += converted
    return {
        "base_currency": base_currency,
        "total_accounts": len(rows),
        "total_assets": total_assets,
        "total_liabilities": total_liabilities,
        "net_worth": total_assets - total_liabilities,
        "by_type": by_type,
        "by_currency": by_currency,
    }


def account_summary(conn: Connection, user_id: int, rate_provider: RateProvider) -> dict[str, Any]:
    user = load_user(conn, user_id)
    rows = conn.execute(
        select(accounts).where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
    ).mappings().all()
    return summarize_accounts(list(rows), user["base_currency"], rate_provider)
