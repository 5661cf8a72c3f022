"""Creates, edits and removes ledger entries while keeping balances in step.

Validation always runs against the complete state an entry will have after
the write, so a rejected request leaves both the entry and the balances
untouched.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine

from pocketledger import ledger
from pocketledger.balance_engine import normalize_amount
from pocketledger.config import get_settings
from pocketledger.database import accounts, categories, transactions
from pocketledger.errors import (
    CategoryKindMismatch,
    CurrencyMismatch,
    LedgerError,
    NotFound,
    ValidationError,
)
from pocketledger.schemas import TransactionPayload

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
ENTRY_FIELDS = (
    "date",
    "type",
    "amount",
    "account_id",
    "from_account_id",
    "to_account_id",
    "payee",
    "category_id",
    "currency",
    "memo",
)


@dataclass(frozen=True)
class TransactionFilters:
    type: str | None = None
    account_id: int | None = None
    category_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    search: str | None = None
    is_reconciled: bool | None = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


def serialize_transaction(row: Mapping) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "date": row["date"],
        "type": row["type"],
        "account_id": row["account_id"],
        "from_account_id": row["from_account_id"],
        "to_account_id": row["to_account_id"],
        "payee": row["payee"],
        "category_id": row["category_id"],
        "amount": row["amount"],
        "currency": row["currency"],
        "memo": row["memo"],
        "is_reconciled": row["is_reconciled"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def load_account(conn: Connection, user_id: int, account_id: int, label: str = "Account") -> Mapping:
    row = conn.execute(
        select(accounts).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise NotFound(f"{label} not found.")
    return row


def load_category(conn: Connection, user_id: int, category_id: int) -> Mapping:
    row = conn.execute(
        select(categories).where(
            categories.c.id == category_id,
            categories.c.user_id == user_id,
            categories.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise NotFound("Category not found.")
    return row


def load_transaction(conn: Connection, user_id: int, transaction_id: int, for_update: bool = False) -> Mapping:
    stmt = select(transactions).where(
        transactions.c.id == transaction_id,
        transactions.c.user_id == user_id,
        transactions.c.deleted_at.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFound("Transaction not found.")
    return row


def check_category_kind(category: Mapping, kind: str) -> None:
    if get_settings().enforce_category_kind and category["type"] != kind:
        raise CategoryKindMismatch(
            f"Category type ({category['type']}) must match transaction type ({kind})."
        )


def resolve_entry(conn: Connection, user_id: int, values: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a complete entry state and return the columns to store."""
    kind = values["type"]
    currency = values.get("currency")
    if kind == "transfer":
        from_id = values.get("from_account_id")
        to_id = values.get("to_account_id")
        if from_id is None or to_id is None:
            raise ValidationError(
                "Transfer transactions require both from_account_id and to_account_id."
            )
        if from_id == to_id:
            raise ValidationError("Cannot transfer to the same account.")
        source = load_account(conn, user_id, from_id, "Source account")
        destination = load_account(conn, user_id, to_id, "Destination account")
        if source["currency"] != destination["currency"]:
            raise CurrencyMismatch("Transfer between different currencies is not supported.")
        if currency and currency != source["currency"]:
            raise CurrencyMismatch(
                f"Transaction currency ({currency}) must match account currency ({source['currency']})."
            )
        return {
            "date": values["date"],
            "type": kind,
            "amount": abs(Decimal(values["amount"])),
            "account_id": None,
            "from_account_id": from_id,
            "to_account_id": to_id,
            "payee": None,
            "category_id": None,
            "currency": source["currency"],
            "memo": values.get("memo") or f"Transfer from {source['name']} to {destination['name']}",
        }

    account_id = values.get("account_id")
    if account_id is None:
        raise ValidationError("account_id is required for income/expense transactions.")
    account = load_account(conn, user_id, account_id)
    if currency and currency != account["currency"]:
        raise CurrencyMismatch(
            f"Transaction currency ({currency}) must match account currency ({account['currency']})."
        )
    category_id = values.get("category_id")
    if category_id is not None:
        check_category_kind(load_category(conn, user_id, category_id), kind)
    return {
        "date": values["date"],
        "type": kind,
        "amount": normalize_amount(kind, Decimal(values["amount"])),
        "account_id": account_id,
        "from_account_id": None,
        "to_account_id": None,
        "payee": values.get("payee"),
        "category_id": category_id,
        "currency": account["currency"],
        "memo": values.get("memo"),
    }


def create_transaction(conn: Connection, user_id: int, payload: TransactionPayload) -> dict[str, Any]:
    values = resolve_entry(conn, user_id, payload.model_dump(include=set(ENTRY_FIELDS)))
    row = conn.execute(
        insert(transactions)
        .values(user_id=user_id, is_reconciled=False, **values)
        .returning(*transactions.c)
    ).mappings().first()
    ledger.apply_entry(conn, ledger.entry_state_from_row(row))
    logger.info(
        "Created %s transaction %s for user %s amount=%s",
        row["type"],
        row["id"],
        user_id,
        row["amount"],
    )
    return serialize_transaction(row)


def merge_changes(current: Mapping, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay a partial update on the stored entry."""
    merged = {field: current[field] for field in ENTRY_FIELDS}
    merged.update(changes)
    kind = merged["type"]
    if kind != current["type"]:
        if kind == "transfer":
            for field in ("account_id", "payee", "category_id"):
                merged[field] = None
        elif current["type"] == "transfer":
            merged["from_account_id"] = None
            merged["to_account_id"] = None
            if "memo" not in changes:
                merged["memo"] = None
    if "amount" not in changes:
        merged["amount"] = abs(current["amount"])
    account_changed = any(
        field in changes for field in ("account_id", "from_account_id", "to_account_id", "type")
    )
    if "currency" not in changes and account_changed:
        merged["currency"] = None
    return merged


def update_transaction(
    conn: Connection, user_id: int, transaction_id: int, changes: Mapping[str, Any]
) -> dict[str, Any]:
    current = load_transaction(conn, user_id, transaction_id, for_update=True)
    values = resolve_entry(conn, user_id, merge_changes(current, changes))
    row = conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(**values)
        .returning(*transactions.c)
    ).mappings().first()
    ledger.replace_entry(
        conn,
        ledger.entry_state_from_row(current),
        ledger.entry_state_from_row(row),
    )
    logger.info("Updated transaction %s for user %s", transaction_id, user_id)
    return serialize_transaction(row)


def delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> None:
    current = load_transaction(conn, user_id, transaction_id, for_update=True)
    ledger.revert_entry(conn, ledger.entry_state_from_row(current))
    conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None))
    )
    logger.info("Deleted transaction %s for user %s", transaction_id, user_id)


def toggle_reconciled(conn: Connection, user_id: int, transaction_id: int) -> dict[str, Any]:
    current = load_transaction(conn, user_id, transaction_id, for_update=True)
    row = conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(is_reconciled=not current["is_reconciled"])
        .returning(*transactions.c)
    ).mappings().first()
    return serialize_transaction(row)


def bulk_import(engine: Engine, user_id: int, items: list[Mapping[str, Any]]) -> dict[str, Any]:
    """Create each item in its own database transaction and report per-item failures."""
    if not items:
        raise ValidationError("Transactions array is required and must not be empty.")
    created = []
    errors = []
    for index, item in enumerate(items):
        try:
            payload = TransactionPayload.validate_payload(TransactionPayload.model_validate(item))
            with engine.begin() as conn:
                created.append(create_transaction(conn, user_id, payload))
        except PayloadValidationError as exc:
            message = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
            errors.append({"index": index, "item": item, "error": message})
        except LedgerError as exc:
            errors.append({"index": index, "item": item, "error": exc.message})
        except ValueError as exc:
            errors.append({"index": index, "item": item, "error": str(exc)})
    for error in errors:
        logger.warning("Bulk import item %s failed for user %s: %s", error["index"], user_id, error["error"])
    logger.info(
        "Bulk import for user %s: %d created, %d failed", user_id, len(created), len(errors)
    )
    return {
        "success_count": len(created),
        "failed_count": len(errors),
        "errors": errors,
        "transactions": created,
    }


def _filter_conditions(user_id: int, filters: TransactionFilters) -> list:
    conditions = [transactions.c.user_id == user_id, transactions.c.deleted_at.is_(None)]
    if filters.type:
        conditions.append(transactions.c.type == filters.type)
    if filters.account_id is not None:
        conditions.append(
            or_(
                transactions.c.account_id == filters.account_id,
                transactions.c.from_account_id == filters.account_id,
                transactions.c.to_account_id == filters.account_id,
            )
        )
    if filters.category_id is not None:
        conditions.append(transactions.c.category_id == filters.category_id)
    if filters.start_date is not None:
        conditions.append(transactions.c.date >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(transactions.c.date <= filters.end_date)
    if filters.min_amount is not None:
        conditions.append(transactions.c.amount >= filters.min_amount)
    if filters.max_amount is not None:
        conditions.append(transactions.c.amount <= filters.max_amount)
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        conditions.append(or_(transactions.c.payee.ilike(pattern), transactions.c.memo.ilike(pattern)))
    if filters.is_reconciled is not None:
        conditions.append(transactions.c.is_reconciled == filters.is_reconciled)
    return conditions


def list_transactions(conn: Connection, user_id: int, filters: TransactionFilters) -> dict[str, Any]:
    if filters.page < 1:
        raise ValidationError("Page must be at least 1.")
    if not 1 <= filters.limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}.")
    where = and_(*_filter_conditions(user_id, filters))
    total = conn.execute(select(func.count()).select_from(transactions).where(where)).scalar_one()
    rows = conn.execute(
        select(transactions)
        .where(where)
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(filters.limit)
        .offset((filters.page - 1) * filters.limit)
    ).mappings().all()
    return {
        "transactions": [serialize_transaction(row) for row in rows],
        "pagination": {
            "page": filters.page,
            "limit": filters.limit,
            "total": total,
            "total_pages": math.ceil(total / filters.limit),
        },
    }


def get_transaction(conn: Connection, user_id: int, transaction_id: int) -> dict[str, Any]:
    return serialize_transaction(load_transaction(conn, user_id, transaction_id))
