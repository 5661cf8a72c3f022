from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from pocketledger.database import recurring_transactions
from pocketledger.errors import (
    CurrencyMismatch,
    InvalidState,
    LedgerError,
    NotFound,
    ValidationError,
)
from pocketledger.recurring_projection import (
    STATUS_ENDED,
    STATUS_INACTIVE,
    RecurringRule,
    project_rules,
    rule_status,
)
from pocketledger.schemas import RecurringPayload, TransactionPayload
from pocketledger.transaction_service import (
    check_category_kind,
    create_transaction,
    load_account,
    load_category,
)

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "name",
    "account_id",
    "type",
    "payee",
    "category_id",
    "amount",
    "currency",
    "frequency",
    "interval",
    "start_date",
    "end_date",
    "is_active",
)


def rule_from_row(row: Mapping) -> RecurringRule:
    return RecurringRule(
        amount=row["amount"],
        start_date=row["start_date"],
        account_id=row["account_id"],
        kind=row["type"],
        frequency=row["frequency"],
        interval=row["interval"],
        end_date=row["end_date"],
        last_processed=row["last_processed"],
        is_active=row["is_active"],
        category_id=row["category_id"],
        name=row["name"],
    )


def serialize_rule(row: Mapping, today: date) -> dict[str, Any]:
    status = rule_status(rule_from_row(row), today)
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "account_id": row["account_id"],
        "type": row["type"],
        "payee": row["payee"],
        "category_id": row["category_id"],
        "amount": row["amount"],
        "currency": row["currency"],
        "frequency": row["frequency"],
        "interval": row["interval"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "last_processed": row["last_processed"],
        "is_active": row["is_active"],
        "next_due_date": status.next_due_date,
        "is_due": status.is_due,
        "status": status.status,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def load_rule(conn: Connection, user_id: int, rule_id: int, for_update: bool = False) -> Mapping:
    stmt = select(recurring_transactions).where(
        recurring_transactions.c.id == rule_id,
        recurring_transactions.c.user_id == user_id,
        recurring_transactions.c.deleted_at.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFound("Recurring transaction not found.")
    return row


def resolve_rule(conn: Connection, user_id: int, values: Mapping[str, Any]) -> dict[str, Any]:
    """Check the references of a complete rule state and fill in its currency."""
    if values.get("end_date") is not None and values["end_date"] <= values["start_date"]:
        raise ValidationError("End date must be after start date.")
    account = load_account(conn, user_id, values["account_id"])
    currency = values.get("currency") or account["currency"]
    if currency != account["currency"]:
        raise CurrencyMismatch(
            f"Recurring transaction currency ({currency}) must match account currency ({account['currency']})."
        )
    if values.get("category_id") is not None:
        check_category_kind(load_category(conn, user_id, values["category_id"]), values["type"])
    resolved = dict(values)
    resolved["currency"] = currency
    return resolved


def create_rule(conn: Connection, user_id: int, payload: RecurringPayload, today: date) -> dict[str, Any]:
    values = resolve_rule(conn, user_id, payload.model_dump(include=set(RULE_FIELDS)))
    row = conn.execute(
        insert(recurring_transactions)
        .values(user_id=user_id, **values)
        .returning(*recurring_transactions.c)
    ).mappings().first()
    logger.info("Created recurring transaction %s for user %s", row["id"], user_id)
    return serialize_rule(row, today)


def list_rules(
    conn: Connection,
    user_id: int,
    today: date,
    is_active: bool | None = None,
    type: str | None = None,
    account_id: int | None = None,
    frequency: str | None = None,
) -> list[dict[str, Any]]:
    stmt = select(recurring_transactions).where(
        recurring_transactions.c.user_id == user_id,
        recurring_transactions.c.deleted_at.is_(None),
    )
    if is_active is not None:
        stmt = stmt.where(recurring_transactions.c.is_active == is_active)
    if type:
        stmt = stmt.where(recurring_transactions.c.type == type)
    if account_id is not None:
        stmt = stmt.where(recurring_transactions.c.account_id == account_id)
    if frequency:
        stmt = stmt.where(recurring_transactions.c.frequency == frequency)
    rows = conn.execute(
        stmt.order_by(recurring_transactions.c.created_at.desc(), recurring_transactions.c.id.desc())
    ).mappings().all()
    return [serialize_rule(row, today) for row in rows]


def get_rule(conn: Connection, user_id: int, rule_id: int, today: date) -> dict[str, Any]:
    return serialize_rule(load_rule(conn, user_id, rule_id), today)


def update_rule(
    conn: Connection, user_id: int, rule_id: int, changes: Mapping[str, Any], today: date
) -> dict[str, Any]:
    current = load_rule(conn, user_id, rule_id, for_update=True)
    merged = {field: current[field] for field in RULE_FIELDS}
    merged.update(changes)
    if "account_id" in changes and "currency" not in changes:
        merged["currency"] = None
    values = resolve_rule(conn, user_id, merged)
    row = conn.execute(
        update(recurring_transactions)
        .where(recurring_transactions.c.id == rule_id)
        .values(**values)
        .returning(*recurring_transactions.c)
    ).mappings().first()
    logger.info("Updated recurring transaction %s for user %s", rule_id, user_id)
    return serialize_rule(row, today)


def delete_rule(conn: Connection, user_id: int, rule_id: int) -> None:
    load_rule(conn, user_id, rule_id, for_update=True)
    conn.execute(
        update(recurring_transactions)
        .where(recurring_transactions.c.id == rule_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None))
    )
    logger.info("Deleted recurring transaction %s for user %s", rule_id, user_id)


def process_rule(conn: Connection, user_id: int, rule_id: int, today: date) -> dict[str, Any]:
    current = load_rule(conn, user_id, rule_id, for_update=True)
    status = rule_status(rule_from_row(current), today)
    if status.status == STATUS_INACTIVE:
        raise InvalidState("Recurring transaction is not active.")
    if status.status == STATUS_ENDED:
        raise InvalidState("Recurring transaction has ended.")

    label = f"Recurring: {current['name']}"
    payload = TransactionPayload(
        date=today,
        type=current["type"],
        amount=current["amount"],
        account_id=current["account_id"],
        payee=current["payee"] or label,
        category_id=current["category_id"],
        currency=current["currency"],
        memo=label,
    )
    created = create_transaction(conn, user_id, payload)
    row = conn.execute(
        update(recurring_transactions)
        .where(recurring_transactions.c.id == rule_id)
        .values(last_processed=today)
        .returning(*recurring_transactions.c)
    ).mappings().first()
    logger.info(
        "Processed recurring transaction %s for user %s into transaction %s",
        rule_id,
        user_id,
        created["id"],
    )
    return {"rule": serialize_rule(row, today), "created_transaction": created}


def process_due_rules(engine: Engine, user_id: int, today: date) -> dict[str, Any]:
    with engine.begin() as conn:
        due_ids = [rule["id"] for rule in list_rules(conn, user_id, today, is_active=True) if rule["is_due"]]

    results = []
    errors = []
    for rule_id in due_ids:
        try:
            with engine.begin() as conn:
                results.append(process_rule(conn, user_id, rule_id, today))
        except LedgerError as exc:
            logger.warning("Processing recurring transaction %s failed: %s", rule_id, exc.message)
            errors.append({"rule_id": rule_id, "error": exc.message})
    return {
        "processed_count": len(results),
        "failed_count": len(errors),
        "results": results,
        "errors": errors,
    }


def upcoming(conn: Connection, user_id: int, start: date, end: date) -> list[dict[str, Any]]:
    if start > end:
        raise ValidationError("start_date must be on or before end_date.")
    rows = conn.execute(
        select(recurring_transactions).where(
            recurring_transactions.c.user_id == user_id,
            recurring_transactions.c.deleted_at.is_(None),
            recurring_transactions.c.is_active.is_(True),
        )
    ).mappings().all()
    projected = []
    for row in rows:
        for entry in project_rules([rule_from_row(row)], start, end):
            projected.append(
                {
                    "recurring_id": row["id"],
                    "name": row["name"],
                    "date": entry.date,
                    "type": entry.transaction_type,
                    "amount": entry.amount,
                    "currency": row["currency"],
                    "account_id": entry.account_id,
                    "category_id": entry.category_id,
                }
            )
    projected.sort(key=lambda item: (item["date"], item["recurring_id"]))
    return projected
