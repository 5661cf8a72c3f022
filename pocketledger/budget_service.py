from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from pocketledger.budget_engine import (
    CENT,
    HUNDRED,
    ZERO,
    BudgetRule,
    Transaction,
    evaluate_budget,
    month_range,
)
from pocketledger.database import budgets, categories, transactions
from pocketledger.errors import CategoryKindMismatch, Conflict, NotFound
from pocketledger.schemas import BudgetPayload
from pocketledger.transaction_service import load_category

logger = logging.getLogger(__name__)


def load_budget(conn: Connection, user_id: int, budget_id: int) -> Mapping:
    row = conn.execute(
        select(budgets).where(
            budgets.c.id == budget_id,
            budgets.c.user_id == user_id,
            budgets.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise NotFound("Budget not found.")
    return row


def _require_expense_category(conn: Connection, user_id: int, category_id: int) -> Mapping:
    category = load_category(conn, user_id, category_id)
    if category["type"] != "expense":
        raise CategoryKindMismatch("Budgets can only be created for expense categories.")
    return category


def _require_unique(conn: Connection, user_id: int, category_id: int, month: str, exclude_id: int | None = None) -> None:
    stmt = select(budgets.c.id).where(
        budgets.c.user_id == user_id,
        budgets.c.category_id == category_id,
        budgets.c.month == month,
        budgets.c.deleted_at.is_(None),
    )
    if exclude_id is not None:
        stmt = stmt.where(budgets.c.id != exclude_id)
    if conn.execute(stmt).first():
        raise Conflict("Budget already exists for this category and month.")


def evaluate_row(conn: Connection, user_id: int, row: Mapping) -> dict[str, Any]:
    start_date, end_date = month_range(row["month"])
    entries = conn.execute(
        select(transactions.c.amount, transactions.c.type, transactions.c.date, transactions.c.category_id).where(
            transactions.c.user_id == user_id,
            transactions.c.category_id == row["category_id"],
            transactions.c.type == "expense",
            transactions.c.date >= start_date,
            transactions.c.date <= end_date,
            transactions.c.deleted_at.is_(None),
        )
    ).mappings().all()
    evaluation = evaluate_budget(
        [
            Transaction(
                amount=entry["amount"],
                type=entry["type"],
                date=entry["date"],
                category_id=entry["category_id"],
            )
            for entry in entries
        ],
        BudgetRule(category_id=row["category_id"], month=row["month"], budgeted=Decimal(row["budgeted"])),
    )
    category_name = conn.execute(
        select(categories.c.name).where(categories.c.id == row["category_id"])
    ).scalar_one_or_none()
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "category_id": row["category_id"],
        "category_name": category_name,
        "month": row["month"],
        "budgeted": row["budgeted"],
        "spent": evaluation.spent,
        "remaining": evaluation.remaining,
        "percentage": evaluation.percentage,
        "is_over_budget": evaluation.is_over_budget,
        "status": evaluation.status,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def create_budget(conn: Connection, user_id: int, payload: BudgetPayload) -> dict[str, Any]:
    _require_expense_category(conn, user_id, payload.category_id)
    _require_unique(conn, user_id, payload.category_id, payload.month)
    row = conn.execute(
        insert(budgets)
        .values(
            user_id=user_id,
            category_id=payload.category_id,
            month=payload.month,
            budgeted=payload.budgeted,
        )
        .returning(*budgets.c)
    ).mappings().first()
    logger.info("Created budget %s for user %s (%s)", row["id"], user_id, row["month"])
    return evaluate_row(conn, user_id, row)


def list_budgets(
    conn: Connection,
    user_id: int,
    month: str | None = None,
    category_id: int | None = None,
) -> list[dict[str, Any]]:
    stmt = select(budgets).where(budgets.c.user_id == user_id, budgets.c.deleted_at.is_(None))
    if month:
        stmt = stmt.where(budgets.c.month == month)
    if category_id is not None:
        stmt = stmt.where(budgets.c.category_id == category_id)
    rows = conn.execute(stmt.order_by(budgets.c.month.desc(), budgets.c.id.asc())).mappings().all()
    return [evaluate_row(conn, user_id, row) for row in rows]


def get_budget(conn: Connection, user_id: int, budget_id: int) -> dict[str, Any]:
    return evaluate_row(conn, user_id, load_budget(conn, user_id, budget_id))


def update_budget(
    conn: Connection, user_id: int, budget_id: int, changes: Mapping[str, Any]
) -> dict[str, Any]:
    current = load_budget(conn, user_id, budget_id)
    category_id = changes.get("category_id", current["category_id"])
    month = changes.get("month", current["month"])
    if "category_id" in changes:
        _require_expense_category(conn, user_id, category_id)
    if category_id != current["category_id"] or month != current["month"]:
        _require_unique(conn, user_id, category_id, month, exclude_id=budget_id)
    row = conn.execute(
        update(budgets).where(budgets.c.id == budget_id).values(**changes).returning(*budgets.c)
    ).mappings().first()
    logger.info("Updated budget %s for user %s", budget_id, user_id)
    return evaluate_row(conn, user_id, row)


def delete_budget(conn: Connection, user_id: int, budget_id: int) -> None:
    load_budget(conn, user_id, budget_id)
    conn.execute(
        update(budgets)
        .where(budgets.c.id == budget_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None))
    )
    logger.info("Deleted budget %s for user %s", budget_id, user_id)


def summarize_budgets(month: str, evaluated: list[Mapping[str, Any]]) -> dict[str, Any]:
    total_budgeted = sum((Decimal(item["budgeted"]) for item in evaluated), ZERO)
    total_spent = sum((item["spent"] for item in evaluated), ZERO)
    overall = (total_spent / total_budgeted * HUNDRED) if total_budgeted > ZERO else ZERO
    return {
        "month": month,
        "total_budgeted": total_budgeted,
        "total_spent": total_spent,
        "total_remaining": total_budgeted - total_spent,
        "overall_percentage": overall.quantize(CENT, rounding=ROUND_HALF_UP),
        "budget_count": len(evaluated),
        "over_budget_count": sum(1 for item in evaluated if item["is_over_budget"]),
        "warning_count": sum(1 for item in evaluated if item["status"] == "warning"),
        "good_count": sum(1 for item in evaluated if item["status"] == "good"),
    }


def budget_summary(conn: Connection, user_id: int, month: str) -> dict[str, Any]:
    evaluated = list_budgets(conn, user_id, month=month)
    return {"summary": summarize_budgets(month, evaluated), "budgets": evaluated}
