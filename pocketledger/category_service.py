from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from pocketledger.balance_engine import ZERO
from pocketledger.category_tree import build_hierarchy, creates_cycle
from pocketledger.database import budgets, categories, recurring_transactions, transactions
from pocketledger.errors import CategoryKindMismatch, Conflict, NotFound, ValidationError
from pocketledger.schemas import CategoryPayload
from pocketledger.transaction_service import load_category

logger = logging.getLogger(__name__)


def serialize_category(row: Mapping) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "type": row["type"],
        "parent_id": row["parent_id"],
        "icon": row["icon"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _load_parent(conn: Connection, user_id: int, parent_id: int) -> Mapping:
    try:
        return load_category(conn, user_id, parent_id)
    except NotFound as exc:
        raise NotFound("Parent category not found.") from exc


def _count_children(conn: Connection, category_id: int) -> int:
    return conn.execute(
        select(func.count())
        .select_from(categories)
        .where(categories.c.parent_id == category_id, categories.c.deleted_at.is_(None))
    ).scalar_one()


def _count_transactions(conn: Connection, category_id: int) -> int:
    return conn.execute(
        select(func.count())
        .select_from(transactions)
        .where(transactions.c.category_id == category_id, transactions.c.deleted_at.is_(None))
    ).scalar_one()


def _count_plans(conn: Connection, category_id: int) -> int:
    """Budgets and recurring rules that still point at the category."""
    total = 0
    for table in (budgets, recurring_transactions):
        total += conn.execute(
            select(func.count())
            .select_from(table)
            .where(table.c.category_id == category_id, table.c.deleted_at.is_(None))
        ).scalar_one()
    return total


def _check_nesting(parent: Mapping) -> None:
    # Only one level of nesting.
    if parent["parent_id"] is not None:
        raise ValidationError("Subcategories cannot have subcategories of their own.")


def create_category(conn: Connection, user_id: int, payload: CategoryPayload) -> dict[str, Any]:
    if payload.parent_id is not None:
        parent = _load_parent(conn, user_id, payload.parent_id)
        _check_nesting(parent)
        if parent["type"] != payload.type:
            raise CategoryKindMismatch("Parent category must be same type (income/expense).")
    row = conn.execute(
        insert(categories)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            parent_id=payload.parent_id,
            icon=payload.icon,
        )
        .returning(*categories.c)
    ).mappings().first()
    logger.info("Created %s category %s for user %s", row["type"], row["id"], user_id)
    return serialize_category(row)


def list_categories(
    conn: Connection,
    user_id: int,
    type: str | None = None,
    parent_id: int | None = None,
    top_level_only: bool = False,
    hierarchical: bool = True,
) -> list[dict[str, Any]]:
    stmt = select(categories).where(categories.c.user_id == user_id, categories.c.deleted_at.is_(None))
    if type:
        stmt = stmt.where(categories.c.type == type)
    if top_level_only:
        stmt = stmt.where(categories.c.parent_id.is_(None))
    elif parent_id is not None:
        stmt = stmt.where(categories.c.parent_id == parent_id)
    rows = [serialize_category(row) for row in conn.execute(stmt.order_by(categories.c.name.asc())).mappings()]
    if not hierarchical:
        return rows
    return build_hierarchy(rows)


def get_category(conn: Connection, user_id: int, category_id: int) -> dict[str, Any]:
    row = load_category(conn, user_id, category_id)
    data = serialize_category(row)
    data["transaction_count"] = _count_transactions(conn, category_id)
    data["subcategories_count"] = _count_children(conn, category_id)
    data["parent"] = None
    if row["parent_id"] is not None:
        parent = conn.execute(
            select(categories.c.id, categories.c.name, categories.c.icon, categories.c.type).where(
                categories.c.id == row["parent_id"]
            )
        ).mappings().first()
        data["parent"] = dict(parent) if parent else None
    return data


def update_category(
    conn: Connection, user_id: int, category_id: int, changes: Mapping[str, Any]
) -> dict[str, Any]:
    current = load_category(conn, user_id, category_id)
    new_type = changes.get("type", current["type"])
    new_parent_id = changes.get("parent_id", current["parent_id"])

    if "parent_id" in changes and new_parent_id is not None:
        if new_parent_id == category_id:
            raise ValidationError("Category cannot be its own parent.")
        parent = _load_parent(conn, user_id, new_parent_id)
        parents = dict(
            conn.execute(
                select(categories.c.id, categories.c.parent_id).where(
                    categories.c.user_id == user_id, categories.c.deleted_at.is_(None)
                )
            ).all()
        )
        if creates_cycle(category_id, new_parent_id, parents):
            raise ValidationError("Circular parent-child reference detected.")
        _check_nesting(parent)
        if _count_children(conn, category_id):
            raise ValidationError("A category with subcategories cannot become a subcategory.")

    if new_parent_id is not None:
        parent = _load_parent(conn, user_id, new_parent_id)
        if parent["type"] != new_type:
            raise CategoryKindMismatch("Parent category must be same type (income/expense).")

    if new_type != current["type"]:
        if _count_children(conn, category_id):
            raise CategoryKindMismatch("Cannot change type of category with subcategories.")
        in_use = _count_transactions(conn, category_id) + _count_plans(conn, category_id)
        if in_use:
            raise Conflict(
                f"Cannot change type of category used by {in_use} transactions, budgets or recurring rules."
            )

    row = conn.execute(
        update(categories).where(categories.c.id == category_id).values(**changes).returning(*categories.c)
    ).mappings().first()
    logger.info("Updated category %s for user %s", category_id, user_id)
    return serialize_category(row)


def delete_category(conn: Connection, user_id: int, category_id: int) -> None:
    load_category(conn, user_id, category_id)
    in_use = _count_transactions(conn, category_id)
    if in_use:
        raise Conflict(
            f"Cannot delete category with {in_use} transactions. Please reassign or delete them first."
        )
    children = _count_children(conn, category_id)
    if children:
        raise Conflict(
            f"Cannot delete category with {children} subcategories. Please delete or reassign them first."
        )
    conn.execute(
        update(categories)
        .where(categories.c.id == category_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None))
    )
    logger.info("Deleted category %s for user %s", category_id, user_id)


def monthly_breakdown(entries: list[Mapping]) -> list[dict[str, Any]]:
    breakdown: dict[str, dict[str, Any]] = {}
    for entry in entries:
        month = entry["date"].strftime("%Y-%m")
        bucket = breakdown.setdefault(month, {"month": month, "total": ZERO, "count": 0})
        bucket["total"] += abs(Decimal(entry["amount"]))
        bucket["count"] += 1
    return [breakdown[month] for month in sorted(breakdown, reverse=True)]


def category_spending(
    conn: Connection,
    user_id: int,
    category_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict[str, Any]:
    category = load_category(conn, user_id, category_id)
    stmt = select(transactions.c.amount, transactions.c.date).where(
        transactions.c.user_id == user_id,
        transactions.c.category_id == category_id,
        transactions.c.deleted_at.is_(None),
    )
    if start_date is not None:
        stmt = stmt.where(transactions.c.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(transactions.c.date <= end_date)
    entries = conn.execute(stmt).mappings().all()

    total = sum((abs(Decimal(entry["amount"])) for entry in entries), ZERO)
    count = len(entries)
    return {
        "category": serialize_category(category),
        "total_amount": total,
        "transaction_count": count,
        "average_amount": (total / count).quantize(Decimal("0.01")) if count else ZERO,
        "monthly_breakdown": monthly_breakdown(list(entries)),
        "date_range": {"start": start_date, "end": end_date},
    }
