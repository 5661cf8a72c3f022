from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from pocketledger.database import goals
from pocketledger.errors import NotFound, ValidationError
from pocketledger.goal_progress import Goal, evaluate_goal
from pocketledger.schemas import GoalPayload
from pocketledger.transaction_service import load_account

logger = logging.getLogger(__name__)

GOAL_STATUSES = {"active", "completed", "overdue"}


def serialize_goal(row: Mapping, today: date) -> dict[str, Any]:
    progress = evaluate_goal(
        Goal(
            target_amount=row["target_amount"],
            current_amount=row["current_amount"],
            target_date=row["target_date"],
        ),
        today,
    )
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "target_amount": row["target_amount"],
        "current_amount": row["current_amount"],
        "target_date": row["target_date"],
        "linked_account_id": row["linked_account_id"],
        "remaining": progress.remaining,
        "progress_percentage": progress.progress_percentage,
        "is_complete": progress.is_complete,
        "days_until_target": progress.days_until_target,
        "is_overdue": progress.is_overdue,
        "status": progress.status,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def load_goal(conn: Connection, user_id: int, goal_id: int) -> Mapping:
    row = conn.execute(
        select(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id, goals.c.deleted_at.is_(None))
    ).mappings().first()
    if not row:
        raise NotFound("Goal not found.")
    return row


def _check_linked_account(conn: Connection, user_id: int, account_id: int | None) -> None:
    if account_id is not None:
        load_account(conn, user_id, account_id, "Linked account")


def create_goal(conn: Connection, user_id: int, payload: GoalPayload, today: date) -> dict[str, Any]:
    _check_linked_account(conn, user_id, payload.linked_account_id)
    row = conn.execute(
        insert(goals)
        .values(
            user_id=user_id,
            name=payload.name,
            target_amount=payload.target_amount,
            current_amount=payload.current_amount,
            target_date=payload.target_date,
            linked_account_id=payload.linked_account_id,
        )
        .returning(*goals.c)
    ).mappings().first()
    logger.info("Created goal %s for user %s", row["id"], user_id)
    return serialize_goal(row, today)


def list_goals(
    conn: Connection,
    user_id: int,
    today: date,
    status: str | None = None,
    linked_account_id: int | None = None,
) -> list[dict[str, Any]]:
    if status is not None and status not in GOAL_STATUSES:
        raise ValidationError("Status must be one of: active, completed, overdue.")
    stmt = select(goals).where(goals.c.user_id == user_id, goals.c.deleted_at.is_(None))
    if linked_account_id is not None:
        stmt = stmt.where(goals.c.linked_account_id == linked_account_id)
    rows = conn.execute(stmt.order_by(goals.c.created_at.desc(), goals.c.id.desc())).mappings().all()
    serialized = [serialize_goal(row, today) for row in rows]
    if status is not None:
        serialized = [goal for goal in serialized if goal["status"] == status]
    return serialized


def get_goal(conn: Connection, user_id: int, goal_id: int, today: date) -> dict[str, Any]:
    return serialize_goal(load_goal(conn, user_id, goal_id), today)


def update_goal(
    conn: Connection, user_id: int, goal_id: int, changes: Mapping[str, Any], today: date
) -> dict[str, Any]:
    current = load_goal(conn, user_id, goal_id)
    if "linked_account_id" in changes:
        _check_linked_account(conn, user_id, changes["linked_account_id"])
    target = changes.get("target_amount", current["target_amount"])
    amount = changes.get("current_amount", current["current_amount"])
    if amount > target:
        raise ValidationError("Current amount cannot exceed target amount.")
    row = conn.execute(
        update(goals).where(goals.c.id == goal_id).values(**changes).returning(*goals.c)
    ).mappings().first()
    logger.info("Updated goal %s for user %s", goal_id, user_id)
    return serialize_goal(row, today)


def delete_goal(conn: Connection, user_id: int, goal_id: int) -> None:
    load_goal(conn, user_id, goal_id)
    conn.execute(
        update(goals)
        .where(goals.c.id == goal_id)
        .values(deleted_at=datetime.now(timezone.utc).replace(tzinfo=None))
    )
    logger.info("Deleted goal %s for user %s", goal_id, user_id)


def goal_summary(goal_list: list[Mapping[str, Any]]) -> dict[str, Any]:
    return {
        "total_goals": len(goal_list),
        "completed": sum(1 for goal in goal_list if goal["status"] == "completed"),
        "active": sum(1 for goal in goal_list if goal["status"] == "active"),
        "overdue": sum(1 for goal in goal_list if goal["status"] == "overdue"),
    }
