from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from pocketledger.account_service import account_summary
from pocketledger.auth import load_user
from pocketledger.budget_engine import month_range
from pocketledger.budget_service import list_budgets, summarize_budgets
from pocketledger.currency_conversion import RateProvider
from pocketledger.database import categories, transactions
from pocketledger.fx_service import convert_amount_safe, sum_converted_amounts
from pocketledger.goal_service import goal_summary, list_goals
from pocketledger.transaction_service import serialize_transaction

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
MAX_TREND_MONTHS = 24
TOP_CATEGORY_LIMIT = 5
RECENT_LIMIT = 10


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def savings_rate(income: Decimal, savings: Decimal) -> Decimal:
    if income <= ZERO:
        return ZERO
    return (savings / income * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


def _percentage(part: Decimal, total: Decimal) -> Decimal:
    if total <= ZERO:
        return ZERO
    return (part / total * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


def income_expense_totals(
    conn: Connection,
    user_id: int,
    start_date: date,
    end_date: date,
    base_currency: str,
    rate_provider: RateProvider,
) -> tuple[Decimal, Decimal]:
    total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
    rows = conn.execute(
        select(transactions.c.type, transactions.c.currency, total_expr)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.type.in_(("income", "expense")),
            transactions.c.date >= start_date,
            transactions.c.date <= end_date,
            transactions.c.deleted_at.is_(None),
        )
        .group_by(transactions.c.type, transactions.c.currency)
    ).mappings().all()
    by_type: dict[str, dict[str, Decimal]] = {"income": {}, "expense": {}}
    for row in rows:
        by_type[row["type"]][row["currency"]] = abs(Decimal(str(row["total"])))
    income = sum_converted_amounts(by_type["income"], base_currency, rate_provider, end_date)
    expenses = sum_converted_amounts(by_type["expense"], base_currency, rate_provider, end_date)
    return income, expenses


def category_totals(
    conn: Connection,
    user_id: int,
    start_date: date,
    end_date: date,
    kind: str,
    base_currency: str,
    rate_provider: RateProvider,
) -> dict[int, dict[str, Any]]:
    rows = conn.execute(
        select(
            transactions.c.category_id,
            transactions.c.currency,
            func.coalesce(func.sum(transactions.c.amount), 0).label("total"),
            func.count().label("count"),
        )
        .where(
            transactions.c.user_id == user_id,
            transactions.c.type == kind,
            transactions.c.category_id.isnot(None),
            transactions.c.date >= start_date,
            transactions.c.date <= end_date,
            transactions.c.deleted_at.is_(None),
        )
        .group_by(transactions.c.category_id, transactions.c.currency)
    ).mappings().all()
    totals: dict[int, dict[str, Any]] = {}
    for row in rows:
        bucket = totals.setdefault(row["category_id"], {"amount": ZERO, "count": 0})
        bucket["amount"] += convert_amount_safe(
            abs(Decimal(str(row["total"]))), row["currency"], base_currency, rate_provider, end_date
        )
        bucket["count"] += row["count"]
    return totals


def spending_by_category(
    conn: Connection,
    user_id: int,
    month: str,
    kind: str,
    rate_provider: RateProvider,
) -> dict[str, Any]:
    base_currency = load_user(conn, user_id)["base_currency"]
    start_date, end_date = month_range(month)
    totals = category_totals(conn, user_id, start_date, end_date, kind, base_currency, rate_provider)
    category_rows = conn.execute(
        select(categories.c.id, categories.c.name, categories.c.parent_id).where(
            categories.c.user_id == user_id,
            categories.c.type == kind,
            categories.c.deleted_at.is_(None),
        )
    ).mappings().all()
    total_amount = sum((bucket["amount"] for bucket in totals.values()), ZERO)

    children: dict[int, list] = {}
    for row in category_rows:
        if row["parent_id"] is not None:
            children.setdefault(row["parent_id"], []).append(row)

    result = []
    for row in category_rows:
        if row["parent_id"] is not None:
            continue
        own = totals.get(row["id"], {"amount": ZERO, "count": 0})
        subcategories = []
        amount = own["amount"]
        count = own["count"]
        for child in children.get(row["id"], []):
            child_total = totals.get(child["id"], {"amount": ZERO, "count": 0})
            amount += child_total["amount"]
            count += child_total["count"]
            if child_total["count"]:
                subcategories.append(
                    {
                        "id": child["id"],
                        "name": child["name"],
                        "amount": child_total["amount"],
                        "percentage": _percentage(child_total["amount"], total_amount),
                        "transaction_count": child_total["count"],
                    }
                )
        if not count:
            continue
        subcategories.sort(key=lambda item: item["amount"], reverse=True)
        result.append(
            {
                "id": row["id"],
                "name": row["name"],
                "amount": amount,
                "percentage": _percentage(amount, total_amount),
                "transaction_count": count,
                "subcategories": subcategories,
            }
        )
    result.sort(key=lambda item: item["amount"], reverse=True)
    return {
        "month": month,
        "type": kind,
        "currency": base_currency,
        "total_amount": total_amount,
        "categories": result,
    }


def dashboard(
    conn: Connection,
    user_id: int,
    month: str,
    rate_provider: RateProvider,
    today: date,
) -> dict[str, Any]:
    base_currency = load_user(conn, user_id)["base_currency"]
    start_date, end_date = month_range(month)
    income, expenses = income_expense_totals(
        conn, user_id, start_date, end_date, base_currency, rate_provider
    )
    savings = income - expenses
    summary = account_summary(conn, user_id, rate_provider)

    budgets = {item["category_id"]: item for item in list_budgets(conn, user_id, month=month)}
    totals = category_totals(conn, user_id, start_date, end_date, "expense", base_currency, rate_provider)
    names = dict(
        conn.execute(select(categories.c.id, categories.c.name).where(categories.c.user_id == user_id)).all()
    )
    top_categories = []
    for category_id, bucket in sorted(totals.items(), key=lambda item: item[1]["amount"], reverse=True)[
        :TOP_CATEGORY_LIMIT
    ]:
        budgeted = Decimal(budgets[category_id]["budgeted"]) if category_id in budgets else ZERO
        top_categories.append(
            {
                "category_id": category_id,
                "category_name": names.get(category_id),
                "spent": bucket["amount"],
                "budget": budgeted,
                "percentage": _percentage(bucket["amount"], budgeted),
            }
        )

    recent = conn.execute(
        select(transactions)
        .where(transactions.c.user_id == user_id, transactions.c.deleted_at.is_(None))
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(RECENT_LIMIT)
    ).mappings().all()

    return {
        "period": month,
        "currency": base_currency,
        "income": income,
        "expenses": expenses,
        "savings": savings,
        "savings_rate": savings_rate(income, savings),
        "net_worth": summary["net_worth"],
        "top_categories": top_categories,
        "recent_transactions": [serialize_transaction(row) for row in recent],
        "budgets_summary": summarize_budgets(month, list(budgets.values())),
        "goals_summary": goal_summary(list_goals(conn, user_id, today)),
        "accounts_by_type": summary["by_type"],
    }


def monthly_trends(
    conn: Connection,
    user_id: int,
    months: int,
    today: date,
    rate_provider: RateProvider,
) -> list[dict[str, Any]]:
    if not 1 <= months <= MAX_TREND_MONTHS:
        raise ValueError(f"Months must be between 1 and {MAX_TREND_MONTHS}.")
    base_currency = load_user(conn, user_id)["base_currency"]
    trends = []
    for offset in range(months - 1, -1, -1):
        start_date = shift_month(today, -offset)
        _, end_date = month_range(start_date.strftime("%Y-%m"))
        income, expenses = income_expense_totals(
            conn, user_id, start_date, end_date, base_currency, rate_provider
        )
        savings = income - expenses
        trends.append(
            {
                "month": start_date.strftime("%Y-%m"),
                "month_name": start_date.strftime("%b"),
                "income": income,
                "expenses": expenses,
                "savings": savings,
                "savings_rate": savings_rate(income, savings),
            }
        )
    return trends


def net_worth(conn: Connection, user_id: int, rate_provider: RateProvider) -> dict[str, Any]:
    summary = account_summary(conn, user_id, rate_provider)
    return {
        "currency": summary["base_currency"],
        "assets": summary["total_assets"],
        "liabilities": summary["total_liabilities"],
        "net_worth": summary["net_worth"],
        "by_currency": summary["by_currency"],
    }
