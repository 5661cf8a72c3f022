from __future__ import annotations

import calendar
import logging
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Engine

from pocketledger.currency_conversion import RateProvider, RateProviderUnavailable
from pocketledger.database import accounts, users
from pocketledger.errors import LedgerError
from pocketledger.fx_service import save_snapshot

logger = logging.getLogger(__name__)

SCHEDULED_SOURCE = "scheduled"


def is_last_day_of_month(day: date) -> bool:
    return day.day == calendar.monthrange(day.year, day.month)[1]


def run_monthly_snapshot(engine: Engine, provider: RateProvider, today: date) -> dict[str, Any]:
    """Record this month's rates for every user that holds at least one account.

    Each user is written in its own database transaction; a failure for one
    user is counted and the run continues.
    """
    with engine.begin() as conn:
        user_rows = conn.execute(
            select(users.c.id, users.c.base_currency).where(users.c.deleted_at.is_(None))
        ).mappings().all()
        currency_rows = conn.execute(
            select(accounts.c.user_id, accounts.c.currency)
            .where(accounts.c.deleted_at.is_(None))
            .distinct()
        ).mappings().all()

    currencies_by_user: dict[int, set[str]] = {}
    for row in currency_rows:
        currencies_by_user.setdefault(row["user_id"], set()).add(row["currency"])

    saved = 0
    skipped = 0
    failed = []
    for user in user_rows:
        currencies = currencies_by_user.get(user["id"])
        if not currencies:
            skipped += 1
            continue
        base = user["base_currency"]
        try:
            rates = {code: provider.rate(base, code, as_of=today) for code in currencies | {base}}
            with engine.begin() as conn:
                save_snapshot(conn, user["id"], today, base, rates, today, source=SCHEDULED_SOURCE)
            saved += 1
        except (LedgerError, RateProviderUnavailable, ValueError) as exc:
            logger.warning("Monthly snapshot failed for user %s: %s", user["id"], exc)
            failed.append({"user_id": user["id"], "error": str(exc)})

    logger.info(
        "Monthly rate snapshot for %s: %d saved, %d skipped, %d failed",
        today.strftime("%Y-%m"),
        saved,
        skipped,
        len(failed),
    )
    return {
        "month": today.strftime("%Y-%m"),
        "success_count": saved,
        "skipped_count": skipped,
        "failed_count": len(failed),
        "errors": failed,
    }
