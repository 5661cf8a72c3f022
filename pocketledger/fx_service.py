from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Connection

from pocketledger.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    RateProvider,
    RateProviderUnavailable,
    RateSnapshot,
    SnapshotRateProvider,
    StaticRateProvider,
    convert_amount,
    month_end,
    normalize_currency,
)
from pocketledger.database import exchange_rate_snapshots
from pocketledger.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

FX_PROVIDER = CompositeRateProvider(
    primary=FrankfurterRateProvider(),
    fallback=StaticRateProvider(),
)


def snapshot_from_row(row: Mapping) -> RateSnapshot:
    return RateSnapshot(
        month=row["month"],
        version=row["version"],
        base_currency=row["base_currency"],
        rates=row["rates"],
    )


def serialize_snapshot(row: Mapping, is_fallback: bool = False) -> dict[str, Any]:
    return {
        "id": row["id"],
        "month": row["month"],
        "version": row["version"],
        "base_currency": row["base_currency"],
        "rates": {code: Decimal(str(value)) for code, value in row["rates"].items()},
        "source": row["source"],
        "created_at": row["created_at"],
        "is_fallback": is_fallback,
    }


def save_snapshot(
    conn: Connection,
    user_id: int,
    month: date,
    base_currency: str,
    rates: Mapping[str, Decimal],
    today: date,
    source: str = "manual",
) -> dict[str, Any]:
    """Store a new version of ``month``'s rates; earlier versions stay untouched."""
    month = month_end(month)
    if month > month_end(today):
        raise ValidationError("Cannot save exchange rates for future months.")
    snapshot = RateSnapshot(month=month, version=1, base_currency=base_currency, rates=rates)
    latest_version = conn.execute(
        select(func.max(exchange_rate_snapshots.c.version)).where(
            exchange_rate_snapshots.c.user_id == user_id,
            exchange_rate_snapshots.c.month == month,
        )
    ).scalar_one_or_none()
    row = conn.execute(
        insert(exchange_rate_snapshots)
        .values(
            user_id=user_id,
            month=month,
            version=(latest_version or 0) + 1,
            base_currency=snapshot.base_currency,
            rates={code: str(value) for code, value in snapshot.rates.items()},
            source=source,
        )
        .returning(*exchange_rate_snapshots.c)
    ).mappings().first()
    logger.info(
        "Saved rate snapshot %s v%s for user %s (%d currencies)",
        month.isoformat(),
        row["version"],
        user_id,
        len(snapshot.rates),
    )
    return serialize_snapshot(row)


def get_snapshot(conn: Connection, user_id: int, month: date) -> dict[str, Any]:
    """Latest version for ``month``, or for the most recent earlier month."""
    month = month_end(month)
    row = conn.execute(
        select(exchange_rate_snapshots)
        .where(
            exchange_rate_snapshots.c.user_id == user_id,
            exchange_rate_snapshots.c.month <= month,
        )
        .order_by(exchange_rate_snapshots.c.month.desc(), exchange_rate_snapshots.c.version.desc())
        .limit(1)
    ).mappings().first()
    if not row:
        raise NotFound(f"No exchange rates found for {month.strftime('%Y-%m')} or earlier.")
    return serialize_snapshot(row, is_fallback=row["month"] != month)


def snapshot_history(conn: Connection, user_id: int, month: date) -> list[dict[str, Any]]:
    rows = conn.execute(
        select(exchange_rate_snapshots)
        .where(
            exchange_rate_snapshots.c.user_id == user_id,
            exchange_rate_snapshots.c.month == month_end(month),
        )
        .order_by(exchange_rate_snapshots.c.version.desc())
    ).mappings().all()
    if not rows:
        raise NotFound(f"No exchange rates found for {month.strftime('%Y-%m')}.")
    return [serialize_snapshot(row) for row in rows]


def list_snapshot_months(conn: Connection, user_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        select(
            exchange_rate_snapshots.c.month,
            func.max(exchange_rate_snapshots.c.version).label("latest_version"),
        )
        .where(exchange_rate_snapshots.c.user_id == user_id)
        .group_by(exchange_rate_snapshots.c.month)
        .order_by(exchange_rate_snapshots.c.month.desc())
    ).mappings().all()
    return [{"month": row["month"], "latest_version": row["latest_version"]} for row in rows]


def delete_snapshot_month(conn: Connection, user_id: int, month: date) -> int:
    result = conn.execute(
        delete(exchange_rate_snapshots).where(
            exchange_rate_snapshots.c.user_id == user_id,
            exchange_rate_snapshots.c.month == month_end(month),
        )
    )
    if not result.rowcount:
        raise NotFound(f"No exchange rates found for {month.strftime('%Y-%m')}.")
    logger.info("Deleted %d rate snapshot versions for user %s", result.rowcount, user_id)
    return result.rowcount


def rate_provider_for_user(
    conn: Connection, user_id: int, fallback: RateProvider | None = None
) -> SnapshotRateProvider:
    rows = conn.execute(
        select(exchange_rate_snapshots).where(exchange_rate_snapshots.c.user_id == user_id)
    ).mappings().all()
    return SnapshotRateProvider(
        snapshots=[snapshot_from_row(row) for row in rows],
        fallback=fallback if fallback is not None else FX_PROVIDER,
    )


def convert_for_user(
    conn: Connection,
    user_id: int,
    amount: Decimal,
    source_currency: str,
    target_currency: str,
    as_of: date | None = None,
    fallback: RateProvider | None = None,
) -> dict[str, Any]:
    source = normalize_currency(source_currency)
    target = normalize_currency(target_currency)
    provider = rate_provider_for_user(conn, user_id, fallback)
    try:
        rate = provider.rate(source, target, as_of=as_of)
    except RateProviderUnavailable as exc:
        raise NotFound(str(exc)) from exc
    return {
        "amount": amount,
        "from_currency": source,
        "to_currency": target,
        "rate": rate,
        "converted_amount": convert_amount(amount, source, target, rate_provider=provider, date=as_of),
        "as_of": as_of,
    }


def convert_amount_safe(
    amount: Decimal,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider,
    as_of: date | None = None,
) -> Decimal:
    try:
        return convert_amount(amount, source_currency, target_currency, rate_provider=rate_provider, date=as_of)
    except (ValueError, RateProviderUnavailable):
        logger.warning("No rate for %s->%s, using unconverted amount", source_currency, target_currency)
        return amount


def sum_converted_amounts(
    amounts_by_currency: Mapping[str, Decimal],
    target_currency: str,
    rate_provider: RateProvider,
    as_of: date | None = None,
) -> Decimal:
    total = Decimal("0")
    for currency, amount in amounts_by_currency.items():
        total += convert_amount_safe(amount, currency, target_currency, rate_provider, as_of)
    return total
