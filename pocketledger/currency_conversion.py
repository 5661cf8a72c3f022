from __future__ import annotations

import calendar
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Mapping, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

ONE = Decimal("1")

# Units of each currency per 1 EUR.
DEFAULT_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1"),
    "USD": Decimal("1.09"),
    "GBP": Decimal("0.86"),
    "JPY": Decimal("161.20"),
    "CAD": Decimal("1.47"),
    "AUD": Decimal("1.65"),
    "CHF": Decimal("0.95"),
    "CNY": Decimal("7.85"),
    "INR": Decimal("90.50"),
    "BDT": Decimal("119.60"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch rates."""


class RateProvider:
    """Rates are units of ``currency`` per 1 unit of the provider's base."""

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        raise NotImplementedError

    def rate(self, source: str, target: str, as_of: date | str | None = None) -> Decimal:
        """Units of ``target`` bought by 1 unit of ``source`` on ``as_of``."""
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return ONE
        source_rate = self.get_rate(normalized_source, date=as_of)
        target_rate = self.get_rate(normalized_target, date=as_of)
        return target_rate / source_rate


@dataclass(frozen=True)
class StaticRateProvider(RateProvider):
    """Deterministic, in-memory FX rates."""

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", _normalize_rates(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        code = normalize_currency(currency)
        if code not in self.rates:
            raise ValueError(f"Unsupported currency: {code}")
        return self.rates[code]


@dataclass(frozen=True)
class RateTable:
    """Rates published for one day, relative to ``base``."""

    base: str
    day: str
    rates: Mapping[str, Decimal]
    stale_after: float | None = None

    def is_fresh(self, now: float) -> bool:
        return self.stale_after is None or now < self.stale_after


@dataclass
class FrankfurterRateProvider(RateProvider):
    """Daily ECB reference rates from the public Frankfurter API.

    Historical days never change, so the ``max_tables`` most recently used
    days stay cached. The ``latest`` table is refetched once ``latest_ttl``
    seconds have passed.
    """

    base_currency: str = "EUR"
    api_root: str = "https://api.frankfurter.app"
    latest_ttl: int = 12 * 60 * 60
    request_timeout: float = 8
    max_tables: int = 64
    tables: OrderedDict[str, RateTable] = field(default_factory=OrderedDict)

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        code = normalize_currency(currency)
        table = self.table_for(date)
        if code == table.base:
            return ONE
        if code not in table.rates:
            raise ValueError(f"Unsupported currency: {code}")
        return table.rates[code]

    def table_for(self, as_of: date | str | None) -> RateTable:
        day = _coerce_rate_date(as_of)
        key = day.isoformat() if day else "latest"
        table = self.tables.get(key)
        if table is not None and table.is_fresh(time.monotonic()):
            self.tables.move_to_end(key)
            return table
        table = self._download(key)
        self.tables[key] = table
        self.tables.move_to_end(key)
        while len(self.tables) > self.max_tables:
            self.tables.popitem(last=False)
        return table

    def _download(self, key: str) -> RateTable:
        base = normalize_currency(self.base_currency)
        try:
            with urlopen(f"{self.api_root}/{key}?from={base}", timeout=self.request_timeout) as response:
                body = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable(f"Frankfurter API unavailable for {key}") from exc

        published = body.get("rates") if isinstance(body, dict) else None
        if not isinstance(published, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        rates = _normalize_rates(published)
        rates[base] = ONE
        stale_after = time.monotonic() + self.latest_ttl if key == "latest" else None
        logger.info("Fetched %d %s rates for %s", len(rates), base, key)
        return RateTable(base=base, day=key, rates=rates, stale_after=stale_after)


@dataclass(frozen=True)
class CompositeRateProvider(RateProvider):
    primary: RateProvider
    fallback: RateProvider

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        try:
            return self.primary.get_rate(currency, date=date)
        except RateProviderUnavailable:
            logger.warning("Primary rate provider unavailable, using fallback for %s", currency)
            return self.fallback.get_rate(currency, date=date)

    def rate(self, source: str, target: str, as_of: date | str | None = None) -> Decimal:
        # Both legs must come from the same provider.
        try:
            return self.primary.rate(source, target, as_of=as_of)
        except RateProviderUnavailable:
            logger.warning("Primary rate provider unavailable, using fallback for %s/%s", source, target)
            return self.fallback.rate(source, target, as_of=as_of)


@dataclass(frozen=True)
class RateSnapshot:
    """One stored version of a month's rates, relative to ``base_currency``."""

    month: date
    version: int
    base_currency: str
    rates: Mapping[str, Decimal]

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_currency", normalize_currency(self.base_currency))
        rates = _normalize_rates(self.rates)
        rates[self.base_currency] = ONE
        object.__setattr__(self, "rates", rates)


@dataclass(frozen=True)
class SnapshotRateProvider(RateProvider):
    """Uses the newest snapshot whose month is at or before the requested date."""

    snapshots: Sequence[RateSnapshot]
    fallback: RateProvider | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "snapshots", latest_versions(self.snapshots))

    def snapshot_for(self, as_of: date | str | None) -> RateSnapshot:
        cutoff = month_end(_coerce_rate_date(as_of) or date.today())
        candidates = [snapshot for snapshot in self.snapshots if snapshot.month <= cutoff]
        if not candidates:
            raise RateProviderUnavailable(f"No rate snapshot on or before {cutoff.isoformat()}")
        return max(candidates, key=lambda snapshot: snapshot.month)

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        snapshot = self.snapshot_for(date)
        try:
            return snapshot.rates[normalized]
        except KeyError as exc:
            raise ValueError(
                f"Unsupported currency: {normalized} in snapshot {snapshot.month.isoformat()}"
            ) from exc

    def rate(self, source: str, target: str, as_of: date | str | None = None) -> Decimal:
        try:
            return super().rate(source, target, as_of=as_of)
        except (RateProviderUnavailable, ValueError):
            if self.fallback is None:
                raise
            logger.warning("No snapshot rate for %s/%s, using fallback provider", source, target)
            return self.fallback.rate(source, target, as_of=as_of)


def latest_versions(snapshots: Iterable[RateSnapshot]) -> list[RateSnapshot]:
    by_month: dict[date, RateSnapshot] = {}
    for snapshot in snapshots:
        current = by_month.get(snapshot.month)
        if current is None or snapshot.version > current.version:
            by_month[snapshot.month] = snapshot
    return sorted(by_month.values(), key=lambda snapshot: snapshot.month)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> Decimal:
    """Convert a monetary amount using the provider's cross rate."""
    value = _coerce_amount(amount)
    if normalize_currency(source_currency) == normalize_currency(target_currency):
        return value
    provider = rate_provider or StaticRateProvider()
    return value * provider.rate(source_currency, target_currency, as_of=date)


def month_end(value: date) -> date:
    last_day = calendar.monthrange(value.year, value.month)[1]
    return date(value.year, value.month, last_day)


def parse_month(value: str) -> date:
    """Last day of a ``YYYY-MM`` month."""
    try:
        parsed = datetime.strptime(value.strip(), "%Y-%m").date()
    except ValueError as exc:
        raise ValueError("Month must be in YYYY-MM format.") from exc
    return month_end(parsed)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _normalize_rates(rates: Mapping[str, Decimal | int | float | str]) -> dict[str, Decimal]:
    normalized = {}
    for code, value in rates.items():
        rate = _coerce_amount(value)
        if rate <= 0:
            raise ValueError(f"Rate for {code} must be greater than zero.")
        normalized[normalize_currency(code)] = rate
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))


def _coerce_rate_date(value: date | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
