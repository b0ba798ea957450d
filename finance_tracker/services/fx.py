"""Currency conversion through a single pivot currency.

Every stored rate reads "1 pivot = rate x quote". Converting between two
codes therefore takes one of four routes: identity, out of the pivot, into
the pivot, or a bridge through the pivot. Rates are never interpolated; the
latest observation at or before the query time wins.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right, insort
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from itertools import count
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from finance_tracker.config import settings
from finance_tracker.errors import (
    InvalidCurrency,
    InvalidQuantity,
    ProviderUnavailable,
    UndefinedConversion,
)
from finance_tracker.models import AssetFamily, FxRate, PurchaseLot
from finance_tracker.services.market_data import RateProvider, RefreshResult
from finance_tracker.services.units import to_decimal
from finance_tracker.timeutil import as_utc, parse_as_of, utc_now

logger = logging.getLogger(__name__)


class ConversionRoute(str, Enum):
    IDENTITY = "identity"
    FROM_PIVOT = "from_pivot"
    TO_PIVOT = "to_pivot"
    BRIDGE = "bridge"


def normalize_code(value: str | None) -> str:
    """Normalise a currency or commodity code to three upper-case letters."""
    normalized = (value or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise InvalidCurrency(f"Invalid currency code: {value!r}")
    return normalized


def conversion_route(from_code: str, to_code: str, pivot: str) -> ConversionRoute:
    if from_code == to_code:
        return ConversionRoute.IDENTITY
    if from_code == pivot:
        return ConversionRoute.FROM_PIVOT
    if to_code == pivot:
        return ConversionRoute.TO_PIVOT
    return ConversionRoute.BRIDGE


@dataclass(frozen=True)
class RateObservation:
    quote: str
    rate: Decimal
    observed_at: datetime


class RateTable:
    """In-memory "pivot -> quote" rate history indexed by quote."""

    def __init__(self, rates: Iterable[FxRate | RateObservation] = ()) -> None:
        self._keys: dict[str, list[tuple[datetime, int]]] = {}
        self._values: dict[tuple[str, datetime, int], Decimal] = {}
        self._seq = count()
        for row in rates:
            self.add(row.quote, row.rate, row.observed_at)

    def add(self, quote: str, rate: Decimal | float | str, observed_at: datetime) -> None:
        key = (as_utc(observed_at), next(self._seq))
        insort(self._keys.setdefault(quote.upper(), []), key)
        self._values[(quote.upper(), *key)] = to_decimal(rate, "rate")

    def quotes(self) -> set[str]:
        return set(self._keys)

    def latest_at_or_before(self, quote: str, as_of: datetime) -> Decimal | None:
        keys = self._keys.get(quote.upper())
        if not keys:
            return None
        # Keys sort by (time, seq); a sentinel past every seq keeps ties inclusive.
        idx = bisect_right(keys, (as_utc(as_of), math.inf))
        if idx == 0:
            return None
        observed_at, seq = keys[idx - 1]
        return self._values[(quote.upper(), observed_at, seq)]


class FxConverter:
    """Pure conversion over a :class:`RateTable`."""

    def __init__(self, rates: RateTable, pivot: str | None = None) -> None:
        self.rates = rates
        self.pivot = normalize_code(pivot or settings.pivot_currency)

    def rate(self, quote: str, as_of: datetime, from_code: str, to_code: str) -> Decimal:
        value = self.rates.latest_at_or_before(quote, as_of)
        if value is None or value <= 0:
            raise UndefinedConversion(from_code, to_code, f"{self.pivot}->{quote}", as_of)
        return value

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_code: str,
        to_code: str,
        as_of: datetime | None = None,
    ) -> Decimal:
        source = normalize_code(from_code)
        target = normalize_code(to_code)
        value = to_decimal(amount, "amount")
        when = as_utc(as_of) if as_of is not None else utc_now()

        route = conversion_route(source, target, self.pivot)
        if route is ConversionRoute.IDENTITY:
            return value
        if route is ConversionRoute.FROM_PIVOT:
            return value * self.rate(target, when, source, target)
        if route is ConversionRoute.TO_PIVOT:
            return value / self.rate(source, when, source, target)
        from_rate = self.rate(source, when, source, target)
        to_rate = self.rate(target, when, source, target)
        return value / from_rate * to_rate


def load_rate_table(
    db: Session,
    quotes: Iterable[str] | None = None,
    as_of: datetime | None = None,
    pivot: str | None = None,
) -> RateTable:
    """Load the pivot's rate history, optionally limited by quote and time."""
    base = normalize_code(pivot or settings.pivot_currency)
    query = select(FxRate).where(FxRate.base == base)
    if quotes is not None:
        wanted = sorted({quote.upper() for quote in quotes})
        if not wanted:
            return RateTable()
        query = query.where(FxRate.quote.in_(wanted))
    if as_of is not None:
        query = query.where(FxRate.observed_at <= as_utc(as_of))
    query = query.order_by(FxRate.observed_at.asc(), FxRate.id.asc())
    return RateTable(db.scalars(query))


def convert(
    db: Session,
    amount: Decimal | int | float | str,
    from_code: str,
    to_code: str,
    as_of: str | datetime | None = None,
) -> Decimal:
    """Convert an amount using the stored rates at or before ``as_of`` (default now)."""
    source = normalize_code(from_code)
    target = normalize_code(to_code)
    when = parse_as_of(as_of)
    table = load_rate_table(db, quotes={source, target}, as_of=when)
    return FxConverter(table).convert(amount, source, target, when)


def record_rate(
    db: Session,
    quote: str,
    rate: Decimal | float | str,
    observed_at: datetime | None = None,
) -> FxRate:
    """Append one "pivot -> quote" observation."""
    value = to_decimal(rate, "rate")
    if value <= 0:
        raise InvalidQuantity("rate must be greater than zero")
    row = FxRate(
        base=normalize_code(settings.pivot_currency),
        quote=normalize_code(quote),
        rate=value,
        observed_at=as_utc(observed_at) if observed_at else utc_now(),
    )
    db.add(row)
    db.flush()
    return row


def latest_rates(db: Session, quotes: Iterable[str] | None = None) -> dict[str, FxRate]:
    """Return the most recent rate row per quote."""
    base = normalize_code(settings.pivot_currency)
    query = select(FxRate).where(FxRate.base == base)
    if quotes is not None:
        query = query.where(FxRate.quote.in_([normalize_code(quote) for quote in quotes]))
    query = query.order_by(FxRate.observed_at.desc(), FxRate.id.desc())

    out: dict[str, FxRate] = {}
    for row in db.scalars(query):
        out.setdefault(row.quote, row)
    return out


def default_quote_codes(db: Session) -> list[str]:
    """Configured FX quotes plus every metal code currently held."""
    metal_codes = db.scalars(
        select(PurchaseLot.asset_code)
        .where(PurchaseLot.asset_family == AssetFamily.METAL)
        .distinct()
    )
    codes = set(settings.fx_quote_codes) | {code.upper() for code in metal_codes}
    codes.discard(normalize_code(settings.pivot_currency))
    return sorted(codes)


def refresh_rates(
    db: Session,
    rate_provider: RateProvider,
    quotes: Iterable[str] | None = None,
    observed_at: datetime | None = None,
) -> RefreshResult:
    """Append the provider's current pivot rates; never deletes older rows."""
    pivot = normalize_code(settings.pivot_currency)
    wanted = (
        sorted({normalize_code(quote) for quote in quotes})
        if quotes is not None
        else default_quote_codes(db)
    )
    result = RefreshResult()
    if not wanted:
        return result

    try:
        rates = rate_provider.latest_rates(pivot)
    except ProviderUnavailable as exc:
        logger.warning("FX provider unavailable, skipping %d quote(s): %s", len(wanted), exc)
        result.skipped.extend(wanted)
        return result

    when = as_utc(observed_at) if observed_at else utc_now()
    for quote in wanted:
        raw = rates.get(quote)
        try:
            value = to_decimal(raw, "rate") if raw is not None else None
        except InvalidQuantity:
            value = None
        if value is None or value <= 0:
            result.skipped.append(quote)
            continue
        record_rate(db, quote, value, observed_at=when)
        result.inserted.append(quote)

    logger.info(
        "FX refresh for %s: %d inserted, %d skipped",
        pivot,
        len(result.inserted),
        len(result.skipped),
    )
    return result
