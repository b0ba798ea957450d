"""Append-only store of observed asset prices."""

from __future__ import annotations

import logging
from bisect import bisect_right, insort
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from itertools import count
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from finance_tracker.config import settings
from finance_tracker.errors import InvalidInput, InvalidQuantity, MissingSnapshot, ProviderUnavailable
from finance_tracker.models import AssetFamily, PriceSnapshot, PurchaseLot
from finance_tracker.services.fx import normalize_code
from finance_tracker.services.market_data import (
    MarketDataRouter,
    MarketRoute,
    RefreshResult,
    finite_price,
)
from finance_tracker.services.units import to_decimal
from finance_tracker.timeutil import as_utc, parse_as_of, utc_now

logger = logging.getLogger(__name__)


def normalize_asset_code(value: str | None) -> str:
    code = (value or "").strip().upper()
    if not code or len(code) > 32:
        raise InvalidInput(f"Invalid asset code: {value!r}")
    return code


@dataclass(frozen=True)
class SnapshotQuote:
    asset_code: str
    price: Decimal
    currency: str
    observed_at: datetime


class SnapshotIndex:
    """In-memory price history supporting "latest at or before" lookups."""

    def __init__(self, snapshots: Iterable[PriceSnapshot | SnapshotQuote] = ()) -> None:
        self._keys: dict[str, list[tuple[datetime, int]]] = {}
        self._quotes: dict[tuple[datetime, int], SnapshotQuote] = {}
        self._seq = count()
        for row in snapshots:
            self.add(row.asset_code, row.price, row.currency, row.observed_at)

    def add(
        self,
        asset_code: str,
        price: Decimal | float | str,
        currency: str,
        observed_at: datetime,
    ) -> None:
        quote = SnapshotQuote(
            asset_code=asset_code.upper(),
            price=to_decimal(price, "price"),
            currency=currency.upper(),
            observed_at=as_utc(observed_at),
        )
        key = (quote.observed_at, next(self._seq))
        insort(self._keys.setdefault(quote.asset_code, []), key)
        self._quotes[key] = quote

    def asset_codes(self) -> set[str]:
        return set(self._keys)

    def latest_at_or_before(
        self,
        asset_code: str,
        currency: str | None,
        as_of: datetime,
    ) -> SnapshotQuote | None:
        keys = self._keys.get(asset_code.upper())
        if not keys:
            return None
        idx = bisect_right(keys, (as_utc(as_of), float("inf")))
        wanted = currency.upper() if currency else None
        for key in reversed(keys[:idx]):
            quote = self._quotes[key]
            if wanted is None or quote.currency == wanted:
                return quote
        return None

    def resolve(self, asset_code: str, as_of: datetime, currency: str | None = None) -> SnapshotQuote:
        quote = self.latest_at_or_before(asset_code, currency, as_of)
        if quote is None:
            raise MissingSnapshot(asset_code.upper(), as_utc(as_of))
        return quote


def ingest(
    db: Session,
    asset_code: str,
    price: Decimal | float | str,
    currency: str,
    observed_at: datetime | None = None,
) -> PriceSnapshot:
    """Append one price observation; existing rows are never touched."""
    value = to_decimal(price, "price")
    if value <= 0:
        raise InvalidQuantity("price must be greater than zero")
    row = PriceSnapshot(
        asset_code=normalize_asset_code(asset_code),
        price=value,
        currency=normalize_code(currency),
        observed_at=as_utc(observed_at) if observed_at else utc_now(),
    )
    db.add(row)
    db.flush()
    return row


def latest_at_or_before(
    db: Session,
    asset_code: str,
    currency: str | None,
    as_of: str | datetime | None = None,
) -> PriceSnapshot | None:
    """Return the snapshot with the greatest observation time not after ``as_of``."""
    query = select(PriceSnapshot).where(
        PriceSnapshot.asset_code == normalize_asset_code(asset_code),
        PriceSnapshot.observed_at <= parse_as_of(as_of),
    )
    if currency:
        query = query.where(PriceSnapshot.currency == normalize_code(currency))
    query = query.order_by(PriceSnapshot.observed_at.desc(), PriceSnapshot.id.desc()).limit(1)
    return db.scalar(query)


def price_history(
    db: Session,
    asset_code: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[PriceSnapshot]:
    """List a code's snapshots in observation order within an optional window."""
    query = select(PriceSnapshot).where(
        PriceSnapshot.asset_code == normalize_asset_code(asset_code)
    )
    if start is not None:
        query = query.where(PriceSnapshot.observed_at >= as_utc(start))
    if end is not None:
        query = query.where(PriceSnapshot.observed_at <= as_utc(end))
    query = query.order_by(PriceSnapshot.observed_at.asc(), PriceSnapshot.id.asc())
    return list(db.scalars(query))


def load_snapshot_index(
    db: Session,
    asset_codes: Iterable[str],
    as_of: datetime | None = None,
) -> SnapshotIndex:
    codes = sorted({code.upper() for code in asset_codes})
    if not codes:
        return SnapshotIndex()
    query = select(PriceSnapshot).where(PriceSnapshot.asset_code.in_(codes))
    if as_of is not None:
        query = query.where(PriceSnapshot.observed_at <= as_utc(as_of))
    query = query.order_by(PriceSnapshot.observed_at.asc(), PriceSnapshot.id.asc())
    return SnapshotIndex(db.scalars(query))


def held_assets(db: Session) -> dict[str, AssetFamily]:
    """Map every asset code held by any user to its asset family.

    ``record_lot`` keeps each code in a single family, so the mapping is unique.
    """
    rows = db.execute(
        select(PurchaseLot.asset_code, PurchaseLot.asset_family).distinct()
    ).all()
    return {code.upper(): family for code, family in rows}


def _fetch_route_prices(
    route: MarketRoute,
    ids_by_code: dict[str, str],
    retries: int,
) -> tuple[dict[str, float], bool]:
    """Ask one provider for prices; codes absent from the answer are retried alone."""
    provider = route.provider
    try:
        answer = provider.current_price(sorted(set(ids_by_code.values())), route.currency)
    except ProviderUnavailable as exc:
        logger.warning("Price provider unavailable for %s: %s", sorted(ids_by_code), exc)
        return {}, False

    prices: dict[str, float] = {}
    missing: list[str] = []
    for code, provider_id in ids_by_code.items():
        if provider_id not in answer:
            missing.append(code)
            continue
        price = finite_price(answer[provider_id])
        if price is not None:
            prices[code] = price

    for _ in range(max(retries, 0)):
        if not missing:
            break
        still_missing: list[str] = []
        for code in missing:
            provider_id = ids_by_code[code]
            try:
                single = provider.current_price([provider_id], route.currency)
            except ProviderUnavailable as exc:
                logger.warning("Retry for %s failed: %s", code, exc)
                still_missing.append(code)
                continue
            price = finite_price(single.get(provider_id))
            if price is None:
                still_missing.append(code)
            else:
                prices[code] = price
        missing = still_missing

    return prices, True


def refresh_snapshots(
    db: Session,
    market_data: MarketDataRouter,
    asset_codes: Iterable[str] | None = None,
    observed_at: datetime | None = None,
    retries: int | None = None,
) -> RefreshResult:
    """Fetch current prices for held assets and append one snapshot per valid price.

    Partial success is the normal outcome: codes nobody holds, codes without
    a provider mapping and codes whose price is missing or not finite are
    reported as skipped. A provider outage skips its codes instead of raising.
    """
    held = held_assets(db)
    requested = (
        sorted({normalize_asset_code(code) for code in asset_codes})
        if asset_codes is not None
        else sorted(held)
    )
    retry_count = settings.refresh_retries if retries is None else retries
    when = as_utc(observed_at) if observed_at else utc_now()
    result = RefreshResult()

    codes_by_family: dict[AssetFamily, list[str]] = defaultdict(list)
    for code in requested:
        family = held.get(code)
        if family is None:
            result.skipped.append(code)
        else:
            codes_by_family[family].append(code)

    for family, codes in codes_by_family.items():
        route = market_data.route_for(family)
        if route is None:
            logger.info("No price provider for %s assets: %s", family.value, codes)
            result.skipped.extend(codes)
            continue

        ids_by_code: dict[str, str] = {}
        for code in codes:
            provider_id = route.provider.provider_id(code)
            if provider_id is None:
                result.skipped.append(code)
            else:
                ids_by_code[code] = provider_id
        if not ids_by_code:
            continue

        prices, available = _fetch_route_prices(route, ids_by_code, retry_count)
        if not available:
            result.skipped.extend(ids_by_code)
            continue

        for code in ids_by_code:
            price = prices.get(code)
            if price is None:
                result.skipped.append(code)
                continue
            ingest(db, code, Decimal(str(price)), route.currency, observed_at=when)
            result.inserted.append(code)

    result.inserted.sort()
    result.skipped.sort()
    if result.skipped:
        logger.warning("Price refresh skipped %d asset(s): %s", len(result.skipped), result.skipped)
    logger.info("Price refresh inserted %d snapshot(s)", len(result.inserted))
    return result
