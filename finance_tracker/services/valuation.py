"""Portfolio valuation at historical checkpoints.

Reconstruction is a pure function of three inputs: the owner's purchase
lots, a :class:`SnapshotIndex` of observed prices and an :class:`FxConverter`
over the stored rates. The database-facing helpers only load those inputs.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from finance_tracker.config import settings
from finance_tracker.errors import MissingSnapshot, UndefinedConversion
from finance_tracker.models import AssetFamily, PurchaseLot
from finance_tracker.services.fx import FxConverter, load_rate_table, normalize_code
from finance_tracker.services.lots import list_lots, require_owner
from finance_tracker.services.snapshots import SnapshotIndex, load_snapshot_index
from finance_tracker.services.units import CANONICAL_UNITS, parse_family, to_canonical
from finance_tracker.timeutil import as_utc, end_of_day, utc_now

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ValuationPoint:
    date: date
    value: Decimal

    def as_dict(self) -> dict[str, object]:
        return {"date": self.date.isoformat(), "value": float(self.value)}


@dataclass(frozen=True)
class _HeldLot:
    asset_code: str
    purchase_date: date
    quantity: Decimal


@dataclass
class PositionRow:
    asset_code: str
    asset_family: AssetFamily
    quantity: Decimal
    unit: str
    price: Decimal | None
    price_currency: str | None
    price_as_of: datetime | None
    current_value: Decimal | None
    invested: Decimal | None
    unrealized_pnl: Decimal | None


@dataclass
class PositionsSnapshot:
    currency: str
    as_of: datetime
    positions: list[PositionRow]
    total_value: Decimal
    total_invested: Decimal
    unpriced_assets: list[str] = field(default_factory=list)


class LotLike(Protocol):
    """What reconstruction reads from a purchase lot."""

    asset_family: AssetFamily | str
    asset_code: str
    quantity: Decimal
    quantity_unit: str
    purchase_date: date


def _lot_family(lot: LotLike) -> AssetFamily:
    return parse_family(lot.asset_family)


def _held_lots(lots: Iterable[LotLike]) -> list[_HeldLot]:
    """Normalise quantities once; ordered by purchase date."""
    held = [
        _HeldLot(
            asset_code=lot.asset_code.upper(),
            purchase_date=lot.purchase_date,
            quantity=to_canonical(lot.quantity, lot.quantity_unit, _lot_family(lot)),
        )
        for lot in lots
    ]
    held.sort(key=lambda lot: lot.purchase_date)
    return held


def weekly_checkpoints(start: date, end: date) -> list[date]:
    """One checkpoint every seven days from ``start``, closing on ``end``."""
    if start > end:
        return []
    days = [start + timedelta(days=7 * idx) for idx in range((end - start).days // 7 + 1)]
    if days[-1] != end:
        days.append(end)
    return days


def _value_at(
    day: date,
    held: list[_HeldLot],
    purchase_dates: list[date],
    snapshots: SnapshotIndex,
    converter: FxConverter,
    display_currency: str,
) -> ValuationPoint | None:
    qualifying = held[: bisect_right(purchase_dates, day)]
    if not qualifying:
        return None

    as_of = end_of_day(day)
    quantity_by_code: dict[str, Decimal] = defaultdict(lambda: _ZERO)
    for lot in qualifying:
        quantity_by_code[lot.asset_code] += lot.quantity

    native_totals: dict[str, Decimal] = defaultdict(lambda: _ZERO)
    for code, quantity in quantity_by_code.items():
        try:
            quote = snapshots.resolve(code, as_of)
        except MissingSnapshot as exc:
            logger.debug("%s contributes zero on %s: %s", code, day, exc)
            continue
        native_totals[quote.currency] += quantity * quote.price

    total = _ZERO
    valued = False
    for currency, amount in native_totals.items():
        try:
            total += converter.convert(amount, currency, display_currency, as_of)
        except UndefinedConversion as exc:
            logger.debug("%s amount contributes zero on %s: %s", currency, day, exc)
            continue
        valued = True

    if not valued:
        return None
    return ValuationPoint(date=day, value=total)


def reconstruct_history(
    lots: Iterable[LotLike],
    snapshots: SnapshotIndex,
    converter: FxConverter,
    display_currency: str,
    checkpoint_dates: Iterable[date],
    max_workers: int = 1,
) -> list[ValuationPoint]:
    """Value the lots at each checkpoint, in ascending date order.

    A lot bought after a checkpoint never counts towards it. An asset without
    a price observation at or before a checkpoint, or whose currency cannot be
    converted with the rates known then, contributes zero. Checkpoints where
    nothing could be valued, including those before the first purchase, are
    left out of the result.
    """
    display = normalize_code(display_currency)
    held = _held_lots(lots)
    purchase_dates = [lot.purchase_date for lot in held]
    days = sorted(set(checkpoint_dates))
    if not held or not days:
        return []

    def compute(day: date) -> ValuationPoint | None:
        return _value_at(day, held, purchase_dates, snapshots, converter, display)

    if max_workers > 1 and len(days) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(compute, days))
    else:
        results = [compute(day) for day in days]

    return [point for point in results if point is not None]


def reconstruct(
    db: Session,
    owner_id: int,
    display_currency: str,
    checkpoint_dates: Iterable[date],
    asset_family: AssetFamily | str | None = None,
    max_workers: int | None = None,
) -> list[ValuationPoint]:
    """Load an owner's lots, snapshots and rates and reconstruct their history."""
    display = normalize_code(display_currency)
    require_owner(db, owner_id)
    days = sorted(set(checkpoint_dates))
    lots = list_lots(db, owner_id, asset_family=asset_family)
    if not lots or not days:
        return []

    horizon = end_of_day(days[-1])
    snapshots = load_snapshot_index(db, {lot.asset_code for lot in lots}, as_of=horizon)
    converter = FxConverter(load_rate_table(db, as_of=horizon))
    points = reconstruct_history(
        lots,
        snapshots,
        converter,
        display,
        days,
        max_workers=max_workers if max_workers is not None else settings.reconstruct_workers,
    )
    logger.info(
        "Reconstructed %d/%d checkpoint(s) for owner %s in %s",
        len(points),
        len(days),
        owner_id,
        display,
    )
    return points


def reconstruct_default(
    db: Session,
    owner_id: int,
    display_currency: str,
    today: date | None = None,
    asset_family: AssetFamily | str | None = None,
) -> list[ValuationPoint]:
    """Weekly history from the owner's first purchase through today."""
    normalize_code(display_currency)
    lots = list_lots(db, owner_id, asset_family=asset_family)
    if not lots:
        return []
    first_purchase = min(lot.purchase_date for lot in lots)
    checkpoints = weekly_checkpoints(first_purchase, today or utc_now().date())
    return reconstruct(db, owner_id, display_currency, checkpoints, asset_family=asset_family)


def build_positions(
    db: Session,
    owner_id: int,
    display_currency: str,
    as_of: datetime | None = None,
) -> PositionsSnapshot:
    """Current value, invested amount and P&L per held asset code."""
    display = normalize_code(display_currency)
    require_owner(db, owner_id)
    when = as_utc(as_of) if as_of is not None else utc_now()
    lots = [lot for lot in list_lots(db, owner_id) if lot.purchase_date <= when.date()]

    lots_by_code: dict[str, list[PurchaseLot]] = defaultdict(list)
    for lot in lots:
        lots_by_code[lot.asset_code].append(lot)

    snapshots = load_snapshot_index(db, lots_by_code, as_of=when)
    converter = FxConverter(load_rate_table(db, as_of=when))

    rows: list[PositionRow] = []
    unpriced: list[str] = []
    total_value = _ZERO
    total_invested = _ZERO

    for code in sorted(lots_by_code):
        code_lots = lots_by_code[code]
        family = _lot_family(code_lots[0])
        quantity = sum(
            (to_canonical(lot.quantity, lot.quantity_unit, family) for lot in code_lots),
            _ZERO,
        )

        invested: Decimal | None = _ZERO
        for lot in code_lots:
            try:
                invested += converter.convert(
                    lot.total_price,
                    lot.price_currency,
                    display,
                    end_of_day(lot.purchase_date),
                )
            except UndefinedConversion as exc:
                logger.debug("Invested amount for %s unavailable: %s", code, exc)
                invested = None
                break

        quote = snapshots.latest_at_or_before(code, None, when)
        current_value: Decimal | None = None
        if quote is not None:
            try:
                current_value = converter.convert(
                    quantity * quote.price, quote.currency, display, when
                )
            except UndefinedConversion as exc:
                logger.debug("Current value for %s unavailable: %s", code, exc)
        if current_value is None:
            unpriced.append(code)
        else:
            total_value += current_value
        if invested is not None:
            total_invested += invested

        rows.append(
            PositionRow(
                asset_code=code,
                asset_family=family,
                quantity=quantity,
                unit=CANONICAL_UNITS[family],
                price=quote.price if quote else None,
                price_currency=quote.currency if quote else None,
                price_as_of=quote.observed_at if quote else None,
                current_value=current_value,
                invested=invested,
                unrealized_pnl=(
                    current_value - invested
                    if current_value is not None and invested is not None
                    else None
                ),
            )
        )

    return PositionsSnapshot(
        currency=display,
        as_of=when,
        positions=rows,
        total_value=total_value,
        total_invested=total_invested,
        unpriced_assets=unpriced,
    )
