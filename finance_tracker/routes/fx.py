from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from finance_tracker.config import settings
from finance_tracker.db import get_db
from finance_tracker.schemas import ConversionOut, FxRefreshIn, LatestRatesOut, RateOut, RefreshOut
from finance_tracker.services.fx import convert, latest_rates, normalize_code, refresh_rates
from finance_tracker.timeutil import parse_as_of

router = APIRouter(prefix="/api/fx", tags=["fx"])


@router.get("/convert", response_model=ConversionOut)
def convert_amount(
    amount: Decimal,
    from_code: str = Query(alias="from"),
    to_code: str = Query(alias="to"),
    as_of: str | None = None,
    db: Session = Depends(get_db),
):
    """Convert an amount with the rates known at ``as_of`` (default now)."""
    when = parse_as_of(as_of)
    value = convert(db, amount, from_code, to_code, as_of=when)
    return ConversionOut(
        amount=value,
        from_code=normalize_code(from_code),
        to_code=normalize_code(to_code),
        as_of=when,
    )


@router.get("/latest", response_model=LatestRatesOut)
def latest(quotes: str = "", db: Session = Depends(get_db)):
    wanted = [quote.strip() for quote in quotes.split(",") if quote.strip()]
    rows = latest_rates(db, wanted or None)
    return LatestRatesOut(
        base=normalize_code(settings.pivot_currency),
        rates={
            quote: RateOut(rate=row.rate, as_of=row.observed_at)
            for quote, row in sorted(rows.items())
        },
    )


@router.post("/refresh", response_model=RefreshOut)
def refresh(
    request: Request,
    payload: FxRefreshIn | None = Body(default=None),
    db: Session = Depends(get_db),
):
    """Append the rate provider's current pivot rates."""
    result = refresh_rates(
        db,
        request.app.state.rate_provider,
        quotes=payload.quotes if payload else None,
    )
    db.commit()
    return result.as_dict()
