from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from finance_tracker.db import get_db
from finance_tracker.schemas import RefreshOut, SnapshotIn, SnapshotOut, SnapshotRefreshIn
from finance_tracker.services.snapshots import ingest, price_history, refresh_snapshots

router = APIRouter(prefix="/api/snapshots", tags=["snapshots"])


@router.post("", response_model=SnapshotOut, status_code=201)
def create_snapshot(payload: SnapshotIn, db: Session = Depends(get_db)):
    """Record one manually observed price."""
    row = ingest(
        db,
        payload.asset_code,
        payload.price,
        payload.currency,
        observed_at=payload.observed_at,
    )
    db.commit()
    return row


@router.post("/refresh", response_model=RefreshOut)
def refresh(
    request: Request,
    payload: SnapshotRefreshIn | None = Body(default=None),
    db: Session = Depends(get_db),
):
    """Fetch current prices for held assets; partial success is normal."""
    result = refresh_snapshots(
        db,
        request.app.state.market_data,
        asset_codes=payload.asset_codes if payload else None,
    )
    db.commit()
    return result.as_dict()


@router.get("/{asset_code}", response_model=list[SnapshotOut])
def history(
    asset_code: str,
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
):
    return price_history(db, asset_code, start=start, end=end)
