from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from finance_tracker.db import get_db
from finance_tracker.models import AssetFamily
from finance_tracker.schemas import LotIn, LotOut, LotUpdate, PositionsOut
from finance_tracker.services.lots import delete_lot, list_lots, record_lot, update_lot
from finance_tracker.services.valuation import (
    build_positions,
    reconstruct,
    reconstruct_default,
)

router = APIRouter(prefix="/api", tags=["portfolio"])


@router.get("/owners/{owner_id}/lots", response_model=list[LotOut])
def owner_lots(
    owner_id: int,
    family: AssetFamily | None = None,
    db: Session = Depends(get_db),
):
    return list_lots(db, owner_id, asset_family=family)


@router.post("/owners/{owner_id}/lots", response_model=LotOut, status_code=201)
def create_lot(owner_id: int, payload: LotIn, db: Session = Depends(get_db)):
    lot = record_lot(db, owner_id, **payload.model_dump())
    db.commit()
    db.refresh(lot)
    return lot


@router.patch("/lots/{lot_id}", response_model=LotOut)
def edit_lot(lot_id: int, payload: LotUpdate, db: Session = Depends(get_db)):
    lot = update_lot(db, lot_id, **payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(lot)
    return lot


@router.delete("/lots/{lot_id}", status_code=204)
def remove_lot(lot_id: int, db: Session = Depends(get_db)):
    delete_lot(db, lot_id)
    db.commit()
    return Response(status_code=204)


@router.get("/owners/{owner_id}/history")
def owner_history(
    owner_id: int,
    currency: str = "EUR",
    checkpoints: list[date] | None = Query(default=None),
    family: AssetFamily | None = None,
    db: Session = Depends(get_db),
):
    """Portfolio value per checkpoint; weekly since the first purchase by default."""
    if checkpoints:
        points = reconstruct(db, owner_id, currency, checkpoints, asset_family=family)
    else:
        points = reconstruct_default(db, owner_id, currency, asset_family=family)
    return {"currency": currency.strip().upper(), "data": [point.as_dict() for point in points]}


@router.get("/owners/{owner_id}/positions", response_model=PositionsOut)
def owner_positions(owner_id: int, currency: str = "EUR", db: Session = Depends(get_db)):
    return build_positions(db, owner_id, currency)
