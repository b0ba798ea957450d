from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from finance_tracker.models import AssetFamily


class RefreshOut(BaseModel):
    inserted: list[str]
    skipped: list[str]


class ConversionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal
    from_code: str = Field(alias="from")
    to_code: str = Field(alias="to")
    as_of: datetime


class RateOut(BaseModel):
    rate: Decimal
    as_of: datetime


class LatestRatesOut(BaseModel):
    base: str
    rates: dict[str, RateOut]


class SnapshotRefreshIn(BaseModel):
    asset_codes: list[str] | None = None


class FxRefreshIn(BaseModel):
    quotes: list[str] | None = None


class SnapshotIn(BaseModel):
    asset_code: str
    price: Decimal
    currency: str
    observed_at: datetime | None = None


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    asset_code: str
    price: Decimal
    currency: str
    observed_at: datetime


class LotIn(BaseModel):
    asset_family: AssetFamily
    asset_code: str
    quantity: Decimal
    quantity_unit: str
    price_currency: str
    purchase_date: date
    unit_price: Decimal | None = None
    total_price: Decimal | None = None
    notes: str | None = None


class LotUpdate(BaseModel):
    quantity: Decimal | None = None
    quantity_unit: str | None = None
    unit_price: Decimal | None = None
    total_price: Decimal | None = None
    price_currency: str | None = None
    purchase_date: date | None = None
    notes: str | None = None


class LotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    asset_family: AssetFamily
    asset_code: str
    quantity: Decimal
    quantity_unit: str
    unit_price: Decimal
    total_price: Decimal
    price_currency: str
    purchase_date: date
    notes: str | None = None


class PositionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class PositionsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    as_of: datetime
    positions: list[PositionOut]
    total_value: Decimal
    total_invested: Decimal
    unpriced_assets: list[str]
