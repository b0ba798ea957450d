from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from finance_tracker.errors import (
    InvalidInput,
    InvalidLot,
    InvalidQuantity,
    LotNotFound,
    UnknownOwner,
)
from finance_tracker.models import AssetFamily, PurchaseLot, User
from finance_tracker.services.fx import normalize_code
from finance_tracker.services.snapshots import normalize_asset_code
from finance_tracker.services.units import normalize_unit, parse_family, to_decimal

EDITABLE_FIELDS = frozenset(
    {
        "quantity",
        "quantity_unit",
        "unit_price",
        "total_price",
        "price_currency",
        "purchase_date",
        "notes",
    }
)

# Absolute floor for the quantity x unit price check, in price currency units.
_TOTAL_TOLERANCE = Decimal("0.01")


def require_owner(db: Session, owner_id: int) -> User:
    owner = db.get(User, owner_id)
    if owner is None:
        raise UnknownOwner(f"Unknown owner id: {owner_id}")
    return owner


def create_owner(db: Session, username: str) -> User:
    name = username.strip()
    if not name:
        raise InvalidInput("username is required")
    existing = db.scalar(select(User).where(User.username == name))
    if existing:
        raise InvalidInput(f"User '{name}' already exists")
    user = User(username=name)
    db.add(user)
    db.flush()
    return user


def _parse_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise InvalidLot(f"Invalid purchase date: {value!r}") from exc


def _resolve_prices(
    quantity: Decimal,
    unit_price: Decimal | None,
    total_price: Decimal | None,
) -> tuple[Decimal, Decimal]:
    """Derive whichever of unit/total price is missing and check they agree."""
    if unit_price is None and total_price is None:
        raise InvalidLot("Provide a unit price, a total price, or both")
    if unit_price is not None and unit_price < 0:
        raise InvalidQuantity("unit price cannot be negative")
    if total_price is not None and total_price < 0:
        raise InvalidQuantity("total price cannot be negative")

    if unit_price is None:
        return total_price / quantity, total_price
    if total_price is None:
        return unit_price, quantity * unit_price

    expected = quantity * unit_price
    tolerance = max(_TOTAL_TOLERANCE, abs(expected) * Decimal("1e-6"))
    if abs(total_price - expected) > tolerance:
        raise InvalidLot(
            f"total price {total_price} does not match quantity x unit price ({expected})"
        )
    return unit_price, total_price


def _validated_fields(
    family: AssetFamily,
    quantity: Any,
    quantity_unit: str | None,
    unit_price: Any,
    total_price: Any,
    price_currency: str,
    purchase_date: date | str,
) -> dict[str, Any]:
    amount = to_decimal(quantity, "quantity")
    if amount <= 0:
        raise InvalidQuantity("quantity must be greater than zero")
    unit = normalize_unit(quantity_unit, family)
    unit_value, total_value = _resolve_prices(
        amount,
        to_decimal(unit_price, "unit price") if unit_price is not None else None,
        to_decimal(total_price, "total price") if total_price is not None else None,
    )
    return {
        "quantity": amount,
        "quantity_unit": unit,
        "unit_price": unit_value,
        "total_price": total_value,
        "price_currency": normalize_code(price_currency),
        "purchase_date": _parse_date(purchase_date),
    }


def record_lot(
    db: Session,
    owner_id: int,
    asset_family: AssetFamily | str,
    asset_code: str,
    quantity: Any,
    quantity_unit: str | None,
    price_currency: str,
    purchase_date: date | str,
    unit_price: Any = None,
    total_price: Any = None,
    notes: str | None = None,
) -> PurchaseLot:
    """Validate and store one purchase lot."""
    require_owner(db, owner_id)
    family = parse_family(asset_family)
    fields = _validated_fields(
        family,
        quantity,
        quantity_unit,
        unit_price,
        total_price,
        price_currency,
        purchase_date,
    )
    code = normalize_asset_code(asset_code)
    # A code is priced through one provider, so it may only belong to one family.
    held_as = db.scalar(
        select(PurchaseLot.asset_family)
        .where(PurchaseLot.asset_code == code, PurchaseLot.asset_family != family)
        .limit(1)
    )
    if held_as is not None:
        raise InvalidLot(f"{code} is already held as a {held_as.value} asset")
    lot = PurchaseLot(
        owner_id=owner_id,
        asset_family=family,
        asset_code=code,
        notes=(notes or "").strip() or None,
        **fields,
    )
    db.add(lot)
    db.flush()
    return lot


def update_lot(db: Session, lot_id: int, **changes: Any) -> PurchaseLot:
    """Replace the editable fields of a lot, re-validating the whole row."""
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise InvalidLot(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    lot = db.get(PurchaseLot, lot_id)
    if lot is None:
        raise LotNotFound(f"Unknown lot id: {lot_id}")

    merged = {
        "quantity": lot.quantity,
        "quantity_unit": lot.quantity_unit,
        "unit_price": lot.unit_price,
        "total_price": lot.total_price,
        "price_currency": lot.price_currency,
        "purchase_date": lot.purchase_date,
    }
    merged.update({key: value for key, value in changes.items() if key != "notes"})
    # A changed quantity or unit price re-derives the total unless it was given too.
    if ("quantity" in changes or "unit_price" in changes) and "total_price" not in changes:
        merged["total_price"] = None
    elif "total_price" in changes and "unit_price" not in changes:
        merged["unit_price"] = None

    fields = _validated_fields(lot.asset_family, **merged)
    for key, value in fields.items():
        setattr(lot, key, value)
    if "notes" in changes:
        lot.notes = (changes["notes"] or "").strip() or None
    db.flush()
    return lot


def delete_lot(db: Session, lot_id: int) -> None:
    """Permanently delete one lot."""
    lot = db.get(PurchaseLot, lot_id)
    if lot is None:
        raise LotNotFound(f"Unknown lot id: {lot_id}")
    db.delete(lot)
    db.flush()


def list_lots(
    db: Session,
    owner_id: int,
    asset_family: AssetFamily | str | None = None,
) -> list[PurchaseLot]:
    require_owner(db, owner_id)
    query = select(PurchaseLot).where(PurchaseLot.owner_id == owner_id)
    if asset_family is not None:
        query = query.where(PurchaseLot.asset_family == parse_family(asset_family))
    query = query.order_by(PurchaseLot.purchase_date.asc(), PurchaseLot.id.asc())
    return list(db.scalars(query))
