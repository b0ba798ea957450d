from __future__ import annotations

from decimal import Decimal, InvalidOperation

from finance_tracker.errors import InvalidInput, InvalidQuantity, InvalidUnit
from finance_tracker.models import AssetFamily

TROY_OUNCE_GRAMS = Decimal("31.1034768")

_ONE = Decimal("1")

# Factor from each accepted unit to the family's canonical unit.
_UNIT_FACTORS: dict[AssetFamily, dict[str, Decimal]] = {
    AssetFamily.METAL: {
        "g": _ONE,
        "gram": _ONE,
        "grams": _ONE,
        "oz": TROY_OUNCE_GRAMS,
        "ozt": TROY_OUNCE_GRAMS,
        "troy_oz": TROY_OUNCE_GRAMS,
    },
    AssetFamily.CRYPTO: {"unit": _ONE},
    AssetFamily.EQUITY: {"unit": _ONE, "share": _ONE, "shares": _ONE},
    AssetFamily.NOTE: {"unit": _ONE},
}

CANONICAL_UNITS: dict[AssetFamily, str] = {
    AssetFamily.METAL: "g",
    AssetFamily.CRYPTO: "unit",
    AssetFamily.EQUITY: "unit",
    AssetFamily.NOTE: "unit",
}


def to_decimal(value: Decimal | int | float | str, field_name: str = "quantity") -> Decimal:
    """Coerce a number to a finite Decimal."""
    if isinstance(value, bool):
        raise InvalidQuantity(f"{field_name} must be a number")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidQuantity(f"{field_name} must be a number") from exc
    if not number.is_finite():
        raise InvalidQuantity(f"{field_name} must be a finite number")
    return number


def parse_family(value: AssetFamily | str) -> AssetFamily:
    if isinstance(value, AssetFamily):
        return value
    try:
        return AssetFamily(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidInput(f"Unknown asset family: {value!r}") from exc


def normalize_unit(unit: str | None, asset_family: AssetFamily | str) -> str:
    """Return the lower-cased unit if the family accepts it."""
    family = parse_family(asset_family)
    key = (unit or "").strip().lower()
    if key not in _UNIT_FACTORS[family]:
        raise InvalidUnit(f"Unit {unit!r} is not supported for {family.value} assets")
    return key


def to_canonical(
    quantity: Decimal | int | float | str,
    unit: str | None,
    asset_family: AssetFamily | str,
) -> Decimal:
    """Convert a quantity to the canonical unit of its asset family."""
    family = parse_family(asset_family)
    key = normalize_unit(unit, family)
    amount = to_decimal(quantity)
    if amount < 0:
        raise InvalidQuantity("quantity cannot be negative")
    return amount * _UNIT_FACTORS[family][key]
