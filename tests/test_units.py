from __future__ import annotations

from decimal import Decimal

import pytest

from finance_tracker.errors import InvalidInput, InvalidQuantity, InvalidUnit
from finance_tracker.models import AssetFamily
from finance_tracker.services.units import TROY_OUNCE_GRAMS, to_canonical


def test_grams_are_canonical_for_metals() -> None:
    assert to_canonical(Decimal("100"), "g", AssetFamily.METAL) == Decimal("100")


def test_troy_ounces_convert_to_grams() -> None:
    assert to_canonical(Decimal("2"), "oz", AssetFamily.METAL) == Decimal("62.2069536")
    assert to_canonical("1", "OZ", "metal") == TROY_OUNCE_GRAMS


@pytest.mark.parametrize(
    ("family", "unit"),
    [
        (AssetFamily.CRYPTO, "unit"),
        (AssetFamily.EQUITY, "shares"),
        (AssetFamily.NOTE, "unit"),
    ],
)
def test_native_units_are_unchanged(family: AssetFamily, unit: str) -> None:
    assert to_canonical(Decimal("0.125"), unit, family) == Decimal("0.125")


def test_unknown_unit_is_rejected() -> None:
    with pytest.raises(InvalidUnit):
        to_canonical(Decimal("1"), "kg", AssetFamily.METAL)
    with pytest.raises(InvalidUnit):
        to_canonical(Decimal("1"), "oz", AssetFamily.CRYPTO)
    with pytest.raises(InvalidUnit):
        to_canonical(Decimal("1"), None, AssetFamily.EQUITY)


def test_unknown_family_is_a_caller_error() -> None:
    with pytest.raises(InvalidInput):
        to_canonical(Decimal("1"), "g", "bonds")


@pytest.mark.parametrize("quantity", ["-1", "NaN", "Infinity", "abc"])
def test_negative_or_non_finite_quantities_are_rejected(quantity: str) -> None:
    with pytest.raises(InvalidQuantity):
        to_canonical(quantity, "g", AssetFamily.METAL)
