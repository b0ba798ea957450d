from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select

from finance_tracker.errors import InvalidLot, InvalidQuantity, InvalidUnit, LotNotFound, UnknownOwner
from finance_tracker.models import AssetFamily, PurchaseLot, User
from finance_tracker.services.lots import delete_lot, list_lots, record_lot, update_lot


def _gold(db, owner_id: int, **overrides):
    fields = dict(
        asset_family="metal",
        asset_code=" xau ",
        quantity="2",
        quantity_unit="oz",
        price_currency="eur",
        purchase_date="2024-03-01",
        unit_price="1900",
    )
    fields.update(overrides)
    return record_lot(db, owner_id, **fields)


def test_record_lot_derives_total_and_normalizes_fields(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        lot = _gold(db, owner_id)
        db.commit()

        assert lot.asset_code == "XAU"
        assert lot.asset_family == AssetFamily.METAL
        assert lot.price_currency == "EUR"
        assert lot.purchase_date == date(2024, 3, 1)
        assert lot.total_price == Decimal("3800")


def test_record_lot_derives_unit_price_from_total(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        lot = _gold(db, owner_id, unit_price=None, total_price="3000", quantity="4")
        assert lot.unit_price == Decimal("750")


def test_record_lot_rejects_inconsistent_total(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        with pytest.raises(InvalidLot):
            _gold(db, owner_id, total_price="4000")
        # Rounding noise within tolerance is accepted.
        lot = _gold(db, owner_id, quantity="3", unit_price="33.333", total_price="100")
        assert lot.total_price == Decimal("100")


def test_record_lot_validation_errors(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        with pytest.raises(UnknownOwner):
            _gold(db, owner_id + 1)
        with pytest.raises(InvalidUnit):
            _gold(db, owner_id, quantity_unit="kg")
        with pytest.raises(InvalidQuantity):
            _gold(db, owner_id, quantity="-1")
        with pytest.raises(InvalidQuantity):
            _gold(db, owner_id, quantity="NaN")
        with pytest.raises(InvalidLot):
            _gold(db, owner_id, unit_price=None)
        with pytest.raises(InvalidLot):
            _gold(db, owner_id, purchase_date="March 1st")


def test_update_lot_revalidates_and_rederives(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        lot = _gold(db, owner_id)
        db.commit()

        updated = update_lot(db, lot.id, quantity="3", notes="  vault  ")
        assert updated.total_price == pytest.approx(Decimal("5700"))
        assert updated.notes == "vault"

        updated = update_lot(db, lot.id, total_price="6000")
        assert updated.unit_price == pytest.approx(Decimal("2000"))

        with pytest.raises(InvalidLot):
            update_lot(db, lot.id, asset_code="XAG")
        with pytest.raises(InvalidUnit):
            update_lot(db, lot.id, quantity_unit="unit")
        with pytest.raises(LotNotFound):
            update_lot(db, lot.id + 99, quantity="1")


def test_delete_lot_is_a_hard_delete(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        lot = _gold(db, owner_id)
        db.commit()
        lot_id = lot.id

        delete_lot(db, lot_id)
        db.commit()

        assert db.scalar(select(PurchaseLot).where(PurchaseLot.id == lot_id)) is None
        with pytest.raises(LotNotFound):
            delete_lot(db, lot_id)


def test_list_lots_orders_by_purchase_date_and_filters(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        _gold(db, owner_id, purchase_date="2024-05-01")
        _gold(db, owner_id, purchase_date="2024-01-01")
        record_lot(
            db,
            owner_id,
            asset_family="crypto",
            asset_code="btc",
            quantity="0.5",
            quantity_unit="unit",
            price_currency="EUR",
            purchase_date="2024-02-01",
            total_price="20000",
        )
        db.commit()

        dates = [lot.purchase_date.isoformat() for lot in list_lots(db, owner_id)]
        assert dates == ["2024-01-01", "2024-02-01", "2024-05-01"]
        assert [lot.asset_code for lot in list_lots(db, owner_id, "crypto")] == ["BTC"]


def test_a_code_belongs_to_a_single_asset_family(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        _gold(db, owner_id)
        with pytest.raises(InvalidLot):
            record_lot(
                db,
                owner_id,
                asset_family="crypto",
                asset_code="XAU",
                quantity="1",
                quantity_unit="unit",
                price_currency="EUR",
                purchase_date="2024-03-01",
                unit_price="10",
            )
        # More lots in the same family are fine.
        _gold(db, owner_id, purchase_date="2024-04-01")
        assert len(list_lots(db, owner_id, "metal")) == 2


def test_deleting_an_owner_row_cascades_to_lots(db_session_factory, owner_id) -> None:
    with db_session_factory() as db:
        _gold(db, owner_id)
        db.commit()

        # Core-level delete bypasses the ORM cascade; the foreign key does the work.
        db.execute(delete(User).where(User.id == owner_id))
        db.commit()

        assert db.scalar(select(func.count()).select_from(PurchaseLot)) == 0
