from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is importable in pytest runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from finance_tracker import create_app
from finance_tracker.db import create_db_engine, get_db, init_db, session_factory
from finance_tracker.errors import ProviderUnavailable
from finance_tracker.models import AssetFamily, User
from finance_tracker.services.market_data import AssetCandidate, MarketDataRouter


class MockMarketDataProvider:
    """Deterministic in-memory market-data provider for tests."""

    def __init__(self, id_map: dict[str, str] | None = None) -> None:
        self.id_map = {key.upper(): value for key, value in (id_map or {}).items()}
        self.prices: dict[str, dict[str, object]] = {}
        self.unavailable = False
        self.calls: list[tuple[list[str], str]] = []
        # Ids omitted from the first batch answer, returned on single retries.
        self.flaky_ids: set[str] = set()

    def set_price(self, asset_id: str, currency: str, price: object) -> None:
        self.prices.setdefault(currency.upper(), {})[asset_id] = price

    def provider_id(self, asset_code: str) -> str | None:
        return self.id_map.get(asset_code.upper())

    def search(self, query: str) -> list[AssetCandidate]:
        return [
            AssetCandidate(provider_id=provider_id, symbol=code, name=code)
            for code, provider_id in self.id_map.items()
            if query.lower() in code.lower()
        ]

    def current_price(self, asset_ids: list[str], currency: str) -> dict[str, object]:
        self.calls.append((list(asset_ids), currency))
        if self.unavailable:
            raise ProviderUnavailable("mock provider offline")
        table = self.prices.get(currency.upper(), {})
        batch = len(asset_ids) > 1
        return {
            asset_id: table[asset_id]
            for asset_id in asset_ids
            if asset_id in table and not (batch and asset_id in self.flaky_ids)
        }


class MockRateProvider:
    """Deterministic "1 base = rate x quote" table."""

    def __init__(self) -> None:
        self.rates: dict[str, object] = {}
        self.unavailable = False

    def latest_rates(self, base: str) -> dict[str, object]:
        if self.unavailable:
            raise ProviderUnavailable("mock rates offline")
        return dict(self.rates)


@pytest.fixture()
def metal_provider():
    return MockMarketDataProvider({"XAU": "XAU", "XAG": "XAG"})


@pytest.fixture()
def crypto_provider():
    return MockMarketDataProvider({"BTC": "bitcoin", "ETH": "ethereum"})


@pytest.fixture()
def market_data(metal_provider, crypto_provider):
    router = MarketDataRouter()
    router.register(AssetFamily.METAL, metal_provider, "EUR")
    router.register(AssetFamily.CRYPTO, crypto_provider, "EUR")
    return router


@pytest.fixture()
def rate_provider():
    return MockRateProvider()


@pytest.fixture()
def test_env(market_data, rate_provider):
    engine = create_db_engine("sqlite://", journal_mode="MEMORY", poolclass=StaticPool)
    SessionLocal = session_factory(engine)

    init_db(bind=engine)

    app = create_app(
        market_data=market_data,
        rate_provider=rate_provider,
        enable_startup_init=False,
    )

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with SessionLocal() as db:
        db.add(User(username="tester"))
        db.commit()

    with TestClient(app) as client:
        yield {
            "app": app,
            "client": client,
            "session_factory": SessionLocal,
        }

    engine.dispose()


@pytest.fixture()
def app(test_env):
    return test_env["app"]


@pytest.fixture()
def client(test_env):
    return test_env["client"]


@pytest.fixture()
def db_session_factory(test_env):
    return test_env["session_factory"]


@pytest.fixture()
def owner_id(db_session_factory):
    from sqlalchemy import select

    with db_session_factory() as db:
        return db.scalar(select(User.id).where(User.username == "tester"))
