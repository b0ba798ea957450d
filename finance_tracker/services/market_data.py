from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import httpx

from finance_tracker.config import settings
from finance_tracker.errors import ProviderUnavailable
from finance_tracker.models import AssetFamily
from finance_tracker.services.units import TROY_OUNCE_GRAMS

logger = logging.getLogger(__name__)

COINGECKO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "DOGE": "dogecoin",
}

METAL_NAMES: dict[str, str] = {
    "XAU": "Gold",
    "XAG": "Silver",
    "XPT": "Platinum",
    "XPD": "Palladium",
}


@dataclass
class AssetCandidate:
    provider_id: str
    symbol: str
    name: str


@dataclass
class RefreshResult:
    inserted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {"inserted": list(self.inserted), "skipped": list(self.skipped)}


class MarketDataProvider(Protocol):
    """External source of current asset prices."""

    def provider_id(self, asset_code: str) -> str | None:
        ...

    def search(self, query: str) -> list[AssetCandidate]:
        ...

    def current_price(self, asset_ids: list[str], currency: str) -> dict[str, float]:
        ...


class RateProvider(Protocol):
    """External source of "1 base = rate x quote" exchange rates."""

    def latest_rates(self, base: str) -> dict[str, float]:
        ...


def finite_price(value: Any) -> float | None:
    """Return a positive finite float, or None for anything else."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


class _HttpProvider:
    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            timeout=timeout if timeout is not None else settings.provider_timeout_seconds
        )

    def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderUnavailable(f"{type(self).__name__} request failed: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class CoinGeckoProvider(_HttpProvider):
    """Crypto prices from the public CoinGecko API."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        base_url: str | None = None,
        id_map: dict[str, str] | None = None,
    ) -> None:
        super().__init__(base_url or settings.coingecko_base_url, client=client)
        self.id_map = {key.upper(): value for key, value in (id_map or COINGECKO_IDS).items()}

    def provider_id(self, asset_code: str) -> str | None:
        return self.id_map.get(asset_code.strip().upper())

    def search(self, query: str) -> list[AssetCandidate]:
        payload = self._get_json("search", params={"query": query})
        coins = payload.get("coins") if isinstance(payload, dict) else None
        if not isinstance(coins, list):
            raise ProviderUnavailable("CoinGecko search response missing coins")
        return [
            AssetCandidate(
                provider_id=str(coin["id"]),
                symbol=str(coin.get("symbol", "")).upper(),
                name=str(coin.get("name", "")),
            )
            for coin in coins
            if isinstance(coin, dict) and coin.get("id")
        ]

    def current_price(self, asset_ids: list[str], currency: str) -> dict[str, float]:
        if not asset_ids:
            return {}
        vs_currency = currency.lower()
        payload = self._get_json(
            "simple/price",
            params={"ids": ",".join(asset_ids), "vs_currencies": vs_currency},
        )
        if not isinstance(payload, dict):
            raise ProviderUnavailable("CoinGecko price response is not an object")

        prices: dict[str, float] = {}
        for asset_id in asset_ids:
            entry = payload.get(asset_id)
            if isinstance(entry, dict) and vs_currency in entry:
                prices[asset_id] = entry[vs_currency]
        return prices


class ExchangeApiProvider(_HttpProvider):
    """Currency and metal rates from the fawazahmed0 currency API.

    The feed quotes everything against one base currency, so it serves both as
    the FX rate provider and as the price source for metals: a rate of
    ``r`` troy ounces per base unit means one gram costs ``1 / r / 31.1034768``.
    """

    def __init__(self, client: httpx.Client | None = None, base_url: str | None = None) -> None:
        super().__init__(base_url or settings.exchange_api_base_url, client=client)

    def latest_rates(self, base: str) -> dict[str, float]:
        key = base.strip().lower()
        payload = self._get_json(f"currencies/{key}.json")
        rates = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise ProviderUnavailable("Exchange API response missing rates")
        return {str(code).upper(): value for code, value in rates.items()}

    def provider_id(self, asset_code: str) -> str | None:
        code = asset_code.strip().upper()
        return code if code in METAL_NAMES else None

    def search(self, query: str) -> list[AssetCandidate]:
        needle = query.strip().lower()
        return [
            AssetCandidate(provider_id=code, symbol=code, name=name)
            for code, name in METAL_NAMES.items()
            if needle in code.lower() or needle in name.lower()
        ]

    def current_price(self, asset_ids: list[str], currency: str) -> dict[str, float]:
        if not asset_ids:
            return {}
        rates = self.latest_rates(currency)
        prices: dict[str, float] = {}
        for asset_id in asset_ids:
            rate = finite_price(rates.get(asset_id))
            if rate is None:
                continue
            prices[asset_id] = 1.0 / rate / float(TROY_OUNCE_GRAMS)
        return prices


class YFinanceProvider:
    """Best-effort equity prices backed by the free yfinance library."""

    def __init__(self, currency: str | None = None) -> None:
        try:
            import yfinance as yf
        except Exception as exc:  # pragma: no cover - exercised in runtime, not tests
            raise ProviderUnavailable("yfinance is not available") from exc
        self._yf = yf
        self.currency = (currency or settings.equity_quote_currency).upper()

    def provider_id(self, asset_code: str) -> str | None:
        code = asset_code.strip().upper()
        return code or None

    def search(self, query: str) -> list[AssetCandidate]:
        try:
            quotes = self._yf.Search(query, max_results=10).quotes
        except Exception as exc:
            raise ProviderUnavailable(f"yfinance search failed: {exc}") from exc
        return [
            AssetCandidate(
                provider_id=str(quote["symbol"]),
                symbol=str(quote["symbol"]).upper(),
                name=str(quote.get("shortname") or quote.get("longname") or quote["symbol"]),
            )
            for quote in quotes
            if quote.get("symbol")
        ]

    def current_price(self, asset_ids: list[str], currency: str) -> dict[str, float]:
        if currency.upper() != self.currency:
            return {}

        prices: dict[str, float] = {}
        for asset_id in asset_ids:
            try:
                hist = self._yf.Ticker(asset_id).history(
                    period="5d", interval="1d", auto_adjust=False
                )
            except Exception as exc:
                logger.warning("yfinance lookup failed for %s: %s", asset_id, exc)
                continue
            if hist.empty:
                continue
            close_series = hist["Close"].dropna()
            if close_series.empty:
                continue
            prices[asset_id] = float(close_series.iloc[-1])
        return prices


@dataclass
class MarketRoute:
    provider: MarketDataProvider
    currency: str


class MarketDataRouter:
    """Dispatch asset families to their provider and quote currency."""

    def __init__(self, routes: dict[AssetFamily, MarketRoute] | None = None) -> None:
        self.routes: dict[AssetFamily, MarketRoute] = dict(routes or {})

    def register(self, family: AssetFamily, provider: MarketDataProvider, currency: str) -> None:
        self.routes[family] = MarketRoute(provider=provider, currency=currency.upper())

    def route_for(self, family: AssetFamily) -> MarketRoute | None:
        return self.routes.get(family)

    def search(self, query: str, families: Iterable[AssetFamily] | None = None) -> list[AssetCandidate]:
        wanted = list(families) if families is not None else list(self.routes)
        out: list[AssetCandidate] = []
        for family in wanted:
            route = self.routes.get(family)
            if route is None:
                continue
            try:
                out.extend(route.provider.search(query))
            except ProviderUnavailable as exc:
                logger.warning("Search on %s provider failed: %s", family.value, exc)
        return out


def build_default_router(exchange_api: ExchangeApiProvider | None = None) -> MarketDataRouter:
    """Wire the production providers; equities are dropped if yfinance is missing."""
    router = MarketDataRouter()
    router.register(
        AssetFamily.METAL,
        exchange_api or ExchangeApiProvider(),
        settings.metal_quote_currency,
    )
    router.register(AssetFamily.CRYPTO, CoinGeckoProvider(), settings.crypto_quote_currency)
    try:
        router.register(
            AssetFamily.EQUITY,
            YFinanceProvider(settings.equity_quote_currency),
            settings.equity_quote_currency,
        )
    except ProviderUnavailable as exc:
        logger.warning("Equity prices disabled: %s", exc)
    return router
