from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from finance_tracker.config import settings
from finance_tracker.db import init_db
from finance_tracker.errors import (
    InvalidInput,
    LotNotFound,
    UndefinedConversion,
    UnknownOwner,
)
from finance_tracker.log import setup_logging
from finance_tracker.routes import fx, portfolio, snapshots
from finance_tracker.services.market_data import (
    ExchangeApiProvider,
    MarketDataRouter,
    RateProvider,
    build_default_router,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(
    market_data: MarketDataRouter | None = None,
    rate_provider: RateProvider | None = None,
    enable_startup_init: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()
    app = FastAPI(title=settings.app_name)

    if rate_provider is None:
        exchange_api = ExchangeApiProvider()
        rate_provider = exchange_api
        if market_data is None:
            market_data = build_default_router(exchange_api)
    if market_data is None:
        market_data = build_default_router()

    app.state.market_data = market_data
    app.state.rate_provider = rate_provider

    app.include_router(fx.router)
    app.include_router(snapshots.router)
    app.include_router(portfolio.router)

    @app.exception_handler(InvalidInput)
    async def invalid_input(_request: Request, exc: InvalidInput) -> JSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(UnknownOwner)
    async def unknown_owner(_request: Request, exc: UnknownOwner) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(LotNotFound)
    async def lot_not_found(_request: Request, exc: LotNotFound) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(UndefinedConversion)
    async def undefined_conversion(_request: Request, exc: UndefinedConversion) -> JSONResponse:
        return _error_response(422, exc)

    if enable_startup_init:

        @app.on_event("startup")
        def startup() -> None:
            init_db()
            logger.info("Database ready at %s", settings.database_url)

    return app
