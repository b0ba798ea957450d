from __future__ import annotations

import argparse
from datetime import date

from finance_tracker.db import SessionLocal, init_db
from finance_tracker.log import setup_logging
from finance_tracker.services.fx import refresh_rates
from finance_tracker.services.lots import create_owner
from finance_tracker.services.market_data import ExchangeApiProvider, build_default_router
from finance_tracker.services.snapshots import refresh_snapshots
from finance_tracker.services.valuation import reconstruct, reconstruct_default


def create_owner_command(username: str) -> int:
    """Create one portfolio owner."""
    with SessionLocal() as db:
        user = create_owner(db, username)
        db.commit()
        return user.id


def refresh_prices(asset_codes: list[str] | None = None, market_data=None) -> dict[str, list[str]]:
    """Append current prices for held assets."""
    router = market_data or build_default_router()
    with SessionLocal() as db:
        result = refresh_snapshots(db, router, asset_codes=asset_codes or None)
        db.commit()
    return result.as_dict()


def refresh_fx(quotes: list[str] | None = None, rate_provider=None) -> dict[str, list[str]]:
    """Append current pivot exchange rates."""
    provider = rate_provider or ExchangeApiProvider()
    with SessionLocal() as db:
        result = refresh_rates(db, provider, quotes=quotes or None)
        db.commit()
    return result.as_dict()


def history(owner_id: int, currency: str, checkpoints: list[date] | None = None) -> list[str]:
    """Return printable "date value" lines for an owner's portfolio history."""
    with SessionLocal() as db:
        if checkpoints:
            points = reconstruct(db, owner_id, currency, checkpoints)
        else:
            points = reconstruct_default(db, owner_id, currency)
    return [f"{point.date.isoformat()} {point.value:.2f} {currency.upper()}" for point in points]


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Finance Tracker management commands"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    owner_parser = sub.add_parser("create-owner", help="Create a portfolio owner")
    owner_parser.add_argument("--username", required=True, help="Username for the owner")

    prices_parser = sub.add_parser(
        "refresh-prices", help="Fetch current prices for held assets"
    )
    prices_parser.add_argument(
        "--asset",
        action="append",
        dest="assets",
        help="Asset code to refresh (repeatable, default: every held asset)",
    )

    fx_parser = sub.add_parser("refresh-fx", help="Fetch current exchange rates")
    fx_parser.add_argument(
        "--quote",
        action="append",
        dest="quotes",
        help="Quote code to refresh (repeatable, default: configured quotes)",
    )

    history_parser = sub.add_parser("history", help="Print portfolio value history")
    history_parser.add_argument("--owner-id", type=int, required=True)
    history_parser.add_argument("--currency", default="EUR")
    history_parser.add_argument(
        "--checkpoint",
        action="append",
        dest="checkpoints",
        type=date.fromisoformat,
        help="Checkpoint date YYYY-MM-DD (repeatable, default: weekly)",
    )

    args = parser.parse_args()

    setup_logging()
    init_db()

    if args.command == "create-owner":
        owner_id = create_owner_command(args.username)
        print(f"Created owner id={owner_id} username={args.username}")
    elif args.command == "refresh-prices":
        result = refresh_prices(args.assets)
        print(f"Inserted: {', '.join(result['inserted']) or '-'}")
        print(f"Skipped: {', '.join(result['skipped']) or '-'}")
    elif args.command == "refresh-fx":
        result = refresh_fx(args.quotes)
        print(f"Inserted: {', '.join(result['inserted']) or '-'}")
        print(f"Skipped: {', '.join(result['skipped']) or '-'}")
    elif args.command == "history":
        lines = history(args.owner_id, args.currency, args.checkpoints)
        if not lines:
            print("No valuation points")
        for line in lines:
            print(line)


if __name__ == "__main__":
    main()
