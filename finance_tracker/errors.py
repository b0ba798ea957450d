"""Error taxonomy for valuation, conversion and snapshot refresh.

Caller mistakes derive from :class:`InvalidInput` (a ``ValueError``) and are
always surfaced. Data-availability conditions (missing rates, missing
snapshots, provider outages) are absorbed into partial results by the
reconstruction and refresh operations.
"""

from __future__ import annotations


class ValuationError(Exception):
    """Base class for every error raised by the valuation engine."""


class InvalidInput(ValuationError, ValueError):
    """Malformed caller input."""


class InvalidUnit(InvalidInput):
    """A quantity unit is not recognised for its asset family."""


class InvalidCurrency(InvalidInput):
    """A currency or commodity code is malformed."""


class InvalidQuantity(InvalidInput):
    """A quantity or price is negative, NaN or infinite."""


class InvalidLot(InvalidInput):
    """A purchase lot fails validation on creation or edit."""


class UnknownOwner(ValuationError, LookupError):
    """No user exists with the requested owner id."""


class LotNotFound(ValuationError, LookupError):
    """No purchase lot exists with the requested id."""


class UndefinedConversion(ValuationError):
    """No rate path exists between two codes as of the requested time."""

    def __init__(self, from_code: str, to_code: str, missing: str, as_of) -> None:
        self.from_code = from_code
        self.to_code = to_code
        self.missing = missing
        self.as_of = as_of
        super().__init__(
            f"No {missing} rate to convert {from_code}->{to_code} as of {as_of.isoformat()}"
        )


class MissingSnapshot(ValuationError):
    """No price observation exists for an asset at or before a time."""

    def __init__(self, asset_code: str, as_of) -> None:
        self.asset_code = asset_code
        self.as_of = as_of
        super().__init__(f"No price snapshot for {asset_code} at or before {as_of.isoformat()}")


class ProviderUnavailable(ValuationError):
    """The external market-data collaborator failed or timed out."""
