"""Currency conversion into the portfolio base currency."""

from __future__ import annotations

from typing import Mapping


def fx_symbol(base_currency: str, currency: str) -> str:
    """Cache key of the pair quoting ``currency`` units per one ``base_currency``."""

    return f"FX:{base_currency.upper()}/{currency.upper()}"


def to_base(amount: float, currency: str, rates: Mapping[str, float]) -> float | None:
    """Convert ``amount`` of ``currency`` into the base currency.

    ``rates`` maps a currency to the number of its units that buy one unit of
    the base currency (the base currency itself maps to 1.0), so conversion
    always divides. Returns ``None`` when no usable rate is known.
    """

    rate = rates.get(currency.upper())
    if rate is None or rate <= 0:
        return None
    return amount / rate


__all__ = ["fx_symbol", "to_base"]
