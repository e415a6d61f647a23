"""Database model exports."""

from .history import PortfolioHistory
from .portfolio import CashTransaction, Portfolio, Trade

__all__ = [
    "Portfolio",
    "Trade",
    "CashTransaction",
    "PortfolioHistory",
]
