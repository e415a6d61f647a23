"""Daily portfolio history rows."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class PortfolioHistory(Base):
    __tablename__ = "portfolio_history"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "date", name="uq_portfolio_history_portfolio_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolio.id", ondelete="CASCADE"))
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date: Mapped[date] = mapped_column(Date)
    total_value: Mapped[float] = mapped_column(Numeric(20, 6))
    cost_basis: Mapped[float] = mapped_column(Numeric(20, 6))
    realized_pnl: Mapped[float] = mapped_column(Numeric(20, 6), default=0)
    daily_return: Mapped[float] = mapped_column(Numeric(20, 12))
    cumulative_twr: Mapped[float] = mapped_column(Numeric(20, 12))
    bench_cumulative: Mapped[float] = mapped_column(Numeric(20, 12))
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


__all__ = ["PortfolioHistory"]
