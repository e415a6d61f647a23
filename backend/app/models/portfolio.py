"""Portfolio, trade and cash transaction models."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.services.ledger import CASH_TRANSACTION_TYPES, TRADE_ACTIONS


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Portfolio(Base):
    __tablename__ = "portfolio"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(128), default="Main")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    trades: Mapped[list["Trade"]] = relationship(back_populates="portfolio", cascade="all, delete-orphan")
    cash_transactions: Mapped[list["CashTransaction"]] = relationship(
        back_populates="portfolio", cascade="all, delete-orphan"
    )


class Trade(Base):
    __tablename__ = "trade"
    __table_args__ = (Index("ix_trade_portfolio_date", "portfolio_id", "date_traded"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolio.id", ondelete="CASCADE"))
    ticker: Mapped[str] = mapped_column(String(20))
    action: Mapped[str] = mapped_column(Enum(*TRADE_ACTIONS, name="trade_action"))
    quantity: Mapped[float] = mapped_column(Numeric(18, 6))
    price_per_share: Mapped[float] = mapped_column(Numeric(18, 6))
    fees: Mapped[float] = mapped_column(Numeric(18, 6), default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    date_traded: Mapped[date] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    portfolio: Mapped[Portfolio] = relationship(back_populates="trades")


class CashTransaction(Base):
    __tablename__ = "cash_transaction"
    __table_args__ = (Index("ix_cash_transaction_portfolio_date", "portfolio_id", "transaction_date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolio.id", ondelete="CASCADE"))
    transaction_type: Mapped[str] = mapped_column(Enum(*CASH_TRANSACTION_TYPES, name="cash_transaction_type"))
    amount: Mapped[float] = mapped_column(Numeric(18, 6))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    ticker: Mapped[str | None] = mapped_column(String(20), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_date: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    portfolio: Mapped[Portfolio] = relationship(back_populates="cash_transactions")


__all__ = ["Portfolio", "Trade", "CashTransaction"]
