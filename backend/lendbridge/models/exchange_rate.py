from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from lendbridge.db.base import Base


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base_currency: Mapped[str] = mapped_column(String(16))
    quote_currency: Mapped[str] = mapped_column(String(16))
    rate: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    source: Mapped[str] = mapped_column(String(16))  # api | manual | partner
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confidence: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    spread: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    set_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


Index("ix_exchange_rates_pair_created", ExchangeRate.base_currency, ExchangeRate.quote_currency, ExchangeRate.created_at)
Index("ix_exchange_rates_active_created", ExchangeRate.is_active, ExchangeRate.created_at)
