from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from lendbridge.db.base import Base

PENDING = "pending"
APPROVED = "approved"
FUNDED = "funded"
REJECTED = "rejected"
CANCELLED = "cancelled"
REPAID = "repaid"
LIQUIDATED = "liquidated"

STATUSES = (PENDING, APPROVED, FUNDED, REJECTED, CANCELLED, REPAID, LIQUIDATED)
OPEN_STATUSES = (PENDING, APPROVED, FUNDED)
TERMINAL_STATUSES = (REJECTED, CANCELLED, REPAID, LIQUIDATED)


class Loan(Base):
    __tablename__ = "loans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    loan_id: Mapped[str] = mapped_column(String(48), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chain_loan_id: Mapped[str | None] = mapped_column(String(80), nullable=True)

    collateral_amount: Mapped[Decimal] = mapped_column(Numeric(30, 6))
    collateral_currency: Mapped[str] = mapped_column(String(16))
    amount: Mapped[Decimal] = mapped_column(Numeric(30, 2))
    amount_collateral_equiv: Mapped[Decimal] = mapped_column(Numeric(30, 6))
    loan_currency: Mapped[str] = mapped_column(String(16))
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    ltv_ratio: Mapped[Decimal] = mapped_column(Numeric(6, 4))

    status: Mapped[str] = mapped_column(String(16), default=PENDING)

    partner_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_amount: Mapped[Decimal | None] = mapped_column(Numeric(30, 2), nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    bank_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    partner_note: Mapped[str | None] = mapped_column(String(512), nullable=True)

    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    due_date: Mapped[datetime] = mapped_column(DateTime)
    repaid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    repaid_amount: Mapped[Decimal | None] = mapped_column(Numeric(30, 2), nullable=True)
    repayment_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    repayment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    repayment_confirmation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    liquidated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    liquidation_price: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    liquidation_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


Index("ix_loans_user_status", Loan.user_id, Loan.status)
Index("ix_loans_created_at", Loan.created_at)
Index("ix_loans_status_created", Loan.status, Loan.created_at)
