from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

class BankDetails(BaseModel):
    bank_name: str | None = None
    account_number: str | None = None
    account_holder: str | None = None
    account_type: str | None = None

class QuoteOut(BaseModel):
    collateral_amount: Decimal
    collateral_currency: str
    max_borrowable: Decimal
    loan_currency: str
    min_loan_amount: Decimal | None
    ltv_percent: Decimal
    exchange_rate: Decimal
    rate_source: str
    rate_created_at: datetime
    rate_age_minutes: int
    is_stale: bool

class LoanRequestIn(BaseModel):
    loan_amount: Decimal = Field(gt=0)
    collateral_amount: Decimal | None = Field(default=None, gt=0)
    bank_details: BankDetails | None = None

class LoanOut(BaseModel):
    loan_id: str
    user_id: str
    wallet_address: str | None
    chain_loan_id: str | None
    status: str
    collateral_amount: Decimal
    collateral_currency: str
    amount: Decimal
    amount_collateral_equiv: Decimal
    loan_currency: str
    exchange_rate: Decimal
    ltv_ratio: Decimal
    bank_details: dict | None = None
    partner_order_id: str | None = None
    transfer_id: str | None = None
    transfer_amount: Decimal | None = None
    transferred_at: datetime | None = None
    partner_note: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    due_date: datetime
    repaid_at: datetime | None = None
    repaid_amount: Decimal | None = None
    repayment_confirmed: bool = False
    repayment_confirmation_id: str | None = None
    liquidated_at: datetime | None = None
    liquidation_price: Decimal | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class AccountOut(BaseModel):
    balance: Decimal
    debt: Decimal
    total_borrowed: Decimal
    total_repaid: Decimal
    is_active: bool

    class Config:
        from_attributes = True

class ReceiptOut(BaseModel):
    tx_hash: str
    block_number: int | None = None
    gas_used: int | None = None
    loan_id: str | None = None

    class Config:
        from_attributes = True

class LoanRequestOut(BaseModel):
    loan: LoanOut
    required_collateral: Decimal
    account: AccountOut
    contract_transaction: ReceiptOut | None
    verified_after_timeout: bool

class StatusTotalsOut(BaseModel):
    count: int
    amount: Decimal
    amount_collateral_equiv: Decimal
    collateral: Decimal

    class Config:
        from_attributes = True

class DebtSummaryOut(BaseModel):
    by_status: dict[str, StatusTotalsOut]
    open: StatusTotalsOut
    collateral_balance: Decimal
    available_collateral: Decimal
    available_to_borrow: Decimal | None
    loan_currency: str
    collateral_currency: str
