from decimal import Decimal

from pydantic import BaseModel, Field

from lendbridge.schemas.loan import AccountOut, ReceiptOut

class DepositIn(BaseModel):
    amount: Decimal = Field(gt=0)
    tx_hash: str | None = None

class WithdrawIn(BaseModel):
    amount: Decimal = Field(gt=0)

class MutationOut(BaseModel):
    account: AccountOut
    contract_transaction: ReceiptOut | None
    verified_after_timeout: bool

class BalanceOut(BaseModel):
    wallet_address: str
    wallet_balance: Decimal
    account: AccountOut
    collateral_currency: str
    loan_currency: str

class CapacityOut(BaseModel):
    account: AccountOut
    max_borrowable: Decimal
    available_to_borrow: Decimal
    utilization_percent: Decimal
    exchange_rate: Decimal
    is_stale: bool
    loan_ids: list[str]

class TxStatusOut(BaseModel):
    tx_hash: str
    status: str
    block_number: int | None = None
    gas_used: int | None = None
    confirmations: int | None = None

class LoanHistoryOut(BaseModel):
    wallet_address: str
    loan_ids: list[str]
    total: int
