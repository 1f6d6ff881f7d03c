"""Collateral oracle protocol: the custodial contract as seen by the core."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class AccountState:
    balance: Decimal  # collateral currency
    debt: Decimal  # loan currency
    total_borrowed: Decimal = Decimal("0")
    total_repaid: Decimal = Decimal("0")
    is_active: bool = False


@dataclass(frozen=True)
class ContractReceipt:
    tx_hash: str
    block_number: int | None = None
    gas_used: int | None = None
    loan_id: str | None = None


@dataclass(frozen=True)
class TxStatus:
    status: str  # pending | confirmed | failed
    block_number: int | None = None
    gas_used: int | None = None
    confirmations: int | None = None


class CollateralOracle(Protocol):
    async def get_collateral_balance(self, wallet: str) -> Decimal: ...

    async def get_debt(self, wallet: str) -> Decimal: ...

    async def get_account_active(self, wallet: str) -> bool: ...

    async def get_account(self, wallet: str) -> AccountState: ...

    async def get_wallet_balance(self, wallet: str) -> Decimal: ...

    async def get_transaction_status(self, tx_ref: str) -> TxStatus: ...

    async def get_user_loan_ids(self, wallet: str) -> list[str]: ...

    async def deposit(self, wallet: str, amount: Decimal) -> ContractReceipt: ...

    async def withdraw(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt: ...

    async def request_loan(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt: ...

    async def max_borrowable(self, balance: Decimal, rate: Decimal) -> Decimal: ...

    async def required_collateral(self, amount: Decimal, rate: Decimal) -> Decimal: ...
