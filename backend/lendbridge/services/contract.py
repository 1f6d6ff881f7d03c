"""web3.py implementation of the collateral oracle.

Reads go through the custodial contract's view functions; mutations are
signed by the service wallet and waited on until mined. Every call is bounded
by a timeout and surfaces as ``ContractCallFailed`` / ``ContractTimeout``.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_DOWN, Decimal

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from lendbridge.core.errors import ContractCallFailed, ContractTimeout
from lendbridge.services.ltv import DEFAULT_SCALES, Scales
from lendbridge.services.oracle import AccountState, ContractReceipt, TxStatus

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {"inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf", "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}], "name": "approve", "outputs": [{"name": "", "type": "bool"}], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}], "stateMutability": "view", "type": "function"},
]

CUSTODY_ABI = [
    {"inputs": [{"name": "amount", "type": "uint256"}], "name": "deposit", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {
        "inputs": [{"name": "amount", "type": "uint256"}, {"name": "rate", "type": "uint256"}],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "loanAmount", "type": "uint256"}, {"name": "rate", "type": "uint256"}],
        "name": "requestLoan",
        "outputs": [{"name": "loanId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getUserAccount",
        "outputs": [
            {
                "components": [
                    {"name": "collateralBalance", "type": "uint256"},
                    {"name": "debt", "type": "uint256"},
                    {"name": "totalBorrowed", "type": "uint256"},
                    {"name": "totalRepaid", "type": "uint256"},
                    {"name": "isActive", "type": "bool"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "collateralBalance", "type": "uint256"}, {"name": "rate", "type": "uint256"}],
        "name": "calculateMaxBorrowable",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "pure",
        "type": "function",
    },
    {
        "inputs": [{"name": "loanAmount", "type": "uint256"}, {"name": "rate", "type": "uint256"}],
        "name": "calculateRequiredCollateral",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "pure",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getUserLoanIds",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": True, "name": "loanId", "type": "uint256"},
            {"indexed": False, "name": "loanAmount", "type": "uint256"},
            {"indexed": False, "name": "rate", "type": "uint256"},
        ],
        "name": "LoanRequested",
        "type": "event",
    },
]


def to_units(amount, decimals: int) -> int:
    return int(Decimal(amount).scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def from_units(v: int, decimals: int) -> Decimal:
    return Decimal(int(v)).scaleb(-decimals)


class Web3CollateralOracle:
    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        token_address: str,
        private_key: str = "",
        *,
        scales: Scales = DEFAULT_SCALES,
        timeout_s: float = 30.0,
        receipt_timeout_s: float = 120.0,
        w3: AsyncWeb3 | None = None,
    ):
        if not contract_address or not token_address:
            raise ValueError("contract_address and token_address must be configured")
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        self.scales = scales
        self.timeout_s = timeout_s
        self.receipt_timeout_s = receipt_timeout_s
        self.account = Account.from_key(private_key) if private_key else None
        self.custody = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract_address), abi=CUSTODY_ABI)
        self.token = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI)
        self._send_lock = asyncio.Lock()

    async def _guard(self, what: str, aw, timeout: float | None = None):
        try:
            return await asyncio.wait_for(aw, timeout or self.timeout_s)
        except (asyncio.TimeoutError, TimeExhausted) as e:
            raise ContractTimeout(f"{what} timed out", call=what) from e
        except ContractLogicError as e:
            raise ContractCallFailed(f"{what} reverted: {e}", call=what) from e
        except (Web3Exception, aiohttp.ClientError, OSError, ValueError) as e:
            raise ContractCallFailed(f"{what} failed: {e}", call=what) from e

    async def _transact(self, fn) -> dict:
        if self.account is None:
            raise ContractCallFailed("no signer configured for contract mutations")

        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = await fn.build_transaction({"from": self.account.address, "nonce": nonce})
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_s)
        if receipt["status"] != 1:
            raise ContractCallFailed("transaction reverted", tx_hash=AsyncWeb3.to_hex(tx_hash))
        return receipt

    def _receipt(self, receipt, loan_id: str | None = None) -> ContractReceipt:
        return ContractReceipt(
            tx_hash=AsyncWeb3.to_hex(receipt["transactionHash"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            loan_id=loan_id,
        )

    # reads

    async def get_account(self, wallet: str) -> AccountState:
        addr = AsyncWeb3.to_checksum_address(wallet)
        bal, debt, borrowed, repaid, active = await self._guard("getUserAccount", self.custody.functions.getUserAccount(addr).call())
        sc = self.scales
        return AccountState(
            balance=from_units(bal, sc.collateral_decimals),
            debt=from_units(debt, sc.loan_decimals),
            total_borrowed=from_units(borrowed, sc.loan_decimals),
            total_repaid=from_units(repaid, sc.loan_decimals),
            is_active=bool(active),
        )

    async def get_collateral_balance(self, wallet: str) -> Decimal:
        return (await self.get_account(wallet)).balance

    async def get_debt(self, wallet: str) -> Decimal:
        return (await self.get_account(wallet)).debt

    async def get_account_active(self, wallet: str) -> bool:
        return (await self.get_account(wallet)).is_active

    async def get_wallet_balance(self, wallet: str) -> Decimal:
        addr = AsyncWeb3.to_checksum_address(wallet)
        raw = await self._guard("balanceOf", self.token.functions.balanceOf(addr).call())
        return from_units(raw, self.scales.collateral_decimals)

    async def get_user_loan_ids(self, wallet: str) -> list[str]:
        addr = AsyncWeb3.to_checksum_address(wallet)
        ids = await self._guard("getUserLoanIds", self.custody.functions.getUserLoanIds(addr).call())
        return [str(i) for i in ids]

    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        async def _status() -> TxStatus:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_ref)
            except TransactionNotFound:
                return TxStatus(status="pending")
            head = await self.w3.eth.block_number
            return TxStatus(
                status="confirmed" if receipt["status"] == 1 else "failed",
                block_number=receipt["blockNumber"],
                gas_used=receipt["gasUsed"],
                confirmations=max(0, head - receipt["blockNumber"] + 1),
            )

        return await self._guard("getTransactionReceipt", _status())

    async def max_borrowable(self, balance: Decimal, rate: Decimal) -> Decimal:
        sc = self.scales
        raw = await self._guard(
            "calculateMaxBorrowable",
            self.custody.functions.calculateMaxBorrowable(to_units(balance, sc.collateral_decimals), to_units(rate, sc.rate_decimals)).call(),
        )
        return from_units(raw, sc.loan_decimals)

    async def required_collateral(self, amount: Decimal, rate: Decimal) -> Decimal:
        sc = self.scales
        raw = await self._guard(
            "calculateRequiredCollateral",
            self.custody.functions.calculateRequiredCollateral(to_units(amount, sc.loan_decimals), to_units(rate, sc.rate_decimals)).call(),
        )
        return from_units(raw, sc.collateral_decimals)

    # mutations

    async def deposit(self, wallet: str, amount: Decimal) -> ContractReceipt:
        units = to_units(amount, self.scales.collateral_decimals)
        budget = self.timeout_s + self.receipt_timeout_s

        await self._guard("approve", self._transact(self.token.functions.approve(self.custody.address, units)), budget)
        receipt = await self._guard("deposit", self._transact(self.custody.functions.deposit(units)), budget)
        logger.info("deposit mined for %s: %s (%s)", wallet, amount, AsyncWeb3.to_hex(receipt["transactionHash"]))
        return self._receipt(receipt)

    async def withdraw(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt:
        sc = self.scales
        fn = self.custody.functions.withdraw(to_units(amount, sc.collateral_decimals), to_units(rate, sc.rate_decimals))
        receipt = await self._guard("withdraw", self._transact(fn), self.timeout_s + self.receipt_timeout_s)
        logger.info("withdrawal mined for %s: %s (%s)", wallet, amount, AsyncWeb3.to_hex(receipt["transactionHash"]))
        return self._receipt(receipt)

    async def request_loan(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt:
        sc = self.scales
        fn = self.custody.functions.requestLoan(to_units(amount, sc.loan_decimals), to_units(rate, sc.rate_decimals))
        receipt = await self._guard("requestLoan", self._transact(fn), self.timeout_s + self.receipt_timeout_s)

        events = self.custody.events.LoanRequested().process_receipt(receipt, errors=DISCARD)
        loan_id = str(events[0]["args"]["loanId"]) if events else None
        logger.info("loan request mined for %s: %s, chain loan id %s", wallet, amount, loan_id)
        return self._receipt(receipt, loan_id=loan_id)
