"""Deposit, withdraw and loan-request flows over the collateral oracle.

Each mutating flow reads fresh on-chain state, runs the admission check
through :mod:`lendbridge.services.ltv` and only then issues the contract
call, all while holding the lock for the wallet being checked and mutated. Display reads (quote,
capacity, balances) take no lock.

A contract call that times out is never assumed to have failed or
succeeded: the account is re-read and the outcome decided from what the
chain shows. Mutations are never retried here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation, localcontext
from typing import Awaitable, Callable, TypeVar

from lendbridge.core.errors import (
    AccountNotActive,
    ContractCallFailed,
    ContractTimeout,
    ExceedsBorrowingCapacity,
    InsufficientBalance,
    InsufficientCollateral,
    InsufficientCollateralAfterWithdrawal,
    InvalidAmount,
    LendingError,
    LoanAmountOutOfRange,
    OutcomeUnknown,
    RateStale,
    TransactionNotConfirmed,
)
from lendbridge.models.exchange_rate import ExchangeRate
from lendbridge.models.loan import Loan
from lendbridge.services import ltv
from lendbridge.services.loans import LoanManager, StatusTotals, open_totals
from lendbridge.services.locks import KeyedLocks
from lendbridge.services.ltv import DEFAULT_SCALES, Scales
from lendbridge.services.oracle import AccountState, CollateralOracle, ContractReceipt, TxStatus
from lendbridge.services.rate_feed import RateFeed

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _account_key(wallet: str) -> str:
    return wallet.strip().lower()


@dataclass(frozen=True)
class LendingPolicy:
    ltv_ratio: Decimal = Decimal("0.75")
    min_loan_amount: Decimal | None = None
    max_loan_amount: Decimal | None = None
    rate_max_age: timedelta = timedelta(minutes=120)
    tolerance_units: int = 1


@dataclass
class MutationResult:
    account: AccountState
    receipt: ContractReceipt | None
    verified_after_timeout: bool = False


@dataclass
class LoanResult:
    loan: Loan
    account: AccountState
    receipt: ContractReceipt | None
    required_collateral: Decimal
    verified_after_timeout: bool = False


@dataclass
class Quote:
    collateral_amount: Decimal
    max_borrowable: Decimal
    min_loan_amount: Decimal | None
    ltv_ratio: Decimal
    rate: ExchangeRate
    rate_age: timedelta
    is_stale: bool

    @property
    def ltv_percent(self) -> Decimal:
        return (self.ltv_ratio * 100).quantize(Decimal("0.01"))


@dataclass
class Capacity:
    account: AccountState
    max_borrowable: Decimal
    available_to_borrow: Decimal
    utilization_percent: Decimal
    rate: ExchangeRate
    is_stale: bool
    loan_ids: list[str] = field(default_factory=list)


@dataclass
class Balances:
    wallet_balance: Decimal
    account: AccountState


@dataclass
class DebtSummary:
    by_status: dict[str, StatusTotals]
    open: StatusTotals
    collateral_balance: Decimal
    available_collateral: Decimal
    available_to_borrow: Decimal | None


class LendingOrchestrator:
    def __init__(
        self,
        oracle: CollateralOracle,
        feed: RateFeed,
        loans: LoanManager,
        *,
        policy: LendingPolicy = LendingPolicy(),
        scales: Scales = DEFAULT_SCALES,
        locks: KeyedLocks | None = None,
    ):
        self.oracle = oracle
        self.feed = feed
        self.loans = loans
        self.policy = policy
        self.scales = scales
        self.locks = locks or KeyedLocks()

    def _positive(self, v, unit: Decimal, field_name: str) -> Decimal:
        d = v if isinstance(v, Decimal) else Decimal(str(v))
        if not d.is_finite() or d <= 0:
            raise InvalidAmount(f"{field_name} must be positive", **{field_name: d})
        with localcontext() as ctx:
            ctx.prec = 60
            try:
                exact = d == d.quantize(unit)
            except InvalidOperation:
                raise InvalidAmount(f"{field_name} is too large", **{field_name: d})
        if not exact:
            raise InvalidAmount(f"{field_name} has more than {-unit.as_tuple().exponent} decimal places", **{field_name: d})
        return d

    async def _fresh_rate(self) -> ExchangeRate:
        row = await self.feed.latest()
        if self.feed.is_stale(row, self.policy.rate_max_age):
            age = self.feed.age(row)
            logger.warning("rate %s from %s is stale (%s old)", row.rate, row.created_at, age)
            raise RateStale(
                "latest exchange rate is too old for admission",
                rate=Decimal(row.rate),
                rate_created_at=row.created_at.isoformat(),
                age_minutes=int(age.total_seconds() // 60),
                max_age_minutes=int(self.policy.rate_max_age.total_seconds() // 60),
            )
        return row

    async def _reverify(
        self,
        err: ContractTimeout,
        wallet: str,
        what: str,
        read: Callable[[], Awaitable[T]],
        confirmed: Callable[[T], bool],
    ) -> T:
        logger.warning("%s for %s timed out, re-reading on-chain state", what, wallet)
        try:
            state = await read()
        except LendingError as e:
            logger.error("%s for %s: outcome unknown, re-read failed: %s", what, wallet, e)
            raise OutcomeUnknown(f"{what} timed out and on-chain state could not be re-read", wallet=wallet, operation=what) from e
        if confirmed(state):
            logger.warning("%s for %s confirmed on-chain after timeout", what, wallet)
            return state
        logger.warning("%s for %s not reflected on-chain after timeout", what, wallet)
        raise err

    async def _cross_check(self, wallet: str, balance: Decimal, amount: Decimal, rate: Decimal, max_b: Decimal, required: Decimal) -> None:
        sc = self.scales
        n = self.policy.tolerance_units
        try:
            chain_max = await self.oracle.max_borrowable(balance, rate)
            chain_req = await self.oracle.required_collateral(amount, rate)
        except ContractCallFailed as e:
            logger.warning("ltv cross-check for %s skipped: %s", wallet, e)
            return
        if not ltv.within_tolerance(chain_max, max_b, sc.loan_unit, n):
            logger.warning("max borrowable mismatch for %s: local %s, contract %s (balance %s, rate %s)", wallet, max_b, chain_max, balance, rate)
        if not ltv.within_tolerance(chain_req, required, sc.collateral_unit, n):
            logger.warning("required collateral mismatch for %s: local %s, contract %s (amount %s, rate %s)", wallet, required, chain_req, amount, rate)

    # mutations

    async def deposit(self, user_id: str, wallet: str, amount, tx_ref: str | None = None) -> MutationResult:
        amount = self._positive(amount, self.scales.collateral_unit, "amount")

        if tx_ref:
            st = await self.oracle.get_transaction_status(tx_ref)
            if st.status != "confirmed":
                logger.info("deposit for %s rejected: transaction %s is %s", user_id, tx_ref, st.status)
                raise TransactionNotConfirmed(tx_ref=tx_ref, status=st.status)

        async with self.locks.hold(_account_key(wallet)):
            available = await self.oracle.get_wallet_balance(wallet)
            if available < amount:
                logger.info("deposit for %s rejected: wallet holds %s, requested %s", user_id, available, amount)
                raise InsufficientBalance(
                    "wallet balance below deposit amount",
                    requested_amount=amount,
                    available_balance=available,
                )

            before = await self.oracle.get_account(wallet)
            verified = False
            receipt = None
            try:
                receipt = await self.oracle.deposit(wallet, amount)
            except ContractTimeout as e:
                await self._reverify(e, wallet, "deposit", lambda: self.oracle.get_account(wallet), lambda a: a.balance >= before.balance + amount)
                verified = True

            after = await self.oracle.get_account(wallet)

        logger.info("deposit for %s: %s, balance %s -> %s", user_id, amount, before.balance, after.balance)
        return MutationResult(account=after, receipt=receipt, verified_after_timeout=verified)

    async def withdraw(self, user_id: str, wallet: str, amount) -> MutationResult:
        amount = self._positive(amount, self.scales.collateral_unit, "amount")

        async with self.locks.hold(_account_key(wallet)):
            before = await self.oracle.get_account(wallet)
            if amount > before.balance:
                logger.info("withdrawal for %s rejected: balance %s, requested %s", user_id, before.balance, amount)
                raise InsufficientBalance(
                    "withdrawal exceeds collateral balance",
                    requested_amount=amount,
                    available_balance=before.balance,
                )

            if before.debt > 0:
                row = await self._fresh_rate()
                try:
                    ltv.headroom_after_withdrawal(before.balance, before.debt, amount, row.rate, self.policy.ltv_ratio, self.scales)
                except InsufficientCollateralAfterWithdrawal as e:
                    logger.info("withdrawal for %s rejected: shortfall %s", user_id, e.shortfall)
                    raise
            else:
                row = await self.feed.latest()

            verified = False
            receipt = None
            try:
                receipt = await self.oracle.withdraw(wallet, amount, Decimal(row.rate))
            except ContractTimeout as e:
                await self._reverify(e, wallet, "withdraw", lambda: self.oracle.get_account(wallet), lambda a: a.balance <= before.balance - amount)
                verified = True

            after = await self.oracle.get_account(wallet)

        logger.info("withdrawal for %s: %s, balance %s -> %s", user_id, amount, before.balance, after.balance)
        return MutationResult(account=after, receipt=receipt, verified_after_timeout=verified)

    def _check_limits(self, amount: Decimal) -> None:
        lo, hi = self.policy.min_loan_amount, self.policy.max_loan_amount
        if (lo is not None and amount < lo) or (hi is not None and amount > hi):
            raise LoanAmountOutOfRange(
                "loan amount outside the allowed range",
                loan_amount=amount,
                min_loan_amount=lo,
                max_loan_amount=hi,
            )

    async def request_loan(
        self,
        user_id: str,
        wallet: str,
        amount,
        bank_details: dict | None = None,
        collateral_amount=None,
    ) -> LoanResult:
        sc = self.scales
        amount = self._positive(amount, sc.loan_unit, "loan_amount")
        self._check_limits(amount)
        if collateral_amount is not None:
            collateral_amount = self._positive(collateral_amount, sc.collateral_unit, "collateral_amount")
        ratio = self.policy.ltv_ratio

        async with self.locks.hold(_account_key(wallet)):
            before = await self.oracle.get_account(wallet)
            if not before.is_active:
                logger.info("loan request for %s rejected: account not active", user_id)
                raise AccountNotActive("account is not active, make a deposit first", wallet=wallet)

            row = await self._fresh_rate()
            rate = Decimal(row.rate)

            max_b = ltv.max_borrowable(before.balance, rate, ratio, sc)
            available = ltv.available_to_borrow(before.balance, before.debt, rate, ratio, sc)
            required = ltv.required_collateral(amount, rate, ratio, sc)

            if before.debt + amount > max_b:
                logger.info("loan request for %s rejected: debt %s + %s exceeds %s", user_id, before.debt, amount, max_b)
                raise ExceedsBorrowingCapacity(
                    "loan request exceeds borrowing capacity",
                    requested_amount=amount,
                    current_debt=before.debt,
                    new_total_debt=before.debt + amount,
                    max_borrowable=max_b,
                    available_to_borrow=available,
                )

            collateral = collateral_amount if collateral_amount is not None else required
            if before.balance < required or collateral < required or collateral > before.balance:
                logger.info("loan request for %s rejected: collateral %s, required %s, balance %s", user_id, collateral, required, before.balance)
                raise InsufficientCollateral(
                    "insufficient collateral for loan",
                    requested_amount=amount,
                    required_collateral=required,
                    collateral=collateral,
                    current_balance=before.balance,
                )

            await self._cross_check(wallet, before.balance, amount, rate, max_b, required)

            ids_before = set(await self.oracle.get_user_loan_ids(wallet))
            verified = False
            receipt = None
            chain_loan_id = None
            try:
                receipt = await self.oracle.request_loan(wallet, amount, rate)
                chain_loan_id = receipt.loan_id
            except ContractTimeout as e:
                ids = await self._reverify(
                    e,
                    wallet,
                    "request_loan",
                    lambda: self.oracle.get_user_loan_ids(wallet),
                    lambda ids: any(i not in ids_before for i in ids),
                )
                chain_loan_id = [i for i in ids if i not in ids_before][-1]
                verified = True

            after = await self.oracle.get_account(wallet)
            try:
                loan = await self.loans.create(
                    user_id,
                    collateral,
                    amount,
                    rate,
                    ratio,
                    bank_details,
                    wallet=wallet,
                    chain_loan_id=chain_loan_id,
                    tx_hash=receipt.tx_hash if receipt else None,
                    block_number=receipt.block_number if receipt else None,
                )
            except Exception as e:
                tx_hash = receipt.tx_hash if receipt else None
                logger.exception(
                    "loan for %s is on chain (id %s, tx %s, amount %s) but the record could not be stored",
                    user_id, chain_loan_id, tx_hash, amount,
                )
                raise OutcomeUnknown(
                    "loan was issued on chain but could not be recorded",
                    wallet=wallet,
                    chain_loan_id=chain_loan_id,
                    tx_hash=tx_hash,
                    loan_amount=amount,
                    collateral=collateral,
                ) from e

        logger.info(
            "loan %s requested by %s: %s at rate %s, collateral %s, chain loan id %s",
            loan.loan_id, user_id, amount, rate, collateral, chain_loan_id,
        )
        return LoanResult(
            loan=loan,
            account=after,
            receipt=receipt,
            required_collateral=required,
            verified_after_timeout=verified,
        )

    # reads

    async def quote(self, collateral_amount) -> Quote:
        collateral = self._positive(collateral_amount, self.scales.collateral_unit, "collateral_amount")
        row = await self.feed.latest()
        max_b = ltv.max_borrowable(collateral, row.rate, self.policy.ltv_ratio, self.scales)
        if self.policy.max_loan_amount is not None:
            max_b = min(max_b, self.policy.max_loan_amount)
        return Quote(
            collateral_amount=collateral,
            max_borrowable=max_b,
            min_loan_amount=self.policy.min_loan_amount,
            ltv_ratio=self.policy.ltv_ratio,
            rate=row,
            rate_age=self.feed.age(row),
            is_stale=self.feed.is_stale(row, self.policy.rate_max_age),
        )

    async def borrowing_capacity(self, wallet: str) -> Capacity:
        acct = await self.oracle.get_account(wallet)
        row = await self.feed.latest()
        max_b = ltv.max_borrowable(acct.balance, row.rate, self.policy.ltv_ratio, self.scales)
        return Capacity(
            account=acct,
            max_borrowable=max_b,
            available_to_borrow=ltv.available_to_borrow(acct.balance, acct.debt, row.rate, self.policy.ltv_ratio, self.scales),
            utilization_percent=ltv.utilization_percent(acct.debt, max_b),
            rate=row,
            is_stale=self.feed.is_stale(row, self.policy.rate_max_age),
            loan_ids=await self.oracle.get_user_loan_ids(wallet),
        )

    async def balances(self, wallet: str) -> Balances:
        return Balances(
            wallet_balance=await self.oracle.get_wallet_balance(wallet),
            account=await self.oracle.get_account(wallet),
        )

    async def debt_summary(self, user_id: str, wallet: str | None) -> DebtSummary:
        by_status = await self.loans.aggregate_by_status(user_id)
        totals = open_totals(by_status)
        zero = Decimal("0").quantize(self.scales.collateral_unit)

        if not wallet:
            return DebtSummary(by_status, totals, zero, zero, None)

        acct = await self.oracle.get_account(wallet)
        row = await self.feed.latest_or_none()
        available = None
        if row is not None:
            available = ltv.available_to_borrow(acct.balance, acct.debt, row.rate, self.policy.ltv_ratio, self.scales)
        return DebtSummary(
            by_status=by_status,
            open=totals,
            collateral_balance=acct.balance,
            available_collateral=max(zero, acct.balance - totals.collateral),
            available_to_borrow=available,
        )

    async def transaction_status(self, tx_ref: str) -> TxStatus:
        return await self.oracle.get_transaction_status(tx_ref)

    async def loan_history(self, wallet: str) -> list[str]:
        return await self.oracle.get_user_loan_ids(wallet)
