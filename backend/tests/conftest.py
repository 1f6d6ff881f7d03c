import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lendbridge.core.errors import ContractCallFailed, ContractTimeout, RateSourceUnavailable
from lendbridge.db.session import create_all, make_engine, make_sessionmaker
from lendbridge.services import ltv
from lendbridge.services.loans import LoanManager
from lendbridge.services.ltv import DEFAULT_SCALES
from lendbridge.services.oracle import AccountState, ContractReceipt, TxStatus
from lendbridge.services.orchestrator import LendingOrchestrator, LendingPolicy
from lendbridge.services.rate_feed import RateFeed
from lendbridge.services.rate_source import RateQuote

WALLET = "0x00000000000000000000000000000000000000a1"
OTHER_WALLET = "0x00000000000000000000000000000000000000b2"


class Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


class FakeRateSource:
    def __init__(self, rate: Decimal = Decimal("6.96"), provider: str = "fake-fx"):
        self.rate = rate
        self.provider = provider
        self.error: Exception | None = None
        self.calls = 0

    async def fetch(self, base: str, quote: str) -> RateQuote:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RateQuote(rate=self.rate, provider=self.provider, confidence=Decimal("0.95"), spread=Decimal("0.001"))


class FakeOracle:
    """In-memory custodial contract.

    ``timeouts[op] = applied`` makes the next ``op`` raise ContractTimeout,
    after applying its effect when ``applied`` is true. ``read_failures``
    makes that many subsequent reads raise ContractCallFailed, and
    ``reads_fail_after_timeout`` arms it when a timeout fires.
    """

    def __init__(self, ltv_ratio: Decimal = Decimal("0.5"), latency: float = 0.01):
        self.ltv_ratio = ltv_ratio
        self.latency = latency
        self.balances: dict[str, Decimal] = {}
        self.debts: dict[str, Decimal] = {}
        self.borrowed: dict[str, Decimal] = {}
        self.active: dict[str, bool] = {}
        self.wallet_balances: dict[str, Decimal] = {}
        self.loan_ids: dict[str, list[str]] = {}
        self.txs: dict[str, TxStatus] = {}
        self.timeouts: dict[str, bool] = {}
        self.read_failures = 0
        self.reads_fail_after_timeout = 0
        self.calc_offset = Decimal("0")
        self.calc_error: Exception | None = None
        self.calls: list[tuple] = []
        self._seq = 0

    def fund(self, wallet: str, balance="0", debt="0", wallet_balance="0", active: bool | None = None) -> None:
        self.balances[wallet] = Decimal(balance)
        self.debts[wallet] = Decimal(debt)
        self.wallet_balances[wallet] = Decimal(wallet_balance)
        self.active[wallet] = (self.balances[wallet] > 0) if active is None else active

    def _tx(self) -> ContractReceipt:
        self._seq += 1
        return ContractReceipt(tx_hash=f"0x{self._seq:064x}", block_number=100 + self._seq, gas_used=21000)

    def _read(self) -> None:
        if self.read_failures > 0:
            self.read_failures -= 1
            raise ContractCallFailed("rpc unavailable")

    def _timeout(self, op: str, apply) -> None:
        if op in self.timeouts:
            if self.timeouts.pop(op):
                apply()
            self.read_failures = self.reads_fail_after_timeout
            raise ContractTimeout(f"{op} timed out", call=op)

    async def get_account(self, wallet: str) -> AccountState:
        self._read()
        return AccountState(
            balance=self.balances.get(wallet, Decimal("0")),
            debt=self.debts.get(wallet, Decimal("0")),
            total_borrowed=self.borrowed.get(wallet, Decimal("0")),
            is_active=self.active.get(wallet, False),
        )

    async def get_collateral_balance(self, wallet: str) -> Decimal:
        return (await self.get_account(wallet)).balance

    async def get_debt(self, wallet: str) -> Decimal:
        return (await self.get_account(wallet)).debt

    async def get_account_active(self, wallet: str) -> bool:
        return (await self.get_account(wallet)).is_active

    async def get_wallet_balance(self, wallet: str) -> Decimal:
        self._read()
        return self.wallet_balances.get(wallet, Decimal("0"))

    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        self._read()
        return self.txs.get(tx_ref, TxStatus(status="pending"))

    async def get_user_loan_ids(self, wallet: str) -> list[str]:
        self._read()
        return list(self.loan_ids.get(wallet, []))

    async def max_borrowable(self, balance: Decimal, rate: Decimal) -> Decimal:
        if self.calc_error is not None:
            raise self.calc_error
        return ltv.max_borrowable(balance, rate, self.ltv_ratio, DEFAULT_SCALES) + self.calc_offset

    async def required_collateral(self, amount: Decimal, rate: Decimal) -> Decimal:
        if self.calc_error is not None:
            raise self.calc_error
        return ltv.required_collateral(amount, rate, self.ltv_ratio, DEFAULT_SCALES)

    async def deposit(self, wallet: str, amount: Decimal) -> ContractReceipt:
        self.calls.append(("deposit", wallet, amount))
        await asyncio.sleep(self.latency)

        def apply():
            self.wallet_balances[wallet] = self.wallet_balances.get(wallet, Decimal("0")) - amount
            self.balances[wallet] = self.balances.get(wallet, Decimal("0")) + amount
            self.active[wallet] = True

        self._timeout("deposit", apply)
        apply()
        return self._tx()

    async def withdraw(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt:
        self.calls.append(("withdraw", wallet, amount, rate))
        await asyncio.sleep(self.latency)

        def apply():
            self.balances[wallet] = self.balances.get(wallet, Decimal("0")) - amount
            self.wallet_balances[wallet] = self.wallet_balances.get(wallet, Decimal("0")) + amount

        self._timeout("withdraw", apply)
        if self.balances.get(wallet, Decimal("0")) < amount:
            raise ContractCallFailed("withdraw reverted: insufficient balance")
        apply()
        return self._tx()

    async def request_loan(self, wallet: str, amount: Decimal, rate: Decimal) -> ContractReceipt:
        self.calls.append(("request_loan", wallet, amount, rate))
        await asyncio.sleep(self.latency)

        def apply():
            self._seq += 1
            self.debts[wallet] = self.debts.get(wallet, Decimal("0")) + amount
            self.borrowed[wallet] = self.borrowed.get(wallet, Decimal("0")) + amount
            self.loan_ids.setdefault(wallet, []).append(str(self._seq))

        self._timeout("request_loan", apply)
        cap = ltv.max_borrowable(self.balances.get(wallet, Decimal("0")), rate, self.ltv_ratio, DEFAULT_SCALES)
        if self.debts.get(wallet, Decimal("0")) + amount > cap:
            raise ContractCallFailed("requestLoan reverted: exceeds borrowing capacity")
        apply()
        r = self._tx()
        return ContractReceipt(tx_hash=r.tx_hash, block_number=r.block_number, gas_used=r.gas_used, loan_id=self.loan_ids[wallet][-1])


@pytest.fixture()
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'lendbridge.db'}")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def sessions(engine):
    return make_sessionmaker(engine)


@pytest.fixture()
def clock():
    return Clock(datetime(2026, 3, 2, 9, 30, 0))


@pytest.fixture()
def source():
    return FakeRateSource()


@pytest.fixture()
def feed(sessions, source, clock):
    return RateFeed(sessions, source, clock=clock)


@pytest.fixture()
def loans(sessions, clock):
    return LoanManager(sessions, clock=clock)


@pytest.fixture()
def oracle():
    return FakeOracle()


@pytest.fixture()
def policy():
    return LendingPolicy(ltv_ratio=Decimal("0.5"), rate_max_age=timedelta(minutes=120))


@pytest.fixture()
def lending(oracle, feed, loans, policy):
    return LendingOrchestrator(oracle, feed, loans, policy=policy)


@pytest.fixture()
def failing_source(source):
    source.error = RateSourceUnavailable("upstream down", provider="fake-fx")
    return source
