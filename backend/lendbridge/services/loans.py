from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lendbridge.core.errors import (
    ExceedsBorrowingCapacity,
    IllegalTransition,
    InsufficientCollateral,
    InvalidAmount,
    LoanNotFound,
    NotCancellable,
    NotRepayable,
)
from lendbridge.models.loan import (
    APPROVED,
    CANCELLED,
    FUNDED,
    LIQUIDATED,
    OPEN_STATUSES,
    PENDING,
    REJECTED,
    REPAID,
    STATUSES,
    Loan,
)
from lendbridge.services import ltv
from lendbridge.services.ltv import DEFAULT_SCALES, Scales
from lendbridge.utils.timezone import as_utc, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({APPROVED, FUNDED, REJECTED, CANCELLED}),
    APPROVED: frozenset({REPAID, LIQUIDATED}),
    FUNDED: frozenset({REPAID, LIQUIDATED}),
}

PARTNER_STATUSES = (APPROVED, FUNDED, REJECTED)


def is_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def new_loan_id() -> str:
    # millisecond clock + 48 random bits; the unique index backs it up
    return f"LOAN-{time.time_ns() // 1_000_000:X}-{uuid4().hex[:12].upper()}"


@dataclass
class StatusTotals:
    count: int = 0
    amount: Decimal = Decimal("0")
    amount_collateral_equiv: Decimal = Decimal("0")
    collateral: Decimal = Decimal("0")


@dataclass
class Page:
    items: list[Loan] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _set(values: dict, key: str, v: Any) -> None:
    if v is not None:
        values[key] = v


class LoanManager:
    """Sole writer of ``Loan.status``.

    Every write is one conditional UPDATE on one row (``WHERE status =
    <status we validated against>``), so an allowed transition commits at most
    once from a given state no matter how many writers race for it.
    """

    def __init__(
        self,
        sessions: async_sessionmaker,
        *,
        scales: Scales = DEFAULT_SCALES,
        term_days: int = 30,
        collateral_currency: str = "USDT",
        loan_currency: str = "BOB",
        clock: Callable[[], datetime] = utc_now,
    ):
        self._sessions = sessions
        self.scales = scales
        self.term_days = term_days
        self.collateral_currency = collateral_currency
        self.loan_currency = loan_currency
        self.clock = clock

    async def create(
        self,
        user_id: str,
        collateral: Decimal,
        loan_amount: Decimal,
        rate: Decimal,
        ltv_ratio: Decimal,
        bank_details: dict | None,
        *,
        wallet: str | None = None,
        chain_loan_id: str | None = None,
        tx_hash: str | None = None,
        block_number: int | None = None,
    ) -> Loan:
        if loan_amount is None or loan_amount <= 0:
            raise InvalidAmount("loan amount must be positive", loan_amount=loan_amount)

        max_b = ltv.max_borrowable(collateral, rate, ltv_ratio, self.scales)
        if loan_amount > max_b:
            raise ExceedsBorrowingCapacity(
                "loan amount exceeds maximum allowed for the collateral",
                requested_amount=loan_amount,
                max_borrowable=max_b,
                collateral=collateral,
            )
        required = ltv.required_collateral(loan_amount, rate, ltv_ratio, self.scales)
        if collateral < required:
            raise InsufficientCollateral(
                "collateral below requirement",
                requested_amount=loan_amount,
                required_collateral=required,
                collateral=collateral,
            )

        now = self.clock()
        loan = Loan(
            loan_id=new_loan_id(),
            user_id=user_id,
            wallet_address=wallet,
            chain_loan_id=chain_loan_id,
            collateral_amount=collateral,
            collateral_currency=self.collateral_currency,
            amount=loan_amount,
            amount_collateral_equiv=ltv.collateral_equivalent(loan_amount, rate, self.scales),
            loan_currency=self.loan_currency,
            exchange_rate=ltv.normalize_rate(rate, self.scales),
            ltv_ratio=ltv_ratio,
            status=PENDING,
            bank_details=dict(bank_details) if bank_details else None,
            tx_hash=tx_hash,
            block_number=block_number,
            due_date=now + timedelta(days=self.term_days),
            repayment_confirmed=False,
            created_at=now,
            updated_at=now,
        )
        async with self._sessions() as s:
            s.add(loan)
            await s.commit()

        logger.info(
            "loan %s created for user %s: %s %s against %s %s at rate %s",
            loan.loan_id, user_id, loan_amount, self.loan_currency, collateral, self.collateral_currency, loan.exchange_rate,
        )
        return loan

    async def _load(self, s: AsyncSession, loan_id: str, user_id: str | None = None) -> Loan:
        q = select(Loan).where(Loan.loan_id == loan_id)
        if user_id is not None:
            q = q.where(Loan.user_id == user_id)
        loan = (await s.execute(q)).scalar_one_or_none()
        if loan is None:
            raise LoanNotFound(loan_id=loan_id)
        return loan

    async def get(self, loan_id: str, user_id: str | None = None) -> Loan:
        async with self._sessions() as s:
            return await self._load(s, loan_id, user_id)

    def _check(self, loan: Loan, target: str, actor: str | None) -> None:
        current = loan.status
        ctx = {"loan_id": loan.loan_id, "from_status": current, "to_status": target}

        if target == CANCELLED:
            if current != PENDING:
                raise NotCancellable("only pending loans can be cancelled", **ctx)
            if actor is None or actor != loan.user_id:
                raise NotCancellable("only the loan owner can cancel", **ctx)
            return
        if target == REPAID and current not in (APPROVED, FUNDED):
            raise NotRepayable("loan is not in a repayable state", **ctx)
        if not is_allowed(current, target):
            raise IllegalTransition(f"{current} -> {target} is not allowed", **ctx)

    def _values(self, loan: Loan, target: str, payload: dict, now: datetime) -> dict:
        values: dict[str, Any] = {}
        if target in (APPROVED, FUNDED, REJECTED):
            _set(values, "partner_order_id", payload.get("partner_order_id"))
            _set(values, "transfer_id", payload.get("transfer_id"))
            _set(values, "transfer_amount", payload.get("transfer_amount"))
            _set(values, "partner_note", payload.get("note"))
            if payload.get("transfer_id") is not None:
                values["transferred_at"] = as_utc(payload.get("transferred_at")) or now
            if payload.get("bank_details"):
                values["bank_details"] = {**(loan.bank_details or {}), **payload["bank_details"]}
        elif target == REPAID:
            amt = payload.get("repaid_amount")
            if amt is None or amt < 0:
                raise InvalidAmount("repaid amount must be non-negative", repaid_amount=amt)
            values.update(
                repaid_amount=amt,
                repaid_at=as_utc(payload.get("repaid_at")) or now,
                repayment_confirmed=True,
                repayment_confirmed_at=now,
                repayment_confirmation_id=payload.get("confirmation_id"),
            )
        elif target == LIQUIDATED:
            _set(values, "liquidation_price", payload.get("liquidation_price"))
            _set(values, "liquidation_ref", payload.get("liquidation_ref"))
            values["liquidated_at"] = as_utc(payload.get("liquidated_at")) or now
        elif target == CANCELLED:
            values["cancelled_at"] = now
        return values

    async def _write(self, s: AsyncSession, loan: Loan, expected: str, values: dict) -> Loan:
        res = await s.execute(
            update(Loan)
            .where(Loan.id == loan.id, Loan.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            loan_id = loan.loan_id
            await s.rollback()
            raise IllegalTransition(
                "loan status changed concurrently",
                loan_id=loan_id,
                from_status=expected,
                to_status=values.get("status", expected),
            )
        await s.commit()
        await s.refresh(loan)
        return loan

    async def transition(self, loan_id: str, target: str, payload: dict | None = None, *, actor: str | None = None) -> Loan:
        if target not in STATUSES:
            raise IllegalTransition(f"unknown status {target}", loan_id=loan_id, to_status=target)
        payload = dict(payload or {})

        async with self._sessions() as s:
            loan = await self._load(s, loan_id)
            current = loan.status
            self._check(loan, target, actor)

            now = self.clock()
            values = self._values(loan, target, payload, now)
            values.update(status=target, updated_at=now)
            loan = await self._write(s, loan, current, values)

        logger.info("loan %s: %s -> %s (actor=%s)", loan_id, current, target, actor or "partner")
        return loan

    async def cancel(self, loan_id: str, user_id: str) -> Loan:
        return await self.transition(loan_id, CANCELLED, actor=user_id)

    async def update_status(
        self,
        loan_id: str,
        status: str,
        *,
        partner_order_id: str | None = None,
        transfer_id: str | None = None,
        note: str | None = None,
    ) -> Loan:
        if status not in PARTNER_STATUSES:
            raise IllegalTransition(f"partner cannot set {status}", loan_id=loan_id, to_status=status)
        return await self.transition(
            loan_id,
            status,
            {"partner_order_id": partner_order_id, "transfer_id": transfer_id, "note": note},
        )

    async def confirm_repayment(
        self,
        loan_id: str,
        repaid_amount: Decimal,
        confirmation_id: str,
        repaid_at: datetime | None = None,
    ) -> Loan:
        return await self.transition(
            loan_id,
            REPAID,
            {"repaid_amount": repaid_amount, "confirmation_id": confirmation_id, "repaid_at": repaid_at},
        )

    async def record_liquidation(self, loan_id: str, liquidation_price: Decimal, liquidation_ref: str | None = None) -> Loan:
        return await self.transition(
            loan_id,
            LIQUIDATED,
            {"liquidation_price": liquidation_price, "liquidation_ref": liquidation_ref},
        )

    async def record_transfer(
        self,
        loan_id: str,
        transfer_id: str,
        transfer_amount: Decimal,
        bank_details: dict | None = None,
        transferred_at: datetime | None = None,
    ) -> Loan:
        """A completed bank transfer funds a pending loan.

        Approved or funded loans keep their status and only get the transfer
        references attached.
        """
        payload = {
            "transfer_id": transfer_id,
            "transfer_amount": transfer_amount,
            "bank_details": bank_details,
            "transferred_at": transferred_at,
        }
        async with self._sessions() as s:
            loan = await self._load(s, loan_id)
            current = loan.status
            if current == PENDING:
                target = FUNDED
            elif current in (APPROVED, FUNDED):
                target = current
            else:
                raise IllegalTransition(
                    "transfer reported for a closed loan",
                    loan_id=loan_id,
                    from_status=current,
                    to_status=FUNDED,
                )
            now = self.clock()
            values = self._values(loan, FUNDED, payload, now)
            values.update(status=target, updated_at=now)
            loan = await self._write(s, loan, current, values)

        logger.info("bank transfer %s recorded for loan %s: %s %s (%s -> %s)", transfer_id, loan_id, transfer_amount, loan.loan_currency, current, target)
        return loan

    async def list_pending(self, page: int = 1, limit: int = 20) -> Page:
        return await self._page(select(Loan).where(Loan.status == PENDING), page, limit)

    async def list_for_user(self, user_id: str, status: str | None = None, page: int = 1, limit: int = 10) -> Page:
        q = select(Loan).where(Loan.user_id == user_id)
        if status:
            q = q.where(Loan.status == status)
        return await self._page(q, page, limit)

    async def _page(self, q, page: int, limit: int) -> Page:
        page = max(1, int(page))
        limit = max(1, int(limit))
        async with self._sessions() as s:
            total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
            rows = (
                await s.execute(
                    q.order_by(Loan.created_at.desc(), Loan.id.desc()).limit(limit).offset((page - 1) * limit)
                )
            ).scalars().all()
        return Page(items=list(rows), page=page, limit=limit, total=int(total))

    async def aggregate_by_status(self, user_id: str) -> dict[str, StatusTotals]:
        async with self._sessions() as s:
            rows = (
                await s.execute(
                    select(
                        Loan.status,
                        func.count(Loan.id),
                        func.coalesce(func.sum(Loan.amount), 0),
                        func.coalesce(func.sum(Loan.amount_collateral_equiv), 0),
                        func.coalesce(func.sum(Loan.collateral_amount), 0),
                    )
                    .where(Loan.user_id == user_id)
                    .group_by(Loan.status)
                )
            ).all()

        sc = self.scales
        out: dict[str, StatusTotals] = {}
        for status, count, amount, equiv, collateral in rows:
            out[status] = StatusTotals(
                count=int(count),
                amount=Decimal(str(amount)).quantize(sc.loan_unit),
                amount_collateral_equiv=Decimal(str(equiv)).quantize(sc.collateral_unit),
                collateral=Decimal(str(collateral)).quantize(sc.collateral_unit),
            )
        return out


def open_totals(by_status: dict[str, StatusTotals]) -> StatusTotals:
    t = StatusTotals()
    for status in OPEN_STATUSES:
        st = by_status.get(status)
        if st is None:
            continue
        t.count += st.count
        t.amount += st.amount
        t.amount_collateral_equiv += st.amount_collateral_equiv
        t.collateral += st.collateral
    return t
