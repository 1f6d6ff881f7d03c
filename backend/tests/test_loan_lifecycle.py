import asyncio
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from lendbridge.core.errors import (
    ExceedsBorrowingCapacity,
    IllegalTransition,
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
    PENDING,
    REJECTED,
    REPAID,
    STATUSES,
    TERMINAL_STATUSES,
)
from lendbridge.services.loans import ALLOWED_TRANSITIONS, is_allowed, new_loan_id, open_totals

RATE = Decimal("0.0025")
HALF = Decimal("0.5")
OWNER = "user-1"

# how to reach each status from a fresh loan
PATHS = {
    PENDING: [],
    APPROVED: [APPROVED],
    FUNDED: [FUNDED],
    REJECTED: [REJECTED],
    CANCELLED: [CANCELLED],
    REPAID: [APPROVED, REPAID],
    LIQUIDATED: [FUNDED, LIQUIDATED],
}


def _payload(target: str) -> dict:
    if target == REPAID:
        return {"repaid_amount": Decimal("1.00"), "confirmation_id": "rp-1"}
    if target == LIQUIDATED:
        return {"liquidation_price": Decimal("0.0020")}
    if target in (APPROVED, FUNDED):
        return {"partner_order_id": "po-1"}
    return {}


async def _mk_loan(loans, user=OWNER, amount="1.00", collateral="1000", bank_details=None):
    return await loans.create(user, Decimal(collateral), Decimal(amount), RATE, HALF, bank_details, wallet="0xabc")


async def _drive(loans, loan_id: str, status: str):
    for step in PATHS[status]:
        await loans.transition(loan_id, step, _payload(step), actor=OWNER)


@pytest.mark.asyncio
async def test_create_inserts_pending_loan(loans, clock):
    loan = await _mk_loan(loans, bank_details={"bank_name": "BNB", "account_number": "100200"})

    assert loan.status == PENDING
    assert re.fullmatch(r"LOAN-[0-9A-F]+-[0-9A-F]{12}", loan.loan_id)
    assert loan.due_date == clock() + timedelta(days=30)
    assert loan.amount == Decimal("1.00")
    assert loan.collateral_amount == Decimal("1000")
    assert loan.amount_collateral_equiv == Decimal("400")
    assert loan.exchange_rate == Decimal("0.0025")
    assert loan.collateral_currency == "USDT"
    assert loan.loan_currency == "BOB"
    assert loan.bank_details["account_number"] == "100200"

    again = await loans.get(loan.loan_id, user_id=OWNER)
    assert again.id == loan.id


@pytest.mark.asyncio
async def test_create_rejects_amount_over_max_borrowable(loans):
    with pytest.raises(ExceedsBorrowingCapacity) as ei:
        await _mk_loan(loans, amount="1.30")
    assert ei.value.details["max_borrowable"] == Decimal("1.25")


@pytest.mark.asyncio
async def test_create_rejects_non_positive_amount(loans):
    with pytest.raises(InvalidAmount):
        await _mk_loan(loans, amount="0")


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_ids(loans):
    created = await asyncio.gather(*[_mk_loan(loans, amount="0.01") for _ in range(40)])
    assert len({x.loan_id for x in created}) == 40


def test_new_loan_ids_do_not_collide():
    assert len({new_loan_id() for _ in range(5000)}) == 5000


@pytest.mark.asyncio
@pytest.mark.parametrize("current", STATUSES)
async def test_transition_table_is_total_and_closed(loans, current):
    for target in STATUSES:
        loan = await _mk_loan(loans)
        await _drive(loans, loan.loan_id, current)

        if is_allowed(current, target):
            out = await loans.transition(loan.loan_id, target, _payload(target), actor=OWNER)
            assert out.status == target
        else:
            with pytest.raises(IllegalTransition):
                await loans.transition(loan.loan_id, target, _payload(target), actor=OWNER)
            assert (await loans.get(loan.loan_id)).status == current


def test_terminal_states_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert status not in ALLOWED_TRANSITIONS
    assert not is_allowed(APPROVED, FUNDED)


@pytest.mark.asyncio
async def test_allowed_transition_commits_exactly_once_under_race(loans):
    loan = await _mk_loan(loans)
    await loans.transition(loan.loan_id, APPROVED, actor=OWNER)

    results = await asyncio.gather(
        loans.confirm_repayment(loan.loan_id, Decimal("1.00"), "rp-a"),
        loans.confirm_repayment(loan.loan_id, Decimal("1.00"), "rp-b"),
        return_exceptions=True,
    )

    ok = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(ok) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], IllegalTransition)

    stored = await loans.get(loan.loan_id)
    assert stored.status == REPAID
    assert stored.repayment_confirmation_id == ok[0].repayment_confirmation_id


@pytest.mark.asyncio
async def test_repayment_records_amount_time_and_confirmation(loans, clock):
    loan = await _mk_loan(loans)
    await loans.update_status(loan.loan_id, FUNDED, partner_order_id="po-7", transfer_id="tr-7")

    paid_at = clock() + timedelta(days=10)
    out = await loans.confirm_repayment(loan.loan_id, Decimal("1.00"), "rp-77", paid_at)

    assert out.status == REPAID
    assert out.repaid_amount == Decimal("1.00")
    assert out.repaid_at == paid_at
    assert out.repayment_confirmed is True
    assert out.repayment_confirmation_id == "rp-77"
    assert out.partner_order_id == "po-7"


@pytest.mark.asyncio
async def test_partner_times_with_offset_are_stored_as_utc(loans):
    loan = await _mk_loan(loans)
    la_paz = timezone(timedelta(hours=-4))

    funded = await loans.record_transfer(loan.loan_id, "tr-5", Decimal("1.00"), transferred_at=datetime(2026, 3, 2, 10, 0, tzinfo=la_paz))
    assert funded.transferred_at == datetime(2026, 3, 2, 14, 0)

    out = await loans.confirm_repayment(loan.loan_id, Decimal("1.00"), "rp-5", datetime(2026, 3, 20, 9, 30, tzinfo=la_paz))
    assert out.repaid_at == datetime(2026, 3, 20, 13, 30)


@pytest.mark.asyncio
async def test_repaying_pending_loan_is_not_repayable(loans):
    loan = await _mk_loan(loans)
    with pytest.raises(NotRepayable):
        await loans.confirm_repayment(loan.loan_id, Decimal("1.00"), "rp-1")


@pytest.mark.asyncio
async def test_owner_cancels_pending_loan(loans, clock):
    loan = await _mk_loan(loans)
    out = await loans.cancel(loan.loan_id, OWNER)
    assert out.status == CANCELLED
    assert out.cancelled_at == clock()


@pytest.mark.asyncio
async def test_funded_loan_can_no_longer_be_cancelled(loans):
    loan = await _mk_loan(loans)
    await loans.update_status(loan.loan_id, FUNDED)
    with pytest.raises(NotCancellable):
        await loans.cancel(loan.loan_id, OWNER)


@pytest.mark.asyncio
async def test_only_owner_can_cancel(loans):
    loan = await _mk_loan(loans)
    with pytest.raises(NotCancellable):
        await loans.cancel(loan.loan_id, "someone-else")
    assert (await loans.get(loan.loan_id)).status == PENDING


@pytest.mark.asyncio
async def test_rejection_keeps_partner_note(loans):
    loan = await _mk_loan(loans)
    out = await loans.update_status(loan.loan_id, REJECTED, note="KYC mismatch")
    assert out.status == REJECTED
    assert out.partner_note == "KYC mismatch"


@pytest.mark.asyncio
async def test_partner_cannot_push_arbitrary_status(loans):
    loan = await _mk_loan(loans)
    with pytest.raises(IllegalTransition):
        await loans.update_status(loan.loan_id, REPAID)


@pytest.mark.asyncio
async def test_transfer_funds_pending_loan_and_merges_bank_details(loans, clock):
    loan = await _mk_loan(loans, bank_details={"bank_name": "BNB", "account_number": "100200"})
    out = await loans.record_transfer(loan.loan_id, "tr-1", Decimal("1.00"), {"account_holder": "Ana"})

    assert out.status == FUNDED
    assert out.transfer_id == "tr-1"
    assert out.transfer_amount == Decimal("1.00")
    assert out.transferred_at == clock()
    assert out.bank_details == {"bank_name": "BNB", "account_number": "100200", "account_holder": "Ana"}


@pytest.mark.asyncio
async def test_transfer_on_approved_loan_attaches_refs_only(loans):
    loan = await _mk_loan(loans)
    await loans.update_status(loan.loan_id, APPROVED, partner_order_id="po-1")
    out = await loans.record_transfer(loan.loan_id, "tr-2", Decimal("1.00"))
    assert out.status == APPROVED
    assert out.transfer_id == "tr-2"


@pytest.mark.asyncio
async def test_transfer_on_closed_loan_is_illegal(loans):
    loan = await _mk_loan(loans)
    await loans.update_status(loan.loan_id, REJECTED)
    with pytest.raises(IllegalTransition):
        await loans.record_transfer(loan.loan_id, "tr-3", Decimal("1.00"))


@pytest.mark.asyncio
async def test_liquidation_records_price(loans):
    loan = await _mk_loan(loans)
    await loans.update_status(loan.loan_id, FUNDED)
    out = await loans.record_liquidation(loan.loan_id, Decimal("0.0019"), "liq-1")
    assert out.status == LIQUIDATED
    assert out.liquidation_price == Decimal("0.0019")
    assert out.liquidated_at is not None


@pytest.mark.asyncio
async def test_unknown_loan(loans):
    with pytest.raises(LoanNotFound):
        await loans.transition("LOAN-0-000000000000", APPROVED)
    loan = await _mk_loan(loans)
    with pytest.raises(LoanNotFound):
        await loans.get(loan.loan_id, user_id="intruder")


@pytest.mark.asyncio
async def test_pending_queue_is_newest_first_and_paginated(loans, clock):
    made = []
    for _ in range(5):
        made.append(await _mk_loan(loans, amount="0.10"))
        clock.advance(minutes=1)
    await loans.update_status(made[2].loan_id, APPROVED)

    first = await loans.list_pending(page=1, limit=3)
    assert first.total == 4
    assert first.pages == 2
    assert [x.loan_id for x in first.items] == [made[4].loan_id, made[3].loan_id, made[1].loan_id]

    second = await loans.list_pending(page=2, limit=3)
    assert [x.loan_id for x in second.items] == [made[0].loan_id]


@pytest.mark.asyncio
async def test_user_listing_filters_by_status(loans):
    a = await _mk_loan(loans, amount="0.10")
    await _mk_loan(loans, amount="0.10")
    await _mk_loan(loans, user="user-2", amount="0.10")
    await loans.update_status(a.loan_id, FUNDED)

    everything = await loans.list_for_user(OWNER)
    assert everything.total == 2
    funded = await loans.list_for_user(OWNER, status=FUNDED)
    assert [x.loan_id for x in funded.items] == [a.loan_id]


@pytest.mark.asyncio
async def test_aggregate_by_status_sums_amounts(loans):
    a = await _mk_loan(loans, amount="1.00")
    await _mk_loan(loans, amount="0.25", collateral="200")
    c = await _mk_loan(loans, amount="0.50", collateral="400")
    await loans.update_status(a.loan_id, FUNDED)
    await loans.cancel(c.loan_id, OWNER)

    by_status = await loans.aggregate_by_status(OWNER)
    assert set(by_status) == {PENDING, FUNDED, CANCELLED}
    assert by_status[FUNDED].amount == Decimal("1.00")
    assert by_status[PENDING].collateral == Decimal("200")
    assert by_status[CANCELLED].count == 1

    totals = open_totals(by_status)
    assert totals.count == 2
    assert totals.amount == Decimal("1.25")
    assert totals.collateral == Decimal("1200")
    assert totals.amount_collateral_equiv == Decimal("500")
