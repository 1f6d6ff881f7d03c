from decimal import Decimal, getcontext
from random import Random

import pytest

from lendbridge.core.errors import (
    InsufficientCollateralAfterWithdrawal,
    InvalidAmount,
    InvalidRate,
    ValidationFailed,
)
from lendbridge.services import ltv
from lendbridge.services.ltv import Scales

getcontext().prec = 60

RATE = Decimal("0.0025")
HALF = Decimal("0.5")


def _rand_dec(rng: Random, lo: int, hi: int, places: int) -> Decimal:
    return Decimal(rng.randint(lo * 10**places, hi * 10**places)).scaleb(-places)


def test_max_borrowable_scenario():
    assert ltv.max_borrowable(Decimal("1000"), RATE, HALF) == Decimal("1.25")


def test_required_collateral_scenarios():
    assert ltv.required_collateral(Decimal("1.00"), RATE, HALF) == Decimal("800")
    assert ltv.required_collateral(Decimal("1.30"), RATE, HALF) == Decimal("1040")
    assert ltv.required_collateral(Decimal("100"), RATE, HALF) == Decimal("80000")


def test_available_to_borrow_after_partial_loan():
    assert ltv.available_to_borrow(Decimal("1000"), Decimal("1.00"), RATE, HALF) == Decimal("0.25")


def test_available_to_borrow_never_negative():
    out = ltv.available_to_borrow(Decimal("1000"), Decimal("5.00"), RATE, HALF)
    assert out == Decimal("0")
    assert out.as_tuple().exponent == -2


def test_withdrawal_below_requirement_reports_shortfall():
    with pytest.raises(InsufficientCollateralAfterWithdrawal) as ei:
        ltv.headroom_after_withdrawal(Decimal("80000"), Decimal("100"), Decimal("1"), RATE, HALF)

    err = ei.value
    assert err.shortfall == Decimal("1")
    assert err.details["required_collateral"] == Decimal("80000")
    assert err.details["remaining_after_withdrawal"] == Decimal("79999")
    assert err.details["current_debt"] == Decimal("100")


def test_withdrawal_exactly_at_requirement_is_admitted():
    assert ltv.headroom_after_withdrawal(Decimal("100000"), Decimal("100"), Decimal("20000"), RATE, HALF) == Decimal("0")


def test_withdrawal_without_debt_only_needs_balance():
    assert ltv.headroom_after_withdrawal(Decimal("50"), Decimal("0"), Decimal("50"), RATE, HALF) == Decimal("0")


def test_max_borrowable_floors_to_loan_precision():
    # 1 * 0.33333333 * 0.75 = 0.2499999975
    assert ltv.max_borrowable(Decimal("1"), Decimal("0.33333333"), Decimal("0.75")) == Decimal("0.24")


def test_required_collateral_ceils_to_collateral_precision():
    # 0.01 / 2.25 = 0.00444...
    assert ltv.required_collateral(Decimal("0.01"), Decimal("3"), Decimal("0.75")) == Decimal("0.004445")


def test_extra_digits_are_normalised_conservatively():
    # balance floors, loan amount ceils
    assert ltv.max_borrowable(Decimal("1000.0000009"), RATE, HALF) == Decimal("1.25")
    assert ltv.required_collateral(Decimal("1.001"), RATE, HALF) == Decimal("808")


def test_rate_is_floored_to_eight_places():
    assert ltv.normalize_rate("6.961234567") == Decimal("6.96123456")
    assert ltv.normalize_rate(6.96) == Decimal("6.96000000")


@pytest.mark.parametrize("rate", ["0", "-1", "0.000000001", "NaN"])
def test_invalid_rates_rejected(rate):
    with pytest.raises(InvalidRate):
        ltv.max_borrowable(Decimal("1000"), Decimal(rate), HALF)


@pytest.mark.parametrize("ratio", ["0", "-0.1", "1.01"])
def test_invalid_ltv_rejected(ratio):
    with pytest.raises(ValidationFailed):
        ltv.required_collateral(Decimal("1"), RATE, Decimal(ratio))


def test_negative_amounts_rejected():
    with pytest.raises(InvalidAmount):
        ltv.max_borrowable(Decimal("-1"), RATE, HALF)
    with pytest.raises(InvalidAmount):
        ltv.headroom_after_withdrawal(Decimal("10"), Decimal("0"), Decimal("-1"), RATE, HALF)


def test_collateral_equivalent_and_utilization():
    assert ltv.collateral_equivalent(Decimal("100"), Decimal("6.96")) == Decimal("14.367816")
    assert ltv.utilization_percent(Decimal("0.50"), Decimal("1.25")) == Decimal("40.00")
    assert ltv.utilization_percent(Decimal("1"), Decimal("0")) == Decimal("0.00")


def test_within_tolerance_uses_unit_count():
    unit = Decimal("0.01")
    assert ltv.within_tolerance(Decimal("1.25"), Decimal("1.26"), unit)
    assert not ltv.within_tolerance(Decimal("1.25"), Decimal("1.27"), unit)
    assert ltv.within_tolerance(Decimal("1.25"), Decimal("1.27"), unit, units=2)


def test_custom_scales():
    sc = Scales(collateral_decimals=18, loan_decimals=0, rate_decimals=4)
    assert ltv.max_borrowable(Decimal("3"), Decimal("1.99999"), Decimal("0.5"), sc) == Decimal("2")
    assert ltv.required_collateral(Decimal("1"), Decimal("3"), Decimal("1"), sc) == Decimal("0.333333333333333334")


def test_randomized_rounding_invariants():
    rng = Random(20260302)
    for _ in range(400):
        balance = _rand_dec(rng, 0, 2_000_000, 6)
        rate = _rand_dec(rng, 0, 50, 8) + Decimal("0.00000001")
        ratio = Decimal(rng.randint(1, 100)) / 100
        amount = _rand_dec(rng, 0, 100_000, 2)

        mb = ltv.max_borrowable(balance, rate, ratio)
        exact = balance * rate * ratio
        assert mb <= exact
        assert exact - mb < Decimal("0.01")

        req = ltv.required_collateral(amount, rate, ratio)
        assert req >= amount / (rate * ratio)

        # borrowing the computed max never demands more than the balance
        assert ltv.required_collateral(mb, rate, ratio) <= balance
