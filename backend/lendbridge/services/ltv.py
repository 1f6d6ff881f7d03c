"""Collateral / loan-to-value arithmetic.

All amounts are ``Decimal`` with an explicit scale per currency: the
collateral currency at its token precision, the loan currency at its own, and
the exchange rate (loan-currency units per collateral unit) at a fixed
8-decimal precision. Rounding always favours the lender: borrow limits are
floored, collateral requirements are ceiled, and inputs carrying more digits
than their currency supports are normalised in the same conservative
direction.

These functions are the only place this arithmetic lives. Anything that
admits or rejects a balance-changing call must go through them.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, localcontext

from lendbridge.core.errors import (
    InsufficientCollateralAfterWithdrawal,
    InvalidAmount,
    InvalidRate,
    ValidationFailed,
)

_PREC = 60
ZERO = Decimal("0")


@dataclass(frozen=True)
class Scales:
    collateral_decimals: int = 6
    loan_decimals: int = 2
    rate_decimals: int = 8

    @property
    def collateral_unit(self) -> Decimal:
        return Decimal(1).scaleb(-self.collateral_decimals)

    @property
    def loan_unit(self) -> Decimal:
        return Decimal(1).scaleb(-self.loan_decimals)

    @property
    def rate_unit(self) -> Decimal:
        return Decimal(1).scaleb(-self.rate_decimals)


DEFAULT_SCALES = Scales()


def _dec(v) -> Decimal:
    if isinstance(v, Decimal):
        return v
    if isinstance(v, float):
        # shortest repr, not the binary expansion
        return Decimal(repr(v))
    return Decimal(str(v))


def normalize_rate(rate, scales: Scales = DEFAULT_SCALES) -> Decimal:
    r = _dec(rate)
    if not r.is_finite() or r <= 0:
        raise InvalidRate("rate must be a positive number", rate=r)
    with localcontext() as ctx:
        ctx.prec = _PREC
        q = r.quantize(scales.rate_unit, rounding=ROUND_FLOOR)
    if q <= 0:
        raise InvalidRate(f"rate below {scales.rate_unit}", rate=r)
    return q


def _ltv(ltv_ratio) -> Decimal:
    v = _dec(ltv_ratio)
    if not v.is_finite() or v <= 0 or v > 1:
        raise ValidationFailed("ltv_ratio must be in (0, 1]", ltv_ratio=v)
    return v


def _amount(v, unit: Decimal, rounding: str, field: str) -> Decimal:
    d = _dec(v)
    if not d.is_finite() or d < 0:
        raise InvalidAmount(f"{field} must be a non-negative number", **{field: d})
    with localcontext() as ctx:
        ctx.prec = _PREC
        return d.quantize(unit, rounding=rounding)


def max_borrowable(balance, rate, ltv_ratio, scales: Scales = DEFAULT_SCALES) -> Decimal:
    """balance x rate x ltv, floored to the loan currency precision."""
    b = _amount(balance, scales.collateral_unit, ROUND_FLOOR, "balance")
    r = normalize_rate(rate, scales)
    ltv = _ltv(ltv_ratio)
    with localcontext() as ctx:
        ctx.prec = _PREC
        return (b * r * ltv).quantize(scales.loan_unit, rounding=ROUND_FLOOR)


def required_collateral(loan_amount, rate, ltv_ratio, scales: Scales = DEFAULT_SCALES) -> Decimal:
    """loan_amount / (rate x ltv), ceiled to the collateral precision."""
    a = _amount(loan_amount, scales.loan_unit, ROUND_CEILING, "loan_amount")
    r = normalize_rate(rate, scales)
    ltv = _ltv(ltv_ratio)
    with localcontext() as ctx:
        ctx.prec = _PREC
        return (a / (r * ltv)).quantize(scales.collateral_unit, rounding=ROUND_CEILING)


def available_to_borrow(balance, existing_debt, rate, ltv_ratio, scales: Scales = DEFAULT_SCALES) -> Decimal:
    mb = max_borrowable(balance, rate, ltv_ratio, scales)
    debt = _amount(existing_debt, scales.loan_unit, ROUND_CEILING, "existing_debt")
    return max(ZERO.quantize(scales.loan_unit), mb - debt)


def headroom_after_withdrawal(balance, debt, withdraw_amount, rate, ltv_ratio, scales: Scales = DEFAULT_SCALES) -> Decimal:
    """Collateral left over after the withdrawal once the debt is covered.

    Raises InsufficientCollateralAfterWithdrawal with the shortfall when the
    remaining balance cannot back the outstanding debt.
    """
    b = _amount(balance, scales.collateral_unit, ROUND_FLOOR, "balance")
    w = _amount(withdraw_amount, scales.collateral_unit, ROUND_CEILING, "withdraw_amount")
    d = _amount(debt, scales.loan_unit, ROUND_CEILING, "debt")

    remaining = b - w
    required = required_collateral(d, rate, ltv_ratio, scales) if d > 0 else ZERO.quantize(scales.collateral_unit)

    if required > remaining:
        raise InsufficientCollateralAfterWithdrawal(
            "withdrawal would leave insufficient collateral for existing debt",
            current_balance=b,
            requested_withdrawal=w,
            remaining_after_withdrawal=remaining,
            required_collateral=required,
            current_debt=d,
            shortfall=required - remaining,
        )
    return remaining - required


def collateral_equivalent(loan_amount, rate, scales: Scales = DEFAULT_SCALES) -> Decimal:
    """Loan amount expressed in collateral units (valuation only, not a limit)."""
    a = _dec(loan_amount)
    r = normalize_rate(rate, scales)
    with localcontext() as ctx:
        ctx.prec = _PREC
        return (a / r).quantize(scales.collateral_unit, rounding=ROUND_HALF_UP)


def utilization_percent(debt, max_borrow) -> Decimal:
    d = _dec(debt)
    m = _dec(max_borrow)
    if m <= 0:
        return Decimal("0.00")
    with localcontext() as ctx:
        ctx.prec = _PREC
        return (d / m * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def within_tolerance(a, b, unit: Decimal, units: int = 1) -> bool:
    return abs(_dec(a) - _dec(b)) <= unit * units
