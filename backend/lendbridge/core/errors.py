"""Error taxonomy shared by the services and the HTTP layer.

Every failure the core reports is a ``LendingError`` with a machine-readable
``kind``, a ``category`` and the numeric context in ``details`` so a client
can explain a rejection (required vs. available collateral, shortfall, ...).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any


def _plain(v: Any) -> Any:
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, dict):
        return {k: _plain(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_plain(x) for x in v]
    return v


class LendingError(Exception):
    kind = "lending_error"
    category = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.kind.replace("_", " ")
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "detail": self.kind,
            "category": self.category,
            "message": self.message,
            "details": _plain(self.details),
            "retryable": self.retryable,
        }


# validation

class ValidationFailed(LendingError):
    kind = "validation_failed"
    category = "validation"
    status_code = 400


class InvalidAmount(ValidationFailed):
    kind = "invalid_amount"


class LoanAmountOutOfRange(ValidationFailed):
    kind = "loan_amount_out_of_range"


class InvalidRate(ValidationFailed):
    kind = "invalid_rate"


# admission

class AdmissionRejected(LendingError):
    category = "admission"
    status_code = 400


class InsufficientBalance(AdmissionRejected):
    kind = "insufficient_balance"


class InsufficientCollateral(AdmissionRejected):
    kind = "insufficient_collateral"


class ExceedsBorrowingCapacity(AdmissionRejected):
    kind = "exceeds_borrowing_capacity"


class InsufficientCollateralAfterWithdrawal(AdmissionRejected):
    kind = "insufficient_collateral_after_withdrawal"

    @property
    def shortfall(self) -> Decimal:
        return self.details["shortfall"]


class AccountNotActive(AdmissionRejected):
    kind = "account_not_active"


class TransactionNotConfirmed(AdmissionRejected):
    kind = "transaction_not_confirmed"


# external dependencies

class DependencyFailed(LendingError):
    category = "dependency"
    status_code = 503
    retryable = True


class ContractCallFailed(DependencyFailed):
    kind = "contract_call_failed"
    status_code = 502


class ContractTimeout(ContractCallFailed):
    kind = "contract_timeout"
    status_code = 504


class OutcomeUnknown(DependencyFailed):
    kind = "outcome_unknown"
    status_code = 504


class RateSourceUnavailable(DependencyFailed):
    kind = "rate_source_unavailable"
    status_code = 502


class InvalidRateResponse(RateSourceUnavailable):
    kind = "invalid_rate_response"


class NoRateAvailable(DependencyFailed):
    kind = "no_rate_available"


class RateStale(DependencyFailed):
    kind = "rate_stale"


# state machine

class StateError(LendingError):
    category = "state"
    status_code = 409


class IllegalTransition(StateError):
    kind = "illegal_transition"


class NotRepayable(IllegalTransition):
    kind = "not_repayable"


class NotCancellable(IllegalTransition):
    kind = "not_cancellable"


# authorization / lookup

class Unauthorized(LendingError):
    kind = "unauthorized"
    category = "authorization"
    status_code = 401


class AdminOnly(LendingError):
    kind = "admin_only"
    category = "authorization"
    status_code = 403


class NotFound(LendingError):
    kind = "not_found"
    category = "not_found"
    status_code = 404


class LoanNotFound(NotFound):
    kind = "loan_not_found"


class RateNotFound(NotFound):
    kind = "rate_not_found"
