from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from lendbridge.api.deps import current_user, require_wallet, services
from lendbridge.models.loan import STATUSES
from lendbridge.schemas.common import Ok, PageOut
from lendbridge.schemas.loan import (
    AccountOut,
    DebtSummaryOut,
    LoanOut,
    LoanRequestIn,
    LoanRequestOut,
    QuoteOut,
    ReceiptOut,
    StatusTotalsOut,
)
from lendbridge.services.container import Services

router = APIRouter(prefix="/loans", tags=["loans"])

def _page_out(p) -> PageOut[LoanOut]:
    return PageOut[LoanOut](
        items=[LoanOut.model_validate(x) for x in p.items],
        page=p.page,
        limit=p.limit,
        total=p.total,
        pages=p.pages,
    )

@router.get("/quote", response_model=Ok[QuoteOut])
async def quote(collateral_amount: Decimal = Query(..., gt=0), sv: Services = Depends(services), u=Depends(current_user)):
    q = await sv.lending.quote(collateral_amount)
    cfg = sv.settings
    return Ok(
        data=QuoteOut(
            collateral_amount=q.collateral_amount,
            collateral_currency=cfg.collateral_currency,
            max_borrowable=q.max_borrowable,
            loan_currency=cfg.loan_currency,
            min_loan_amount=q.min_loan_amount,
            ltv_percent=q.ltv_percent,
            exchange_rate=q.rate.rate,
            rate_source=q.rate.source,
            rate_created_at=q.rate.created_at,
            rate_age_minutes=int(q.rate_age.total_seconds() // 60),
            is_stale=q.is_stale,
        )
    )

@router.post("/request", response_model=Ok[LoanRequestOut])
async def request_loan(body: LoanRequestIn, sv: Services = Depends(services), u=Depends(require_wallet)):
    res = await sv.lending.request_loan(
        u["sub"],
        u["wallet"],
        body.loan_amount,
        bank_details=body.bank_details.model_dump(exclude_none=True) if body.bank_details else None,
        collateral_amount=body.collateral_amount,
    )
    return Ok(
        data=LoanRequestOut(
            loan=LoanOut.model_validate(res.loan),
            required_collateral=res.required_collateral,
            account=AccountOut.model_validate(res.account),
            contract_transaction=ReceiptOut.model_validate(res.receipt) if res.receipt else None,
            verified_after_timeout=res.verified_after_timeout,
        )
    )

@router.get("", response_model=Ok[PageOut[LoanOut]])
async def list_loans(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sv: Services = Depends(services),
    u=Depends(current_user),
):
    if status is not None and status not in STATUSES:
        status = None
    p = await sv.loans.list_for_user(u["sub"], status=status, page=page, limit=limit)
    return Ok(data=_page_out(p))

@router.get("/summary/debt", response_model=Ok[DebtSummaryOut])
async def debt_summary(sv: Services = Depends(services), u=Depends(current_user)):
    d = await sv.lending.debt_summary(u["sub"], u.get("wallet"))
    return Ok(
        data=DebtSummaryOut(
            by_status={k: StatusTotalsOut.model_validate(v) for k, v in d.by_status.items()},
            open=StatusTotalsOut.model_validate(d.open),
            collateral_balance=d.collateral_balance,
            available_collateral=d.available_collateral,
            available_to_borrow=d.available_to_borrow,
            loan_currency=sv.settings.loan_currency,
            collateral_currency=sv.settings.collateral_currency,
        )
    )

@router.get("/{loan_id}", response_model=Ok[LoanOut])
async def get_loan(loan_id: str, sv: Services = Depends(services), u=Depends(current_user)):
    loan = await sv.loans.get(loan_id, user_id=u["sub"])
    return Ok(data=LoanOut.model_validate(loan))

@router.put("/{loan_id}/cancel", response_model=Ok[LoanOut])
async def cancel_loan(loan_id: str, sv: Services = Depends(services), u=Depends(current_user)):
    await sv.loans.get(loan_id, user_id=u["sub"])
    loan = await sv.loans.cancel(loan_id, u["sub"])
    return Ok(data=LoanOut.model_validate(loan))
