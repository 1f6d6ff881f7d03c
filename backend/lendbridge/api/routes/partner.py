from fastapi import APIRouter, Depends, Query

from lendbridge.api.deps import require_partner, services
from lendbridge.schemas.common import Ok, PageOut
from lendbridge.schemas.loan import LoanOut
from lendbridge.schemas.partner import HealthOut, LiquidationIn, RepaymentIn, StatusUpdateIn, TransferIn
from lendbridge.services.container import Services
from lendbridge.utils.timezone import utc_now

router = APIRouter(prefix="/partner", tags=["partner"])

@router.post("/loan/status", response_model=Ok[LoanOut])
async def update_status(body: StatusUpdateIn, sv: Services = Depends(services), p=Depends(require_partner)):
    loan = await sv.loans.update_status(
        body.loan_id,
        body.status,
        partner_order_id=body.partner_order_id,
        transfer_id=body.transfer_id,
        note=body.rejection_reason,
    )
    return Ok(data=LoanOut.model_validate(loan))

@router.post("/loan/repayment", response_model=Ok[LoanOut])
async def confirm_repayment(body: RepaymentIn, sv: Services = Depends(services), p=Depends(require_partner)):
    loan = await sv.loans.confirm_repayment(body.loan_id, body.repaid_amount, body.confirmation_id, body.repaid_at)
    return Ok(data=LoanOut.model_validate(loan))

@router.post("/loan/transfer", response_model=Ok[LoanOut])
async def record_transfer(body: TransferIn, sv: Services = Depends(services), p=Depends(require_partner)):
    loan = await sv.loans.record_transfer(
        body.loan_id,
        body.transfer_id,
        body.amount,
        bank_details=body.bank_details.model_dump(exclude_none=True) if body.bank_details else None,
        transferred_at=body.transferred_at,
    )
    return Ok(data=LoanOut.model_validate(loan))

@router.post("/loan/liquidation", response_model=Ok[LoanOut])
async def record_liquidation(body: LiquidationIn, sv: Services = Depends(services), p=Depends(require_partner)):
    loan = await sv.loans.record_liquidation(body.loan_id, body.liquidation_price, body.liquidation_ref)
    return Ok(data=LoanOut.model_validate(loan))

@router.get("/loans/pending", response_model=Ok[PageOut[LoanOut]])
async def pending_loans(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sv: Services = Depends(services),
    p=Depends(require_partner),
):
    pg = await sv.loans.list_pending(page=page, limit=limit)
    return Ok(
        data=PageOut[LoanOut](
            items=[LoanOut.model_validate(x) for x in pg.items],
            page=pg.page,
            limit=pg.limit,
            total=pg.total,
            pages=pg.pages,
        )
    )

@router.get("/health", response_model=Ok[HealthOut])
async def partner_health(p=Depends(require_partner)):
    return Ok(data=HealthOut(status="ok", service="partner-api", timestamp=utc_now()))
