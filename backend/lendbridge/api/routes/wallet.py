from fastapi import APIRouter, Depends

from lendbridge.api.deps import require_wallet, services
from lendbridge.schemas.common import Ok
from lendbridge.schemas.loan import AccountOut, ReceiptOut
from lendbridge.schemas.wallet import (
    BalanceOut,
    CapacityOut,
    DepositIn,
    LoanHistoryOut,
    MutationOut,
    TxStatusOut,
    WithdrawIn,
)
from lendbridge.services.container import Services

router = APIRouter(prefix="/wallet", tags=["wallet"])

def _mutation_out(res) -> MutationOut:
    return MutationOut(
        account=AccountOut.model_validate(res.account),
        contract_transaction=ReceiptOut.model_validate(res.receipt) if res.receipt else None,
        verified_after_timeout=res.verified_after_timeout,
    )

@router.get("/balance", response_model=Ok[BalanceOut])
async def balance(sv: Services = Depends(services), u=Depends(require_wallet)):
    b = await sv.lending.balances(u["wallet"])
    return Ok(
        data=BalanceOut(
            wallet_address=u["wallet"],
            wallet_balance=b.wallet_balance,
            account=AccountOut.model_validate(b.account),
            collateral_currency=sv.settings.collateral_currency,
            loan_currency=sv.settings.loan_currency,
        )
    )

@router.post("/deposit", response_model=Ok[MutationOut])
async def deposit(body: DepositIn, sv: Services = Depends(services), u=Depends(require_wallet)):
    res = await sv.lending.deposit(u["sub"], u["wallet"], body.amount, tx_ref=body.tx_hash)
    return Ok(data=_mutation_out(res))

@router.post("/withdraw", response_model=Ok[MutationOut])
async def withdraw(body: WithdrawIn, sv: Services = Depends(services), u=Depends(require_wallet)):
    res = await sv.lending.withdraw(u["sub"], u["wallet"], body.amount)
    return Ok(data=_mutation_out(res))

@router.get("/borrowing-capacity", response_model=Ok[CapacityOut])
async def borrowing_capacity(sv: Services = Depends(services), u=Depends(require_wallet)):
    c = await sv.lending.borrowing_capacity(u["wallet"])
    return Ok(
        data=CapacityOut(
            account=AccountOut.model_validate(c.account),
            max_borrowable=c.max_borrowable,
            available_to_borrow=c.available_to_borrow,
            utilization_percent=c.utilization_percent,
            exchange_rate=c.rate.rate,
            is_stale=c.is_stale,
            loan_ids=c.loan_ids,
        )
    )

@router.get("/transaction/{tx_hash}", response_model=Ok[TxStatusOut])
async def transaction_status(tx_hash: str, sv: Services = Depends(services), u=Depends(require_wallet)):
    st = await sv.lending.transaction_status(tx_hash)
    return Ok(
        data=TxStatusOut(
            tx_hash=tx_hash,
            status=st.status,
            block_number=st.block_number,
            gas_used=st.gas_used,
            confirmations=st.confirmations,
        )
    )

@router.get("/loan/history", response_model=Ok[LoanHistoryOut])
async def loan_history(sv: Services = Depends(services), u=Depends(require_wallet)):
    ids = await sv.lending.loan_history(u["wallet"])
    return Ok(data=LoanHistoryOut(wallet_address=u["wallet"], loan_ids=ids, total=len(ids)))
