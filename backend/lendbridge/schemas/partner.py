from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from lendbridge.schemas.loan import BankDetails

class StatusUpdateIn(BaseModel):
    loan_id: str
    status: Literal["approved", "funded", "rejected"]
    partner_order_id: str | None = None
    transfer_id: str | None = None
    rejection_reason: str | None = Field(default=None, max_length=512)

class RepaymentIn(BaseModel):
    loan_id: str
    repaid_amount: Decimal = Field(ge=0)
    confirmation_id: str
    repaid_at: datetime | None = None

class TransferIn(BaseModel):
    loan_id: str
    transfer_id: str
    amount: Decimal = Field(gt=0)
    transferred_at: datetime | None = None
    bank_details: BankDetails | None = None

class LiquidationIn(BaseModel):
    loan_id: str
    liquidation_price: Decimal = Field(gt=0)
    liquidation_ref: str | None = None

class HealthOut(BaseModel):
    status: str
    service: str
    timestamp: datetime
