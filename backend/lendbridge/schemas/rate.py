from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

class RateOut(BaseModel):
    id: int
    base_currency: str
    quote_currency: str
    rate: Decimal
    source: str
    is_active: bool
    provider: str | None = None
    confidence: Decimal | None = None
    spread: Decimal | None = None
    set_by: str | None = None
    reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True

class CurrentRateOut(BaseModel):
    current: RateOut
    age_minutes: int
    is_stale: bool
    history: list[RateOut]

class ManualRateIn(BaseModel):
    rate: Decimal = Field(gt=0)
    reason: str | None = Field(default=None, max_length=256)

class AnalyticsOut(BaseModel):
    count: int
    latest: Decimal
    highest: Decimal
    lowest: Decimal
    average: Decimal
    volatility: Decimal

    class Config:
        from_attributes = True

class RateHistoryOut(BaseModel):
    period: str
    since: datetime
    rates: list[RateOut]
    analytics: AnalyticsOut
