from fastapi import APIRouter, Depends, Query

from lendbridge.api.deps import current_user, require_admin, services
from lendbridge.schemas.common import Ok
from lendbridge.schemas.rate import AnalyticsOut, CurrentRateOut, ManualRateIn, RateHistoryOut, RateOut
from lendbridge.services.container import Services
from lendbridge.services.rate_feed import PERIODS, period_start

router = APIRouter(prefix="/exchange", tags=["exchange"])

@router.get("/rates", response_model=Ok[CurrentRateOut])
async def current_rate(sv: Services = Depends(services), u=Depends(current_user)):
    feed = sv.feed
    row = await feed.latest()
    history = await feed.history(limit=24)
    max_age = sv.lending.policy.rate_max_age
    return Ok(
        data=CurrentRateOut(
            current=RateOut.model_validate(row),
            age_minutes=int(feed.age(row).total_seconds() // 60),
            is_stale=feed.is_stale(row, max_age),
            history=[RateOut.model_validate(r) for r in history],
        )
    )

@router.post("/rates/update", response_model=Ok[RateOut])
async def refresh_rate(sv: Services = Depends(services), u=Depends(current_user)):
    row = await sv.feed.fetch_and_store()
    return Ok(data=RateOut.model_validate(row))

@router.post("/rates/manual", response_model=Ok[RateOut])
async def set_manual_rate(body: ManualRateIn, sv: Services = Depends(services), u=Depends(require_admin)):
    row = await sv.feed.set_manual(body.rate, actor=u["sub"], reason=body.reason or "Manual override")
    return Ok(data=RateOut.model_validate(row))

@router.get("/rates/history", response_model=Ok[RateHistoryOut])
async def rate_history(
    period: str = Query(default="24h"),
    limit: int = Query(default=100, ge=1, le=1000),
    sv: Services = Depends(services),
    u=Depends(current_user),
):
    if period not in PERIODS:
        period = "24h"
    since = period_start(period, sv.feed.clock())
    rows = await sv.feed.history(since=since, limit=limit)
    stats = await sv.feed.analytics(since=since)
    return Ok(
        data=RateHistoryOut(
            period=period,
            since=since,
            rates=[RateOut.model_validate(r) for r in rows],
            analytics=AnalyticsOut.model_validate(stats),
        )
    )

@router.delete("/rates/{rate_id}", response_model=Ok[RateOut])
async def deactivate_rate(rate_id: int, sv: Services = Depends(services), u=Depends(require_admin)):
    row = await sv.feed.deactivate(rate_id, actor=u["sub"])
    return Ok(data=RateOut.model_validate(row))
