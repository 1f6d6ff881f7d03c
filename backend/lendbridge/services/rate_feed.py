from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, localcontext
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from lendbridge.core.errors import (
    InvalidRate,
    InvalidRateResponse,
    NoRateAvailable,
    RateNotFound,
    RateSourceUnavailable,
)
from lendbridge.models.exchange_rate import ExchangeRate
from lendbridge.services.ltv import DEFAULT_SCALES, Scales, normalize_rate
from lendbridge.services.rate_source import RateSource
from lendbridge.utils.timezone import utc_now

logger = logging.getLogger(__name__)

Pair = tuple[str, str]

PERIODS: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def period_start(period: str, now: datetime) -> datetime:
    return now - PERIODS.get(period, PERIODS["24h"])


@dataclass(frozen=True)
class RateAnalytics:
    count: int
    latest: Decimal
    highest: Decimal
    lowest: Decimal
    average: Decimal
    volatility: Decimal


def summarize(values: list[Decimal]) -> RateAnalytics:
    """Stats over rates ordered newest first; volatility is the population std dev."""
    zero = Decimal("0")
    if not values:
        return RateAnalytics(0, zero, zero, zero, zero, zero)

    with localcontext() as ctx:
        ctx.prec = 40
        n = Decimal(len(values))
        mean = sum(values, zero) / n
        if len(values) < 2:
            vol = zero
        else:
            var = sum(((v - mean) ** 2 for v in values), zero) / n
            vol = var.sqrt()
        return RateAnalytics(
            count=len(values),
            latest=values[0],
            highest=max(values),
            lowest=min(values),
            average=+mean,
            volatility=+vol,
        )


class RateFeed:
    def __init__(
        self,
        sessions: async_sessionmaker,
        source: RateSource,
        *,
        pair: Pair = ("USDT", "BOB"),
        scales: Scales = DEFAULT_SCALES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._sessions = sessions
        self.source = source
        self.pair = pair
        self.scales = scales
        self.clock = clock

    async def fetch_and_store(self, pair: Pair | None = None) -> ExchangeRate:
        base, quote = pair or self.pair
        try:
            q = await self.source.fetch(base, quote)
            rate = normalize_rate(q.rate, self.scales)
        except InvalidRate as e:
            logger.error("rate refresh %s/%s rejected: %s", base, quote, e)
            raise InvalidRateResponse(str(e), currency=quote) from e
        except RateSourceUnavailable as e:
            logger.error("rate refresh %s/%s failed: %s", base, quote, e)
            raise

        row = ExchangeRate(
            base_currency=base,
            quote_currency=quote,
            rate=rate,
            source="api",
            is_active=True,
            provider=q.provider,
            confidence=q.confidence,
            spread=q.spread,
            created_at=self.clock(),
        )
        async with self._sessions() as s:
            s.add(row)
            await s.commit()

        logger.info("exchange rate updated: 1 %s = %s %s (%s)", base, rate, quote, q.provider)
        return row

    async def latest_or_none(self, pair: Pair | None = None) -> ExchangeRate | None:
        base, quote = pair or self.pair
        async with self._sessions() as s:
            return (
                await s.execute(
                    select(ExchangeRate)
                    .where(
                        ExchangeRate.base_currency == base,
                        ExchangeRate.quote_currency == quote,
                        ExchangeRate.is_active.is_(True),
                    )
                    .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def latest(self, pair: Pair | None = None) -> ExchangeRate:
        row = await self.latest_or_none(pair)
        if row is None:
            base, quote = pair or self.pair
            raise NoRateAvailable(f"no exchange rate for {base}/{quote}", pair=f"{base}/{quote}")
        return row

    async def set_manual(
        self,
        rate,
        actor: str,
        pair: Pair | None = None,
        reason: str | None = "Manual override",
        source: str = "manual",
    ) -> ExchangeRate:
        base, quote = pair or self.pair
        r = normalize_rate(rate, self.scales)
        row = ExchangeRate(
            base_currency=base,
            quote_currency=quote,
            rate=r,
            source=source,
            is_active=True,
            set_by=actor,
            reason=reason,
            created_at=self.clock(),
        )
        async with self._sessions() as s:
            s.add(row)
            await s.commit()

        logger.info("exchange rate manually set by %s: 1 %s = %s %s", actor, base, r, quote)
        return row

    async def deactivate(self, rate_id: int, actor: str) -> ExchangeRate:
        async with self._sessions() as s:
            row = (await s.execute(select(ExchangeRate).where(ExchangeRate.id == rate_id))).scalar_one_or_none()
            if row is None:
                raise RateNotFound(rate_id=rate_id)
            if row.is_active:
                row.is_active = False
                row.deactivated_at = self.clock()
                row.deactivated_by = actor
                await s.commit()
                logger.warning("exchange rate %s (%s) deactivated by %s", rate_id, row.rate, actor)
            return row

    async def history(self, pair: Pair | None = None, since: datetime | None = None, limit: int | None = None) -> list[ExchangeRate]:
        base, quote = pair or self.pair
        q = select(ExchangeRate).where(
            ExchangeRate.base_currency == base,
            ExchangeRate.quote_currency == quote,
            ExchangeRate.is_active.is_(True),
        )
        if since is not None:
            q = q.where(ExchangeRate.created_at >= since)
        q = q.order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
        if limit is not None:
            q = q.limit(limit)
        async with self._sessions() as s:
            return list((await s.execute(q)).scalars().all())

    async def analytics(self, pair: Pair | None = None, since: datetime | None = None) -> RateAnalytics:
        rows = await self.history(pair, since)
        return summarize([Decimal(r.rate) for r in rows])

    def age(self, row: ExchangeRate) -> timedelta:
        return self.clock() - row.created_at

    def is_stale(self, row: ExchangeRate, max_age: timedelta) -> bool:
        return self.age(row) > max_age

    async def ensure_initial_rate(self, max_age: timedelta | None = None) -> ExchangeRate | None:
        try:
            row = await self.latest_or_none()
            if row is None:
                logger.info("no exchange rate for %s/%s, fetching initial rate", *self.pair)
            elif max_age is not None and self.is_stale(row, max_age):
                logger.info("exchange rate for %s/%s is %s old, refreshing", *self.pair, self.age(row))
            else:
                return row
            return await self.fetch_and_store()
        except Exception as e:
            logger.exception("initial rate fetch failed", exc_info=e)
            return None


async def rate_sync_loop(
    feed: RateFeed,
    interval_seconds: int = 3600,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    max_ticks: int | None = None,
    max_age: timedelta | None = None,
) -> None:
    await feed.ensure_initial_rate(max_age)

    interval = max(60, int(interval_seconds or 3600))
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        await sleep(interval)
        ticks += 1
        try:
            await feed.fetch_and_store()
        except Exception as e:
            logger.exception("scheduled rate refresh failed", exc_info=e)
