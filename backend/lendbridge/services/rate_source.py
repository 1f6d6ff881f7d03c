from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from lendbridge.core.errors import InvalidRateResponse, RateSourceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    provider: str
    confidence: Decimal | None = None
    spread: Decimal | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


class RateSource(Protocol):
    async def fetch(self, base: str, quote: str) -> RateQuote: ...


def parse_rates_payload(payload, quote: str) -> Decimal:
    """Pull the target currency out of a ``{"rates": {CODE: rate}}`` payload."""
    if not isinstance(payload, dict):
        raise InvalidRateResponse("rate payload is not an object")
    rates = payload.get("rates")
    if not isinstance(rates, dict):
        raise InvalidRateResponse("rate payload has no rates mapping")
    if quote not in rates:
        raise InvalidRateResponse(f"rate payload missing {quote}", currency=quote)

    v = rates[quote]
    if isinstance(v, bool) or not isinstance(v, (int, float, str, Decimal)):
        raise InvalidRateResponse(f"rate for {quote} is not numeric", currency=quote)
    try:
        d = v if isinstance(v, Decimal) else Decimal(str(v))
    except InvalidOperation:
        raise InvalidRateResponse(f"rate for {quote} is not numeric", currency=quote)
    if not d.is_finite() or d <= 0:
        raise InvalidRateResponse(f"rate for {quote} must be positive", currency=quote, rate=d)
    return d


class HttpRateSource:
    """Single GET against an exchangerate-api style endpoint.

    The quote currency is pegged 1:1 to USD for the stablecoin collateral, so
    the USD rate for the target currency is used as-is.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout_s: float = 10.0,
        provider: str = "exchangerate-api",
        confidence: Decimal = Decimal("0.95"),
        spread: Decimal = Decimal("0.001"),
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.provider = provider
        self.confidence = confidence
        self.spread = spread
        self._transport = transport

    async def fetch(self, base: str, quote: str) -> RateQuote:
        params = {"access_key": self.api_key} if self.api_key else None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport, follow_redirects=True) as client:
                r = await client.get(self.url, params=params)
                r.raise_for_status()
                payload = r.json(parse_float=Decimal)
        except httpx.TimeoutException as e:
            raise RateSourceUnavailable(f"rate source timed out after {self.timeout_s}s", provider=self.provider) from e
        except httpx.HTTPError as e:
            raise RateSourceUnavailable(f"rate source request failed: {e}", provider=self.provider) from e
        except ValueError as e:
            raise InvalidRateResponse("rate source returned invalid JSON", provider=self.provider) from e

        rate = parse_rates_payload(payload, quote)
        logger.debug("rate source %s: 1 %s = %s %s", self.provider, base, rate, quote)
        return RateQuote(rate=rate, provider=self.provider, confidence=self.confidence, spread=self.spread, raw=payload)
