"""External price sources.

``ReferenceRateSource`` reads the USD value of one physical unit from the
issuer's quote proxy. ``SpotPriceSource`` reads the USD price of the native
ledger token, trying a primary then a fallback endpoint, and keeps the last
good value for a short time.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import aiohttp

from reserveproof.config import RateConfig
from reserveproof.errors import StaleDataFallback
from reserveproof.resilience import CircuitBreaker, CircuitBreakerError

logger = logging.getLogger(__name__)

NATIVE_MINT = "So11111111111111111111111111111111111111112"
RATE_SANITY_CEILING = 100.0

_HEADERS = {"User-Agent": "reserveproof/0.3 (+rate-sync)"}


@dataclass(frozen=True)
class RateQuote:
    rate: float
    source_timestamp: Optional[float] = None


def _positive_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number <= 0:
        return None
    return number


async def _get_json(session: aiohttp.ClientSession, url: str, timeout: aiohttp.ClientTimeout) -> Any:
    async with session.get(url, headers=_HEADERS, timeout=timeout) as resp:
        resp.raise_for_status()
        return await resp.json(content_type=None)


def parse_rate_payload(payload: Any) -> RateQuote:
    """Validate the quote proxy payload: ``{"success": true, "quotes": {"USDUSD": rate}}``."""
    if not isinstance(payload, dict) or not payload.get("success"):
        raise StaleDataFallback("Rate source reported failure")
    quotes = payload.get("quotes") or {}
    raw = quotes.get("USDUSD") if isinstance(quotes, dict) else None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise StaleDataFallback("Rate source returned a non-numeric rate", repr(raw))
    rate = _positive_number(raw)
    if rate is None:
        raise StaleDataFallback("Rate source returned a non-positive rate", repr(raw))
    if rate > RATE_SANITY_CEILING:
        logger.warning(f"Reference rate {rate} is unusually high; accepting it")
    ts = payload.get("timestamp")
    return RateQuote(rate=rate, source_timestamp=float(ts) if isinstance(ts, (int, float)) else None)


class ReferenceRateSource:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._breaker = CircuitBreaker("reference_rate")

    async def fetch(self) -> RateQuote:
        """Fetch and validate the current rate.

        Raises:
            StaleDataFallback: on any transport or validation failure
        """
        try:
            async with self._breaker:
                if self._session is not None:
                    payload = await _get_json(self._session, self.url, self._timeout)
                else:
                    async with aiohttp.ClientSession() as session:
                        payload = await _get_json(session, self.url, self._timeout)
        except CircuitBreakerError as exc:
            raise StaleDataFallback("Rate source temporarily disabled", str(exc)) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise StaleDataFallback("Rate source unreachable", f"{type(exc).__name__}: {exc}") from exc
        return parse_rate_payload(payload)


def parse_primary_spot(payload: Any) -> Optional[float]:
    """``{"data": {<mint>: {"price": "123.4"}}}``"""
    try:
        return _positive_number(payload["data"][NATIVE_MINT]["price"])
    except (KeyError, TypeError):
        return None


def parse_fallback_spot(payload: Any) -> Optional[float]:
    """``{"solana": {"usd": 123.4}}``"""
    try:
        price = payload["solana"]["usd"]
    except (KeyError, TypeError):
        return None
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    return _positive_number(price)


class SpotPriceSource:
    """Native token USD price with primary/fallback endpoints and a short cache.

    When every source fails the last known price is returned, however old;
    None only if no price was ever fetched.
    """

    def __init__(
        self,
        primary_url: str,
        fallback_url: str,
        *,
        cache_seconds: float = 60.0,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sources = [(primary_url, parse_primary_spot), (fallback_url, parse_fallback_spot)]
        self._cache_seconds = cache_seconds
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._clock = clock
        self._price: Optional[float] = None
        self._fetched_at: float = 0.0

    @classmethod
    def from_config(cls, config: RateConfig, session: Optional[aiohttp.ClientSession] = None) -> "SpotPriceSource":
        return cls(
            config.spot_primary_url,
            config.spot_fallback_url,
            cache_seconds=config.spot_cache_seconds,
            timeout=config.http_timeout_seconds,
            session=session,
        )

    async def _try_sources(self, session: aiohttp.ClientSession) -> Optional[float]:
        errors: List[str] = []
        for url, parse in self._sources:
            try:
                price = parse(await _get_json(session, url, self._timeout))
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                errors.append(f"{url}: {type(exc).__name__}")
                continue
            if price is not None:
                return price
            errors.append(f"{url}: unusable payload")
        logger.warning(f"All spot price sources failed: {errors}")
        return None

    async def get_price(self) -> Optional[float]:
        if self._price is not None and self._clock() - self._fetched_at < self._cache_seconds:
            return self._price

        if self._session is not None:
            price = await self._try_sources(self._session)
        else:
            async with aiohttp.ClientSession() as session:
                price = await self._try_sources(session)

        if price is not None:
            self._price = price
            self._fetched_at = self._clock()
            return price
        return self._price
