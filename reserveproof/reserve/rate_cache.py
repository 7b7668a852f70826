"""Reference rate cache with staleness-triggered self-healing.

Reads are served from an explicit ``RateCache``. A stale read triggers one
refresh from the external source behind a single-flight lock: concurrent
stale readers wait on the lock and then see the refreshed value instead of
scraping again. A failed refresh never fails the read; the last known value
is served and marked stale.

After a successful refresh the on-chain price is synchronised on a
best-effort basis, skipping changes that are too small to matter or too
large for the program to accept.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from reserveproof.chain.anchor import AnchorSubmitter
from reserveproof.config import RateConfig
from reserveproof.errors import ReserveError, StaleDataFallback
from reserveproof.ledger.models import to_iso, utc_now
from reserveproof.ledger.store import SerialLedger
from reserveproof.reserve.prices import ReferenceRateSource, SpotPriceSource
from reserveproof.reserve.solvency import drift_percent, suggest_price, within_price_bound

logger = logging.getLogger(__name__)

CHANGE_WINDOW = timedelta(hours=24)


@dataclass
class RateCache:
    """Cached reference rate. ``fetched_at`` is None until a value is known."""
    value: float
    fetched_at: Optional[datetime]
    ttl: timedelta

    def is_stale(self, now: datetime) -> bool:
        if self.fetched_at is None:
            return True
        return now - self.fetched_at > self.ttl

    def minutes_since_update(self, now: datetime) -> Optional[int]:
        if self.fetched_at is None:
            return None
        return math.floor((now - self.fetched_at).total_seconds() / 60)


@dataclass(frozen=True)
class PriceSyncResult:
    on_chain_price: Optional[int] = None
    suggested_price: Optional[int] = None
    drift: Optional[float] = None
    synced: bool = False
    tx_ref: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "onChainPrice": self.on_chain_price,
            "suggestedPrice": self.suggested_price,
            "drift": self.drift,
            "synced": self.synced,
        }


@dataclass(frozen=True)
class RateReport:
    rate: float
    updated_at: Optional[datetime]
    previous_rate: Optional[float]
    change_24h: Optional[float]
    is_stale: bool
    minutes_since_update: Optional[int]
    price_sync: PriceSyncResult = field(default_factory=PriceSyncResult)
    refreshed: bool = False
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate": self.rate,
            "updatedAt": to_iso(self.updated_at),
            "previousRate": self.previous_rate,
            "change24h": self.change_24h,
            "isStale": self.is_stale,
            "minutesSinceUpdate": self.minutes_since_update,
            "priceSync": self.price_sync.to_dict(),
        }


@dataclass(frozen=True)
class _RefreshOutcome:
    refreshed: bool
    flagged: bool = False
    sync: Optional[PriceSyncResult] = None


class RateSelfHealer:
    """Serves the reference rate and keeps it, and the on-chain price, current.

    Args:
        ledger: Persists the rate row and its history
        source: External reference rate source
        config: Staleness, retention and sync policy
        spot: Native token price source; price sync is disabled without it
        submitter: Reads the protocol price and sends ``set_price``
        cache: Pre-built cache; loaded from the ledger when omitted
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        ledger: SerialLedger,
        source: ReferenceRateSource,
        *,
        config: Optional[RateConfig] = None,
        spot: Optional[SpotPriceSource] = None,
        submitter: Optional[AnchorSubmitter] = None,
        unit_scale: int = 1_000_000_000,
        cache: Optional[RateCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.source = source
        self.config = config or RateConfig()
        self.spot = spot
        self.submitter = submitter
        self.unit_scale = unit_scale
        self._clock = clock
        self._lock = asyncio.Lock()
        self.cache = cache or self._load_cache()

    def _load_cache(self) -> RateCache:
        ttl = timedelta(minutes=self.config.staleness_minutes)
        setting = self.ledger.get_rate_setting()
        if setting is None:
            return RateCache(value=self.config.default_rate, fetched_at=None, ttl=ttl)
        return RateCache(value=setting.rate, fetched_at=setting.updated_at, ttl=ttl)

    async def read(self) -> RateReport:
        """Current rate; refreshes first if the cache is stale."""
        outcome = _RefreshOutcome(refreshed=False)
        if self.cache.is_stale(self._clock()):
            outcome = await self.refresh()

        now = self._clock()
        previous = self.ledger.price_at_or_before(now - CHANGE_WINDOW)
        previous_rate = previous.price if previous is not None else None
        change = None
        if previous_rate is not None and previous_rate > 0:
            change = (self.cache.value - previous_rate) / previous_rate * 100

        sync = outcome.sync if outcome.sync is not None else await self._price_view()
        return RateReport(
            rate=self.cache.value,
            updated_at=self.cache.fetched_at,
            previous_rate=previous_rate,
            change_24h=change,
            is_stale=self.cache.is_stale(now),
            minutes_since_update=self.cache.minutes_since_update(now),
            price_sync=sync,
            refreshed=outcome.refreshed,
            flagged=outcome.flagged,
        )

    async def refresh(self, *, force: bool = False) -> _RefreshOutcome:
        """Single-flight refresh. Waiters re-check freshness after acquiring."""
        async with self._lock:
            if not force and not self.cache.is_stale(self._clock()):
                return _RefreshOutcome(refreshed=False)

            try:
                quote = await self.source.fetch()
            except StaleDataFallback as exc:
                logger.warning(f"Rate refresh failed, serving last value {self.cache.value}: {exc.user_message}")
                return _RefreshOutcome(refreshed=False)

            now = self._clock()
            previous = self.cache.value if self.cache.fetched_at is not None else None
            flagged = False
            if previous:
                swing = abs(quote.rate - previous) / previous * 100
                if swing > self.config.swing_alert_percent:
                    flagged = True
                    logger.warning(
                        f"Reference rate moved {swing:.1f}% ({previous} -> {quote.rate}); "
                        "applied, operator review suggested",
                        extra={"context": {"previous": previous, "rate": quote.rate, "swing": swing}},
                    )

            self.ledger.record_rate(
                quote.rate,
                now,
                prune_before=now - timedelta(hours=self.config.retention_hours),
            )
            self.cache.value = quote.rate
            self.cache.fetched_at = now
            logger.info(f"Reference rate refreshed: {quote.rate}")

            sync = await self._sync_price()
            return _RefreshOutcome(refreshed=True, flagged=flagged, sync=sync)

    async def _current_prices(self) -> PriceSyncResult:
        """On-chain and suggested prices with their drift; never raises."""
        if self.spot is None or self.submitter is None:
            return PriceSyncResult(reason="price sync not configured")
        try:
            state = await self.submitter.read_state()
            spot = await self.spot.get_price()
        except ReserveError as exc:
            return PriceSyncResult(reason=exc.user_message)
        if spot is None:
            return PriceSyncResult(
                on_chain_price=state.price_per_unit if state else None,
                reason="spot price unavailable",
            )
        suggested = suggest_price(self.cache.value, spot, self.unit_scale)
        on_chain = state.price_per_unit if state is not None else None
        return PriceSyncResult(
            on_chain_price=on_chain,
            suggested_price=suggested,
            drift=drift_percent(suggested, on_chain),
            reason=None if state is not None else "protocol state not found",
        )

    async def _price_view(self) -> PriceSyncResult:
        if not self.config.price_sync_enabled:
            return PriceSyncResult(reason="price sync disabled")
        return await self._current_prices()

    async def _sync_price(self) -> PriceSyncResult:
        """Best-effort ``set_price``; failures are logged and reported as not synced."""
        view = await self._price_view()
        if view.suggested_price is None or view.on_chain_price is None:
            return view

        if view.drift is not None and view.drift < self.config.sync_min_drift_percent:
            logger.info(f"Price drift {view.drift}% below threshold; not syncing")
            return view
        if not within_price_bound(
            view.on_chain_price, view.suggested_price, self.config.max_price_change_percent
        ):
            logger.warning(
                f"Suggested price {view.suggested_price} is outside the on-chain change bound "
                f"from {view.on_chain_price}; manual update required"
            )
            return PriceSyncResult(
                on_chain_price=view.on_chain_price,
                suggested_price=view.suggested_price,
                drift=view.drift,
                reason="change exceeds on-chain bound",
            )

        try:
            tx_ref = await self.submitter.sync_price(view.suggested_price)
        except ReserveError as exc:
            logger.warning(f"On-chain price sync failed: {exc.user_message}")
            return PriceSyncResult(
                on_chain_price=view.on_chain_price,
                suggested_price=view.suggested_price,
                drift=view.drift,
                reason=exc.user_message,
            )

        logger.info(f"On-chain price synced {view.on_chain_price} -> {view.suggested_price} ({tx_ref})")
        return PriceSyncResult(
            on_chain_price=view.on_chain_price,
            suggested_price=view.suggested_price,
            drift=view.drift,
            synced=True,
            tx_ref=tx_ref,
        )
