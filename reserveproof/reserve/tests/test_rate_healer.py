"""Rate cache self-healing and best-effort price sync."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from reserveproof.chain.anchor import AnchorSubmitter
from reserveproof.config import RateConfig
from reserveproof.errors import LedgerRpcError, StaleDataFallback
from reserveproof.ledger.store import SerialLedger
from reserveproof.reserve.prices import RateQuote
from reserveproof.reserve.rate_cache import RateSelfHealer
from reserveproof.tests.fakes import FakeLedgerClient, make_state

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeRateSource:
    def __init__(self, rates: List[float], delay: float = 0.0):
        self.rates = list(rates)
        self.delay = delay
        self.fetches = 0

    async def fetch(self) -> RateQuote:
        self.fetches += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.rates:
            raise StaleDataFallback("Rate source unreachable")
        return RateQuote(rate=self.rates.pop(0))


class FakeSpot:
    def __init__(self, price: Optional[float]):
        self.price = price

    async def get_price(self) -> Optional[float]:
        return self.price


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _seed(ledger: SerialLedger, rate: float, age: timedelta) -> None:
    ledger.record_rate(rate, NOW - age, prune_before=NOW - timedelta(hours=48))


def _healer(ledger, source, **kwargs) -> RateSelfHealer:
    return RateSelfHealer(ledger, source, config=RateConfig(), clock=Clock(NOW), **kwargs)


@pytest.mark.asyncio
async def test_fresh_rate_served_from_cache(ledger) -> None:
    _seed(ledger, 9.10, timedelta(minutes=10))
    source = FakeRateSource([9.50])

    report = await _healer(ledger, source).read()

    assert source.fetches == 0
    assert report.rate == 9.10
    assert not report.is_stale
    assert report.minutes_since_update == 10
    assert not report.refreshed


@pytest.mark.asyncio
async def test_stale_rate_triggers_refresh(ledger) -> None:
    _seed(ledger, 9.10, timedelta(minutes=40))
    source = FakeRateSource([9.25])

    report = await _healer(ledger, source).read()

    assert source.fetches == 1
    assert report.refreshed
    assert report.rate == 9.25
    assert not report.is_stale
    assert report.minutes_since_update == 0
    assert ledger.get_rate_setting().rate == 9.25
    assert [p.price for p in ledger.price_history()] == [9.10, 9.25]


@pytest.mark.asyncio
async def test_failed_refresh_serves_last_value_as_stale(ledger) -> None:
    _seed(ledger, 9.10, timedelta(minutes=40))

    report = await _healer(ledger, FakeRateSource([])).read()

    assert report.rate == 9.10
    assert report.is_stale
    assert report.minutes_since_update == 40
    assert not report.refreshed


@pytest.mark.asyncio
async def test_default_rate_when_never_fetched(ledger) -> None:
    report = await _healer(ledger, FakeRateSource([])).read()

    assert report.rate == 9.02
    assert report.is_stale
    assert report.updated_at is None
    assert report.minutes_since_update is None
    assert report.to_dict()["priceSync"]["synced"] is False


@pytest.mark.asyncio
async def test_concurrent_stale_reads_fetch_once(ledger) -> None:
    _seed(ledger, 9.10, timedelta(hours=2))
    source = FakeRateSource([9.20, 9.30], delay=0.05)
    healer = _healer(ledger, source)

    reports = await asyncio.gather(*(healer.read() for _ in range(5)))

    assert source.fetches == 1
    assert {r.rate for r in reports} == {9.20}


@pytest.mark.asyncio
async def test_change_24h_uses_point_at_least_a_day_old(ledger) -> None:
    _seed(ledger, 8.00, timedelta(hours=25))
    _seed(ledger, 8.50, timedelta(hours=12))
    _seed(ledger, 9.00, timedelta(minutes=5))

    report = await _healer(ledger, FakeRateSource([])).read()

    assert report.previous_rate == 8.00
    assert report.change_24h == pytest.approx(12.5)
    payload = report.to_dict()
    assert payload["previousRate"] == 8.00
    assert payload["updatedAt"] == (NOW - timedelta(minutes=5)).isoformat()


@pytest.mark.asyncio
async def test_large_swing_is_applied_and_flagged(ledger, caplog) -> None:
    _seed(ledger, 9.00, timedelta(hours=1))

    with caplog.at_level(logging.WARNING, logger="reserveproof"):
        report = await _healer(ledger, FakeRateSource([12.00])).read()

    assert report.flagged
    assert report.rate == 12.00
    assert any("moved" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_small_change_not_flagged(ledger) -> None:
    _seed(ledger, 9.00, timedelta(hours=1))
    report = await _healer(ledger, FakeRateSource([9.50])).read()
    assert report.refreshed
    assert not report.flagged


# ---------------------------------------------------------------------------
# Price sync
# ---------------------------------------------------------------------------


def _with_chain(ledger, price_per_unit: int, spot: float = 150.0):
    client = FakeLedgerClient(make_state(price_per_unit=price_per_unit))
    submitter = AnchorSubmitter(ledger, client)
    return client, dict(spot=FakeSpot(spot), submitter=submitter)


@pytest.mark.asyncio
async def test_refresh_syncs_price_within_bound(ledger) -> None:
    _seed(ledger, 8.80, timedelta(hours=1))
    client, extra = _with_chain(ledger, 50_000_000)

    report = await _healer(ledger, FakeRateSource([9.00]), **extra).read()

    sync = report.to_dict()["priceSync"]
    assert sync == {"onChainPrice": 50_000_000, "suggestedPrice": 60_000_000, "drift": 20.0, "synced": True}
    assert client.state.price_per_unit == 60_000_000


@pytest.mark.asyncio
async def test_sync_skipped_below_drift_threshold(ledger) -> None:
    _seed(ledger, 8.80, timedelta(hours=1))
    client, extra = _with_chain(ledger, 59_800_000)

    report = await _healer(ledger, FakeRateSource([9.00]), **extra).read()

    assert not report.price_sync.synced
    assert report.price_sync.drift == pytest.approx(0.33)
    assert client.calls == []


@pytest.mark.asyncio
async def test_sync_refused_outside_program_bound(ledger) -> None:
    _seed(ledger, 8.80, timedelta(hours=1))
    client, extra = _with_chain(ledger, 40_000_000)

    report = await _healer(ledger, FakeRateSource([9.00]), **extra).read()

    assert not report.price_sync.synced
    assert report.price_sync.reason == "change exceeds on-chain bound"
    assert client.calls == []


@pytest.mark.asyncio
async def test_sync_failure_does_not_fail_read(ledger) -> None:
    _seed(ledger, 8.80, timedelta(hours=1))
    client, extra = _with_chain(ledger, 50_000_000)
    client.fail_on["set_price"] = LedgerRpcError("Ledger RPC unavailable")

    report = await _healer(ledger, FakeRateSource([9.00]), **extra).read()

    assert report.rate == 9.00
    assert report.refreshed
    assert not report.price_sync.synced
    assert report.price_sync.reason == "Ledger RPC unavailable"


@pytest.mark.asyncio
async def test_fresh_read_reports_live_drift_without_syncing(ledger) -> None:
    _seed(ledger, 9.00, timedelta(minutes=5))
    client, extra = _with_chain(ledger, 50_000_000)

    report = await _healer(ledger, FakeRateSource([]), **extra).read()

    assert report.price_sync.drift == 20.0
    assert not report.price_sync.synced
    assert client.calls == []


@pytest.mark.asyncio
async def test_price_sync_disabled(ledger) -> None:
    _seed(ledger, 8.80, timedelta(hours=1))
    client, extra = _with_chain(ledger, 50_000_000)
    healer = RateSelfHealer(
        ledger,
        FakeRateSource([9.00]),
        config=RateConfig(price_sync_enabled=False),
        clock=Clock(NOW),
        **extra,
    )

    report = await healer.read()

    assert report.price_sync.reason == "price sync disabled"
    assert client.calls == []
