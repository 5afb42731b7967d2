"""
test_candles.py — Tests for the tick walk, wicks, market events and candle aggregation.

Coverage:
  - gaussian(): bounded, centred
  - step_price(): bounded jump, symbol bounds, invalid inputs, shocks
  - wick_extents(): OHLC ordering, HIGH_VOL wicks larger
  - ActiveEvent: decay, expiry, anchor shift direction
  - CandleSeries: bucket opening, in-place update, clock skew, window trim, copy
"""

from __future__ import annotations

import math
import random

import pytest

from candles import (
    MAX_DT,
    MIN_DT,
    ActiveEvent,
    CandleSeries,
    clamp_dt,
    gaussian,
    is_valid_price,
    max_jump,
    step_price,
    tick_volume,
    wick_extents,
)
from markets import get_market
from regime import RegimeModel


# ─── Helpers ──────────────────────────────────────────────────────────────────

BTC = get_market("BTC")


def make_regime(override: str = "CHOPPY", seed: int = 1):
    return RegimeModel(random.Random(seed)).next_regime(BTC.price, override=override, now=0.0)


# ─── Numeric helpers ──────────────────────────────────────────────────────────

class TestNumeric:
    def test_gaussian_bounded(self):
        rng = random.Random(3)
        samples = [gaussian(rng) for _ in range(5000)]
        assert all(-3.0 <= s <= 3.0 for s in samples)
        assert abs(sum(samples) / len(samples)) < 0.1

    def test_clamp_dt(self):
        assert clamp_dt(0.0) == MIN_DT
        assert clamp_dt(10.0) == MAX_DT
        assert clamp_dt(0.2) == 0.2
        assert clamp_dt(float("nan")) == MIN_DT

    def test_is_valid_price(self):
        assert is_valid_price(1.5)
        assert not is_valid_price(0)
        assert not is_valid_price(-1.0)
        assert not is_valid_price(float("inf"))
        assert not is_valid_price(float("nan"))
        assert not is_valid_price(None)

    def test_max_jump(self):
        assert max_jump(100.0, 100.0) == pytest.approx(3.0)
        assert max_jump(100.0, 1000.0) == pytest.approx(20.0)


# ─── Walk ─────────────────────────────────────────────────────────────────────

class TestStepPrice:
    def test_jump_bounded_for_any_anchor(self):
        rng = random.Random(11)
        regime = make_regime("HIGH_VOL")
        prev = BTC.price.base_price
        for _ in range(2000):
            anchor = prev * rng.choice([0.2, 0.9, 1.0, 1.1, 5.0])
            price = step_price(prev, anchor, regime, 0.2, BTC.price.min_price, BTC.price.ceiling, rng=rng)
            assert abs(price - prev) <= max_jump(prev, anchor) + 1e-6
            assert BTC.price.min_price <= price <= BTC.price.ceiling
            prev = price

    def test_pulls_toward_anchor(self):
        rng = random.Random(4)
        regime = make_regime("LOW_VOL")
        price = 100.0
        for _ in range(300):
            price = step_price(price, 110.0, regime, 0.2, 1.0, 1000.0, rng=rng)
        assert 105.0 < price < 115.0

    def test_floor_and_ceiling(self):
        regime = make_regime()
        assert step_price(10.0, 1.0, regime, 0.2, 9.9, 1000.0, rng=random.Random(1)) >= 9.9
        assert step_price(10.0, 100.0, regime, 0.2, 1.0, 10.05, rng=random.Random(1)) <= 10.05

    def test_nan_anchor_uses_previous(self):
        price = step_price(100.0, float("nan"), make_regime(), 0.2, 1.0, 1000.0, rng=random.Random(2))
        assert math.isfinite(price)
        assert abs(price - 100.0) <= 3.0

    def test_invalid_previous_uses_anchor(self):
        price = step_price(float("nan"), 50.0, make_regime(), 0.2, 1.0, 1000.0, rng=random.Random(2))
        assert abs(price - 50.0) <= 1.5

    def test_both_invalid_returns_floor(self):
        assert step_price(float("nan"), 0.0, make_regime(), 0.2, 2.0, 10.0) == 2.0

    def test_huge_shock_is_clamped(self):
        price = step_price(100.0, 100.0, make_regime(), 0.2, 1.0, 1000.0, shock=1e6, rng=random.Random(1))
        assert price <= 103.0 + 1e-9

    def test_tick_volume_non_negative(self):
        rng = random.Random(8)
        regime = make_regime("HIGH_VOL")
        assert all(tick_volume(regime, 0.2, rng) >= 0 for _ in range(500))


# ─── Wicks ────────────────────────────────────────────────────────────────────

class TestWicks:
    def test_high_above_low_below(self):
        rng = random.Random(5)
        regime = make_regime("HIGH_VOL")
        for _ in range(500):
            high, low = wick_extents(100.0, regime, 1.0, rng)
            assert high >= 100.0 >= low >= 1.0

    def test_high_vol_wicks_larger(self):
        rng = random.Random(6)
        high_vol = make_regime("HIGH_VOL")
        low_vol = make_regime("LOW_VOL")

        def mean_span(regime):
            spans = []
            for _ in range(2000):
                high, low = wick_extents(100.0, regime, 1.0, rng)
                spans.append(high - low)
            return sum(spans) / len(spans)

        assert mean_span(high_vol) > mean_span(low_vol) * 2


# ─── Market events ────────────────────────────────────────────────────────────

class TestActiveEvent:
    def test_weight_decays(self):
        event = ActiveEvent(BTC.dump(), started_at=100.0)
        assert event.weight(100.0) == pytest.approx(1.0)
        assert event.weight(100.0 + event.event.decay_sec) == pytest.approx(math.exp(-1))

    def test_expiry(self):
        event = ActiveEvent(BTC.squeeze(), started_at=0.0)
        decay = event.event.decay_sec
        assert not event.expired(decay * 4)
        assert event.expired(decay * 5)

    def test_anchor_shift_direction(self):
        assert ActiveEvent(BTC.dump(), 0.0).anchor_shift(100.0, 0.0) < 0
        assert ActiveEvent(BTC.news_spike(), 0.0).anchor_shift(100.0, 0.0) > 0

    def test_jolt_follows_event_sign(self):
        rng = random.Random(7)
        event = ActiveEvent(BTC.dump(), 0.0)
        jolts = [event.jolt(100.0, 0.0, rng) for _ in range(500)]
        assert all(j <= 0 for j in jolts)
        assert any(j < 0 for j in jolts)

    def test_to_dict(self):
        data = ActiveEvent(BTC.dump(2.0), 5.0).to_dict()
        assert data["event"]["kind"] == "DUMP"
        assert data["started_at"] == 5.0


# ─── Candles ──────────────────────────────────────────────────────────────────

class TestCandleSeries:
    def test_invalid_timeframe(self):
        with pytest.raises(ValueError):
            CandleSeries(0)

    def test_first_tick_opens_candle(self):
        series = CandleSeries(1000)
        candle, opened = series.upsert(1_500, 10.0)
        assert opened
        assert candle.time == 1_000
        assert candle.open == candle.close == 10.0

    def test_same_bucket_updates_in_place(self):
        series = CandleSeries(1000)
        series.upsert(1_000, 10.0)
        candle, opened = series.upsert(1_500, 12.0, tick_high=12.5, tick_low=11.8, volume=3.0)
        assert not opened
        assert len(series) == 1
        assert candle.open == 10.0
        assert candle.high == 12.5
        assert candle.low == 10.0
        assert candle.close == 12.0
        assert candle.volume == 3.0

    def test_new_bucket_opens_at_previous_close(self):
        series = CandleSeries(1000)
        series.upsert(1_000, 10.0)
        series.upsert(1_900, 12.0)
        candle, opened = series.upsert(2_100, 11.0)
        assert opened
        assert candle.time == 2_000
        assert candle.open == 12.0
        assert candle.high == 12.0
        assert candle.low == 11.0

    def test_clock_backwards_updates_last(self):
        series = CandleSeries(1000)
        series.upsert(5_000, 10.0)
        candle, opened = series.upsert(3_000, 13.0)
        assert not opened
        assert len(series) == 1
        assert candle.time == 5_000
        assert candle.close == 13.0

    def test_ohlc_invariant_over_walk(self):
        rng = random.Random(12)
        regime = make_regime("HIGH_VOL")
        series = CandleSeries(1000)
        price = 100.0
        for i in range(300):
            price = step_price(price, 100.0, regime, 0.2, 1.0, 1000.0, rng=rng)
            high, low = wick_extents(price, regime, 1.0, rng)
            series.upsert(i * 200, price, high, low, tick_volume(regime, 0.2, rng))
        for c in series.recent(len(series)):
            assert c.low <= min(c.open, c.close)
            assert c.high >= max(c.open, c.close)
            assert c.volume >= 0

    def test_window_trims_oldest(self):
        series = CandleSeries(1000, maxlen=3)
        for i in range(5):
            series.upsert(i * 1000, 10.0 + i)
        assert len(series) == 3
        assert series.recent(3)[0].time == 2_000
        assert series.closes() == [12.0, 13.0, 14.0]

    def test_recent(self):
        series = CandleSeries(1000)
        for i in range(10):
            series.upsert(i * 1000, float(i + 1))
        assert [c.close for c in series.recent(2)] == [9.0, 10.0]
        assert series.recent(0) == []

    def test_copy_is_independent(self):
        series = CandleSeries(1000)
        series.upsert(0, 10.0)
        clone = series.copy()
        clone.upsert(500, 20.0)
        clone.upsert(1_000, 30.0)
        assert series.last.close == 10.0
        assert len(series) == 1
        assert len(clone) == 2

    def test_to_dict(self):
        series = CandleSeries(1000)
        candle, _ = series.upsert(0, 10.0, volume=1.234567)
        data = candle.to_dict()
        assert data["volume"] == 1.2346
        assert set(data) == {"time", "open", "high", "low", "close", "volume"}
