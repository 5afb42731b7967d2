"""
test_scenario.py — Tests for scripted deal scenarios.

Coverage:
  - Drop ramp (delay, 4 s ramp, hold)
  - Jump phases: ramp, hold, decay
  - Overlapping drop + jump
  - Anchor noise is small and zero-mean
  - Deal dataclass: status validation, jump ordering, ends_at
"""

from __future__ import annotations

import random

import pytest

from scenario import Deal, DealJump, compute_scenario_price, scenario_bias_pct


# ─── Helpers ──────────────────────────────────────────────────────────────────

def make_deal(drop_delay=10.0, drop=8.0, jumps=(), base=100.0, **kwargs) -> Deal:
    return Deal(
        id=kwargs.pop("id", "deal-1"),
        symbol="PEPE",
        chain_name="Ethereum",
        base_price=base,
        start_time=0.0,
        total_duration_sec=90.0,
        drop_delay_sec=drop_delay,
        drop_magnitude_pct=drop,
        jumps=tuple(jumps),
        **kwargs,
    )


def price(deal: Deal, elapsed: float) -> float:
    return compute_scenario_price(deal, elapsed, noise_pct=0.0)


# ─── Drop ─────────────────────────────────────────────────────────────────────

class TestDrop:
    def test_base_before_drop(self):
        deal = make_deal()
        assert price(deal, 0) == pytest.approx(100.0)
        assert price(deal, 9.9) == pytest.approx(100.0)

    def test_drop_starts_at_delay(self):
        assert price(make_deal(), 10) == pytest.approx(100.0)

    def test_drop_half_way(self):
        assert price(make_deal(), 12) == pytest.approx(96.0)

    def test_drop_complete_after_four_seconds(self):
        assert price(make_deal(), 14) == pytest.approx(92.0)

    def test_drop_holds(self):
        assert price(make_deal(), 80) == pytest.approx(92.0)

    def test_no_drop(self):
        assert price(make_deal(drop=0.0), 50) == pytest.approx(100.0)


# ─── Jumps ────────────────────────────────────────────────────────────────────

class TestJumps:
    JUMP = DealJump(rise_delay_sec=20.0, rise_magnitude_pct=5.0, hold_sec=4.0)

    def test_before_rise(self):
        assert self.JUMP.bias_pct(19.0) == 0.0

    def test_ramp(self):
        assert self.JUMP.bias_pct(21.5) == pytest.approx(2.5)

    def test_hold(self):
        assert self.JUMP.bias_pct(25.0) == pytest.approx(5.0)
        assert self.JUMP.bias_pct(27.0) == pytest.approx(5.0)

    def test_decay(self):
        assert self.JUMP.bias_pct(29.5) == pytest.approx(2.5)

    def test_fully_decayed(self):
        assert self.JUMP.bias_pct(40.0) == 0.0

    def test_overlaps_with_drop(self):
        deal = make_deal(jumps=[self.JUMP])
        assert scenario_bias_pct(deal, 25.0) == pytest.approx(-3.0)
        assert price(deal, 25.0) == pytest.approx(97.0)

    def test_multiple_jumps_sum(self):
        deal = make_deal(drop=0.0, jumps=[
            DealJump(0.0, 2.0, 100.0, order_index=0),
            DealJump(0.0, 3.0, 100.0, order_index=1),
        ])
        assert price(deal, 10.0) == pytest.approx(105.0)


# ─── Noise ────────────────────────────────────────────────────────────────────

class TestNoise:
    def test_noise_small_and_centred(self):
        deal = make_deal()
        rng = random.Random(1)
        samples = [compute_scenario_price(deal, 0.0, rng) for _ in range(500)]
        assert all(abs(s - 100.0) < 0.5 for s in samples)
        assert abs(sum(samples) / len(samples) - 100.0) < 0.02

    def test_extreme_drop_stays_positive(self):
        deal = make_deal(drop=150.0)
        assert price(deal, 20.0) > 0


# ─── Deal ─────────────────────────────────────────────────────────────────────

class TestDeal:
    def test_invalid_status(self):
        with pytest.raises(ValueError):
            make_deal(status="PAUSED")

    def test_jumps_sorted_by_order(self):
        deal = make_deal(jumps=[
            DealJump(30.0, 1.0, 0.0, order_index=1),
            DealJump(20.0, 2.0, 0.0, order_index=0),
        ])
        assert [j.order_index for j in deal.jumps] == [0, 1]

    def test_ends_at(self):
        assert make_deal().ends_at() is None
        assert make_deal(claimed_at=1000.0).ends_at() == 1090.0

    def test_to_dict(self):
        data = make_deal(jumps=[TestJumps.JUMP]).to_dict()
        assert data["symbol"] == "PEPE"
        assert data["status"] == "SCHEDULED"
        assert data["jumps"][0]["rise_magnitude_pct"] == 5.0
