"""
test_settlement.py — Tests for signal grading, hit-rates and the settlement pass.

Coverage:
  - outcome_pct(): percentage move, invalid prices
  - is_correct(): BUY / SELL / NO_TRADE flat band / OFF
  - grade_entry(): only due entries are graded
  - compute_hit_rates(): empty window, window size, per-agent rates
  - settle(): horizon, exactly-once resolution, missing prices, stored hit-rates
  - price_key(): deal entries priced apart from the ambient market
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from deal_store import DealStore
from settlement import (
    FLAT_BAND_PCT,
    SignalLogEntry,
    compute_hit_rates,
    grade_entry,
    is_correct,
    outcome_pct,
    price_key,
    settle,
)
from signals import MetaDecision, ModelSignal


# ─── Helpers ──────────────────────────────────────────────────────────────────

AGENTS = ["Trend", "Momentum"]


def make_entry(meta_action: str = "BUY", created_at: float = 0.0, symbol: str = "BTC/USDT",
               entry_price: float = 100.0, horizon_sec: float = 60.0, deal_id: str = None) -> SignalLogEntry:
    signals = [ModelSignal("Trend", "BUY", 78), ModelSignal("Momentum", "SELL", 74)]
    return SignalLogEntry.new(
        symbol=symbol,
        entry_price=entry_price,
        signals=signals,
        meta=MetaDecision(meta_action, 80, "test"),
        created_at=created_at,
        horizon_sec=horizon_sec,
        deal_id=deal_id,
    )


def outcome(meta_correct: bool, **agents: bool) -> SimpleNamespace:
    return SimpleNamespace(meta_correct=meta_correct, agent_correct=agents)


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    s = DealStore()
    yield s
    s.close()


# ─── Grading ──────────────────────────────────────────────────────────────────

class TestOutcome:
    def test_up(self):
        assert outcome_pct(100.0, 101.0) == pytest.approx(1.0)

    def test_down(self):
        assert outcome_pct(200.0, 190.0) == pytest.approx(-5.0)

    @pytest.mark.parametrize("entry,current", [(0.0, 1.0), (1.0, 0.0), (float("nan"), 1.0), (1.0, None)])
    def test_invalid(self, entry, current):
        assert outcome_pct(entry, current) is None


class TestIsCorrect:
    def test_buy(self):
        assert is_correct("BUY", 0.01)
        assert not is_correct("BUY", 0.0)
        assert not is_correct("BUY", -1.0)

    def test_sell(self):
        assert is_correct("SELL", -0.01)
        assert not is_correct("SELL", 0.0)

    def test_no_trade_flat_band(self):
        assert is_correct("NO_TRADE", 0.0)
        assert is_correct("NO_TRADE", FLAT_BAND_PCT)
        assert is_correct("NO_TRADE", -FLAT_BAND_PCT)
        assert not is_correct("NO_TRADE", 0.2)

    def test_off_graded_as_flat(self):
        assert is_correct("OFF", 0.1)
        assert not is_correct("OFF", -0.5)


class TestGradeEntry:
    def test_not_due(self):
        assert grade_entry(make_entry(), 101.0, now=59.9) is None

    def test_due(self):
        resolution = grade_entry(make_entry(), 101.0, now=60.0)
        assert resolution.outcome_pct == pytest.approx(1.0)
        assert resolution.meta_correct is True
        assert resolution.agent_correct == {"Trend": True, "Momentum": False}
        assert resolution.resolved_at == 60.0

    def test_no_price(self):
        assert grade_entry(make_entry(), None, now=60.0) is None


# ─── Hit-rates ────────────────────────────────────────────────────────────────

class TestHitRates:
    def test_empty_is_zero(self):
        rates = compute_hit_rates([], AGENTS)
        assert rates.meta == 0.0
        assert rates.agents == {"Trend": 0.0, "Momentum": 0.0}
        assert rates.sample == 0

    def test_all_correct(self):
        rates = compute_hit_rates([outcome(True, Trend=True, Momentum=True)] * 5, AGENTS)
        assert rates.meta == 100.0
        assert rates.agents["Trend"] == 100.0

    def test_per_agent(self):
        rows = [
            outcome(True, Trend=True, Momentum=False),
            outcome(False, Trend=True, Momentum=False),
            outcome(True, Trend=False, Momentum=False),
        ]
        rates = compute_hit_rates(rows, AGENTS)
        assert rates.meta == pytest.approx(66.7)
        assert rates.agents["Trend"] == pytest.approx(66.7)
        assert rates.agents["Momentum"] == 0.0

    def test_window_keeps_newest(self):
        rows = [outcome(True)] * 50 + [outcome(False)] * 10
        rates = compute_hit_rates(rows, window=50)
        assert rates.meta == 100.0
        assert rates.sample == 50

    def test_to_dict(self):
        data = compute_hit_rates([outcome(True, Trend=True)], AGENTS).to_dict()
        assert data == {"meta": 100.0, "agents": {"Trend": 100.0, "Momentum": 0.0}, "sample": 1}


# ─── Settlement pass ──────────────────────────────────────────────────────────

class TestSettle:
    def test_before_horizon_nothing_resolves(self, store):
        entry = store.append_signal(make_entry(created_at=0.0))
        result = settle(store, 59.0, lambda _: 101.0, AGENTS)
        assert result.resolved == 0
        assert store.get_signal(entry.id).resolved_at is None

    def test_resolves_after_horizon(self, store):
        entry = store.append_signal(make_entry(created_at=0.0))
        result = settle(store, 60.0, lambda _: 101.0, AGENTS)
        assert result.resolved == 1
        stored = store.get_signal(entry.id)
        assert stored.resolved_at == 60.0
        assert stored.outcome_pct == pytest.approx(1.0)
        assert stored.meta_correct is True
        assert stored.hit_rates.meta == 100.0
        assert stored.hit_rates.sample == 1

    def test_resolves_exactly_once(self, store):
        entry = store.append_signal(make_entry(created_at=0.0))
        settle(store, 60.0, lambda _: 101.0, AGENTS)
        again = settle(store, 120.0, lambda _: 50.0, AGENTS)
        assert again.resolved == 0
        stored = store.get_signal(entry.id)
        assert stored.resolved_at == 60.0
        assert stored.outcome_pct == pytest.approx(1.0)

    def test_missing_price_is_skipped(self, store):
        entry = store.append_signal(make_entry(symbol="ETH/USDT"))
        result = settle(store, 60.0, {"BTC/USDT": 101.0}.get, AGENTS)
        assert result.resolved == 0
        assert result.skipped == 1
        assert store.get_signal(entry.id).resolved_at is None

    def test_grades_against_own_symbol(self, store):
        store.append_signal(make_entry(meta_action="BUY", symbol="BTC/USDT"))
        store.append_signal(make_entry(meta_action="BUY", symbol="ETH/USDT", created_at=1.0))
        prices = {"BTC/USDT": 110.0, "ETH/USDT": 90.0}
        result = settle(store, 61.0, prices.get, AGENTS)
        assert result.resolved == 2
        assert result.hit_rates.meta == 50.0

    def test_hit_rates_include_history(self, store):
        store.append_signal(make_entry(meta_action="BUY", created_at=0.0))
        settle(store, 60.0, lambda _: 101.0, AGENTS)
        store.append_signal(make_entry(meta_action="SELL", created_at=10.0))
        result = settle(store, 70.0, lambda _: 101.0, AGENTS)
        assert result.resolved == 1
        assert result.hit_rates.sample == 2
        assert result.hit_rates.meta == 50.0

    def test_empty_store(self, store):
        result = settle(store, 100.0, lambda _: 1.0, AGENTS)
        assert result.resolved == 0
        assert result.hit_rates.meta == 0.0

    def test_deal_entry_graded_against_deal_series(self, store):
        ambient = store.append_signal(make_entry(meta_action="BUY", entry_price=69_000.0))
        deal = store.append_signal(make_entry(meta_action="BUY", entry_price=100.0, deal_id="d1"))
        prices = {"BTC/USDT": 69_690.0, "BTC/USDT#d1": 95.0}
        result = settle(store, 60.0, prices.get, AGENTS)
        assert result.resolved == 2
        assert store.get_signal(ambient.id).outcome_pct == pytest.approx(1.0)
        assert store.get_signal(deal.id).outcome_pct == pytest.approx(-5.0)

    def test_deal_entry_never_uses_ambient_price(self, store):
        entry = store.append_signal(make_entry(deal_id="d1"))
        result = settle(store, 60.0, {"BTC/USDT": 69_000.0}.get, AGENTS)
        assert result.resolved == 0
        assert result.skipped == 1
        assert store.get_signal(entry.id).resolved_at is None


class TestPriceKey:
    def test_ambient_key_is_symbol(self):
        assert price_key("BTC/USDT") == "BTC/USDT"
        assert make_entry().price_key == "BTC/USDT"

    def test_deal_key_is_scoped(self):
        assert price_key("BTC/USDT", "d1") == "BTC/USDT#d1"
        assert make_entry(deal_id="d1").price_key == "BTC/USDT#d1"
