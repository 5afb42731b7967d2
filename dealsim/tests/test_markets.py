"""
test_markets.py — Tests for the market catalog and graph-mode helpers.

Coverage:
  - Catalog lookup, id normalisation and BTC fallback
  - Price ceilings, persona validation, event archetypes
  - Graph modes, timeframes, AUTO resolution, waveform profiles
"""

from __future__ import annotations

import pytest

from graph_modes import (
    FALLBACK_PROFILE,
    GRAPH_MODES,
    GRAPH_TIMEFRAMES,
    is_graph_timeframe,
    normalize_graph_mode,
    normalize_timeframe,
    profile_for,
    resolve_pair,
    timeframe_to_ms,
)
from markets import (
    EVENT_KINDS,
    MARKETS,
    MAX_PRICE_MULTIPLE,
    AiPersona,
    get_market,
    list_markets,
    normalize_market_id,
)


# ─── Catalog ──────────────────────────────────────────────────────────────────

class TestCatalog:
    def test_catalog_has_sixteen_markets(self):
        assert len(MARKETS) == 16
        assert len(list_markets()) == 16

    def test_list_markets_entries(self):
        first = list_markets()[0]
        assert first == {"id": "BTC", "label": "Bitcoin"}

    def test_every_market_has_sane_price_model(self):
        for spec in MARKETS.values():
            assert spec.price.base_price > 0
            assert 0 < spec.price.min_price < spec.price.base_price
            assert spec.price.ceiling > spec.price.base_price

    def test_ceiling_defaults_to_multiple_of_base(self):
        spec = get_market("ETH")
        assert spec.price.ceiling == pytest.approx(spec.price.base_price * MAX_PRICE_MULTIPLE)

    def test_pair_uses_quote_asset(self):
        assert get_market("SOL").pair == "SOL/USDT"

    def test_to_dict_reports_effective_ceiling(self):
        data = get_market("BTC").to_dict()
        assert data["pair"] == "BTC/USDT"
        assert data["price"]["max_price"] == get_market("BTC").price.ceiling
        assert data["ai"]["tone"] == "calm"


class TestLookup:
    def test_normalize_lowercase(self):
        assert normalize_market_id("sol") == "SOL"

    def test_normalize_pair(self):
        assert normalize_market_id("DOGE/USDT") == "DOGE"

    def test_normalize_unknown(self):
        assert normalize_market_id("PEPE") is None
        assert normalize_market_id("") is None
        assert normalize_market_id(None) is None

    def test_get_market_falls_back_to_btc(self):
        assert get_market("NOPE").id == "BTC"
        assert get_market(None).id == "BTC"

    def test_get_market_by_pair(self):
        assert get_market("XRP/USDT").id == "XRP"


# ─── Persona & Events ─────────────────────────────────────────────────────────

class TestPersona:
    def test_invalid_tone_raises(self):
        with pytest.raises(ValueError):
            AiPersona("Loud", 0.5, 0.1, "screaming")

    def test_catalog_tones_valid(self):
        for spec in MARKETS.values():
            assert spec.ai.tone in ("calm", "neutral", "hype")


class TestEvents:
    def test_event_kinds(self):
        assert set(EVENT_KINDS) == {"NEWS_SPIKE", "DUMP", "SQUEEZE"}

    def test_dump_is_negative(self):
        assert get_market("BTC").dump().magnitude_bps < 0

    def test_spike_and_squeeze_positive(self):
        spec = get_market("BTC")
        assert spec.news_spike().magnitude_bps > 0
        assert spec.squeeze().magnitude_bps > 0

    def test_strength_scales_magnitude(self):
        spec = get_market("SOL")
        one = spec.event("SQUEEZE", 1.0)
        two = spec.event("SQUEEZE", 2.0)
        assert two.magnitude_bps == pytest.approx(one.magnitude_bps * 2)
        assert two.decay_sec == one.decay_sec

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError, match="Unknown event kind"):
            get_market("BTC").event("RUG_PULL")

    @pytest.mark.parametrize("strength", [0, -1.0])
    def test_non_positive_strength_raises(self, strength):
        with pytest.raises(ValueError):
            get_market("BTC").event("DUMP", strength)


# ─── Graph modes ──────────────────────────────────────────────────────────────

class TestGraphModes:
    def test_modes_are_auto_plus_catalog(self):
        assert GRAPH_MODES[0] == "AUTO"
        assert len(GRAPH_MODES) == 17
        assert "BTC/USDT" in GRAPH_MODES

    def test_normalize_graph_mode(self):
        assert normalize_graph_mode("ETH/USDT") == "ETH/USDT"
        assert normalize_graph_mode("eth") == "ETH/USDT"
        assert normalize_graph_mode("AUTO") == "AUTO"
        assert normalize_graph_mode("PEPE/USDT") == "AUTO"
        assert normalize_graph_mode(None) == "AUTO"

    def test_resolve_auto_follows_active_market(self):
        assert resolve_pair("AUTO", "SOL") == "SOL/USDT"

    def test_resolve_auto_unknown_market(self):
        assert resolve_pair("AUTO", "NOPE") == "BTC/USDT"

    def test_resolve_explicit_pair_ignores_market(self):
        assert resolve_pair("LINK/USDT", "SOL") == "LINK/USDT"

    def test_every_pair_has_profile(self):
        for mode in GRAPH_MODES[1:]:
            assert profile_for(mode) is not FALLBACK_PROFILE or mode == "BTC/USDT"

    def test_unknown_pair_uses_fallback_profile(self):
        assert profile_for("PEPE/USDT") is FALLBACK_PROFILE


class TestTimeframes:
    def test_supported(self):
        assert GRAPH_TIMEFRAMES == ("1s", "5s", "15s")

    def test_to_ms(self):
        assert timeframe_to_ms("1s") == 1_000
        assert timeframe_to_ms("5s") == 5_000
        assert timeframe_to_ms("15s") == 15_000

    def test_unknown_defaults_to_one_second(self):
        assert normalize_timeframe("1m") == "1s"
        assert timeframe_to_ms("1m") == 1_000
        assert not is_graph_timeframe("1m")
        assert is_graph_timeframe("15s")
