"""
test_engine_config.py — Tests for process settings and the engine config row type.
"""

from __future__ import annotations

import pytest

from engine_config import EngineConfigState, EngineSettings


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings.from_env({})
        assert settings.db_path is None
        assert not settings.enabled
        assert settings.tick_ms == 200
        assert settings.tick_interval_s == pytest.approx(0.2)
        assert settings.watch_interval_s == 5.0
        assert settings.forecast_interval_s == 1.0
        assert settings.signal_horizon_s == 60.0
        assert settings.candle_window == 3000
        assert settings.port == 8086

    def test_reads_environment(self):
        settings = EngineSettings.from_env({
            "DEALSIM_DB_PATH": "data/dealsim.db",
            "DEALSIM_TICK_MS": "100",
            "DEALSIM_SIGNAL_HORIZON_S": "30",
            "DEALSIM_PORT": "9000",
            "LOG_LEVEL": "debug",
        })
        assert settings.enabled
        assert settings.db_path == "data/dealsim.db"
        assert settings.tick_ms == 100
        assert settings.signal_horizon_s == 30.0
        assert settings.port == 9000
        assert settings.log_level == "DEBUG"

    def test_blank_db_path_disables(self):
        assert not EngineSettings.from_env({"DEALSIM_DB_PATH": "   "}).enabled

    def test_invalid_number_uses_default(self):
        assert EngineSettings.from_env({"DEALSIM_TICK_MS": "fast"}).tick_ms == 200

    def test_below_minimum_uses_default(self):
        settings = EngineSettings.from_env({"DEALSIM_TICK_MS": "1", "DEALSIM_CANDLE_WINDOW": "5"})
        assert settings.tick_ms == 200
        assert settings.candle_window == 3000


class TestEngineConfigState:
    def test_defaults(self):
        state = EngineConfigState()
        assert state.to_dict() == {"active_market_id": "BTC", "regime_override": "AUTO", "intensity": 1.0}

    def test_normalized(self):
        state = EngineConfigState.normalized("sol/usdt", "bear", 0.1)
        assert state == EngineConfigState("SOL", "BEAR", 0.25)

    def test_normalized_unknown_market(self):
        assert EngineConfigState.normalized("PEPE").active_market_id == "BTC"

    def test_merged_keeps_omitted_fields(self):
        state = EngineConfigState("ETH", "BULL", 1.5)
        merged = state.merged(intensity=2.0)
        assert merged == EngineConfigState("ETH", "BULL", 2.0)

    def test_merged_replaces_given_fields(self):
        merged = EngineConfigState().merged("DOGE", "HIGH_VOL")
        assert merged == EngineConfigState("DOGE", "HIGH_VOL", 1.0)
