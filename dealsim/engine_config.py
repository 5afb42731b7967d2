"""
engine_config.py — Process settings and the persisted engine config row.

EngineSettings is read once from the environment at startup (see
.env.example). EngineConfigState is the operator-controlled row persisted by
the deal store: active market, regime override and intensity.

Environment:
    DEALSIM_DB_PATH              SQLite file; unset or empty => disabled engine
    DEALSIM_TICK_MS              market tick period (200)
    DEALSIM_WATCH_INTERVAL_S     deal watcher period (5)
    DEALSIM_FORECAST_INTERVAL_S  forecast / settlement period (1)
    DEALSIM_SIGNAL_HORIZON_S     signal grading horizon (60)
    DEALSIM_CANDLE_WINDOW        candles kept per context (3000)
    DEALSIM_HOST / DEALSIM_PORT  HTTP bind address (0.0.0.0:8086)
    LOG_LEVEL                    loguru level (INFO)
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from markets import DEFAULT_MARKET_ID, normalize_market_id
from regime import clamp_intensity, normalize_override


# ─── Process settings ─────────────────────────────────────────────────────────

def _env_number(env: Mapping[str, str], key: str, default: float, minimum: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r}, using default {default}")
        return default
    if value != value or value < minimum:
        logger.warning(f"Out of range {key}={raw!r}, using default {default}")
        return default
    return value


@dataclass(frozen=True)
class EngineSettings:
    db_path:             Optional[str] = None
    tick_ms:             int = 200
    watch_interval_s:    float = 5.0
    forecast_interval_s: float = 1.0
    signal_horizon_s:    float = 60.0
    candle_window:       int = 3_000
    host:                str = "0.0.0.0"
    port:                int = 8086
    log_level:           str = "INFO"

    @property
    def enabled(self) -> bool:
        return bool(self.db_path)

    @property
    def tick_interval_s(self) -> float:
        return self.tick_ms / 1000.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if env is None else env
        db_path = (env.get("DEALSIM_DB_PATH") or "").strip() or None
        return cls(
            db_path=db_path,
            tick_ms=int(_env_number(env, "DEALSIM_TICK_MS", 200, 10)),
            watch_interval_s=_env_number(env, "DEALSIM_WATCH_INTERVAL_S", 5.0, 0.1),
            forecast_interval_s=_env_number(env, "DEALSIM_FORECAST_INTERVAL_S", 1.0, 0.1),
            signal_horizon_s=_env_number(env, "DEALSIM_SIGNAL_HORIZON_S", 60.0, 1.0),
            candle_window=int(_env_number(env, "DEALSIM_CANDLE_WINDOW", 3_000, 100)),
            host=env.get("DEALSIM_HOST", "0.0.0.0") or "0.0.0.0",
            port=int(_env_number(env, "DEALSIM_PORT", 8086, 1)),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )


# ─── Persisted config row ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class EngineConfigState:
    """Operator selections that survive restarts. Always normalised."""
    active_market_id: str = DEFAULT_MARKET_ID
    regime_override:  str = "AUTO"
    intensity:        float = 1.0

    @classmethod
    def normalized(
        cls,
        active_market_id: Any = None,
        regime_override: Any = None,
        intensity: Any = None,
    ) -> "EngineConfigState":
        return cls(
            active_market_id=normalize_market_id(active_market_id) or DEFAULT_MARKET_ID,
            regime_override=normalize_override(regime_override),
            intensity=clamp_intensity(1.0 if intensity is None else intensity),
        )

    def merged(
        self,
        active_market_id: Any = None,
        regime_override: Any = None,
        intensity: Any = None,
    ) -> "EngineConfigState":
        """Apply a partial update; omitted (None) fields keep their value."""
        return EngineConfigState.normalized(
            active_market_id=self.active_market_id if active_market_id is None else active_market_id,
            regime_override=self.regime_override if regime_override is None else regime_override,
            intensity=self.intensity if intensity is None else intensity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
