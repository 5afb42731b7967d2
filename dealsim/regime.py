"""
regime.py — Stochastic regime model for the ambient market.

A regime is a named bundle of walk tunables (drift, noise, wick, volume,
mean reversion) derived from a symbol's base magnitudes. Regimes rotate on a
randomised 12–24 s deadline, or earlier with a small per-tick probability.

Draw weights:
    TRENDING 0.32 | CHOPPY 0.28 | HIGH_VOL 0.24 | LOW_VOL 0.16

Repeating the previous kind is discouraged (anti-stickiness), and a new
TRENDING regime usually keeps the previous trend direction.

Operator overrides bypass the draw:
    AUTO      random draw
    BULL      TRENDING, direction +1
    BEAR      TRENDING, direction -1
    CHOPPY / HIGH_VOL / LOW_VOL   forced kind
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from markets import PriceModel


# ─── Constants ────────────────────────────────────────────────────────────────

REGIME_KINDS = ("TRENDING", "CHOPPY", "HIGH_VOL", "LOW_VOL")
REGIME_WEIGHTS: Dict[str, float] = {
    "TRENDING": 0.32,
    "CHOPPY":   0.28,
    "HIGH_VOL": 0.24,
    "LOW_VOL":  0.16,
}
REGIME_OVERRIDES = ("AUTO", "BULL", "BEAR", "CHOPPY", "HIGH_VOL", "LOW_VOL")

ANTI_STICKY_PROB   = 0.43     # chance to force a different kind on a repeat draw
TREND_INHERIT_PROB = 0.56     # chance a new TRENDING regime keeps the old direction
SWITCH_MIN_SEC     = 12.0
SWITCH_MAX_SEC     = 24.0
ORGANIC_SWITCH_PROB = 0.003   # per tick

INTENSITY_MIN = 0.25
INTENSITY_MAX = 2.5

# kind → (drift, noise, wick, volume_base, volume_jitter, mean_revert) multipliers
_TUNABLES: Dict[str, tuple] = {
    "TRENDING": (2.4, 0.90, 0.90, 1.15, 1.00, 0.55),
    "CHOPPY":   (0.3, 1.10, 1.20, 0.95, 1.10, 1.60),
    "HIGH_VOL": (1.2, 2.10, 2.20, 1.60, 1.80, 0.80),
    "LOW_VOL":  (0.4, 0.45, 0.50, 0.70, 0.60, 1.30),
}


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RegimeState:
    """Active walk tunables. Ephemeral; never persisted."""
    kind:          str
    drift_bps:     float      # bps per second
    noise_bps:     float
    wick_bps:      float
    volume_base:   float
    volume_jitter: float
    mean_revert:   float
    direction:     int        # +1 / -1
    started_at:    float
    switch_at:     float
    trend_direction: int = 0  # direction of the last TRENDING regime, 0 if none yet

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "drift_bps": round(self.drift_bps, 4),
            "noise_bps": round(self.noise_bps, 4),
            "wick_bps": round(self.wick_bps, 4),
            "volume_base": round(self.volume_base, 4),
            "volume_jitter": round(self.volume_jitter, 4),
            "mean_revert": round(self.mean_revert, 4),
            "direction": self.direction,
            "started_at": self.started_at,
            "switch_at": self.switch_at,
            "trend_direction": self.trend_direction,
        }


def clamp_intensity(value: Any) -> float:
    """Clamp an operator intensity to [0.25, 2.5]; non-numeric input becomes 1.0."""
    try:
        intensity = float(value)
    except (TypeError, ValueError):
        return 1.0
    if intensity != intensity:  # NaN
        return 1.0
    return min(INTENSITY_MAX, max(INTENSITY_MIN, intensity))


def normalize_override(value: Optional[str]) -> str:
    if isinstance(value, str) and value.upper() in REGIME_OVERRIDES:
        return value.upper()
    return "AUTO"


# ─── Model ────────────────────────────────────────────────────────────────────

class RegimeModel:
    """
    Draws and rotates RegimeState instances.

    The RNG is injectable so tests can make draws deterministic.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def draw_kind(self, previous: Optional[str] = None) -> str:
        """Weighted draw with anti-stickiness against the previous kind."""
        kinds = list(REGIME_WEIGHTS)
        weights = [REGIME_WEIGHTS[k] for k in kinds]
        kind = self._rng.choices(kinds, weights=weights, k=1)[0]
        if previous is not None and kind == previous and self._rng.random() < ANTI_STICKY_PROB:
            others = [k for k in kinds if k != previous]
            kind = self._rng.choices(others, weights=[REGIME_WEIGHTS[k] for k in others], k=1)[0]
        return kind

    def next_regime(
        self,
        price: PriceModel,
        previous: Optional[RegimeState] = None,
        override: str = "AUTO",
        intensity: float = 1.0,
        now: Optional[float] = None,
    ) -> RegimeState:
        """
        Produce the next regime for a symbol.

        Args:
            price:     symbol base magnitudes
            previous:  regime being replaced (drives anti-stickiness / direction)
            override:  operator override (see module docstring)
            intensity: operator multiplier on drift / noise / wick / jitter
            now:       wall-clock seconds (defaults to time.time())
        """
        now = time.time() if now is None else now
        override = normalize_override(override)
        intensity = clamp_intensity(intensity)

        if override == "BULL":
            kind, direction = "TRENDING", 1
        elif override == "BEAR":
            kind, direction = "TRENDING", -1
        elif override in REGIME_KINDS:
            kind, direction = override, self._random_direction()
        else:
            kind = self.draw_kind(previous.kind if previous else None)
            direction = self._direction_for(kind, previous)

        if kind == "TRENDING":
            trend_direction = direction
        else:
            trend_direction = previous.trend_direction if previous else 0

        drift_m, noise_m, wick_m, vol_m, jitter_m, revert_m = _TUNABLES[kind]
        return RegimeState(
            kind=kind,
            drift_bps=price.drift_bps * drift_m * intensity,
            noise_bps=price.noise_bps * noise_m * intensity,
            wick_bps=price.wick_bps * wick_m * intensity,
            volume_base=price.volume_base * vol_m,
            volume_jitter=price.volume_jitter * jitter_m * intensity,
            mean_revert=min(0.95, price.mean_revert * revert_m),
            direction=direction,
            started_at=now,
            switch_at=now + self._rng.uniform(SWITCH_MIN_SEC, SWITCH_MAX_SEC),
            trend_direction=trend_direction,
        )

    def should_rotate(self, regime: Optional[RegimeState], now: float) -> bool:
        """True once the deadline has passed, or on a rare organic switch."""
        if regime is None or now >= regime.switch_at:
            return True
        return self._rng.random() < ORGANIC_SWITCH_PROB

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _random_direction(self) -> int:
        return 1 if self._rng.random() < 0.5 else -1

    def _direction_for(self, kind: str, previous: Optional[RegimeState]) -> int:
        if (
            kind == "TRENDING"
            and previous is not None
            and previous.trend_direction != 0
            and self._rng.random() < TREND_INHERIT_PROB
        ):
            return previous.trend_direction
        return self._random_direction()
