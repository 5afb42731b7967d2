"""
ambient.py — Ambient market waveform, history backfill and per-symbol state.

When no deal is running, each symbol's anchor is a sum of slow sine waves
around its catalog base price:

    bps = macro  sin(2πt / cycle        + φ)      * wave_bps
        + micro  sin(2πt / (cycle / 5.3) + 1.7φ)  * micro_wave_bps
        + long   sin(2πt / (cycle * 7.1) + 0.6φ)  * wave_bps * 0.8
        + trend  sin(2πt / (cycle * 23)  + 0.3φ)  * trend_bps_per_sec * cycle * 0.5

    anchor = base * (1 + bps / 1e4)

φ is a stable per-pair phase so symbols do not move in lockstep. The trend
term is itself a (very slow) sine, so the anchor stays bounded forever.

AmbientStateStore keeps one AmbientSnapshot per pair so switching symbols
away and back resumes where the symbol was left. Snapshots are copied on
capture and on restore; the live state never aliases an archived one.
"""

from __future__ import annotations

import math
import random
import zlib
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Optional

from candles import CandleSeries, gaussian
from graph_modes import GraphProfile
from regime import RegimeState


# ─── Constants ────────────────────────────────────────────────────────────────

HISTORY_BARS = 240
HISTORY_PULL = 0.08           # per-bar pull of the backfill walk toward the anchor
HISTORY_WICK_FRAC = 0.35      # wick size relative to the per-bar noise


# ─── Waveform ─────────────────────────────────────────────────────────────────

def pair_phase(pair: str) -> float:
    """Stable phase in [0, 2π) derived from the pair name."""
    return (zlib.crc32(pair.encode("utf-8")) % 6283) / 1000.0


def ambient_bias_bps(profile: GraphProfile, now: float, phase: float = 0.0) -> float:
    cycle = max(profile.cycle_sec, 1.0)
    tau = 2.0 * math.pi
    macro = math.sin(tau * now / cycle + phase) * profile.wave_bps
    micro = math.sin(tau * now / (cycle / 5.3) + phase * 1.7) * profile.micro_wave_bps
    long_ = math.sin(tau * now / (cycle * 7.1) + phase * 0.6) * profile.wave_bps * 0.8
    trend = (
        math.sin(tau * now / (cycle * 23.0) + phase * 0.3)
        * profile.trend_bps_per_sec * cycle * 0.5
    )
    return macro + micro + long_ + trend


def ambient_anchor(base_price: float, profile: GraphProfile, now: float, phase: float = 0.0) -> float:
    return base_price * (1.0 + ambient_bias_bps(profile, now, phase) / 1e4)


def organic_shock(
    profile: GraphProfile,
    anchor: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Rare unscripted shock: with probability shock_chance, ±shock_bps of the anchor."""
    r = rng or random
    if r.random() >= profile.shock_chance:
        return 0.0
    direction = 1.0 if r.random() < 0.5 else -1.0
    return direction * anchor * profile.shock_bps / 1e4 * (0.5 + r.random())


def synthesize_history(
    end_price: float,
    base_price: float,
    profile: GraphProfile,
    timeframe_ms: int,
    now_ms: int,
    min_price: float,
    max_price: float,
    volume_per_sec: float,
    phase: float = 0.0,
    bars: int = HISTORY_BARS,
    maxlen: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> CandleSeries:
    """
    Backfill `bars` candles ending at the current bucket.

    The walk runs backwards from end_price, so the newest close is exactly
    end_price and the live walk continues without a gap.
    """
    r = rng or random
    bar_sec = timeframe_ms / 1000.0
    sigma = profile.micro_wave_bps / 1e4 * 0.35 * math.sqrt(bar_sec)
    now_sec = now_ms / 1000.0

    closes: List[float] = [end_price]
    price = end_price
    for i in range(1, max(bars, 1)):
        anchor = ambient_anchor(base_price, profile, now_sec - i * bar_sec, phase)
        price = price + (anchor - price) * HISTORY_PULL + price * sigma * gaussian(r)
        price = min(max(price, min_price), max_price)
        closes.append(price)
    closes.reverse()

    series = CandleSeries(timeframe_ms, maxlen=maxlen or max(bars, 1))
    first_bucket = series.bucket_start(now_ms) - (len(closes) - 1) * timeframe_ms
    previous = closes[0]
    for i, close in enumerate(closes):
        open_ = previous
        wick = close * sigma * HISTORY_WICK_FRAC
        high = max(open_, close) + wick * r.random()
        low = max(min(open_, close) - wick * r.random(), min(min_price, open_, close))
        volume = volume_per_sec * bar_sec * (0.6 + 0.8 * r.random())
        bucket = first_bucket + i * timeframe_ms
        # one tick per bar: open at previous close, then move to close with wicks
        series.upsert(bucket, open_, open_, open_, 0.0)
        series.upsert(bucket, close, high, low, volume)
        previous = close
    return series


# ─── Per-symbol state ─────────────────────────────────────────────────────────

@dataclass
class AmbientSnapshot:
    """Live state of one ambient symbol."""
    pair:         str
    timeframe:    str
    price:        float
    candles:      CandleSeries
    regime:       RegimeState
    last_tick_at: float

    def copy(self) -> "AmbientSnapshot":
        return replace(self, candles=self.candles.copy())


class AmbientStateStore:
    """pair → AmbientSnapshot, with copy-on-capture and copy-on-restore."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, AmbientSnapshot] = {}

    def capture(self, snapshot: AmbientSnapshot) -> None:
        self._snapshots[snapshot.pair] = snapshot.copy()

    def restore(self, pair: str) -> Optional[AmbientSnapshot]:
        saved = self._snapshots.get(pair)
        return saved.copy() if saved is not None else None

    def discard(self, pair: str) -> None:
        self._snapshots.pop(pair, None)

    def clear(self) -> None:
        self._snapshots.clear()

    def __contains__(self, pair: object) -> bool:
        return pair in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._snapshots))
