"""
candles.py — Stochastic tick walk and OHLCV aggregation.

Every tick the price takes one step toward the current anchor:

    price = prev
          + (anchor - prev) * mean_revert * min(dt * 1.1, 1)      pull
          + anchor * drift_bps / 1e4 * direction * dt             drift
          + anchor * noise_bps / 1e4 * gaussian() * sqrt(dt * k)  noise
          + shock                                                 events

then is clamped to prev ± max_jump and to the symbol's [floor, ceiling].
The clamped price plus a random wick is folded into the open candle of the
active timeframe bucket.
"""

from __future__ import annotations

import copy
import math
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from markets import MarketEvent
from regime import RegimeState


# ─── Constants ────────────────────────────────────────────────────────────────

MIN_DT = 0.05                  # seconds; floor on the tick delta
MAX_DT = 2.0                   # seconds; cap after pauses / symbol switches
NOISE_TIME_SCALE = 5.0         # sqrt(dt * k) == 1 at the 200 ms reference tick
MAX_JUMP_PREV_FRAC   = 0.03
MAX_JUMP_ANCHOR_FRAC = 0.02
DEFAULT_WINDOW = 3_000         # candles kept in memory per context
EVENT_LIFETIME_DECAYS = 5.0    # an event expires after this many decay constants
EVENT_JOLT_CHANCE = 0.3        # per tick, scaled by the remaining event weight


# ─── Numeric helpers ──────────────────────────────────────────────────────────

def gaussian(rng: Optional[random.Random] = None) -> float:
    """Approximate N(0, 1) as a centred sum of three uniforms. Bounded to ±3."""
    r = rng or random
    return (r.random() + r.random() + r.random() - 1.5) / 0.5


def is_valid_price(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def clamp_dt(dt: float) -> float:
    if not math.isfinite(dt):
        return MIN_DT
    return min(MAX_DT, max(MIN_DT, dt))


def max_jump(prev: float, anchor: float) -> float:
    return max(prev * MAX_JUMP_PREV_FRAC, anchor * MAX_JUMP_ANCHOR_FRAC)


def step_price(
    prev: float,
    anchor: float,
    regime: RegimeState,
    dt: float,
    min_price: float,
    max_price: float,
    shock: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Advance the walk one tick and return the new price.

    Invalid inputs never propagate: a bad anchor is replaced by the previous
    price and vice versa; a non-finite result keeps the previous price.
    """
    if not is_valid_price(anchor):
        anchor = prev
    if not is_valid_price(prev):
        prev = anchor
    if not is_valid_price(prev):
        return min_price

    dt = clamp_dt(dt)
    pull  = (anchor - prev) * regime.mean_revert * min(dt * 1.1, 1.0)
    drift = anchor * regime.drift_bps / 1e4 * regime.direction * dt
    noise = anchor * regime.noise_bps / 1e4 * gaussian(rng) * math.sqrt(dt * NOISE_TIME_SCALE)
    raw = prev + pull + drift + noise + (shock if math.isfinite(shock) else 0.0)
    if not math.isfinite(raw):
        raw = prev

    limit = max_jump(prev, anchor)
    price = min(max(raw, prev - limit), prev + limit)
    return min(max(price, min_price), max_price)


def wick_extents(
    price: float,
    regime: RegimeState,
    min_price: float,
    rng: Optional[random.Random] = None,
) -> Tuple[float, float]:
    """Synthetic (high, low) around a tick price; larger and more frequent under HIGH_VOL."""
    r = rng or random
    high_vol = regime.kind == "HIGH_VOL"
    chance = 0.65 if high_vol else 0.35
    scale = 1.6 if high_vol else 1.0
    span = price * regime.wick_bps / 1e4 * scale
    up = span * r.random() if r.random() < chance else 0.0
    down = span * r.random() if r.random() < chance else 0.0
    return price + up, max(price - down, min(price, min_price))


def tick_volume(regime: RegimeState, dt: float, rng: Optional[random.Random] = None) -> float:
    r = rng or random
    per_sec = regime.volume_base + regime.volume_jitter * (r.random() * 2.0 - 1.0)
    return max(0.0, per_sec * clamp_dt(dt))


# ─── Market events ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActiveEvent:
    """
    A triggered MarketEvent. Its effect decays as exp(-elapsed / decay_sec):
    the anchor is shifted by magnitude_bps * weight, and each tick may add a
    random jolt in the event's direction.
    """
    event:      MarketEvent
    started_at: float

    def weight(self, now: float) -> float:
        elapsed = max(0.0, now - self.started_at)
        return math.exp(-elapsed / self.event.decay_sec)

    def expired(self, now: float) -> bool:
        return now - self.started_at >= self.event.decay_sec * EVENT_LIFETIME_DECAYS

    def anchor_shift(self, anchor: float, now: float) -> float:
        return anchor * self.event.magnitude_bps / 1e4 * self.weight(now)

    def jolt(self, anchor: float, now: float, rng: Optional[random.Random] = None) -> float:
        r = rng or random
        weight = self.weight(now)
        if r.random() >= EVENT_JOLT_CHANCE * weight:
            return 0.0
        return anchor * self.event.magnitude_bps / 1e4 * 0.25 * weight * r.random()

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event.to_dict(), "started_at": self.started_at}


# ─── Candles ──────────────────────────────────────────────────────────────────

@dataclass
class Candle:
    """OHLCV bar. `time` is the bucket start in unix milliseconds."""
    time:   int
    open:   float
    high:   float
    low:    float
    close:  float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": round(self.volume, 4),
        }


class CandleSeries:
    """
    Bounded rolling window of candles for one (symbol, timeframe) context.

    Only the last candle is mutable; once a later bucket opens it is never
    touched again.
    """

    def __init__(
        self,
        timeframe_ms: int,
        maxlen: int = DEFAULT_WINDOW,
        candles: Optional[Iterable[Candle]] = None,
    ) -> None:
        if timeframe_ms <= 0:
            raise ValueError("timeframe_ms must be positive")
        self.timeframe_ms = timeframe_ms
        self._candles: Deque[Candle] = deque(candles or (), maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def maxlen(self) -> int:
        return self._candles.maxlen or DEFAULT_WINDOW

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def bucket_start(self, now_ms: int) -> int:
        return now_ms - (now_ms % self.timeframe_ms)

    def upsert(
        self,
        now_ms: int,
        price: float,
        tick_high: Optional[float] = None,
        tick_low: Optional[float] = None,
        volume: float = 0.0,
    ) -> Tuple[Candle, bool]:
        """
        Fold one tick into the open candle.

        Returns (open candle, True if a new bucket was opened).
        """
        high = max(price, tick_high if tick_high is not None else price)
        low = min(price, tick_low if tick_low is not None else price)
        volume = max(0.0, volume)
        bucket = self.bucket_start(now_ms)
        last = self.last

        if last is None or bucket > last.time:
            open_ = last.close if last is not None else price
            candle = Candle(
                time=bucket,
                open=open_,
                high=max(open_, high),
                low=min(open_, low),
                close=price,
                volume=volume,
            )
            self._candles.append(candle)
            return candle, True

        # same bucket (or a clock step backwards): update in place
        last.high = max(last.high, high)
        last.low = min(last.low, low)
        last.close = price
        last.volume += volume
        return last, False

    def closes(self) -> List[float]:
        return [c.close for c in self._candles]

    def volumes(self) -> List[float]:
        return [c.volume for c in self._candles]

    def recent(self, n: int) -> List[Candle]:
        if n <= 0:
            return []
        return list(self._candles)[-n:]

    def clear(self) -> None:
        self._candles.clear()

    def copy(self) -> "CandleSeries":
        """Deep copy; the result shares no Candle objects with self."""
        return CandleSeries(
            self.timeframe_ms,
            maxlen=self.maxlen,
            candles=copy.deepcopy(list(self._candles)),
        )
