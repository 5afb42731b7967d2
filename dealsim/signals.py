"""
signals.py — Forecasting heuristics and the meta aggregator.

Five independent heuristics read the candle closes (and volumes) and each emit
a ModelSignal. Every heuristic implements the same interface:

    heuristic.evaluate(closes: List[float], volumes: List[float]) -> ModelSignal

Heuristics:
  1. Trend       — EMA9 vs EMA21 cross confirmed by the short slope
  2. Momentum    — RSI14 below 35 / above 65
  3. Volatility  — 20-bar range width, direction from the EMA cross
  4. Volume      — last bar volume vs 10-bar average, direction from slope
  5. Pattern     — flush / breakdown over the 30-bar tail

aggregate_signals() reduces the list to one MetaDecision:
    >= 4 BUY      -> BUY
    >= 4 SELL     -> SELL
    BUY and SELL  -> NO_TRADE ("agent conflict")
    otherwise     -> NO_TRADE ("insufficient conviction")

Usage:
    signals = build_signals(series.closes(), series.volumes())
    signals = apply_persona(signals, get_market("SOL").ai)
    meta = aggregate_signals(signals)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from markets import AiPersona


# ─── Constants ────────────────────────────────────────────────────────────────

SIGNAL_ACTIONS = ("BUY", "SELL", "OFF")
META_ACTIONS = ("BUY", "SELL", "NO_TRADE")

MIN_CLOSES = 5            # evaluations start once this many closes exist
META_QUORUM = 4           # agreeing votes needed for a directional meta call
MAX_ADJUSTED_CONFIDENCE = 99

RSI_OVERSOLD = 35.0
RSI_OVERBOUGHT = 65.0
NARROW_RANGE_WIDTH = 0.008
VOLUME_SPIKE_RATIO = 1.8


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class ModelSignal:
    """One heuristic's vote for the current evaluation."""
    agent_name: str
    action:     str        # "BUY" | "SELL" | "OFF"
    confidence: int        # 0 – 100
    reasons:    List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.action not in SIGNAL_ACTIONS:
            raise ValueError(f"Invalid signal action '{self.action}'")
        self.confidence = int(max(0, min(100, round(self.confidence))))

    @property
    def directional(self) -> bool:
        return self.action != "OFF"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "action": self.action,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelSignal":
        return cls(
            agent_name=data["agent_name"],
            action=data["action"],
            confidence=data.get("confidence", 0),
            reasons=list(data.get("reasons", [])),
        )


@dataclass
class MetaDecision:
    action:     str        # "BUY" | "SELL" | "NO_TRADE"
    confidence: int
    reason:     str

    def __post_init__(self) -> None:
        if self.action not in META_ACTIONS:
            raise ValueError(f"Invalid meta action '{self.action}'")

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "confidence": self.confidence, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaDecision":
        return cls(
            action=data["action"],
            confidence=int(data.get("confidence", 0)),
            reason=data.get("reason", ""),
        )


# ─── Indicators ───────────────────────────────────────────────────────────────

def ema(values: Sequence[float], period: int) -> float:
    """Exponential moving average seeded with the first value. 0.0 for no data."""
    if not values:
        return 0.0
    k = 2.0 / (period + 1)
    current = values[0]
    for value in values[1:]:
        current = value * k + current * (1 - k)
    return current


def rsi(values: Sequence[float], period: int = 14) -> float:
    """Simple-sum RSI over the last `period` deltas; 50.0 when history is short."""
    if len(values) < period + 1:
        return 50.0
    gains = 0.0
    losses = 0.0
    for i in range(len(values) - period, len(values)):
        diff = values[i] - values[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    if losses == 0:
        return 100.0 if gains > 0 else 50.0
    rs = gains / losses
    return 100.0 - 100.0 / (1.0 + rs)


def slope(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return values[-1] - values[-2]


# ─── Heuristics ───────────────────────────────────────────────────────────────

class BaseHeuristic:
    """Common interface: (closes, volumes) → ModelSignal."""

    name: str = "Base"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        raise NotImplementedError

    def _signal(self, action: str, confidence: int, *reasons: str) -> ModelSignal:
        return ModelSignal(self.name, action, confidence, list(reasons))


class TrendHeuristic(BaseHeuristic):
    """EMA9 over the last 30 closes vs EMA21 over the last 60, confirmed by slope."""

    name = "Trend"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        fast = ema(closes[-30:], 9)
        slow = ema(closes[-60:], 21)
        rising = slope(closes[-5:])
        if fast > slow and rising > 0:
            return self._signal("BUY", 78, "EMA9 > EMA21", "rising")
        if fast < slow and rising < 0:
            return self._signal("SELL", 76, "EMA9 < EMA21", "falling")
        return self._signal("OFF", 40, "Mixed trend")


class MomentumHeuristic(BaseHeuristic):

    name = "Momentum"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        value = rsi(closes, 14)
        if value < RSI_OVERSOLD:
            return self._signal("BUY", 72, f"RSI {value:.1f} oversold")
        if value > RSI_OVERBOUGHT:
            return self._signal("SELL", 74, f"RSI {value:.1f} overbought")
        return self._signal("OFF", 45, f"RSI neutral {value:.1f}")


class VolatilityHeuristic(BaseHeuristic):
    """
    Range width over the last 20 closes relative to the last price.

    Narrow ranges are chop; wide ranges follow the EMA cross.
    """

    name = "Volatility"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        last = closes[-1] if closes else 0.0
        window = closes[-20:]
        width = (max(window) - min(window)) / last if window and last > 0 else 0.0
        if width < NARROW_RANGE_WIDTH:
            return self._signal("OFF", 35, f"Narrow range {width:.2%}")
        if ema(closes[-30:], 9) > ema(closes[-60:], 21):
            return self._signal("BUY", 68, f"Expanding upside range {width:.2%}")
        return self._signal("SELL", 68, f"Expanding downside range {width:.2%}")


class VolumeHeuristic(BaseHeuristic):
    """Volume spike vs the 10-bar average. Falls back to |Δclose| without volumes."""

    name = "Volume"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        if volumes:
            window = list(volumes[-10:])
        else:
            tail = closes[-11:]
            window = [abs(b - a) for a, b in zip(tail, tail[1:])]
        average = sum(window) / max(len(window), 1)
        last = window[-1] if window else 0.0
        direction = slope(closes[-5:])
        if last > average * VOLUME_SPIKE_RATIO and direction > 0:
            return self._signal("BUY", 70, "Volume spike on breakout")
        if last > average * VOLUME_SPIKE_RATIO and direction < 0:
            return self._signal("SELL", 70, "Volume spike on selloff")
        return self._signal("OFF", 40, "No volume confirmation")


class PatternHeuristic(BaseHeuristic):
    """
    Reversal after a flush: the 30-bar tail starts at its low and closes above it.
    Breakdown after a peak: the tail starts at its high and closes below it.
    """

    name = "Pattern"

    def evaluate(self, closes: List[float], volumes: List[float]) -> ModelSignal:
        tail = closes[-30:]
        if not tail:
            return self._signal("OFF", 45, "No clear pattern")
        first, last = tail[0], tail[-1]
        if last > first and first == min(tail):
            return self._signal("BUY", 75, "Reversal after flush")
        if last < first and first == max(tail):
            return self._signal("SELL", 75, "Breakdown after peak")
        return self._signal("OFF", 45, "No clear pattern")


def default_heuristics() -> List[BaseHeuristic]:
    return [
        TrendHeuristic(),
        MomentumHeuristic(),
        VolatilityHeuristic(),
        VolumeHeuristic(),
        PatternHeuristic(),
    ]


# ─── Pipeline ─────────────────────────────────────────────────────────────────

def build_signals(
    closes: List[float],
    volumes: Optional[List[float]] = None,
    heuristics: Optional[List[BaseHeuristic]] = None,
) -> List[ModelSignal]:
    """
    Run every heuristic once. A failing heuristic abstains (OFF, 0) instead of
    aborting the evaluation.
    """
    volumes = volumes or []
    signals: List[ModelSignal] = []
    for heuristic in heuristics or default_heuristics():
        try:
            signals.append(heuristic.evaluate(closes, volumes))
        except Exception as exc:
            logger.warning(f"Heuristic {heuristic.name} failed: {exc}")
            signals.append(ModelSignal(heuristic.name, "OFF", 0, [f"error: {exc}"]))
    return signals


def apply_persona(signals: List[ModelSignal], persona: Optional[AiPersona]) -> List[ModelSignal]:
    """Raise directional confidence by the persona's bias (capped at 99). Returns new signals."""
    if persona is None:
        return list(signals)
    boost = round(persona.confidence_bias * 100)
    adjusted = []
    for sig in signals:
        if sig.directional and boost:
            sig = replace(
                sig,
                confidence=min(MAX_ADJUSTED_CONFIDENCE, sig.confidence + boost),
                reasons=list(sig.reasons),
            )
        adjusted.append(sig)
    return adjusted


def aggregate_signals(signals: List[ModelSignal]) -> MetaDecision:
    """Deterministic vote over the signal set. Confidence is the vote share in %."""
    total = len(signals)
    if total == 0:
        return MetaDecision("NO_TRADE", 0, "no signals")

    buys = sum(1 for s in signals if s.action == "BUY")
    sells = sum(1 for s in signals if s.action == "SELL")

    if buys >= META_QUORUM:
        return MetaDecision("BUY", round(buys / total * 100), f"{buys}/{total} agents agree BUY")
    if sells >= META_QUORUM:
        return MetaDecision("SELL", round(sells / total * 100), f"{sells}/{total} agents agree SELL")

    confidence = round(max(buys, sells) / total * 100)
    if buys and sells:
        return MetaDecision("NO_TRADE", confidence, f"agent conflict ({buys} BUY / {sells} SELL)")
    return MetaDecision("NO_TRADE", confidence, "insufficient conviction")
