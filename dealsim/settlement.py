"""
settlement.py — Signal log entries, outcome grading and rolling hit-rates.

Every forecast evaluation is logged with a fixed horizon. Once the horizon has
elapsed, a settlement pass grades the entry exactly once against the latest
known price of the entry's symbol:

    outcome_pct = (current - entry) / entry * 100

    BUY       correct if outcome_pct >  0
    SELL      correct if outcome_pct <  0
    NO_TRADE  correct if |outcome_pct| <= 0.15   ("flat")
    OFF       graded like NO_TRADE

Hit-rate = wins / total over the most recent 50 resolved entries, for the meta
decision and separately for each agent.

Usage:
    result = settle(store, now=time.time(), price_for=lambda sym: last_prices.get(sym))
    print(result.resolved, result.hit_rates.meta)
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from signals import MetaDecision, ModelSignal


# ─── Constants ────────────────────────────────────────────────────────────────

FLAT_BAND_PCT = 0.15
HIT_RATE_WINDOW = 50
DEFAULT_HORIZON_SEC = 60.0


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class HitRates:
    """Rolling accuracy in percent (0 – 100) over `sample` resolved entries."""
    meta:   float = 0.0
    agents: Dict[str, float] = field(default_factory=dict)
    sample: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"meta": self.meta, "agents": dict(self.agents), "sample": self.sample}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["HitRates"]:
        if not data:
            return None
        return cls(
            meta=float(data.get("meta", 0.0)),
            agents={k: float(v) for k, v in (data.get("agents") or {}).items()},
            sample=int(data.get("sample", 0)),
        )


@dataclass
class SignalLogEntry:
    """
    One logged evaluation. Created unresolved; the settlement fields are
    written once and never again.
    """
    id:            str
    deal_id:       Optional[str]
    symbol:        str
    entry_price:   float
    signals:       List[ModelSignal]
    meta:          MetaDecision
    horizon_sec:   float
    created_at:    float
    resolved_at:   Optional[float] = None
    outcome_pct:   Optional[float] = None
    meta_correct:  Optional[bool] = None
    agent_correct: Dict[str, bool] = field(default_factory=dict)
    hit_rates:     Optional[HitRates] = None

    @classmethod
    def new(
        cls,
        symbol: str,
        entry_price: float,
        signals: List[ModelSignal],
        meta: MetaDecision,
        created_at: float,
        deal_id: Optional[str] = None,
        horizon_sec: float = DEFAULT_HORIZON_SEC,
    ) -> "SignalLogEntry":
        return cls(
            id=uuid.uuid4().hex,
            deal_id=deal_id,
            symbol=symbol,
            entry_price=entry_price,
            signals=list(signals),
            meta=meta,
            horizon_sec=horizon_sec,
            created_at=created_at,
        )

    @property
    def price_key(self) -> str:
        return price_key(self.symbol, self.deal_id)

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def is_due(self, now: float) -> bool:
        return not self.resolved and now - self.created_at >= self.horizon_sec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "symbol": self.symbol,
            "entry_price": self.entry_price,
            "signals": [s.to_dict() for s in self.signals],
            "meta": self.meta.to_dict(),
            "horizon_sec": self.horizon_sec,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "outcome_pct": self.outcome_pct,
            "meta_correct": self.meta_correct,
            "agent_correct": dict(self.agent_correct),
            "hit_rates": self.hit_rates.to_dict() if self.hit_rates else None,
        }


@dataclass
class Resolution:
    """Grading of one due entry, ready to be written by the store."""
    entry_id:      str
    resolved_at:   float
    outcome_pct:   float
    meta_correct:  bool
    agent_correct: Dict[str, bool]
    created_at:    float = 0.0


@dataclass
class SettlementResult:
    resolved:  int
    skipped:   int
    hit_rates: HitRates


# ─── Grading ──────────────────────────────────────────────────────────────────

def price_key(symbol: str, deal_id: Optional[str] = None) -> str:
    """Key of the price series an entry is graded against; each deal has its own."""
    return symbol if deal_id is None else f"{symbol}#{deal_id}"


def outcome_pct(entry_price: float, current_price: float) -> Optional[float]:
    """Percentage move from entry to current; None when either price is unusable."""
    for value in (entry_price, current_price):
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            return None
    return (current_price - entry_price) / entry_price * 100.0


def is_correct(action: str, outcome: float) -> bool:
    if action == "BUY":
        return outcome > 0
    if action == "SELL":
        return outcome < 0
    return abs(outcome) <= FLAT_BAND_PCT


def grade_entry(entry: SignalLogEntry, current_price: float, now: float) -> Optional[Resolution]:
    """Grade a due entry. Returns None if it is not due or the price is unusable."""
    if not entry.is_due(now):
        return None
    outcome = outcome_pct(entry.entry_price, current_price)
    if outcome is None:
        return None
    return Resolution(
        entry_id=entry.id,
        resolved_at=now,
        outcome_pct=round(outcome, 6),
        meta_correct=is_correct(entry.meta.action, outcome),
        agent_correct={s.agent_name: is_correct(s.action, outcome) for s in entry.signals},
        created_at=entry.created_at,
    )


def compute_hit_rates(
    outcomes: Iterable[Any],
    agent_names: Optional[Iterable[str]] = None,
    window: int = HIT_RATE_WINDOW,
) -> HitRates:
    """
    Hit-rates over the first `window` outcomes (newest first).

    Each outcome needs `meta_correct` and `agent_correct` attributes; both
    Resolution and resolved SignalLogEntry objects qualify. With no outcomes
    every rate is 0.
    """
    sample = list(outcomes)[:window]
    agents: Dict[str, List[bool]] = {name: [] for name in (agent_names or [])}
    meta_wins = 0
    for item in sample:
        if item.meta_correct:
            meta_wins += 1
        for name, correct in (item.agent_correct or {}).items():
            agents.setdefault(name, []).append(bool(correct))

    def pct(wins: int, total: int) -> float:
        return round(wins / total * 100.0, 1) if total else 0.0

    return HitRates(
        meta=pct(meta_wins, len(sample)),
        agents={name: pct(sum(marks), len(marks)) for name, marks in agents.items()},
        sample=len(sample),
    )


# ─── Settlement pass ──────────────────────────────────────────────────────────

def settle(
    store: Any,
    now: float,
    price_for: Callable[[str], Optional[float]],
    agent_names: Optional[Iterable[str]] = None,
    window: int = HIT_RATE_WINDOW,
) -> SettlementResult:
    """
    Resolve every due entry in `store` once and recompute hit-rates.

    Each entry is priced by its price_key, so deal entries are graded against
    the deal series (frozen at its last price once the deal ends) and ambient
    entries against the ambient series. Entries with no usable price are left
    for a later pass. The
    store must provide list_due_signals(now), recent_resolved(limit) and
    resolve_signals(resolutions, hit_rates) -> int.
    """
    due = store.list_due_signals(now)
    resolutions: List[Resolution] = []
    skipped = 0
    for entry in due:
        resolution = grade_entry(entry, price_for(entry.price_key), now)
        if resolution is None:
            skipped += 1
            continue
        resolutions.append(resolution)

    newest_first = sorted(resolutions, key=lambda r: r.created_at, reverse=True)
    previous = store.recent_resolved(window)
    hit_rates = compute_hit_rates(newest_first + previous, agent_names, window)

    written = store.resolve_signals(resolutions, hit_rates) if resolutions else 0
    if written:
        logger.debug(f"Settled {written} signal(s); meta hit-rate {hit_rates.meta:.1f}%")
    return SettlementResult(resolved=written, skipped=skipped, hit_rates=hit_rates)
