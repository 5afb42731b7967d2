"""
scenario.py — Scripted deal scenarios and their anchor price.

A Deal is an operator-authored price script: one delayed percentage drop and
an ordered list of delayed / held / decaying percentage rises. The anchor is a
pure function of (deal, elapsed seconds); the tick engine walks toward it.

Bias components (percent of base price, summed algebraically):

    drop:  -drop_pct * min((t - drop_delay) / 4, 1)           for t >= drop_delay
    jump:  phase = t - rise_delay
             0 <= phase <= 3             ramp   rise_pct * phase / 3
             3 <  phase <= 3 + hold      hold   rise_pct
             after                       decay  rise_pct * max(1 - (phase-3-hold)/5, 0)

anchor = base * (1 + bias / 100) + zero-mean noise (~0.06 % of base).
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# ─── Constants ────────────────────────────────────────────────────────────────

DEAL_STATUSES = ("SCHEDULED", "RUNNING", "FINISHED")

DROP_RAMP_SEC  = 4.0
JUMP_RAMP_SEC  = 3.0
JUMP_DECAY_SEC = 5.0
SCENARIO_NOISE_PCT = 0.06     # stdev-ish of the additive anchor noise, % of base


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DealJump:
    """One scripted rise. Immutable once the owning deal is RUNNING."""
    rise_delay_sec:   float
    rise_magnitude_pct: float
    hold_sec:         float
    order_index:      int = 0

    def bias_pct(self, elapsed_sec: float) -> float:
        phase = elapsed_sec - self.rise_delay_sec
        if phase < 0:
            return 0.0
        if phase <= JUMP_RAMP_SEC:
            return self.rise_magnitude_pct * min(phase / JUMP_RAMP_SEC, 1.0)
        if phase <= JUMP_RAMP_SEC + self.hold_sec:
            return self.rise_magnitude_pct
        decay = min((phase - JUMP_RAMP_SEC - self.hold_sec) / JUMP_DECAY_SEC, 1.0)
        return self.rise_magnitude_pct * max(1.0 - decay, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rise_delay_sec": self.rise_delay_sec,
            "rise_magnitude_pct": self.rise_magnitude_pct,
            "hold_sec": self.hold_sec,
            "order_index": self.order_index,
        }


@dataclass(frozen=True)
class Deal:
    """An operator-scheduled scripted scenario."""
    id:                 str
    symbol:             str
    chain_name:         str
    base_price:         float
    start_time:         float          # unix seconds
    total_duration_sec: float
    drop_delay_sec:     float
    drop_magnitude_pct: float
    status:             str = "SCHEDULED"
    jumps:              Tuple[DealJump, ...] = field(default_factory=tuple)
    claimed_at:         Optional[float] = None
    created_at:         Optional[float] = None

    def __post_init__(self) -> None:
        if self.status not in DEAL_STATUSES:
            raise ValueError(f"Invalid deal status '{self.status}'")
        # jumps are always held in script order
        object.__setattr__(
            self, "jumps", tuple(sorted(self.jumps, key=lambda j: j.order_index))
        )

    def drop_bias_pct(self, elapsed_sec: float) -> float:
        if elapsed_sec < self.drop_delay_sec:
            return 0.0
        progress = min((elapsed_sec - self.drop_delay_sec) / DROP_RAMP_SEC, 1.0)
        return -self.drop_magnitude_pct * progress

    def ends_at(self) -> Optional[float]:
        if self.claimed_at is None:
            return None
        return self.claimed_at + self.total_duration_sec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "chain_name": self.chain_name,
            "base_price": self.base_price,
            "start_time": self.start_time,
            "total_duration_sec": self.total_duration_sec,
            "drop_delay_sec": self.drop_delay_sec,
            "drop_magnitude_pct": self.drop_magnitude_pct,
            "status": self.status,
            "jumps": [j.to_dict() for j in self.jumps],
            "claimed_at": self.claimed_at,
        }


# ─── Synthesizer ──────────────────────────────────────────────────────────────

def scenario_bias_pct(deal: Deal, elapsed_sec: float) -> float:
    """Total percentage bias of the script at elapsed_sec (drop plus all jumps)."""
    bias = deal.drop_bias_pct(elapsed_sec)
    for jump in deal.jumps:
        bias += jump.bias_pct(elapsed_sec)
    return bias


def compute_scenario_price(
    deal: Deal,
    elapsed_sec: float,
    rng: Optional[random.Random] = None,
    noise_pct: float = SCENARIO_NOISE_PCT,
) -> float:
    """
    Anchor price of the deal at elapsed_sec.

    Pass noise_pct=0 for the deterministic script value.
    """
    base = deal.base_price
    anchor = base * (1.0 + scenario_bias_pct(deal, elapsed_sec) / 100.0)
    if noise_pct:
        rng = rng or random
        anchor += base * (noise_pct / 100.0) * rng.gauss(0.0, 1.0)
    # a drop deeper than 100 % would flip the sign
    return max(anchor, base * 1e-4)
