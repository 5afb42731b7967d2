"""
graph_modes.py — Chart symbol modes, timeframes and ambient waveform profiles.

A graph mode is what an observer selects on the dashboard: either "AUTO"
(follow the operator's active market) or a concrete "XXX/USDT" pair. Each pair
has a GraphProfile describing the shape of its ambient waveform.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from markets import MARKETS, QUOTE_ASSET


# ─── Constants ────────────────────────────────────────────────────────────────

AUTO_MODE = "AUTO"
GRAPH_MODES: List[str] = [AUTO_MODE] + [f"{mid}/{QUOTE_ASSET}" for mid in MARKETS]

GRAPH_TIMEFRAMES = ("1s", "5s", "15s")
DEFAULT_GRAPH_MODE = AUTO_MODE
DEFAULT_GRAPH_TIMEFRAME = "1s"

_TIMEFRAME_MS = {"1s": 1_000, "5s": 5_000, "15s": 15_000}


# ─── Profiles ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GraphProfile:
    """Ambient waveform shape for one pair."""
    cycle_sec:         float
    trend_bps_per_sec: float
    wave_bps:          float
    micro_wave_bps:    float
    shock_chance:      float     # per-tick probability of an organic shock
    shock_bps:         float


#                      cycle trend  wave micro shock%  shock bps
GRAPH_MODE_PROFILES: Dict[str, GraphProfile] = {
    "BTC/USDT":   GraphProfile(48, 1.8, 120, 32, 0.004, 32),
    "ETH/USDT":   GraphProfile(42, 1.6, 145, 44, 0.005, 38),
    "SOL/USDT":   GraphProfile(31, 2.8, 220, 75, 0.009, 75),
    "BNB/USDT":   GraphProfile(40, 1.2, 110, 34, 0.004, 30),
    "XRP/USDT":   GraphProfile(26, 2.1, 175, 58, 0.010, 95),
    "ADA/USDT":   GraphProfile(29, 1.9, 165, 55, 0.009, 88),
    "DOGE/USDT":  GraphProfile(22, 3.2, 290, 95, 0.012, 120),
    "AVAX/USDT":  GraphProfile(30, 2.5, 215, 68, 0.008, 84),
    "LINK/USDT":  GraphProfile(35, 1.7, 150, 45, 0.006, 58),
    "DOT/USDT":   GraphProfile(34, 1.6, 145, 48, 0.006, 62),
    "MATIC/USDT": GraphProfile(28, 2.2, 195, 62, 0.008, 82),
    "LTC/USDT":   GraphProfile(39, 1.1, 105, 34, 0.004, 36),
    "BCH/USDT":   GraphProfile(33, 1.8, 170, 54, 0.007, 66),
    "ATOM/USDT":  GraphProfile(36, 1.5, 138, 42, 0.005, 52),
    "UNI/USDT":   GraphProfile(34, 1.6, 148, 46, 0.006, 56),
    "TRX/USDT":   GraphProfile(25, 2.4, 185, 60, 0.010, 96),
}

# Used for deal symbols that are not in the catalog
FALLBACK_PROFILE = GRAPH_MODE_PROFILES["BTC/USDT"]


# ─── Normalisation ────────────────────────────────────────────────────────────

def is_graph_mode(value: Optional[str]) -> bool:
    return isinstance(value, str) and value in GRAPH_MODES


def normalize_graph_mode(value: Optional[str]) -> str:
    """Accept "AUTO", "BTC/USDT" or a bare "btc"; anything else becomes AUTO."""
    if is_graph_mode(value):
        return value  # type: ignore[return-value]
    if isinstance(value, str):
        candidate = f"{value.strip().upper().split('/', 1)[0]}/{QUOTE_ASSET}"
        if candidate in GRAPH_MODES:
            return candidate
    return DEFAULT_GRAPH_MODE


def is_graph_timeframe(value: Optional[str]) -> bool:
    return isinstance(value, str) and value in GRAPH_TIMEFRAMES


def normalize_timeframe(value: Optional[str]) -> str:
    return value if is_graph_timeframe(value) else DEFAULT_GRAPH_TIMEFRAME  # type: ignore[return-value]


def timeframe_to_ms(timeframe: str) -> int:
    return _TIMEFRAME_MS.get(timeframe, _TIMEFRAME_MS[DEFAULT_GRAPH_TIMEFRAME])


def profile_for(pair: str) -> GraphProfile:
    return GRAPH_MODE_PROFILES.get(pair, FALLBACK_PROFILE)


def resolve_pair(graph_mode: str, active_market_id: str) -> str:
    """Resolve AUTO to the operator's active market pair."""
    mode = normalize_graph_mode(graph_mode)
    if mode == AUTO_MODE:
        resolved = normalize_graph_mode(active_market_id)
        return "BTC/USDT" if resolved == AUTO_MODE else resolved
    return mode
