"""
markets.py — Market Parameter Catalog for the deal simulation engine.

Static per-symbol physical constants used by the tick engine and the regime
model, plus the trading rules and "AI persona" flavour exposed to dashboards.

Each MarketSpec carries:
  - price model:  base price, drift / noise / wick magnitudes (bps), mean
                  reversion strength, volume base + jitter, price floor/ceiling
  - rules:        fee schedule, minimum notional, maximum leverage
  - ai persona:   display name, aggressiveness, confidence bias, tone
  - events:       three shock archetypes (news spike, dump, squeeze)

Usage:
    spec = get_market("SOL")
    event = spec.event("SQUEEZE", strength=1.5)
    print(spec.price.base_price, event.magnitude_bps)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_MARKET_ID = "BTC"
QUOTE_ASSET = "USDT"
MAX_PRICE_MULTIPLE = 50.0      # default ceiling = base_price * this

EVENT_KINDS = ("NEWS_SPIKE", "DUMP", "SQUEEZE")
PERSONA_TONES = frozenset({"calm", "neutral", "hype"})

# kind → (magnitude bps at strength 1.0, decay seconds)
EVENT_ARCHETYPES: Dict[str, tuple] = {
    "NEWS_SPIKE": (180.0, 18.0),
    "DUMP":       (-220.0, 16.0),
    "SQUEEZE":    (260.0, 14.0),
}


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PriceModel:
    """Physical constants of one symbol's simulated price process."""
    base_price:     float
    drift_bps:      float          # bps per second
    noise_bps:      float
    wick_bps:       float
    mean_revert:    float
    volume_base:    float
    volume_jitter:  float
    min_price:      float
    max_price:      Optional[float] = None

    @property
    def ceiling(self) -> float:
        if self.max_price is not None:
            return self.max_price
        return self.base_price * MAX_PRICE_MULTIPLE


@dataclass(frozen=True)
class MarketRules:
    fee_bps:          float
    min_notional_usd: float
    max_leverage:     int


@dataclass(frozen=True)
class AiPersona:
    name:            str
    aggressiveness:  float
    confidence_bias: float
    tone:            str

    def __post_init__(self) -> None:
        if self.tone not in PERSONA_TONES:
            raise ValueError(f"Invalid persona tone '{self.tone}'")


@dataclass(frozen=True)
class MarketEvent:
    """A one-shot shock: signed magnitude in bps, exponential decay constant."""
    kind:          str
    magnitude_bps: float
    decay_sec:     float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "magnitude_bps": round(self.magnitude_bps, 4),
            "decay_sec": self.decay_sec,
        }


@dataclass(frozen=True)
class MarketSpec:
    id:      str
    label:   str
    price:   PriceModel
    rules:   MarketRules
    ai:      AiPersona

    @property
    def pair(self) -> str:
        return f"{self.id}/{QUOTE_ASSET}"

    def event(self, kind: str, strength: float = 1.0) -> MarketEvent:
        """
        Build a market event of the given archetype scaled by strength.

        Raises ValueError for an unknown kind or non-positive strength.
        """
        if kind not in EVENT_ARCHETYPES:
            raise ValueError(f"Unknown event kind '{kind}', expected one of {EVENT_KINDS}")
        if not strength > 0:
            raise ValueError(f"strength must be positive, got {strength}")
        magnitude, decay = EVENT_ARCHETYPES[kind]
        return MarketEvent(kind=kind, magnitude_bps=magnitude * strength, decay_sec=decay)

    def news_spike(self, k: float = 1.0) -> MarketEvent:
        return self.event("NEWS_SPIKE", k)

    def dump(self, k: float = 1.0) -> MarketEvent:
        return self.event("DUMP", k)

    def squeeze(self, k: float = 1.0) -> MarketEvent:
        return self.event("SQUEEZE", k)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "label": self.label,
            "pair": self.pair,
            "price": asdict(self.price),
            "rules": asdict(self.rules),
            "ai": asdict(self.ai),
        }
        data["price"]["max_price"] = self.price.ceiling
        return data


# ─── Catalog ──────────────────────────────────────────────────────────────────

def _market(
    market_id: str,
    label: str,
    price: tuple,
    rules: tuple,
    ai: tuple,
) -> MarketSpec:
    base, drift, noise, wick, revert, vol_base, vol_jitter, floor = price
    return MarketSpec(
        id=market_id,
        label=label,
        price=PriceModel(base, drift, noise, wick, revert, vol_base, vol_jitter, floor),
        rules=MarketRules(*rules),
        ai=AiPersona(*ai),
    )


#                 base     drift  noise wick  revert vol  jitter floor
MARKETS: Dict[str, MarketSpec] = {
    m.id: m for m in [
        _market("BTC", "Bitcoin",      (67_000.0, 0.12, 10, 18, 0.10, 220, 150, 5_000.0),
                (8, 10, 5),  ("Calm Analyst", 0.45, 0.05, "calm")),
        _market("ETH", "Ethereum",     (3_200.0, 0.14, 12, 20, 0.12, 190, 130, 300.0),
                (8, 10, 6),  ("Balanced Strategist", 0.52, 0.04, "neutral")),
        _market("SOL", "Solana",       (170.0, 0.20, 24, 34, 0.10, 240, 180, 10.0),
                (10, 10, 4), ("Momentum Hunter", 0.72, 0.08, "hype")),
        _market("BNB", "BNB Chain",    (560.0, 0.11, 11, 17, 0.15, 170, 110, 40.0),
                (8, 10, 5),  ("Steady Operator", 0.40, 0.03, "calm")),
        _market("XRP", "XRP Ledger",   (0.62, 0.18, 22, 31, 0.14, 260, 190, 0.1),
                (12, 10, 3), ("News Reactor", 0.68, 0.06, "hype")),
        _market("ADA", "Cardano",      (0.56, 0.16, 20, 29, 0.16, 210, 160, 0.08),
                (12, 10, 3), ("Disciplined Scout", 0.56, 0.03, "neutral")),
        _market("DOGE", "Dogecoin",    (0.16, 0.24, 33, 46, 0.08, 280, 220, 0.01),
                (14, 10, 2), ("Meme Sniper", 0.84, 0.12, "hype")),
        _market("AVAX", "Avalanche",   (41.0, 0.21, 26, 36, 0.11, 230, 170, 2.0),
                (10, 10, 4), ("Breakout Rider", 0.70, 0.07, "hype")),
        _market("LINK", "Chainlink",   (22.0, 0.15, 17, 23, 0.16, 185, 135, 1.0),
                (10, 10, 4), ("Data-Driven Analyst", 0.50, 0.02, "neutral")),
        _market("DOT", "Polkadot",     (8.5, 0.14, 18, 24, 0.17, 180, 132, 0.4),
                (10, 10, 4), ("Range Specialist", 0.48, 0.02, "calm")),
        _market("MATIC", "Polygon",    (1.15, 0.17, 23, 31, 0.14, 210, 150, 0.08),
                (11, 10, 3), ("Volatility Mapper", 0.60, 0.04, "neutral")),
        _market("LTC", "Litecoin",     (92.0, 0.10, 13, 18, 0.18, 160, 108, 10.0),
                (8, 10, 5),  ("Classic Swinger", 0.44, 0.01, "calm")),
        _market("BCH", "Bitcoin Cash", (420.0, 0.13, 19, 26, 0.14, 195, 145, 30.0),
                (9, 10, 4),  ("Cycle Tracker", 0.55, 0.03, "neutral")),
        _market("ATOM", "Cosmos",      (12.0, 0.12, 16, 22, 0.18, 175, 120, 0.6),
                (10, 10, 4), ("Calm Synthesizer", 0.46, 0.02, "calm")),
        _market("UNI", "Uniswap",      (8.0, 0.13, 17, 23, 0.17, 178, 124, 0.4),
                (10, 10, 4), ("Liquidity Watcher", 0.52, 0.03, "neutral")),
        _market("TRX", "Tron",         (0.11, 0.19, 22, 30, 0.13, 245, 180, 0.01),
                (12, 10, 3), ("Scalp Executor", 0.66, 0.05, "hype")),
    ]
}


# ─── Lookup ───────────────────────────────────────────────────────────────────

def normalize_market_id(value: Optional[str]) -> Optional[str]:
    """
    Map "btc", "BTC" or "BTC/USDT" to the catalog id "BTC".

    Returns None when the value does not name a known market.
    """
    if not value or not isinstance(value, str):
        return None
    market_id = value.strip().upper().split("/", 1)[0]
    return market_id if market_id in MARKETS else None


def get_market(market_id: Optional[str]) -> MarketSpec:
    """Return the MarketSpec for market_id, falling back to BTC for unknown ids."""
    return MARKETS.get(normalize_market_id(market_id) or DEFAULT_MARKET_ID, MARKETS[DEFAULT_MARKET_ID])


def list_markets() -> List[Dict[str, str]]:
    return [{"id": m.id, "label": m.label} for m in MARKETS.values()]
