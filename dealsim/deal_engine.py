"""
deal_engine.py — Deal simulation and signal settlement engine.

One DealEngine owns all simulation state and mutates it only from tasks on a
single asyncio event loop:

    tick loop      every 200 ms   anchor → stochastic step → candle upsert → price_tick
    deal watcher   every 5 s      claim the earliest due SCHEDULED deal
    forecast loop  every 1 s      settle matured signals, then evaluate and log new ones

plus one-shot call_later() handles for the deal announcement (1 s after
claim) and the deal expiry (keyed on the deal id).

Store I/O runs through asyncio.to_thread() so a slow or broken store never
stalls ticks; store failures are logged and retried on the next cycle.

While no deal is running the anchor comes from the ambient waveform of the
selected pair; each pair's state is archived when the view switches away and
restored when it comes back. While a deal is running the anchor comes from
the deal script.

Usage:
    engine = build_engine(EngineSettings.from_env(), Broadcaster())
    await engine.start()
    snapshot = engine.set_selection("SOL/USDT", "5s")
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from ambient import (
    HISTORY_BARS,
    AmbientSnapshot,
    AmbientStateStore,
    ambient_anchor,
    organic_shock,
    pair_phase,
    synthesize_history,
)
from broadcast import Broadcaster
from candles import (
    ActiveEvent,
    CandleSeries,
    is_valid_price,
    step_price,
    tick_volume,
    wick_extents,
)
from deal_store import DealStore, StoreError, is_store_unavailable_error
from engine_config import EngineConfigState, EngineSettings
from graph_modes import (
    DEFAULT_GRAPH_MODE,
    DEFAULT_GRAPH_TIMEFRAME,
    is_graph_timeframe,
    normalize_graph_mode,
    normalize_timeframe,
    profile_for,
    resolve_pair,
    timeframe_to_ms,
)
from markets import QUOTE_ASSET, MarketSpec, get_market, normalize_market_id
from regime import RegimeModel, RegimeState
from scenario import Deal, compute_scenario_price
from settlement import HitRates, SignalLogEntry, price_key, settle
from signals import MIN_CLOSES, aggregate_signals, apply_persona, build_signals, default_heuristics


# ─── Constants ────────────────────────────────────────────────────────────────

DEAL_MEAN_REVERT = 0.6          # floor on mean reversion while following a script
DEAL_MIN_PRICE_FRAC = 0.05
DEAL_MAX_PRICE_FRAC = 20.0
ANNOUNCE_DELAY_SEC = 1.0
MAX_RECENT_CANDLES = 500
CHART_CANDLES = 250
STOP_TIMEOUT_SEC = 5.0

STATUS_IDLE = ("Watching markets", "idle")
STATUS_SCANNING = ("Scanning markets...", "scanning")

AGENT_NAMES = [h.name for h in default_heuristics()]


def deal_pair(symbol: str) -> str:
    return symbol if "/" in symbol else f"{symbol}/{QUOTE_ASSET}"


# ─── Engine ───────────────────────────────────────────────────────────────────

class DealEngine:
    """
    The live simulation engine.

    Lifecycle:
        await engine.start()   # load config, resume any RUNNING deal, spawn loops
        await engine.stop()    # graceful shutdown

    Every public setter returns the full control-state snapshot. tick(),
    poll_deals() and run_forecast() accept an explicit `now` so tests can drive
    the engine without sleeping.
    """

    enabled = True

    def __init__(
        self,
        store: DealStore,
        broadcaster: Optional[Broadcaster] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster or Broadcaster()
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._rng = rng or random.Random()
        self._regimes = RegimeModel(self._rng)

        self._config = EngineConfigState()
        self._selected_mode = DEFAULT_GRAPH_MODE
        self._timeframe = DEFAULT_GRAPH_TIMEFRAME

        self._deal: Optional[Deal] = None
        self._claiming = False
        self._pending_finish: Set[str] = set()
        self._event: Optional[ActiveEvent] = None
        self._ambient = AmbientStateStore()
        # keyed by price_key(); a finished deal keeps its last price
        self._last_prices: Dict[str, float] = {}
        self._hit_rates = HitRates(agents={name: 0.0 for name in AGENT_NAMES})
        self._latest_ai: Optional[Dict[str, Any]] = None
        self._status_text, self._status_stage = STATUS_IDLE

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._announce_handle: Optional[asyncio.TimerHandle] = None
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._running = False
        self._ticks = 0
        self._last_error: Optional[str] = None

        now = self._clock()
        pair = resolve_pair(self._selected_mode, self._config.active_market_id)
        self._ctx: AmbientSnapshot = self._seed_context(pair, self._timeframe, now)
        self._record_price()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Start the engine loops. Returns False if already running."""
        if self._running:
            logger.warning("Deal engine already running")
            return False

        try:
            config = await self._io(self._store.load_engine_config)
        except Exception as exc:
            logger.warning(f"Engine config unavailable, using defaults: {exc}")
            config = EngineConfigState()
        self._apply_config(config, self._clock())

        await self.resume_running_deal()

        self._stop_event.clear()
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._periodic("tick", self._settings.tick_interval_s, self.tick),
                name="dealsim-tick",
            ),
            asyncio.create_task(
                self._periodic("watcher", self._settings.watch_interval_s, self.poll_deals),
                name="dealsim-watcher",
            ),
            asyncio.create_task(
                self._periodic("forecast", self._settings.forecast_interval_s, self.run_forecast),
                name="dealsim-forecast",
            ),
        ]
        logger.info(
            "Deal engine started (market={}, override={}, intensity={})",
            self._config.active_market_id, self._config.regime_override, self._config.intensity,
        )
        return True

    async def stop(self) -> bool:
        """Stop all loops and pending callbacks. Returns False if not running."""
        if not self._running:
            return False
        self._stop_event.set()
        self._cancel_handles()
        tasks = self._tasks + list(self._background)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=STOP_TIMEOUT_SEC)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Deal engine: {len(pending)} task(s) forcefully cancelled")
        self._tasks = []
        self._running = False
        logger.info("Deal engine stopped after {} ticks", self._ticks)
        return True

    def is_running(self) -> bool:
        return self._running

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "ticks": self._ticks,
            "deal_id": self.get_active_deal_id(),
            "last_error": self._last_error,
            "broadcast": self._broadcaster.stats(),
        }

    async def store_health(self) -> Dict[str, Any]:
        """Deal and signal counts from the store; never raises."""
        try:
            health = await self._io(self._store.health)
        except Exception as exc:
            logger.warning(f"Store health check failed: {exc}")
            return {"available": False, "error": str(exc)}
        return {"available": True, **health}

    async def list_deals(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent deals first. Raises StoreValidationError for an unknown status."""
        deals = await self._io(self._store.list_deals, status, limit)
        return [d.to_dict() for d in deals]

    async def _periodic(self, name: str, interval: float, step: Callable[[], Any]) -> None:
        logger.debug(f"{name} loop started (every {interval}s)")
        while not self._stop_event.is_set():
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._last_error = f"{name}: {exc}"
                logger.error(f"{name} loop step failed: {exc}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"{name} loop exited")

    # ── Tick / candle engine ──────────────────────────────────────────────────

    def tick(self, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Advance the live context by one tick. Never raises."""
        now = self._clock() if now is None else now
        try:
            return self._tick(now)
        except Exception as exc:
            self._last_error = f"tick: {exc}"
            logger.error(f"Tick failed: {exc}")
            return None

    def _tick(self, now: float) -> Dict[str, Any]:
        ctx = self._ctx
        dt = now - ctx.last_tick_at
        ctx.last_tick_at = now
        self._ticks += 1

        if self._event is not None and self._event.expired(now):
            logger.debug(f"Market event {self._event.event.kind} expired")
            self._event = None

        if self._regimes.should_rotate(ctx.regime, now):
            ctx.regime = self._next_regime(ctx.regime, now)
            logger.debug(f"Regime → {ctx.regime.kind} ({ctx.pair})")

        anchor, min_price, max_price = self._anchor(now)
        shock = 0.0
        if self._event is not None:
            anchor += self._event.anchor_shift(anchor, now)
            shock += self._event.jolt(anchor, now, self._rng)
        if self._deal is None:
            shock += organic_shock(profile_for(ctx.pair), anchor, self._rng)

        price = step_price(ctx.price, anchor, ctx.regime, dt, min_price, max_price, shock, self._rng)
        high, low = wick_extents(price, ctx.regime, min_price, self._rng)
        volume = tick_volume(ctx.regime, dt, self._rng)
        ctx.price = price
        candle, _ = ctx.candles.upsert(int(now * 1000), price, high, low, volume)
        self._record_price()

        payload = {
            "timestamp": int(now * 1000),
            "symbol": ctx.pair,
            "timeframe": ctx.timeframe,
            "price": price,
            "candle": candle.to_dict(),
            "regime": ctx.regime.kind,
            "mode": self.mode,
            "deal_id": self.get_active_deal_id(),
        }
        self._emit("price_tick", payload)
        return payload

    def _anchor(self, now: float):
        """(anchor, min_price, max_price) for the live context."""
        if self._deal is not None:
            deal = self._deal
            started = deal.claimed_at if deal.claimed_at is not None else now
            anchor = compute_scenario_price(deal, now - started, self._rng)
            return (
                anchor,
                deal.base_price * DEAL_MIN_PRICE_FRAC,
                deal.base_price * DEAL_MAX_PRICE_FRAC,
            )
        spec = get_market(self._ctx.pair)
        anchor = ambient_anchor(
            spec.price.base_price, profile_for(self._ctx.pair), now, pair_phase(self._ctx.pair)
        )
        return anchor, spec.price.min_price, spec.price.ceiling

    def _next_regime(
        self,
        previous: Optional[RegimeState],
        now: float,
        spec: Optional[MarketSpec] = None,
    ) -> RegimeState:
        spec = spec or self._market_spec()
        regime = self._regimes.next_regime(
            spec.price,
            previous,
            self._config.regime_override,
            self._config.intensity,
            now,
        )
        if self._deal is not None:
            regime = replace(
                regime, drift_bps=0.0, mean_revert=max(regime.mean_revert, DEAL_MEAN_REVERT)
            )
        return regime

    # ── Ambient contexts ──────────────────────────────────────────────────────

    def _history(
        self,
        pair: str,
        end_price: float,
        timeframe: str,
        now: float,
        regime: RegimeState,
    ) -> CandleSeries:
        spec = get_market(pair)
        return synthesize_history(
            end_price=end_price,
            base_price=spec.price.base_price,
            profile=profile_for(pair),
            timeframe_ms=timeframe_to_ms(timeframe),
            now_ms=int(now * 1000),
            min_price=spec.price.min_price,
            max_price=spec.price.ceiling,
            volume_per_sec=regime.volume_base,
            phase=pair_phase(pair),
            bars=HISTORY_BARS,
            maxlen=self._settings.candle_window,
            rng=self._rng,
        )

    def _seed_context(self, pair: str, timeframe: str, now: float) -> AmbientSnapshot:
        spec = get_market(pair)
        anchor = ambient_anchor(spec.price.base_price, profile_for(pair), now, pair_phase(pair))
        price = min(max(anchor, spec.price.min_price), spec.price.ceiling)
        regime = self._next_regime(None, now, spec)
        logger.debug(f"Seeded ambient {pair} @ {price:.6g} ({regime.kind})")
        return AmbientSnapshot(
            pair=pair,
            timeframe=timeframe,
            price=price,
            candles=self._history(pair, price, timeframe, now, regime),
            regime=regime,
            last_tick_at=now,
        )

    def _ambient_context(self, pair: str, timeframe: str, now: float) -> AmbientSnapshot:
        """Restore the archived state of `pair`, or seed a fresh one."""
        restored = self._ambient.restore(pair)
        if restored is None:
            return self._seed_context(pair, timeframe, now)
        if not is_valid_price(restored.price):
            logger.warning(f"Discarding corrupt ambient snapshot for {pair}")
            self._ambient.discard(pair)
            return self._seed_context(pair, timeframe, now)
        if restored.timeframe != timeframe:
            restored.candles = self._history(pair, restored.price, timeframe, now, restored.regime)
            restored.timeframe = timeframe
        return restored

    def _switch_ambient(self, pair: str, timeframe: str, now: float) -> None:
        previous = self._ctx.pair
        if self._deal is None:
            self._ambient.capture(self._ctx)
        self._ctx = self._ambient_context(pair, timeframe, now)
        self._record_price()
        logger.info(f"Ambient market {previous} → {pair} ({timeframe})")

    # ── Deal watcher ──────────────────────────────────────────────────────────

    async def poll_deals(self, now: Optional[float] = None) -> Optional[Deal]:
        """
        One watcher pass. Claims and activates the earliest due deal when no
        deal is active. Store errors are logged and retried next pass.
        """
        await self._retry_pending_finish()
        if self._deal is not None or self._claiming:
            return None
        now = self._clock() if now is None else now
        self._claiming = True
        try:
            due = await self._io(self._store.find_due_deal, now)
            if due is None:
                return None
            claimed = await self._io(self._store.claim_deal, due.id, now)
            if not claimed:
                logger.info(f"Deal {due.id} already claimed elsewhere, skipping")
                return None
            deal = replace(due, status="RUNNING", claimed_at=now)
            self._activate_deal(deal, now)
            return deal
        except Exception as exc:
            if is_store_unavailable_error(exc):
                logger.warning(f"Deal store unavailable, retrying next cycle: {exc}")
            else:
                logger.error(f"Deal watcher failed: {exc}")
            return None
        finally:
            self._claiming = False

    async def resume_running_deal(self, now: Optional[float] = None) -> Optional[Deal]:
        """Resume a deal left RUNNING by a previous process, or finish it if expired."""
        now = self._clock() if now is None else now
        try:
            running = await self._io(self._store.get_running_deal)
        except Exception as exc:
            logger.warning(f"Cannot check for running deal: {exc}")
            return None
        if running is None or self._deal is not None:
            return None

        ends_at = running.ends_at()
        if ends_at is None or ends_at <= now:
            logger.info(f"Deal {running.id} expired while offline, marking FINISHED")
            try:
                await self._io(self._store.finish_deal, running.id, now)
            except Exception as exc:
                logger.warning(f"Could not finish stale deal {running.id}: {exc}")
                self._pending_finish.add(running.id)
            return None

        logger.info(f"Resuming deal {running.id} ({ends_at - now:.1f}s remaining)")
        self._activate_deal(running, now)
        return running

    def _activate_deal(self, deal: Deal, now: float) -> None:
        if self._deal is None:
            self._ambient.capture(self._ctx)
        self._deal = deal

        started = deal.claimed_at if deal.claimed_at is not None else now
        price = compute_scenario_price(deal, now - started, noise_pct=0.0)
        self._ctx = AmbientSnapshot(
            pair=deal_pair(deal.symbol),
            timeframe=self._timeframe,
            price=price,
            candles=CandleSeries(timeframe_to_ms(self._timeframe), maxlen=self._settings.candle_window),
            regime=self._next_regime(None, now),
            last_tick_at=now,
        )
        self._record_price()
        self._event = None

        remaining = max(0.0, (deal.ends_at() or now + deal.total_duration_sec) - now)
        logger.info(f"Deal {deal.id} RUNNING: {deal.symbol} ({deal.chain_name}) for {remaining:.1f}s")
        self._set_status(*STATUS_SCANNING)
        self._emit("deal_state", {"status": "RUNNING", "deal_id": deal.id})

        self._cancel_handles()
        self._announce_handle = self._call_later(ANNOUNCE_DELAY_SEC, self.announce_deal, deal.id)
        self._expiry_handle = self._call_later(remaining, self._on_deal_expiry, deal.id)

    def announce_deal(self, deal_id: str) -> bool:
        """Second stage of the claim status: "Trade identified: SYM (chain)"."""
        deal = self._deal
        if deal is None or deal.id != deal_id:
            return False
        self._emit("market_selected", {
            "symbol": deal.symbol,
            "chain_name": deal.chain_name,
            "base_price": deal.base_price,
            "start_time": deal.start_time,
            "timeframe": self._ctx.timeframe,
        })
        self._set_status(f"Trade identified: {deal.symbol} ({deal.chain_name})", "identified")
        return True

    def _on_deal_expiry(self, deal_id: str) -> None:
        self._spawn(self.finish_deal(deal_id))

    async def finish_deal(self, deal_id: str, now: Optional[float] = None) -> bool:
        """
        End the active deal and return to ambient simulation.

        No-op when `deal_id` is not the active deal, so a stale expiry can
        never end a different deal.
        """
        if self._deal is None or self._deal.id != deal_id:
            logger.warning(f"Ignoring expiry for inactive deal {deal_id}")
            return False
        now = self._clock() if now is None else now

        self._deal = None
        self._cancel_handles()
        self._event = None
        pair = resolve_pair(self._selected_mode, self._config.active_market_id)
        self._ctx = self._ambient_context(pair, self._timeframe, now)
        self._record_price()

        logger.info(f"Deal {deal_id} FINISHED, resuming ambient {pair}")
        self._emit("deal_state", {"status": "FINISHED", "deal_id": deal_id})
        self._set_status(*STATUS_IDLE)
        self._emit_control_state()

        try:
            if not await self._io(self._store.finish_deal, deal_id, now):
                logger.warning(f"Deal {deal_id} was not RUNNING in the store")
        except Exception as exc:
            logger.warning(f"Could not mark deal {deal_id} FINISHED, will retry: {exc}")
            self._pending_finish.add(deal_id)
        return True

    async def _retry_pending_finish(self) -> None:
        for deal_id in list(self._pending_finish):
            try:
                await self._io(self._store.finish_deal, deal_id, self._clock())
                self._pending_finish.discard(deal_id)
                logger.info(f"Deal {deal_id} marked FINISHED on retry")
            except Exception as exc:
                logger.warning(f"Retry finishing deal {deal_id} failed: {exc}")

    # ── Forecast & settlement ─────────────────────────────────────────────────

    async def run_forecast(self, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Settle matured entries, then evaluate and log a new forecast."""
        now = self._clock() if now is None else now

        prices = dict(self._last_prices)
        try:
            result = await self._io(settle, self._store, now, prices.get, AGENT_NAMES)
            self._hit_rates = result.hit_rates
        except Exception as exc:
            if is_store_unavailable_error(exc):
                logger.warning(f"Settlement skipped, store unavailable: {exc}")
            else:
                logger.error(f"Settlement failed: {exc}")

        ctx = self._ctx
        closes = ctx.candles.closes()
        if len(closes) < MIN_CLOSES:
            return None

        spec = self._market_spec()
        signals = apply_persona(build_signals(closes, ctx.candles.volumes()), spec.ai)
        meta = aggregate_signals(signals)
        deal_id = self.get_active_deal_id()
        entry = SignalLogEntry.new(
            symbol=ctx.pair,
            entry_price=ctx.price,
            signals=signals,
            meta=meta,
            created_at=now,
            deal_id=deal_id,
            horizon_sec=self._settings.signal_horizon_s,
        )

        payload = {
            "symbol": ctx.pair,
            "deal_id": deal_id,
            "signals": [s.to_dict() for s in signals],
            "meta": meta.to_dict(),
            "hit_rates": self._hit_rates.to_dict(),
            "persona": {"name": spec.ai.name, "tone": spec.ai.tone},
            "timestamp": int(now * 1000),
        }
        self._latest_ai = payload
        self._emit("ai_signals", payload)
        if deal_id is not None:
            self._emit("deal_state", {"status": "RUNNING", "deal_id": deal_id})

        try:
            await self._io(self._store.append_signal, entry)
        except StoreError as exc:
            logger.warning(f"Signal log write failed: {exc}")
        return payload

    # ── Control surface ───────────────────────────────────────────────────────

    def set_selection(
        self,
        selected_symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Change the observed symbol and/or timeframe.

        Mid-deal a timeframe change truncates the deal candles; a symbol change
        takes effect once the deal ends.
        """
        now = self._clock() if now is None else now
        new_mode = self._selected_mode if selected_symbol is None else normalize_graph_mode(selected_symbol)
        new_tf = self._timeframe if timeframe is None else normalize_timeframe(timeframe)
        if timeframe is not None and not is_graph_timeframe(timeframe):
            logger.warning(f"Unknown timeframe {timeframe!r}, using {new_tf}")

        tf_changed = new_tf != self._timeframe
        self._selected_mode = new_mode
        self._timeframe = new_tf

        if self._deal is not None:
            if tf_changed:
                self._ctx.candles = CandleSeries(timeframe_to_ms(new_tf), maxlen=self._settings.candle_window)
                self._ctx.timeframe = new_tf
                logger.info(f"Deal timeframe → {new_tf}, candles truncated")
                self._emit("market_selected", {
                    "symbol": self._deal.symbol,
                    "chain_name": self._deal.chain_name,
                    "base_price": self._deal.base_price,
                    "start_time": self._deal.start_time,
                    "timeframe": new_tf,
                })
            return self._emit_control_state()

        pair = resolve_pair(new_mode, self._config.active_market_id)
        if pair != self._ctx.pair:
            self._switch_ambient(pair, new_tf, now)
            self._emit("market_selected", {"symbol": pair, "timeframe": new_tf})
        elif tf_changed:
            self._ctx.candles = self._history(pair, self._ctx.price, new_tf, now, self._ctx.regime)
            self._ctx.timeframe = new_tf
            logger.info(f"Ambient {pair} timeframe → {new_tf}, history resynthesised")
            self._emit("market_selected", {"symbol": pair, "timeframe": new_tf})
        return self._emit_control_state()

    async def set_market_and_override(
        self,
        active_market_id: Optional[str] = None,
        regime_override: Optional[str] = None,
        intensity: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Persist and apply the operator's market, regime override and intensity."""
        config = self._config.merged(active_market_id, regime_override, intensity)
        try:
            config = await self._io(self._store.save_engine_config, config)
        except Exception as exc:
            logger.warning(f"Engine config not persisted, applying in memory: {exc}")
        self._apply_config(config, self._clock())
        return self._emit_control_state()

    def _apply_config(self, config: EngineConfigState, now: float) -> None:
        self._config = config
        pair = resolve_pair(self._selected_mode, config.active_market_id)
        if self._deal is None and pair != self._ctx.pair:
            self._switch_ambient(pair, self._timeframe, now)
            self._emit("market_selected", {"symbol": pair, "timeframe": self._timeframe})
        # re-derive the live regime under the new override / intensity
        self._ctx.regime = self._next_regime(self._ctx.regime, now)
        logger.info(
            f"Market control: market={config.active_market_id} "
            f"override={config.regime_override} intensity={config.intensity}"
        )

    def trigger_event(self, kind: str, strength: float = 1.0, now: Optional[float] = None) -> Dict[str, Any]:
        """
        Inject a one-shot market event on the live context.

        Raises ValueError for an unknown kind or non-positive strength.
        """
        now = self._clock() if now is None else now
        event = self._market_spec().event(kind, strength)
        self._event = ActiveEvent(event=event, started_at=now)
        logger.info(f"Market event {kind} x{strength} on {self._ctx.pair} ({event.magnitude_bps:+.0f} bps)")
        return self._emit_control_state()

    def control_state(self) -> Dict[str, Any]:
        """Full externally visible snapshot."""
        spec = self._market_spec()
        deal = self._deal
        return {
            "enabled": True,
            "symbol": self._ctx.pair,
            "selected_symbol": self._selected_mode,
            "timeframe": self._timeframe,
            "mode": self.mode,
            "price": self._ctx.price,
            "market": spec.to_dict(),
            "active_market_id": self._config.active_market_id,
            "regime_override": self._config.regime_override,
            "intensity": self._config.intensity,
            "regime": self._ctx.regime.to_dict(),
            "has_running_deal": deal is not None,
            "deal_id": deal.id if deal else None,
            "deal": deal.to_dict() if deal else None,
            "status": {"text": self._status_text, "stage": self._status_stage},
            "event": self._event.to_dict() if self._event else None,
            "persona": {"name": spec.ai.name, "tone": spec.ai.tone},
            "ai": self._latest_ai,
            "hit_rates": self._hit_rates.to_dict(),
        }

    # ── Query surface ─────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "DEAL" if self._deal is not None else "AMBIENT"

    def get_current_price(self) -> float:
        if is_valid_price(self._ctx.price):
            return self._ctx.price
        return self._deal.base_price if self._deal else 0.0

    def get_active_deal_id(self) -> Optional[str]:
        return self._deal.id if self._deal else None

    def get_volatility_multiplier(self) -> float:
        base_noise = self._market_spec().price.noise_bps
        if base_noise <= 0:
            return 1.0
        return round(self._ctx.regime.noise_bps / base_noise, 4)

    def get_recent_candles(self, n: int = CHART_CANDLES) -> List[Dict[str, Any]]:
        n = max(0, min(int(n), MAX_RECENT_CANDLES))
        return [c.to_dict() for c in self._ctx.candles.recent(n)]

    def get_selected_symbol(self) -> str:
        return self._ctx.pair

    def get_selected_timeframe(self) -> str:
        return self._timeframe

    def get_trading_rules(self) -> Dict[str, Any]:
        rules = self._market_spec().rules
        return {
            "symbol": self._ctx.pair,
            "fee_bps": rules.fee_bps,
            "min_notional_usd": rules.min_notional_usd,
            "max_leverage": rules.max_leverage,
        }

    def get_chart(
        self,
        selected_symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        limit: int = CHART_CANDLES,
    ) -> Dict[str, Any]:
        if selected_symbol or timeframe:
            self.set_selection(selected_symbol, timeframe)
        return {
            "candles": self.get_recent_candles(min(limit, CHART_CANDLES)),
            "symbol": self.get_selected_symbol(),
            "timeframe": self.get_selected_timeframe(),
        }

    def quote(self) -> Dict[str, Any]:
        return {
            "symbol": self.get_selected_symbol(),
            "price": self.get_current_price(),
            "deal_id": self.get_active_deal_id(),
            "volatility_multiplier": self.get_volatility_multiplier(),
            "rules": self.get_trading_rules(),
            "timeframe": self.get_selected_timeframe(),
        }

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _market_spec(self) -> MarketSpec:
        if self._deal is not None:
            market_id = normalize_market_id(self._deal.symbol) or self._config.active_market_id
            return get_market(market_id)
        return get_market(self._ctx.pair)

    def _record_price(self) -> None:
        self._last_prices[price_key(self._ctx.pair, self.get_active_deal_id())] = self._ctx.price

    async def _io(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        try:
            self._broadcaster.emit(event_type, data)
        except Exception as exc:
            logger.error(f"Broadcast of {event_type} failed: {exc}")

    def _emit_control_state(self) -> Dict[str, Any]:
        snapshot = self.control_state()
        self._emit("control_state", snapshot)
        return snapshot

    def _set_status(self, text: str, stage: str) -> None:
        self._status_text, self._status_stage = text, stage
        self._emit("meta_status", {"text": text, "stage": stage})

    def _call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.call_later(delay, callback, *args)

    def _cancel_handles(self) -> None:
        for handle in (self._announce_handle, self._expiry_handle):
            if handle is not None:
                handle.cancel()
        self._announce_handle = None
        self._expiry_handle = None

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._last_error = str(exc)
            logger.error(f"Engine background task raised: {exc}")


# ─── Disabled fallback ────────────────────────────────────────────────────────

class DisabledDealEngine:
    """
    Stand-in used when no deal store is configured. Same interface as
    DealEngine; every query returns a safe default and nothing is simulated.
    """

    enabled = False
    mode = "DISABLED"

    def __init__(self, broadcaster: Optional[Broadcaster] = None, reason: str = "no deal store configured") -> None:
        self._broadcaster = broadcaster or Broadcaster()
        self.reason = reason

    async def start(self) -> bool:
        logger.warning(f"Deal engine disabled: {self.reason}")
        return False

    async def stop(self) -> bool:
        return False

    def is_running(self) -> bool:
        return False

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    def status(self) -> Dict[str, Any]:
        return {"running": False, "ticks": 0, "deal_id": None, "last_error": self.reason,
                "broadcast": self._broadcaster.stats()}

    async def store_health(self) -> Dict[str, Any]:
        return {"available": False, "error": self.reason}

    async def list_deals(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return []

    def tick(self, now: Optional[float] = None) -> None:
        return None

    async def poll_deals(self, now: Optional[float] = None) -> None:
        return None

    async def resume_running_deal(self, now: Optional[float] = None) -> None:
        return None

    async def run_forecast(self, now: Optional[float] = None) -> None:
        return None

    async def finish_deal(self, deal_id: str, now: Optional[float] = None) -> bool:
        return False

    def announce_deal(self, deal_id: str) -> bool:
        return False

    def set_selection(
        self,
        selected_symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self.control_state()

    async def set_market_and_override(
        self,
        active_market_id: Optional[str] = None,
        regime_override: Optional[str] = None,
        intensity: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self.control_state()

    def trigger_event(self, kind: str, strength: float = 1.0, now: Optional[float] = None) -> Dict[str, Any]:
        return self.control_state()

    def control_state(self) -> Dict[str, Any]:
        return {
            "enabled": False,
            "reason": self.reason,
            "symbol": self.get_selected_symbol(),
            "selected_symbol": DEFAULT_GRAPH_MODE,
            "timeframe": DEFAULT_GRAPH_TIMEFRAME,
            "mode": self.mode,
            "price": 0.0,
            "market": None,
            "active_market_id": EngineConfigState().active_market_id,
            "regime_override": "AUTO",
            "intensity": 1.0,
            "regime": None,
            "has_running_deal": False,
            "deal_id": None,
            "deal": None,
            "status": {"text": "Engine disabled", "stage": "disabled"},
            "event": None,
            "persona": None,
            "ai": None,
            "hit_rates": HitRates().to_dict(),
        }

    def get_current_price(self) -> float:
        return 0.0

    def get_active_deal_id(self) -> None:
        return None

    def get_volatility_multiplier(self) -> float:
        return 1.0

    def get_recent_candles(self, n: int = CHART_CANDLES) -> List[Dict[str, Any]]:
        return []

    def get_selected_symbol(self) -> str:
        return resolve_pair(DEFAULT_GRAPH_MODE, EngineConfigState().active_market_id)

    def get_selected_timeframe(self) -> str:
        return DEFAULT_GRAPH_TIMEFRAME

    def get_trading_rules(self) -> Dict[str, Any]:
        rules = get_market(None).rules
        return {
            "symbol": self.get_selected_symbol(),
            "fee_bps": rules.fee_bps,
            "min_notional_usd": rules.min_notional_usd,
            "max_leverage": rules.max_leverage,
        }

    def get_chart(
        self,
        selected_symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        limit: int = CHART_CANDLES,
    ) -> Dict[str, Any]:
        return {"candles": [], "symbol": self.get_selected_symbol(), "timeframe": self.get_selected_timeframe()}

    def quote(self) -> Dict[str, Any]:
        return {
            "symbol": self.get_selected_symbol(),
            "price": 0.0,
            "deal_id": None,
            "volatility_multiplier": 1.0,
            "rules": self.get_trading_rules(),
            "timeframe": self.get_selected_timeframe(),
        }


def build_engine(
    settings: EngineSettings,
    broadcaster: Optional[Broadcaster] = None,
    clock: Callable[[], float] = time.time,
    rng: Optional[random.Random] = None,
):
    """DealEngine over a DealStore, or DisabledDealEngine when no store can be used."""
    broadcaster = broadcaster or Broadcaster()
    if not settings.enabled:
        logger.warning("DEALSIM_DB_PATH not set, starting disabled deal engine")
        return DisabledDealEngine(broadcaster)
    try:
        store = DealStore(settings.db_path)
    except StoreError as exc:
        logger.error(f"Deal store unavailable ({exc}), starting disabled deal engine")
        return DisabledDealEngine(broadcaster, reason=str(exc))
    return DealEngine(store, broadcaster, settings, clock=clock, rng=rng)
