"""
api.py — FastAPI HTTP and websocket surface over the deal engine.

HTTP Endpoints:
  GET  /health                 — liveness + engine state
  GET  /status                 — engine loop status + store health
  GET  /markets                — market catalog, graph modes, timeframes
  GET  /chart                  — recent candles (≤250); optional selectedSymbol / timeframe
  GET  /quote                  — price, deal id, volatility multiplier, trading rules
  GET  /admin/control-state    — full control snapshot
  POST /admin/control-state    — {selectedSymbol?, timeframe?}
  GET  /admin/deals            — recent deals; optional status filter
  POST /admin/market-control   — {activeMarketId?, regimeOverride?, intensity?}
  POST /admin/trigger-event    — {kind, strength?}
  GET  /events                 — recent broadcast events

WebSocket Endpoints:
  WS /ws/stream                — snapshot on connect, then every engine event;
                                 {"type": "ping"} → {"type": "pong"}

Run standalone (disabled engine unless main.py wires a real one):
    cd dealsim/
    uvicorn api:app --port 8086
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from broadcast import Broadcaster
from deal_engine import DealEngine, DisabledDealEngine
from graph_modes import GRAPH_MODES, GRAPH_TIMEFRAMES
from markets import EVENT_KINDS, list_markets
from regime import INTENSITY_MAX, INTENSITY_MIN, REGIME_OVERRIDES


# ─── App & Global Engine ──────────────────────────────────────────────────────

app = FastAPI(
    title="Deal Simulation Engine",
    description="Simulated market feed, scripted deals and self-grading AI signals",
    version="1.0.0",
)

Engine = Union[DealEngine, DisabledDealEngine]

# Replaced by main.py with the configured engine
_engine: Engine = DisabledDealEngine(Broadcaster(), reason="engine not initialised")


def get_engine() -> Engine:
    """Return the global engine instance."""
    return _engine


def set_engine(engine: Engine) -> None:
    """Override the global engine (main.py and tests)."""
    global _engine
    _engine = engine


def _log_action(action: str, stage: str, detail: Any = None) -> None:
    message = f"[{action}] {stage.upper()}"
    if detail is not None:
        message += f" {detail}"
    if stage == "error":
        logger.error(message)
    elif stage == "warn":
        logger.warning(message)
    else:
        logger.info(message)


# ─── Payloads ─────────────────────────────────────────────────────────────────

class ControlStatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selected_symbol: Optional[str] = Field(None, alias="selectedSymbol")
    timeframe:       Optional[str] = None


class MarketControlPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_market_id: Optional[str] = Field(None, alias="activeMarketId")
    regime_override:  Optional[Literal["AUTO", "BULL", "BEAR", "CHOPPY", "HIGH_VOL", "LOW_VOL"]] = Field(
        None, alias="regimeOverride"
    )
    intensity:        Optional[float] = Field(None, ge=INTENSITY_MIN, le=INTENSITY_MAX)


class TriggerEventPayload(BaseModel):
    kind:     Literal["NEWS_SPIKE", "DUMP", "SQUEEZE"]
    strength: float = Field(1.0, gt=0)


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health() -> Dict[str, Any]:
    engine = get_engine()
    return {
        "status": "ok",
        "engine_enabled": engine.enabled,
        "running": engine.is_running(),
        "mode": engine.mode,
        "ws_connections": engine.broadcaster.connection_count,
        "timestamp": time.time(),
    }


@app.get("/status")
async def status() -> Dict[str, Any]:
    engine = get_engine()
    return {**engine.status(), "store": await engine.store_health()}


@app.get("/markets")
async def markets() -> Dict[str, Any]:
    return {
        "markets": list_markets(),
        "graph_modes": list(GRAPH_MODES),
        "timeframes": list(GRAPH_TIMEFRAMES),
        "regime_overrides": list(REGIME_OVERRIDES),
        "event_kinds": list(EVENT_KINDS),
    }


@app.get("/chart")
async def chart(
    selectedSymbol: Optional[str] = Query(None),
    timeframe: Optional[str] = Query(None),
    limit: int = Query(250, ge=1, le=250),
) -> Dict[str, Any]:
    """Recent candles of the resolved symbol; updates the selection when given."""
    return get_engine().get_chart(selectedSymbol, timeframe, limit)


@app.get("/quote")
async def quote() -> Dict[str, Any]:
    return get_engine().quote()


@app.get("/admin/control-state")
async def get_control_state() -> Dict[str, Any]:
    _log_action("admin.controlState.get", "start")
    snapshot = get_engine().control_state()
    _log_action("admin.controlState.get", "success",
                {"symbol": snapshot["symbol"], "has_running_deal": snapshot["has_running_deal"]})
    return {"control_state": snapshot}


@app.post("/admin/control-state")
async def post_control_state(payload: ControlStatePayload) -> Dict[str, Any]:
    _log_action("admin.controlState.post", "start")
    snapshot = get_engine().set_selection(payload.selected_symbol, payload.timeframe)
    _log_action("admin.controlState.post", "success",
                {"symbol": snapshot["symbol"], "timeframe": snapshot["timeframe"]})
    return {"control_state": snapshot}


@app.get("/admin/deals")
async def list_deals(
    status: Optional[Literal["SCHEDULED", "RUNNING", "FINISHED"]] = Query(None),
    limit: int = Query(100, ge=1, le=500),
) -> Dict[str, Any]:
    """Most recent deals first, optionally filtered by status."""
    _log_action("admin.deals.list", "start", status)
    deals = await get_engine().list_deals(status, limit)
    _log_action("admin.deals.list", "success", len(deals))
    return {"deals": deals}


@app.post("/admin/market-control")
async def market_control(payload: MarketControlPayload) -> Dict[str, Any]:
    _log_action("admin.marketControl", "start")
    snapshot = await get_engine().set_market_and_override(
        payload.active_market_id, payload.regime_override, payload.intensity
    )
    _log_action("admin.marketControl", "success",
                {"market": snapshot["active_market_id"], "override": snapshot["regime_override"]})
    return {"control_state": snapshot}


@app.post("/admin/trigger-event")
async def trigger_event(payload: TriggerEventPayload) -> Dict[str, Any]:
    _log_action("admin.triggerEvent", "start", payload.kind)
    try:
        snapshot = get_engine().trigger_event(payload.kind, payload.strength)
    except ValueError as exc:
        _log_action("admin.triggerEvent", "warn", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    _log_action("admin.triggerEvent", "success", payload.kind)
    return {"ok": True, "event": snapshot["event"], "control_state": snapshot}


@app.get("/events")
async def events(limit: int = 50) -> List[Dict[str, Any]]:
    """Recent broadcast events (price ticks excluded)."""
    return get_engine().broadcaster.recent_events(max(0, min(limit, 200)))


# ─── WebSocket Route ──────────────────────────────────────────────────────────

async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Sole writer to the socket after the initial snapshot."""
    while True:
        event = await queue.get()
        await websocket.send_json(event)


async def _stop_sender(sender: Optional[asyncio.Task]) -> None:
    """Cancel the forwarding task and collect its outcome, including a failed send."""
    if sender is None:
        return
    sender.cancel()
    with contextlib.suppress(Exception, asyncio.CancelledError):
        await sender


@app.websocket("/ws/stream")
async def websocket_stream(websocket: WebSocket):
    """
    Real-time engine stream.

    On connect: sends the control-state snapshot.
    On message: answers ping with pong, request_snapshot with a fresh snapshot.
    """
    engine = get_engine()
    broadcaster = engine.broadcaster
    queue = await broadcaster.connect(websocket)
    sender: Optional[asyncio.Task] = None
    try:
        await websocket.send_json(
            {"type": "snapshot", "data": engine.control_state(), "timestamp": time.time()}
        )
        sender = asyncio.create_task(_forward(websocket, queue))
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "") if isinstance(data, dict) else ""
            if msg_type == "ping":
                queue.put_nowait({"type": "pong", "timestamp": time.time()})
            elif msg_type == "request_snapshot":
                queue.put_nowait(
                    {"type": "snapshot", "data": engine.control_state(), "timestamp": time.time()}
                )
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WS error: {e}")
    finally:
        await _stop_sender(sender)
        broadcaster.disconnect(websocket, queue)


# ─── Error Handlers ───────────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def generic_error_handler(request: Any, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled API error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal error: {exc}"},
    )
