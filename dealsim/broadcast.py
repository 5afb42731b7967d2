"""
broadcast.py — Push channel from the engine to dashboard observers.

The engine calls emit() synchronously from its own task; emit never awaits
and never raises. Each observer (a websocket client or an in-process
listener) owns a bounded asyncio.Queue and receives events in emit order.
A full queue drops the event for that observer only.

Events:
    price_tick        timestamp, price, candle, regime, mode
    market_selected   symbol / timeframe / market change
    meta_status       operator-facing status text
    ai_signals        signals, meta decision, hit-rates
    deal_state        deal lifecycle transition
    control_state     full engine control snapshot

Usage:
    broadcaster = Broadcaster()
    queue = broadcaster.subscribe()
    broadcaster.emit("meta_status", {"text": "Scanning markets...", "stage": "scanning"})
    event = queue.get_nowait()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from fastapi import WebSocket
from loguru import logger


EVENT_TYPES = frozenset({
    "price_tick",
    "market_selected",
    "meta_status",
    "ai_signals",
    "deal_state",
    "control_state",
})

DEFAULT_QUEUE_SIZE = 500
EVENT_LOG_SIZE = 200


class Broadcaster:
    """Fan-out of engine events to subscriber queues, plus a bounded event log."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE, max_log: int = EVENT_LOG_SIZE) -> None:
        self._subscribers: List[asyncio.Queue] = []
        self._connections: List[WebSocket] = []
        self._event_log: Deque[Dict[str, Any]] = deque(maxlen=max_log)
        self._queue_size = queue_size
        self._emitted = 0
        self._dropped = 0

    # ── Subscription ──────────────────────────────────────────────────────────

    def subscribe(self, queue: Optional[asyncio.Queue] = None) -> asyncio.Queue:
        if queue is None:
            queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Websocket connections ─────────────────────────────────────────────────

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> asyncio.Queue:
        await websocket.accept()
        self._connections.append(websocket)
        logger.info(f"WS connect — {self.connection_count} clients")
        return self.subscribe()

    def disconnect(self, websocket: WebSocket, queue: Optional[asyncio.Queue] = None) -> None:
        if websocket in self._connections:
            self._connections.remove(websocket)
        if queue is not None:
            self.unsubscribe(queue)
        logger.info(f"WS disconnect — {self.connection_count} clients")

    # ── Emit ──────────────────────────────────────────────────────────────────

    def emit(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Record and fan out one event. Fire-and-forget."""
        if event_type not in EVENT_TYPES:
            logger.warning(f"Unknown broadcast event type '{event_type}'")
        event = {"type": event_type, "data": data, "timestamp": time.time()}
        self._emitted += 1
        if event_type != "price_tick":
            self._event_log.append(event)
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.debug(f"Subscriber queue full, dropping {event_type}")
        return event

    def recent_events(self, n: int = 50) -> List[Dict[str, Any]]:
        if n <= 0:
            return []
        return list(self._event_log)[-n:]

    def stats(self) -> Dict[str, int]:
        return {
            "emitted": self._emitted,
            "dropped": self._dropped,
            "subscribers": self.subscriber_count,
            "ws_connections": self.connection_count,
        }
