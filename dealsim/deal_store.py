"""
deal_store.py — SQLite persistence for deals, the signal log and engine config.

The engine treats the store as an external collaborator: every call is short,
synchronous and thread-safe, so the async engine runs them through
asyncio.to_thread() without blocking the tick loop.

Schema:
    deals         scripted scenarios (SCHEDULED → RUNNING → FINISHED)
    deal_jumps    ordered rises of a deal
    signal_log    forecast entries, resolved once by settlement
    engine_config single row: active market, regime override, intensity

Usage:
    store = DealStore()                          # in-memory (tests)
    store = DealStore("/data/dealsim.db")        # persistent

    deal = store.create_deal("PEPE", "Ethereum", base_price=1.25,
                             start_time=time.time(), total_duration_sec=90,
                             drop_delay_sec=10, drop_magnitude_pct=8)
    due = store.find_due_deal(time.time())
    if due and store.claim_deal(due.id, time.time()):
        ...
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from engine_config import EngineConfigState
from scenario import DEAL_STATUSES, Deal, DealJump
from settlement import HitRates, Resolution, SignalLogEntry
from signals import MetaDecision, ModelSignal


# ─── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS deals (
        id                  TEXT PRIMARY KEY,
        symbol              TEXT NOT NULL,
        chain_name          TEXT NOT NULL,
        base_price          REAL NOT NULL,
        start_time          REAL NOT NULL,
        total_duration_sec  REAL NOT NULL,
        drop_delay_sec      REAL NOT NULL,
        drop_magnitude_pct  REAL NOT NULL,
        status              TEXT NOT NULL DEFAULT 'SCHEDULED',
        claimed_at          REAL,
        finished_at         REAL,
        created_at          REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deal_jumps (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        deal_id             TEXT NOT NULL REFERENCES deals(id) ON DELETE CASCADE,
        rise_delay_sec      REAL NOT NULL,
        rise_magnitude_pct  REAL NOT NULL,
        hold_sec            REAL NOT NULL,
        order_index         INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signal_log (
        id                  TEXT PRIMARY KEY,
        deal_id             TEXT,
        symbol              TEXT NOT NULL,
        entry_price         REAL NOT NULL,
        signals_json        TEXT NOT NULL,
        meta_json           TEXT NOT NULL,
        horizon_sec         REAL NOT NULL,
        created_at          REAL NOT NULL,
        resolved_at         REAL,
        outcome_pct         REAL,
        meta_correct        INTEGER,
        agent_correct_json  TEXT,
        hit_rates_json      TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_config (
        id                  INTEGER PRIMARY KEY CHECK (id = 1),
        active_market_id    TEXT NOT NULL,
        regime_override     TEXT NOT NULL,
        intensity           REAL NOT NULL,
        updated_at          REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deals_due ON deals(status, start_time)",
    # second line of defence for the single-RUNNING invariant
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_deals_one_running ON deals(status) WHERE status = 'RUNNING'",
    "CREATE INDEX IF NOT EXISTS idx_jumps_deal ON deal_jumps(deal_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_signal_pending ON signal_log(resolved_at, created_at)",
)

_UNAVAILABLE_MARKERS = (
    "no such table",
    "unable to open database",
    "database is locked",
    "disk i/o error",
    "readonly database",
    "connection refused",
    "failed to connect",
)


# ─── Exceptions ───────────────────────────────────────────────────────────────

class StoreError(Exception):
    """Base exception for deal store errors."""


class StoreUnavailableError(StoreError):
    """The backing database cannot be reached or is not provisioned."""


class StoreValidationError(StoreError):
    """Raised when a deal fails validation."""


def is_store_unavailable_error(exc: BaseException) -> bool:
    """True for connectivity-type failures that the watcher should simply retry."""
    if isinstance(exc, StoreUnavailableError):
        return True
    if isinstance(exc, (sqlite3.OperationalError, sqlite3.InterfaceError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)


# ─── DealStore ────────────────────────────────────────────────────────────────

class DealStore:
    """
    SQLite-backed deal store.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file, or ":memory:" (tests). Default ":memory:".
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self._conn: sqlite3.Connection = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def _init_schema(self) -> None:
        with self._guard():
            with self._conn:
                self._conn.execute("PRAGMA foreign_keys = ON")
                for statement in _SCHEMA:
                    self._conn.execute(statement)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "DealStore":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Serialise access and map sqlite errors onto the store taxonomy."""
        with self._lock:
            try:
                yield
            except sqlite3.IntegrityError as e:
                raise StoreError(f"DB integrity error: {e}") from e
            except (sqlite3.OperationalError, sqlite3.InterfaceError, sqlite3.ProgrammingError) as e:
                raise StoreUnavailableError(f"DB unavailable: {e}") from e

    # ── Deals: write ───────────────────────────────────────────────────────

    @staticmethod
    def _coerce_jump(jump: Any, index: int) -> DealJump:
        if isinstance(jump, DealJump):
            return jump
        if isinstance(jump, dict):
            try:
                return DealJump(
                    rise_delay_sec=float(jump["rise_delay_sec"]),
                    rise_magnitude_pct=float(jump["rise_magnitude_pct"]),
                    hold_sec=float(jump.get("hold_sec", 0.0)),
                    order_index=int(jump.get("order_index", index)),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise StoreValidationError(f"Invalid jump #{index}: {e}") from e
        raise StoreValidationError(f"Invalid jump #{index}: {jump!r}")

    @staticmethod
    def _validate_deal(
        symbol: str,
        base_price: float,
        total_duration_sec: float,
        drop_delay_sec: float,
        drop_magnitude_pct: float,
        jumps: Sequence[DealJump],
    ) -> None:
        if not symbol or not symbol.strip():
            raise StoreValidationError("symbol must not be empty")
        if not isinstance(base_price, (int, float)) or not base_price > 0:
            raise StoreValidationError(f"base_price must be positive, got {base_price}")
        if not isinstance(total_duration_sec, (int, float)) or not total_duration_sec > 0:
            raise StoreValidationError(f"total_duration_sec must be positive, got {total_duration_sec}")
        if drop_delay_sec < 0:
            raise StoreValidationError(f"drop_delay_sec must be >= 0, got {drop_delay_sec}")
        if not 0 <= drop_magnitude_pct < 100:
            raise StoreValidationError(f"drop_magnitude_pct must be in [0, 100), got {drop_magnitude_pct}")
        for jump in jumps:
            if jump.rise_delay_sec < 0 or jump.hold_sec < 0:
                raise StoreValidationError(f"jump #{jump.order_index}: delays must be >= 0")

    def create_deal(
        self,
        symbol: str,
        chain_name: str,
        base_price: float,
        start_time: float,
        total_duration_sec: float,
        drop_delay_sec: float = 0.0,
        drop_magnitude_pct: float = 0.0,
        jumps: Iterable[Any] = (),
        deal_id: Optional[str] = None,
    ) -> Deal:
        """
        Schedule a deal.

        Raises
        ------
        StoreValidationError : if any field is invalid.
        StoreError           : on database write failure.
        """
        jump_list = [self._coerce_jump(j, i) for i, j in enumerate(jumps)]
        self._validate_deal(symbol, base_price, total_duration_sec,
                            drop_delay_sec, drop_magnitude_pct, jump_list)
        deal = Deal(
            id=deal_id or uuid.uuid4().hex,
            symbol=symbol.strip().upper(),
            chain_name=chain_name,
            base_price=float(base_price),
            start_time=float(start_time),
            total_duration_sec=float(total_duration_sec),
            drop_delay_sec=float(drop_delay_sec),
            drop_magnitude_pct=float(drop_magnitude_pct),
            jumps=tuple(jump_list),
            created_at=time.time(),
        )
        with self._guard():
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO deals
                        (id, symbol, chain_name, base_price, start_time, total_duration_sec,
                         drop_delay_sec, drop_magnitude_pct, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'SCHEDULED', ?)
                    """,
                    (deal.id, deal.symbol, deal.chain_name, deal.base_price, deal.start_time,
                     deal.total_duration_sec, deal.drop_delay_sec, deal.drop_magnitude_pct,
                     deal.created_at),
                )
                self._conn.executemany(
                    """
                    INSERT INTO deal_jumps
                        (deal_id, rise_delay_sec, rise_magnitude_pct, hold_sec, order_index)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [(deal.id, j.rise_delay_sec, j.rise_magnitude_pct, j.hold_sec, j.order_index)
                     for j in deal.jumps],
                )
        return deal

    def claim_deal(self, deal_id: str, now: float) -> bool:
        """
        Atomically move a SCHEDULED deal to RUNNING.

        Fails (returns False) if the deal is not SCHEDULED or another deal is
        already RUNNING. This UPDATE is the only way a deal starts running.
        """
        try:
            with self._guard():
                with self._conn:
                    cur = self._conn.execute(
                        """
                        UPDATE deals SET status = 'RUNNING', claimed_at = ?
                        WHERE id = ? AND status = 'SCHEDULED'
                          AND NOT EXISTS (SELECT 1 FROM deals WHERE status = 'RUNNING')
                        """,
                        (now, deal_id),
                    )
        except StoreError as e:
            if isinstance(e, StoreUnavailableError):
                raise
            return False
        return cur.rowcount > 0

    def finish_deal(self, deal_id: str, now: Optional[float] = None) -> bool:
        """Move a RUNNING deal to FINISHED. Returns False if it was not RUNNING."""
        with self._guard():
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE deals SET status = 'FINISHED', finished_at = ? "
                    "WHERE id = ? AND status = 'RUNNING'",
                    (time.time() if now is None else now, deal_id),
                )
        return cur.rowcount > 0

    # ── Deals: read ────────────────────────────────────────────────────────

    def _load_jumps(self, deal_id: str) -> tuple:
        rows = self._conn.execute(
            "SELECT * FROM deal_jumps WHERE deal_id = ? ORDER BY order_index ASC, id ASC",
            (deal_id,),
        ).fetchall()
        return tuple(
            DealJump(
                rise_delay_sec=r["rise_delay_sec"],
                rise_magnitude_pct=r["rise_magnitude_pct"],
                hold_sec=r["hold_sec"],
                order_index=r["order_index"],
            )
            for r in rows
        )

    def _deal_from_row(self, row: sqlite3.Row) -> Deal:
        return Deal(
            id=row["id"],
            symbol=row["symbol"],
            chain_name=row["chain_name"],
            base_price=row["base_price"],
            start_time=row["start_time"],
            total_duration_sec=row["total_duration_sec"],
            drop_delay_sec=row["drop_delay_sec"],
            drop_magnitude_pct=row["drop_magnitude_pct"],
            status=row["status"],
            jumps=self._load_jumps(row["id"]),
            claimed_at=row["claimed_at"],
            created_at=row["created_at"],
        )

    def get_deal(self, deal_id: str) -> Optional[Deal]:
        with self._guard():
            row = self._conn.execute("SELECT * FROM deals WHERE id = ?", (deal_id,)).fetchone()
            return self._deal_from_row(row) if row else None

    def find_due_deal(self, now: float) -> Optional[Deal]:
        """Earliest SCHEDULED deal whose start time has passed."""
        with self._guard():
            row = self._conn.execute(
                "SELECT * FROM deals WHERE status = 'SCHEDULED' AND start_time <= ? "
                "ORDER BY start_time ASC, created_at ASC LIMIT 1",
                (now,),
            ).fetchone()
            return self._deal_from_row(row) if row else None

    def get_running_deal(self) -> Optional[Deal]:
        with self._guard():
            row = self._conn.execute(
                "SELECT * FROM deals WHERE status = 'RUNNING' LIMIT 1"
            ).fetchone()
            return self._deal_from_row(row) if row else None

    def count_by_status(self, status: str) -> int:
        if status not in DEAL_STATUSES:
            raise StoreValidationError(f"status must be one of {DEAL_STATUSES}, got {status!r}")
        with self._guard():
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM deals WHERE status = ?", (status,)
            ).fetchone()
            return int(row["n"])

    def list_deals(self, status: Optional[str] = None, limit: int = 100) -> List[Deal]:
        if status is not None and status not in DEAL_STATUSES:
            raise StoreValidationError(f"status must be one of {DEAL_STATUSES}, got {status!r}")
        with self._guard():
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM deals ORDER BY start_time DESC LIMIT ?", (int(limit),)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM deals WHERE status = ? ORDER BY start_time DESC LIMIT ?",
                    (status, int(limit)),
                ).fetchall()
            return [self._deal_from_row(r) for r in rows]

    # ── Signal log ─────────────────────────────────────────────────────────

    def append_signal(self, entry: SignalLogEntry) -> SignalLogEntry:
        """Insert an unresolved signal log entry."""
        with self._guard():
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO signal_log
                        (id, deal_id, symbol, entry_price, signals_json, meta_json,
                         horizon_sec, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entry.id, entry.deal_id, entry.symbol, entry.entry_price,
                     json.dumps([s.to_dict() for s in entry.signals]),
                     json.dumps(entry.meta.to_dict()),
                     entry.horizon_sec, entry.created_at),
                )
        return entry

    @staticmethod
    def _signal_from_row(row: sqlite3.Row) -> SignalLogEntry:
        meta_correct = row["meta_correct"]
        return SignalLogEntry(
            id=row["id"],
            deal_id=row["deal_id"],
            symbol=row["symbol"],
            entry_price=row["entry_price"],
            signals=[ModelSignal.from_dict(d) for d in json.loads(row["signals_json"])],
            meta=MetaDecision.from_dict(json.loads(row["meta_json"])),
            horizon_sec=row["horizon_sec"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            outcome_pct=row["outcome_pct"],
            meta_correct=None if meta_correct is None else bool(meta_correct),
            agent_correct=json.loads(row["agent_correct_json"] or "{}"),
            hit_rates=HitRates.from_dict(json.loads(row["hit_rates_json"] or "null")),
        )

    def get_signal(self, entry_id: str) -> Optional[SignalLogEntry]:
        with self._guard():
            row = self._conn.execute("SELECT * FROM signal_log WHERE id = ?", (entry_id,)).fetchone()
            return self._signal_from_row(row) if row else None

    def list_due_signals(self, now: float, limit: int = 500) -> List[SignalLogEntry]:
        """Unresolved entries whose horizon has elapsed, oldest first."""
        with self._guard():
            rows = self._conn.execute(
                "SELECT * FROM signal_log WHERE resolved_at IS NULL AND created_at + horizon_sec <= ? "
                "ORDER BY created_at ASC LIMIT ?",
                (now, int(limit)),
            ).fetchall()
            return [self._signal_from_row(r) for r in rows]

    def recent_resolved(self, limit: int = 50) -> List[SignalLogEntry]:
        """Most recently resolved entries, newest first."""
        with self._guard():
            rows = self._conn.execute(
                "SELECT * FROM signal_log WHERE resolved_at IS NOT NULL "
                "ORDER BY resolved_at DESC, created_at DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._signal_from_row(r) for r in rows]

    def resolve_signals(self, resolutions: Sequence[Resolution], hit_rates: Optional[HitRates]) -> int:
        """
        Write settlement results in one transaction.

        Each row is updated only while resolved_at IS NULL, so an entry is
        resolved at most once. Returns the number of rows actually resolved.
        """
        rates_json = json.dumps(hit_rates.to_dict()) if hit_rates else None
        written = 0
        with self._guard():
            with self._conn:
                for r in resolutions:
                    cur = self._conn.execute(
                        """
                        UPDATE signal_log
                        SET resolved_at = ?, outcome_pct = ?, meta_correct = ?,
                            agent_correct_json = ?, hit_rates_json = ?
                        WHERE id = ? AND resolved_at IS NULL
                        """,
                        (r.resolved_at, r.outcome_pct, int(r.meta_correct),
                         json.dumps(r.agent_correct), rates_json, r.entry_id),
                    )
                    written += cur.rowcount
        return written

    def count_signals(self, resolved: Optional[bool] = None) -> int:
        where = ""
        if resolved is True:
            where = "WHERE resolved_at IS NOT NULL"
        elif resolved is False:
            where = "WHERE resolved_at IS NULL"
        with self._guard():
            row = self._conn.execute(f"SELECT COUNT(*) AS n FROM signal_log {where}").fetchone()
            return int(row["n"])

    # ── Engine config ──────────────────────────────────────────────────────

    def load_engine_config(self) -> EngineConfigState:
        """Read the config row, creating it with defaults on first use."""
        with self._guard():
            row = self._conn.execute("SELECT * FROM engine_config WHERE id = 1").fetchone()
        if row is None:
            return self.save_engine_config(EngineConfigState())
        return EngineConfigState.normalized(
            active_market_id=row["active_market_id"],
            regime_override=row["regime_override"],
            intensity=row["intensity"],
        )

    def save_engine_config(self, state: EngineConfigState) -> EngineConfigState:
        state = EngineConfigState.normalized(
            state.active_market_id, state.regime_override, state.intensity
        )
        with self._guard():
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO engine_config (id, active_market_id, regime_override, intensity, updated_at)
                    VALUES (1, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        active_market_id = excluded.active_market_id,
                        regime_override  = excluded.regime_override,
                        intensity        = excluded.intensity,
                        updated_at       = excluded.updated_at
                    """,
                    (state.active_market_id, state.regime_override, state.intensity, time.time()),
                )
        return state

    def health(self) -> Dict[str, Any]:
        return {
            "db_path": self.db_path,
            "scheduled": self.count_by_status("SCHEDULED"),
            "running": self.count_by_status("RUNNING"),
            "pending_signals": self.count_signals(resolved=False),
        }
