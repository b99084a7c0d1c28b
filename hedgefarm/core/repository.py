"""
Strategy Repository.

Single source of truth for Strategy and Position state:
- Atomic per-entity upserts
- Durable Open/Closing status across crashes (SQLite WAL, synchronous=FULL)
- Loading non-terminal strategies for restart recovery

Two implementations share the Repository protocol: SQLiteRepository for
the running bot and InMemoryRepository for tests and dry runs.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from hedgefarm.api.exchange import CloseOutcome

from .models import (
    LegFailure,
    Position,
    PositionStatus,
    Strategy,
    StrategyStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = tuple(s.value for s in StrategyStatus if s.is_terminal)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal objects."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class StrategyNotFoundError(KeyError):
    """No strategy with the requested id."""
    pass


class Repository(Protocol):
    """Storage collaborator used by every engine component."""

    def save_strategy(self, strategy: Strategy, include_positions: bool = True) -> None:
        ...

    def save_position(self, position: Position) -> None:
        ...

    def load_open_strategies(self) -> List[Strategy]:
        ...

    def update_position_status(
        self,
        position_id: str,
        status: PositionStatus,
        venue_ref: Optional[str] = None,
    ) -> None:
        ...

    def update_position_prices(
        self,
        position_id: str,
        mark_price: Optional[Decimal],
        unrealized_pnl: Optional[Decimal],
        liquidation_price: Optional[Decimal],
    ) -> None:
        ...

    def record_close_outcome(self, position_id: str, outcome: CloseOutcome) -> None:
        ...

    def record_failure(self, strategy_id: str, failure: LegFailure) -> None:
        ...

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        ...

    def list_strategies(self, status: Optional[StrategyStatus] = None) -> List[Strategy]:
        ...


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteRepository:
    """
    SQLite-backed repository.

    Usage:
        repo = SQLiteRepository("data/hedgefarm.db")
        repo.save_strategy(strategy)
        for strategy in repo.load_open_strategies():
            ...
    """

    SCHEMA = """
    -- One row per hedge group
    CREATE TABLE IF NOT EXISTS strategies (
        strategy_id TEXT PRIMARY KEY,
        token TEXT NOT NULL,
        leverage REAL NOT NULL,
        notional_per_side TEXT NOT NULL,
        close_at TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        closed_at TEXT,
        realized_pnl TEXT,
        close_reason TEXT DEFAULT ''
    );

    -- One row per leg
    CREATE TABLE IF NOT EXISTS positions (
        position_id TEXT PRIMARY KEY,
        strategy_id TEXT NOT NULL REFERENCES strategies(strategy_id),
        wallet_id TEXT NOT NULL,
        venue TEXT NOT NULL,
        token TEXT NOT NULL,
        side TEXT NOT NULL,
        notional TEXT NOT NULL,
        leverage REAL NOT NULL,
        status TEXT NOT NULL,
        venue_ref TEXT,
        size TEXT,
        entry_price TEXT,
        mark_price TEXT,
        unrealized_pnl TEXT,
        liquidation_price TEXT,
        realized_pnl TEXT,
        opened_at TEXT,
        closed_at TEXT,
        updated_at TEXT NOT NULL
    );

    -- Leg failures kept for operator remediation
    CREATE TABLE IF NOT EXISTS leg_failures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT NOT NULL,
        position_id TEXT NOT NULL,
        wallet_id TEXT NOT NULL,
        phase TEXT NOT NULL,
        error TEXT NOT NULL,
        attempts INTEGER DEFAULT 1,
        transient INTEGER DEFAULT 0,
        recorded_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_strategies_status ON strategies(status);
    CREATE INDEX IF NOT EXISTS idx_positions_strategy ON positions(strategy_id);
    CREATE INDEX IF NOT EXISTS idx_positions_wallet ON positions(wallet_id);
    CREATE INDEX IF NOT EXISTS idx_failures_strategy ON leg_failures(strategy_id);
    """

    POSITION_COLUMNS = (
        "position_id", "strategy_id", "wallet_id", "venue", "token", "side",
        "notional", "leverage", "status", "venue_ref", "size", "entry_price",
        "mark_price", "unrealized_pnl", "liquidation_price", "realized_pnl",
        "opened_at", "closed_at", "updated_at",
    )

    def __init__(self, db_path: str = "data/hedgefarm.db"):
        """
        Initialize repository.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

        self._init_database()
        logger.info(f"Repository initialized with database: {self._db_path}")

    def _init_database(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection with one transaction: commit on success, rollback on error."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # === Writes ===

    def _upsert_position(self, conn: sqlite3.Connection, position: Position) -> None:
        data = position.to_dict()
        columns = ", ".join(self.POSITION_COLUMNS)
        placeholders = ", ".join("?" for _ in self.POSITION_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in self.POSITION_COLUMNS if c != "position_id"
        )
        conn.execute(
            f"""
            INSERT INTO positions ({columns}) VALUES ({placeholders})
            ON CONFLICT(position_id) DO UPDATE SET {updates}
            """,
            tuple(data[c] for c in self.POSITION_COLUMNS),
        )

    def save_strategy(self, strategy: Strategy, include_positions: bool = True) -> None:
        """
        Upsert a strategy (and by default its positions) in one transaction.

        Failures are append-only and written through record_failure.
        """
        strategy.updated_at = utcnow()
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO strategies (
                    strategy_id, token, leverage, notional_per_side, close_at, status,
                    created_at, updated_at, closed_at, realized_pnl, close_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(strategy_id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    closed_at = excluded.closed_at,
                    realized_pnl = excluded.realized_pnl,
                    close_reason = excluded.close_reason,
                    close_at = excluded.close_at
                """,
                (
                    strategy.strategy_id,
                    strategy.token,
                    strategy.leverage,
                    str(strategy.notional_per_side),
                    strategy.close_at.isoformat(),
                    strategy.status.value,
                    strategy.created_at.isoformat(),
                    strategy.updated_at.isoformat(),
                    _iso(strategy.closed_at),
                    _str(strategy.realized_pnl),
                    strategy.close_reason,
                ),
            )
            if include_positions:
                for position in strategy.positions:
                    self._upsert_position(conn, position)

        logger.debug(f"Saved strategy {strategy.strategy_id} ({strategy.status.value})")

    def save_position(self, position: Position) -> None:
        position.updated_at = utcnow()
        with self._write_lock, self._connect() as conn:
            self._upsert_position(conn, position)

    def update_position_status(
        self,
        position_id: str,
        status: PositionStatus,
        venue_ref: Optional[str] = None,
    ) -> None:
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE positions
                SET status = ?, venue_ref = COALESCE(?, venue_ref), updated_at = ?
                WHERE position_id = ?
                """,
                (status.value, venue_ref, utcnow().isoformat(), position_id),
            )

    def update_position_prices(
        self,
        position_id: str,
        mark_price: Optional[Decimal],
        unrealized_pnl: Optional[Decimal],
        liquidation_price: Optional[Decimal],
    ) -> None:
        """Refresh market fields only; never touches status."""
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE positions
                SET mark_price = ?, unrealized_pnl = ?, liquidation_price = ?, updated_at = ?
                WHERE position_id = ?
                """,
                (
                    _str(mark_price),
                    _str(unrealized_pnl),
                    _str(liquidation_price),
                    utcnow().isoformat(),
                    position_id,
                ),
            )

    def record_close_outcome(self, position_id: str, outcome: CloseOutcome) -> None:
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE positions
                SET status = ?, realized_pnl = ?, mark_price = ?, unrealized_pnl = ?,
                    closed_at = ?, updated_at = ?
                WHERE position_id = ?
                """,
                (
                    PositionStatus.CLOSED.value,
                    str(outcome.realized_pnl),
                    str(outcome.exit_price),
                    "0",
                    outcome.closed_at.isoformat(),
                    utcnow().isoformat(),
                    position_id,
                ),
            )

    def record_failure(self, strategy_id: str, failure: LegFailure) -> None:
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO leg_failures
                (strategy_id, position_id, wallet_id, phase, error, attempts, transient, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    strategy_id,
                    failure.position_id,
                    failure.wallet_id,
                    failure.phase,
                    failure.error,
                    failure.attempts,
                    int(failure.transient),
                    failure.recorded_at.isoformat(),
                ),
            )

    # === Reads ===

    def _build(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Strategy:
        positions = conn.execute(
            "SELECT * FROM positions WHERE strategy_id = ? ORDER BY position_id",
            (row["strategy_id"],),
        ).fetchall()
        failures = conn.execute(
            "SELECT * FROM leg_failures WHERE strategy_id = ? ORDER BY id",
            (row["strategy_id"],),
        ).fetchall()

        data: Dict[str, Any] = dict(row)
        data["positions"] = [dict(p) for p in positions]
        data["failures"] = [dict(f) for f in failures]
        return Strategy.from_dict(data)

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM strategies WHERE strategy_id = ?", (strategy_id,)
            ).fetchone()
            if row is None:
                return None
            return self._build(conn, row)

    def load_open_strategies(self) -> List[Strategy]:
        """Every strategy not in a terminal status, oldest first."""
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM strategies
                WHERE status NOT IN ({placeholders})
                ORDER BY created_at
                """,
                TERMINAL_STATUSES,
            ).fetchall()
            return [self._build(conn, row) for row in rows]

    def list_strategies(self, status: Optional[StrategyStatus] = None) -> List[Strategy]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM strategies ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM strategies WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
            return [self._build(conn, row) for row in rows]

    def export_json(self, path: str) -> None:
        """Dump every strategy to a JSON file (operator inspection)."""
        strategies = [s.to_dict() for s in self.list_strategies()]
        Path(path).write_text(json.dumps(strategies, indent=2, cls=DecimalEncoder))


class InMemoryRepository:
    """
    Repository kept in process memory.

    Entities are stored serialized so callers never share mutable objects
    with the store, matching the SQLite behaviour.
    """

    def __init__(self):
        self._strategies: Dict[str, Dict[str, Any]] = {}
        self._positions: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def save_strategy(self, strategy: Strategy, include_positions: bool = True) -> None:
        strategy.updated_at = utcnow()
        with self._lock:
            data = strategy.to_dict()
            data.pop("positions")
            data.pop("failures")
            self._strategies[strategy.strategy_id] = data
            if include_positions:
                for position in strategy.positions:
                    self._positions[position.position_id] = position.to_dict()

    def save_position(self, position: Position) -> None:
        position.updated_at = utcnow()
        with self._lock:
            self._positions[position.position_id] = position.to_dict()

    def _update(self, position_id: str, **fields: Any) -> None:
        with self._lock:
            data = self._positions.get(position_id)
            if data is None:
                raise StrategyNotFoundError(f"Unknown position {position_id}")
            data.update(fields)
            data["updated_at"] = utcnow().isoformat()

    def update_position_status(
        self,
        position_id: str,
        status: PositionStatus,
        venue_ref: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {"status": status.value}
        if venue_ref is not None:
            fields["venue_ref"] = venue_ref
        self._update(position_id, **fields)

    def update_position_prices(
        self,
        position_id: str,
        mark_price: Optional[Decimal],
        unrealized_pnl: Optional[Decimal],
        liquidation_price: Optional[Decimal],
    ) -> None:
        self._update(
            position_id,
            mark_price=_str(mark_price),
            unrealized_pnl=_str(unrealized_pnl),
            liquidation_price=_str(liquidation_price),
        )

    def record_close_outcome(self, position_id: str, outcome: CloseOutcome) -> None:
        self._update(
            position_id,
            status=PositionStatus.CLOSED.value,
            realized_pnl=str(outcome.realized_pnl),
            mark_price=str(outcome.exit_price),
            unrealized_pnl="0",
            closed_at=outcome.closed_at.isoformat(),
        )

    def record_failure(self, strategy_id: str, failure: LegFailure) -> None:
        with self._lock:
            self._failures.setdefault(strategy_id, []).append(failure.to_dict())

    def _build(self, strategy_id: str) -> Strategy:
        data = dict(self._strategies[strategy_id])
        data["positions"] = sorted(
            (dict(p) for p in self._positions.values() if p["strategy_id"] == strategy_id),
            key=lambda p: p["position_id"],
        )
        data["failures"] = list(self._failures.get(strategy_id, []))
        return Strategy.from_dict(data)

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        with self._lock:
            if strategy_id not in self._strategies:
                return None
            return self._build(strategy_id)

    def load_open_strategies(self) -> List[Strategy]:
        with self._lock:
            return [
                self._build(sid)
                for sid, data in sorted(self._strategies.items(), key=lambda i: i[1]["created_at"])
                if data["status"] not in TERMINAL_STATUSES
            ]

    def list_strategies(self, status: Optional[StrategyStatus] = None) -> List[Strategy]:
        with self._lock:
            return [
                self._build(sid)
                for sid, data in sorted(self._strategies.items(), key=lambda i: i[1]["created_at"])
                if status is None or data["status"] == status.value
            ]
