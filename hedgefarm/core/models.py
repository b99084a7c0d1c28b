"""
Domain model for hedge groups.

Entities:
- Wallet: one trading account with an encrypted signing secret
- Strategy: a hedge group of 2..N legs with a scheduled close
- Position: one leg of a strategy on one wallet
- LegFailure: a recorded per-leg failure kept for operator remediation
- AllocationPlan: ephemeral wallet -> side -> notional assignment
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from hedgefarm.api.exchange import Side


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class StrategyStatus(Enum):
    """Hedge group lifecycle states."""

    PLANNED = "planned"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StrategyStatus.CLOSED, StrategyStatus.ROLLED_BACK)


class PositionStatus(Enum):
    """Single leg lifecycle states."""

    REQUESTED = "requested"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class BalanceSnapshot:
    """Observed collateral of a wallet."""

    amount: Decimal
    currency: str = "USDC"
    observed_at: datetime = field(default_factory=utcnow)


@dataclass
class Wallet:
    """A trading account. The secret is only ever held encrypted."""

    wallet_id: str
    venue: str
    api_key: str
    encrypted_secret: str
    balance: Optional[BalanceSnapshot] = None

    def __repr__(self) -> str:
        return f"Wallet(wallet_id={self.wallet_id!r}, venue={self.venue!r})"


@dataclass
class Position:
    """One leg of a hedge group."""

    position_id: str
    strategy_id: str
    wallet_id: str
    venue: str
    token: str
    side: Side
    notional: Decimal
    leverage: float
    status: PositionStatus = PositionStatus.REQUESTED
    venue_ref: Optional[str] = None
    size: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    mark_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def liquidation_distance(self) -> Optional[Decimal]:
        """|mark - liquidation| / mark, or None when either price is unknown."""
        if not self.mark_price or self.liquidation_price is None:
            return None
        return abs(self.mark_price - self.liquidation_price) / self.mark_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "strategy_id": self.strategy_id,
            "wallet_id": self.wallet_id,
            "venue": self.venue,
            "token": self.token,
            "side": self.side.value,
            "notional": str(self.notional),
            "leverage": self.leverage,
            "status": self.status.value,
            "venue_ref": self.venue_ref,
            "size": _str(self.size),
            "entry_price": _str(self.entry_price),
            "mark_price": _str(self.mark_price),
            "unrealized_pnl": _str(self.unrealized_pnl),
            "liquidation_price": _str(self.liquidation_price),
            "realized_pnl": _str(self.realized_pnl),
            "opened_at": _iso(self.opened_at),
            "closed_at": _iso(self.closed_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            position_id=data["position_id"],
            strategy_id=data["strategy_id"],
            wallet_id=data["wallet_id"],
            venue=data["venue"],
            token=data["token"],
            side=Side(data["side"]),
            notional=Decimal(data["notional"]),
            leverage=float(data["leverage"]),
            status=PositionStatus(data["status"]),
            venue_ref=data.get("venue_ref"),
            size=_dec(data.get("size")),
            entry_price=_dec(data.get("entry_price")),
            mark_price=_dec(data.get("mark_price")),
            unrealized_pnl=_dec(data.get("unrealized_pnl")),
            liquidation_price=_dec(data.get("liquidation_price")),
            realized_pnl=_dec(data.get("realized_pnl")),
            opened_at=_dt(data.get("opened_at")),
            closed_at=_dt(data.get("closed_at")),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class LegFailure:
    """A leg that could not be opened, unwound or closed."""

    position_id: str
    wallet_id: str
    phase: str  # "open", "rollback" or "close"
    error: str
    attempts: int = 1
    transient: bool = False  # Last error was retryable
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "wallet_id": self.wallet_id,
            "phase": self.phase,
            "error": self.error,
            "attempts": self.attempts,
            "transient": self.transient,
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LegFailure":
        return cls(
            position_id=data["position_id"],
            wallet_id=data["wallet_id"],
            phase=data["phase"],
            error=data["error"],
            attempts=int(data.get("attempts", 1)),
            transient=bool(data.get("transient", False)),
            recorded_at=_dt(data.get("recorded_at")) or utcnow(),
        )


@dataclass
class Strategy:
    """A market-neutral hedge group."""

    strategy_id: str
    token: str
    leverage: float
    notional_per_side: Decimal
    close_at: datetime
    status: StrategyStatus = StrategyStatus.PLANNED
    positions: List[Position] = field(default_factory=list)
    failures: List[LegFailure] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    realized_pnl: Optional[Decimal] = None
    close_reason: str = ""

    @property
    def longs(self) -> List[Position]:
        return [p for p in self.positions if p.side is Side.LONG]

    @property
    def shorts(self) -> List[Position]:
        return [p for p in self.positions if p.side is Side.SHORT]

    @property
    def long_notional(self) -> Decimal:
        return sum((p.notional for p in self.longs), Decimal("0"))

    @property
    def short_notional(self) -> Decimal:
        return sum((p.notional for p in self.shorts), Decimal("0"))

    @property
    def imbalance(self) -> Decimal:
        return abs(self.long_notional - self.short_notional)

    @property
    def wallet_ids(self) -> List[str]:
        return sorted({p.wallet_id for p in self.positions})

    @property
    def outstanding_legs(self) -> List[Position]:
        """Legs that may still be live on a venue."""
        return [
            p for p in self.positions
            if p.status in (PositionStatus.OPEN, PositionStatus.CLOSING)
            or (p.status == PositionStatus.FAILED and p.venue_ref is not None
                and p.closed_at is None)
        ]

    def should_close(self, now: Optional[datetime] = None) -> bool:
        """Scheduled close time elapsed for an open strategy."""
        now = now or utcnow()
        return self.status == StrategyStatus.OPEN and now >= self.close_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "token": self.token,
            "leverage": self.leverage,
            "notional_per_side": str(self.notional_per_side),
            "close_at": self.close_at.isoformat(),
            "status": self.status.value,
            "positions": [p.to_dict() for p in self.positions],
            "failures": [f.to_dict() for f in self.failures],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "closed_at": _iso(self.closed_at),
            "realized_pnl": _str(self.realized_pnl),
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Strategy":
        return cls(
            strategy_id=data["strategy_id"],
            token=data["token"],
            leverage=float(data["leverage"]),
            notional_per_side=Decimal(data["notional_per_side"]),
            close_at=datetime.fromisoformat(data["close_at"]),
            status=StrategyStatus(data["status"]),
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            failures=[LegFailure.from_dict(f) for f in data.get("failures", [])],
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            closed_at=_dt(data.get("closed_at")),
            realized_pnl=_dec(data.get("realized_pnl")),
            close_reason=data.get("close_reason", ""),
        )


@dataclass
class LegAllocation:
    """One wallet's share of a plan."""

    wallet_id: str
    side: Side
    notional: Decimal  # Position size in USDC (margin x leverage)
    margin: Decimal  # Collateral committed


@dataclass
class AllocationPlan:
    """Candidate hedge group produced by the allocation engine."""

    token: str
    leverage: float
    duration: timedelta
    legs: List[LegAllocation]
    created_at: datetime = field(default_factory=utcnow)

    @property
    def long_notional(self) -> Decimal:
        return sum((l.notional for l in self.legs if l.side is Side.LONG), Decimal("0"))

    @property
    def short_notional(self) -> Decimal:
        return sum((l.notional for l in self.legs if l.side is Side.SHORT), Decimal("0"))

    @property
    def imbalance(self) -> Decimal:
        return abs(self.long_notional - self.short_notional)

    @property
    def close_at(self) -> datetime:
        return self.created_at + self.duration

    @property
    def wallet_ids(self) -> List[str]:
        return [l.wallet_id for l in self.legs]

    def to_strategy(self, venues: Dict[str, str]) -> Strategy:
        """
        Commit the plan as a PLANNED strategy with one REQUESTED leg per wallet.

        Args:
            venues: wallet_id -> venue name
        """
        strategy_id = f"strat_{uuid.uuid4().hex[:12]}"
        now = utcnow()
        positions = [
            Position(
                position_id=f"{strategy_id}_{index}",
                strategy_id=strategy_id,
                wallet_id=leg.wallet_id,
                venue=venues[leg.wallet_id],
                token=self.token,
                side=leg.side,
                notional=leg.notional,
                leverage=self.leverage,
                updated_at=now,
            )
            for index, leg in enumerate(self.legs)
        ]
        return Strategy(
            strategy_id=strategy_id,
            token=self.token,
            leverage=self.leverage,
            notional_per_side=max(self.long_notional, self.short_notional),
            close_at=now + self.duration,
            positions=positions,
            created_at=now,
            updated_at=now,
        )
