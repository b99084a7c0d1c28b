"""
Exchange Capability.

Uniform interface over perpetual-futures venues. The coordinator, risk
monitor and allocation step only ever talk to this protocol; each venue
client owns its wire format and request signing.

A capability instance is bound to exactly one wallet when it is created,
so balance queries and orders always act on that wallet's account.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable


class Side(Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


@dataclass
class PositionSnapshot:
    """Venue view of one position at a point in time."""

    venue_ref: str
    token: str
    side: Side
    size: Decimal  # Contracts (base asset)
    notional: Decimal  # Quote (USDC)
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal
    liquidation_price: Optional[Decimal]
    is_open: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue_ref": self.venue_ref,
            "token": self.token,
            "side": self.side.value,
            "size": str(self.size),
            "notional": str(self.notional),
            "entry_price": str(self.entry_price),
            "mark_price": str(self.mark_price),
            "unrealized_pnl": str(self.unrealized_pnl),
            "liquidation_price": (
                str(self.liquidation_price) if self.liquidation_price is not None else None
            ),
            "is_open": self.is_open,
        }


@dataclass
class CloseOutcome:
    """Realized result of closing a position."""

    venue_ref: str
    exit_price: Decimal
    realized_pnl: Decimal
    closed_at: datetime


@runtime_checkable
class ExchangeCapability(Protocol):
    """Per-wallet perpetual-futures venue operations."""

    @property
    def name(self) -> str:
        """Venue name."""
        ...

    async def open_position(
        self,
        token: str,
        side: Side,
        notional: Decimal,
        leverage: float,
        client_id: Optional[str] = None,
    ) -> PositionSnapshot:
        """
        Open a market position of `notional` USDC.

        `client_id` identifies the leg; venues use it to recognise a
        resubmitted order instead of opening a second position.
        """
        ...

    async def close_position(self, venue_ref: str) -> CloseOutcome:
        """Close the position identified by `venue_ref`."""
        ...

    async def get_position(self, venue_ref: str) -> PositionSnapshot:
        """Fetch the current state of a position."""
        ...

    async def find_position(self, token: str, client_id: str) -> Optional[PositionSnapshot]:
        """
        The live position an earlier open of this leg left behind, if any.

        Asked before an open is resubmitted, so a fill whose response was
        lost is adopted instead of ordered twice.
        """
        ...

    async def get_account_balance(self) -> Decimal:
        """Available collateral (USDC) of the bound wallet."""
        ...
