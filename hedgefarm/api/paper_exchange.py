"""
Paper Exchange.

In-process simulated perpetual-futures venue for paper trading and tests.

- Mark prices are shared across wallets through a PaperMarket
- Isolated-margin liquidation model with a maintenance margin fraction
- Resubmitted orders with a known client id return the existing position
- Faults can be injected per operation to exercise retry and rollback paths
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Deque, Dict, Optional

from .exchange import CloseOutcome, PositionSnapshot, Side
from .exchange_errors import ExchangeError, raise_for_code

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {
    "BTC": Decimal("60000"),
    "ETH": Decimal("3000"),
    "SOL": Decimal("150"),
}


class PaperMarket:
    """Mark prices shared by every paper wallet."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self._prices: Dict[str, Decimal] = dict(prices or DEFAULT_PRICES)

    def set_price(self, token: str, price: Decimal) -> None:
        self._prices[token] = Decimal(str(price))

    def get_price(self, token: str) -> Decimal:
        price = self._prices.get(token)
        if price is None:
            raise_for_code("INVALID_CLIENT_REQUEST", f"Unknown market {token}", "paper")
        return price


@dataclass
class _PaperPosition:
    venue_ref: str
    token: str
    side: Side
    size: Decimal
    entry_price: Decimal
    leverage: float
    margin: Decimal
    is_open: bool = True
    exit_price: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None


class PaperExchange:
    """
    Simulated venue bound to one wallet.

    Usage:
        market = PaperMarket()
        exchange = PaperExchange("wallet_1", Decimal("100"), market)
        snapshot = await exchange.open_position("BTC", Side.LONG, Decimal("200"), 2.0)
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        wallet_id: str,
        balance: Decimal,
        market: Optional[PaperMarket] = None,
        maintenance_margin: float = 0.01,
        latency: float = 0.0,
    ):
        self.wallet_id = wallet_id
        self.market = market or PaperMarket()
        self._balance = Decimal(str(balance))
        self._mmr = Decimal(str(maintenance_margin))
        self._latency = latency

        self._positions: Dict[str, _PaperPosition] = {}
        self._client_ids: Dict[str, str] = {}
        self._faults: Dict[str, Deque[ExchangeError]] = {
            "open": deque(),
            "open_response": deque(),
            "close": deque(),
            "get": deque(),
            "balance": deque(),
        }

        # Call counters for tests
        self.open_calls = 0
        self.close_calls = 0

    @property
    def name(self) -> str:
        return "paper"

    # ==========================================
    # FAULT INJECTION
    # ==========================================

    def inject_fault(self, operation: str, error: ExchangeError, times: int = 1) -> None:
        """
        Make the next `times` calls of `operation` raise `error`.

        Operations: open, open_response (raised after the order filled),
        close, get (also used by find_position) and balance.
        """
        for _ in range(times):
            self._faults[operation].append(error)

    def clear_faults(self) -> None:
        for queue in self._faults.values():
            queue.clear()

    async def _enter(self, operation: str) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._faults[operation]:
            raise self._faults[operation].popleft()

    # ==========================================
    # PRICING
    # ==========================================

    def liquidation_price(self, side: Side, entry: Decimal, leverage: float) -> Decimal:
        """Isolated margin: the price at which equity hits maintenance margin."""
        inverse = Decimal("1") / Decimal(str(leverage))
        if side is Side.LONG:
            return entry * (Decimal("1") - inverse + self._mmr)
        return entry * (Decimal("1") + inverse - self._mmr)

    @staticmethod
    def _pnl(position: _PaperPosition, mark: Decimal) -> Decimal:
        if position.side is Side.LONG:
            return (mark - position.entry_price) * position.size
        return (position.entry_price - mark) * position.size

    def _snapshot(self, position: _PaperPosition) -> PositionSnapshot:
        if not position.is_open:
            mark = position.exit_price
            return PositionSnapshot(
                venue_ref=position.venue_ref,
                token=position.token,
                side=position.side,
                size=Decimal("0"),
                notional=Decimal("0"),
                entry_price=position.entry_price,
                mark_price=mark,
                unrealized_pnl=Decimal("0"),
                liquidation_price=None,
                is_open=False,
            )

        mark = self.market.get_price(position.token)
        return PositionSnapshot(
            venue_ref=position.venue_ref,
            token=position.token,
            side=position.side,
            size=position.size,
            notional=(position.size * mark).quantize(Decimal("0.01")),
            entry_price=position.entry_price,
            mark_price=mark,
            unrealized_pnl=self._pnl(position, mark),
            liquidation_price=self.liquidation_price(
                position.side, position.entry_price, position.leverage
            ),
        )

    # ==========================================
    # CAPABILITY
    # ==========================================

    async def open_position(
        self,
        token: str,
        side: Side,
        notional: Decimal,
        leverage: float,
        client_id: Optional[str] = None,
    ) -> PositionSnapshot:
        self.open_calls += 1
        await self._enter("open")

        if client_id and client_id in self._client_ids:
            existing = self._positions[self._client_ids[client_id]]
            logger.info(f"[paper:{self.wallet_id}] Duplicate order {client_id}, returning existing")
            return self._snapshot(existing)

        if notional <= 0:
            raise_for_code("INVALID_ORDER", "Notional must be positive", self.name)

        margin = (notional / Decimal(str(leverage))).quantize(Decimal("0.01"))
        if margin > self._balance:
            raise_for_code(
                "INSUFFICIENT_MARGIN",
                f"Margin {margin} exceeds available {self._balance}",
                self.name,
            )

        price = self.market.get_price(token)
        size = (notional / price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        venue_ref = f"paper-{self.wallet_id}-{next(self._ids)}"

        self._balance -= margin
        self._positions[venue_ref] = _PaperPosition(
            venue_ref=venue_ref,
            token=token,
            side=side,
            size=size,
            entry_price=price,
            leverage=leverage,
            margin=margin,
        )
        if client_id:
            self._client_ids[client_id] = venue_ref

        logger.info(
            f"[paper:{self.wallet_id}] Opened {side.value} {size} {token} @ {price} "
            f"({notional} USDC, {leverage}x)"
        )
        # Filled, but the caller never sees the response
        if self._faults["open_response"]:
            raise self._faults["open_response"].popleft()
        return self._snapshot(self._positions[venue_ref])

    async def close_position(self, venue_ref: str) -> CloseOutcome:
        self.close_calls += 1
        await self._enter("close")

        position = self._positions.get(venue_ref)
        if position is None or not position.is_open:
            raise_for_code("RESOURCE_NOT_FOUND", f"No open position {venue_ref}", self.name)

        mark = self.market.get_price(position.token)
        pnl = self._pnl(position, mark)
        position.is_open = False
        position.exit_price = mark
        position.realized_pnl = pnl
        self._balance += position.margin + pnl

        logger.info(f"[paper:{self.wallet_id}] Closed {venue_ref} @ {mark}, pnl {pnl:.2f}")
        return CloseOutcome(
            venue_ref=venue_ref,
            exit_price=mark,
            realized_pnl=pnl,
            closed_at=datetime.now(timezone.utc),
        )

    async def get_position(self, venue_ref: str) -> PositionSnapshot:
        await self._enter("get")

        position = self._positions.get(venue_ref)
        if position is None:
            raise_for_code("RESOURCE_NOT_FOUND", f"Unknown position {venue_ref}", self.name)
        return self._snapshot(position)

    async def find_position(self, token: str, client_id: str) -> Optional[PositionSnapshot]:
        await self._enter("get")

        venue_ref = self._client_ids.get(client_id)
        if venue_ref is None or not self._positions[venue_ref].is_open:
            return None
        return self._snapshot(self._positions[venue_ref])

    async def get_account_balance(self) -> Decimal:
        await self._enter("balance")
        return self._balance

    def find_by_client_id(self, client_id: str) -> Optional[str]:
        """Venue reference of the order submitted under `client_id`, if any."""
        return self._client_ids.get(client_id)
