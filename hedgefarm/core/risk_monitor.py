"""
Risk Monitor.

Fixed-interval loop over open legs:
- Refresh mark price, unrealized PnL and liquidation price from the venue
- Liquidation distance below threshold: hand the strategy to the closer now
- PnL divergence above threshold: alert only

Refreshes run concurrently with a per-call timeout, so one stalled venue or
failing leg never blocks monitoring of the others.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from config.settings import RiskConfig
from hedgefarm.api.exchange import ExchangeCapability, PositionSnapshot

from .alerts import AlertSeverity, AlertType, NotificationSink
from .coordinator import PositionLocks
from .models import Position, PositionStatus, Strategy, StrategyStatus
from .repository import Repository

logger = logging.getLogger(__name__)

UrgentCloseCallback = Callable[[str, str], Union[None, Awaitable[None]]]

MONITORED_STATUSES = (StrategyStatus.OPEN, StrategyStatus.CLOSING)


@dataclass
class MonitorReport:
    """Outcome of one monitor tick."""

    checked: int = 0
    refreshed: List[str] = field(default_factory=list)  # position ids
    refresh_failures: List[str] = field(default_factory=list)  # position ids
    urgent: List[str] = field(default_factory=list)  # strategy ids
    divergent: List[str] = field(default_factory=list)  # strategy ids
    missing: List[str] = field(default_factory=list)  # position ids


def pnl_divergence(strategy: Strategy) -> Optional[Decimal]:
    """
    |sum of leg unrealized PnL| / notional per side.

    A perfect hedge nets to zero; None when a leg has no PnL yet.
    """
    legs = [p for p in strategy.positions if p.status == PositionStatus.OPEN]
    if not legs or strategy.notional_per_side <= 0:
        return None
    if any(p.unrealized_pnl is None for p in legs):
        return None
    total = sum((p.unrealized_pnl for p in legs), Decimal("0"))
    return abs(total) / strategy.notional_per_side


class RiskMonitor:
    """
    Watches liquidation distance and PnL divergence of open strategies.

    Usage:
        monitor = RiskMonitor(repo, exchanges, alerts, config.risk, closer.request_close)
        report = await monitor.tick()
    """

    def __init__(
        self,
        repository: Repository,
        exchanges: Mapping[str, ExchangeCapability],
        alerts: NotificationSink,
        config: RiskConfig,
        on_urgent_close: UrgentCloseCallback,
        position_locks: Optional[PositionLocks] = None,
    ):
        self._repository = repository
        self._exchanges = exchanges
        self._alerts = alerts
        self.config = config
        self._on_urgent_close = on_urgent_close
        self._position_locks = position_locks or PositionLocks()

        self._liquidation_threshold = Decimal(str(config.liquidation_threshold_pct)) / 100
        self._divergence_threshold = Decimal(str(config.divergence_threshold_pct)) / 100
        self._tick_count = 0

    async def tick(self) -> MonitorReport:
        """Run one monitoring pass over every open leg."""
        self._tick_count += 1
        report = MonitorReport()

        strategies = [
            s for s in self._repository.load_open_strategies() if s.status in MONITORED_STATUSES
        ]
        legs = [
            (strategy, position)
            for strategy in strategies
            for position in strategy.positions
            if position.status == PositionStatus.OPEN and position.venue_ref
        ]
        report.checked = len(legs)

        results = await asyncio.gather(
            *(self._refresh(position) for _, position in legs),
            return_exceptions=True,
        )

        for (strategy, position), result in zip(legs, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                report.refresh_failures.append(position.position_id)
                logger.warning(f"Refresh failed for {position.position_id}: {result!r}")
                self._alerts.notify(
                    AlertSeverity.WARNING,
                    f"Could not refresh leg {position.position_id} on {position.wallet_id}",
                    {"strategy_id": strategy.strategy_id, "error": str(result)},
                    alert_type=AlertType.MONITOR_ERROR,
                    dedup_key=f"refresh:{position.position_id}",
                )
                continue
            if result is None:
                # Transition in progress, leave it to the coordinator
                continue

            report.refreshed.append(position.position_id)
            if not result.is_open:
                report.missing.append(position.position_id)
                self._alerts.notify(
                    AlertSeverity.CRITICAL,
                    f"Venue no longer reports leg {position.position_id} as open",
                    {"strategy_id": strategy.strategy_id, "wallet_id": position.wallet_id},
                    alert_type=AlertType.POSITION_MISSING,
                    dedup_key=f"missing:{position.position_id}",
                )

        for strategy in strategies:
            if await self._check_liquidation(strategy):
                report.urgent.append(strategy.strategy_id)
            if strategy.status == StrategyStatus.OPEN and self._check_divergence(strategy):
                report.divergent.append(strategy.strategy_id)

        logger.debug(
            f"Monitor tick {self._tick_count}: {report.checked} legs, "
            f"{len(report.refresh_failures)} failed, {len(report.urgent)} urgent"
        )
        return report

    async def _refresh(self, position: Position) -> Optional[PositionSnapshot]:
        """
        Refresh one leg's market fields.

        Returns None without calling the venue when the leg is mid-transition.
        """
        lock = self._position_locks.lock(position.position_id)
        if lock.locked():
            return None

        async with lock:
            exchange = self._exchanges[position.wallet_id]
            snapshot = await asyncio.wait_for(
                exchange.get_position(position.venue_ref),
                timeout=self.config.api_timeout,
            )
            if snapshot.is_open:
                position.mark_price = snapshot.mark_price
                position.unrealized_pnl = snapshot.unrealized_pnl
                position.liquidation_price = snapshot.liquidation_price
                self._repository.update_position_prices(
                    position.position_id,
                    snapshot.mark_price,
                    snapshot.unrealized_pnl,
                    snapshot.liquidation_price,
                )
            return snapshot

    async def _check_liquidation(self, strategy: Strategy) -> bool:
        closest: Optional[Position] = None
        closest_distance: Optional[Decimal] = None

        for position in strategy.positions:
            if position.status != PositionStatus.OPEN:
                continue
            distance = position.liquidation_distance()
            if distance is None:
                continue
            if closest_distance is None or distance < closest_distance:
                closest, closest_distance = position, distance

        if closest is None or closest_distance >= self._liquidation_threshold:
            return False

        reason = (
            f"liquidation distance {closest_distance * 100:.1f}% on {closest.wallet_id} "
            f"below {self.config.liquidation_threshold_pct}%"
        )
        logger.warning(f"Strategy {strategy.strategy_id}: {reason}, urgent close")
        self._alerts.notify(
            AlertSeverity.EMERGENCY,
            f"Urgent close of {strategy.strategy_id}: {reason}",
            {
                "strategy_id": strategy.strategy_id,
                "position_id": closest.position_id,
                "mark_price": str(closest.mark_price),
                "liquidation_price": str(closest.liquidation_price),
            },
            alert_type=AlertType.LIQUIDATION_PROXIMITY,
            dedup_key=f"liquidation:{strategy.strategy_id}",
        )

        result: Any = self._on_urgent_close(strategy.strategy_id, reason)
        if inspect.isawaitable(result):
            await result
        return True

    def _check_divergence(self, strategy: Strategy) -> bool:
        divergence = pnl_divergence(strategy)
        if divergence is None or divergence <= self._divergence_threshold:
            return False

        self._alerts.notify(
            AlertSeverity.WARNING,
            f"PnL divergence {divergence * 100:.2f}% on {strategy.strategy_id}",
            {
                "strategy_id": strategy.strategy_id,
                "divergence_pct": f"{divergence * 100:.2f}",
                "threshold_pct": self.config.divergence_threshold_pct,
            },
            alert_type=AlertType.PNL_DIVERGENCE,
            dedup_key=f"divergence:{strategy.strategy_id}",
        )
        return True

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Tick every `monitor_interval` seconds until shutdown."""
        logger.info(f"Risk monitor started (interval: {self.config.monitor_interval}s)")

        try:
            while not shutdown_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Risk monitor tick error: {e}")

                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.config.monitor_interval)
                    break
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Risk monitor task cancelled")
