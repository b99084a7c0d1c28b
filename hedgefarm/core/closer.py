"""
Closer.

Closes strategies when their scheduled time elapses or when the risk
monitor asks for an urgent close. Legs that cannot be closed after the
coordinator's retries leave the strategy in CLOSING with its outstanding
legs listed; it is never forced to a terminal state. A leg whose close
failed fatally, or failed `max_close_rounds` passes, is not retried
automatically and waits for the operator.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set

from config.settings import ExecutionConfig

from .alerts import AlertSeverity, AlertType, NotificationSink
from .coordinator import CloseReport, ExecutionCoordinator
from .models import LegFailure, Position, PositionStatus, Strategy, StrategyStatus, utcnow
from .repository import Repository

logger = logging.getLogger(__name__)

CLOSABLE_STATUSES = (StrategyStatus.OPEN, StrategyStatus.CLOSING)

# Queue priorities
WAKE = 0
URGENT = 1
SCHEDULED = 2


class Closer:
    """
    Scheduled and risk-triggered strategy closing.

    Usage:
        closer = Closer(coordinator, repo, alerts, config.execution)
        closer.request_close("strat_ab12", "liquidation distance 2.3%", urgent=True)
        await closer.run(shutdown_event)
    """

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        repository: Repository,
        alerts: NotificationSink,
        config: ExecutionConfig,
    ):
        self._coordinator = coordinator
        self._repository = repository
        self._alerts = alerts
        self.config = config

        # (priority, sequence, strategy_id, reason); urgent first, FIFO within a priority
        self._queue: "asyncio.PriorityQueue[tuple]" = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._pending: Set[str] = set()  # Queued or in flight
        self._inflight: Set[asyncio.Task] = set()

    @property
    def pending(self) -> Set[str]:
        return set(self._pending)

    def request_close(self, strategy_id: str, reason: str, urgent: bool = False) -> bool:
        """
        Queue a strategy for closing.

        Returns:
            False if the strategy is already queued or being closed
        """
        if strategy_id in self._pending:
            logger.debug(f"Close of {strategy_id} already pending")
            return False

        self._pending.add(strategy_id)
        priority = URGENT if urgent else SCHEDULED
        self._queue.put_nowait((priority, next(self._sequence), strategy_id, reason))
        log = logger.warning if urgent else logger.info
        log(f"Close requested for {strategy_id}: {reason}{' (urgent)' if urgent else ''}")
        return True

    def due_strategies(self, now: Optional[datetime] = None) -> List[Strategy]:
        """OPEN strategies whose scheduled close time has elapsed."""
        now = now or utcnow()
        return [
            s for s in self._repository.load_open_strategies() if s.should_close(now)
        ]

    def retryable_legs(self, strategy: Strategy) -> List[Position]:
        """
        Outstanding legs the closer may still try by itself.

        A leg whose last close failed fatally, or that already failed
        `max_close_rounds` close passes, is left for the operator.
        """
        failures: Dict[str, List[LegFailure]] = {}
        for failure in strategy.failures:
            if failure.phase == "close":
                failures.setdefault(failure.position_id, []).append(failure)

        legs = []
        for position in strategy.outstanding_legs:
            history = failures.get(position.position_id, [])
            if history and (
                not history[-1].transient or len(history) >= self.config.max_close_rounds
            ):
                continue
            legs.append(position)
        return legs

    def stuck_strategies(self) -> List[Strategy]:
        """CLOSING strategies with outstanding legs that may be retried."""
        return [
            s for s in self._repository.load_open_strategies()
            if s.status == StrategyStatus.CLOSING and self.retryable_legs(s)
        ]

    async def close_strategy(self, strategy: Strategy, reason: str) -> CloseReport:
        """
        Close the outstanding legs of a strategy that may still be retried.

        All legs closed: CLOSED with aggregated realized PnL. Otherwise the
        strategy stays CLOSING and a CRITICAL alert names the legs left.
        """
        if strategy.status not in CLOSABLE_STATUSES:
            logger.info(f"Strategy {strategy.strategy_id} is {strategy.status.value}, not closing")
            return CloseReport()

        if strategy.status == StrategyStatus.OPEN:
            strategy.status = StrategyStatus.CLOSING
            strategy.close_reason = reason
            self._repository.save_strategy(strategy, include_positions=False)

        legs = self.retryable_legs(strategy)
        logger.info(f"Closing strategy {strategy.strategy_id} ({reason}): {len(legs)} legs")
        report = await self._coordinator.close_legs(strategy, legs)

        remaining = strategy.outstanding_legs
        if not remaining:
            strategy.status = StrategyStatus.CLOSED
            strategy.closed_at = utcnow()
            strategy.realized_pnl = sum(
                (p.realized_pnl or Decimal("0") for p in strategy.positions
                 if p.status == PositionStatus.CLOSED),
                Decimal("0"),
            )
            self._repository.save_strategy(strategy, include_positions=False)
            logger.info(
                f"Strategy {strategy.strategy_id} CLOSED, realized {strategy.realized_pnl:.2f} USDC"
            )
            self._alerts.notify(
                AlertSeverity.INFO,
                f"Strategy {strategy.strategy_id} closed ({reason})",
                {"strategy_id": strategy.strategy_id, "realized_pnl": str(strategy.realized_pnl)},
                alert_type=AlertType.STRATEGY_CLOSED,
                dedup_key=f"closed:{strategy.strategy_id}",
            )
        else:
            outstanding = [f"{p.position_id}@{p.wallet_id}" for p in remaining]
            retryable = {p.position_id for p in self.retryable_legs(strategy)}
            for_operator = [
                f"{p.position_id}@{p.wallet_id}" for p in remaining if p.position_id not in retryable
            ]
            logger.error(
                f"Strategy {strategy.strategy_id} left CLOSING with outstanding legs: {outstanding}"
                f" (operator action needed: {for_operator})"
            )
            self._alerts.notify(
                AlertSeverity.CRITICAL,
                f"Strategy {strategy.strategy_id} could not close {len(remaining)} leg(s)",
                {
                    "strategy_id": strategy.strategy_id,
                    "outstanding_legs": outstanding,
                    "operator_action": for_operator,
                    "errors": [f.error for f in report.failed],
                },
                alert_type=AlertType.CLOSE_FAILED,
                dedup_key=f"close_failed:{strategy.strategy_id}",
            )

        return report

    async def _process(self, strategy_id: str, reason: str) -> None:
        try:
            strategy = self._repository.get_strategy(strategy_id)
            if strategy is None:
                logger.warning(f"Close requested for unknown strategy {strategy_id}")
                return
            await self.close_strategy(strategy, reason)
        except Exception as e:
            logger.error(f"Close of {strategy_id} failed: {e}")
            self._alerts.notify(
                AlertSeverity.CRITICAL,
                f"Close of {strategy_id} raised: {e}",
                {"strategy_id": strategy_id},
                alert_type=AlertType.CLOSE_FAILED,
                dedup_key=f"close_error:{strategy_id}",
            )
        finally:
            self._pending.discard(strategy_id)

    def _spawn(self, strategy_id: str, reason: str) -> None:
        task = asyncio.create_task(self._process(strategy_id, reason), name=f"close:{strategy_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _enqueue_scheduled(self) -> None:
        for strategy in self.due_strategies():
            self.request_close(strategy.strategy_id, "scheduled close time reached")
        for strategy in self.stuck_strategies():
            self.request_close(strategy.strategy_id, "retrying outstanding legs")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        Close loop.

        Requests are picked up as soon as they are queued, urgent ones ahead
        of scheduled ones. Due and stuck strategies are polled every
        `close_check_interval` seconds.
        """
        logger.info(f"Closer started (interval: {self.config.close_check_interval}s)")
        loop = asyncio.get_running_loop()
        next_poll = 0.0

        try:
            while not shutdown_event.is_set():
                if loop.time() >= next_poll:
                    try:
                        self._enqueue_scheduled()
                    except Exception as e:
                        logger.error(f"Scheduled close check error: {e}")
                    next_poll = loop.time() + self.config.close_check_interval

                try:
                    item = await asyncio.wait_for(
                        self._queue.get(), timeout=max(0.0, next_poll - loop.time())
                    )
                except asyncio.TimeoutError:
                    continue

                _, _, strategy_id, reason = item
                if strategy_id is None:
                    continue
                self._spawn(strategy_id, reason)

        except asyncio.CancelledError:
            logger.info("Closer task cancelled")

    def wake(self) -> None:
        """Unblock the run loop so it can observe shutdown."""
        self._queue.put_nowait((WAKE, next(self._sequence), None, ""))

    def cancel_inflight(self) -> List[asyncio.Task]:
        """Cancel closes still running; returns the cancelled tasks."""
        tasks = [task for task in self._inflight if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.warning(f"Cancelled {len(tasks)} in-flight close(s)")
        return tasks

    async def drain(self, timeout: float) -> bool:
        """
        Wait for in-flight closes to finish.

        Returns:
            True if everything finished within `timeout`
        """
        if not self._inflight:
            return True
        done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} close(s) still in flight after {timeout}s")
        return not pending
