"""
Execution Coordinator.

Opens and closes the legs of a hedge group across wallets:
- Open: concurrent fan-out, all-or-nothing; any failed leg rolls back the rest
- Close: concurrent fan-out, each leg succeeds or fails independently
- Transient venue errors retried with exponential backoff, fatal ones never
- An open is resubmitted only after the venue confirms no earlier attempt filled
- Every state transition persisted before control returns to the caller

Per-wallet locks keep a wallet in at most one in-flight operation; per-position
locks serialise status transitions with the risk monitor's price refresh.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

from config.settings import ExecutionConfig
from hedgefarm.api.exchange import CloseOutcome, ExchangeCapability, PositionSnapshot
from hedgefarm.api.exchange_errors import (
    ErrorCategory,
    ExchangeError,
    RetryConfig,
    retry_async,
)

from .models import (
    AllocationPlan,
    LegFailure,
    Position,
    PositionStatus,
    Strategy,
    StrategyStatus,
    utcnow,
)
from .repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPEN_OUTCOME_UNKNOWN = "open outcome unknown"


class PartialFailureError(Exception):
    """Some legs of a multi-leg operation failed; the strategy carries the details."""

    def __init__(self, strategy: Strategy, failures: List[LegFailure]):
        self.strategy = strategy
        self.failures = failures
        legs = ", ".join(f"{f.wallet_id}:{f.phase}" for f in failures)
        super().__init__(
            f"Strategy {strategy.strategy_id} ended {strategy.status.value}; failed legs: {legs}"
        )


@dataclass
class CloseReport:
    """Per-leg outcome of a close fan-out."""

    closed: List[Position] = field(default_factory=list)
    failed: List[LegFailure] = field(default_factory=list)

    @property
    def all_closed(self) -> bool:
        return not self.failed

    @property
    def realized_pnl(self) -> Decimal:
        return sum((p.realized_pnl or Decimal("0") for p in self.closed), Decimal("0"))


class _KeyedLocks:
    """Lazily created asyncio.Lock per key."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def locked_keys(self) -> Set[str]:
        return {key for key, lock in self._locks.items() if lock.locked()}


class WalletLockRegistry(_KeyedLocks):
    """
    Per-wallet mutual exclusion.

    Wallets are also reserved from the moment a plan is accepted until its
    legs have been dispatched, so a second plan cannot pick them up.
    """

    def __init__(self):
        super().__init__()
        self._reserved: Set[str] = set()

    def reserve(self, wallet_ids: Iterable[str]) -> None:
        self._reserved.update(wallet_ids)

    def release(self, wallet_ids: Iterable[str]) -> None:
        self._reserved.difference_update(wallet_ids)

    def busy_wallets(self) -> Set[str]:
        """Wallets with a pending leg or a reservation."""
        return self.locked_keys() | self._reserved


class PositionLocks(_KeyedLocks):
    """Per-position lock shared by the coordinator and the risk monitor."""
    pass


class ExecutionCoordinator:
    """
    Multi-leg open/close primitive.

    Usage:
        coordinator = ExecutionCoordinator(exchanges, repository, config.execution)
        try:
            strategy = await coordinator.open_strategy(plan)
        except PartialFailureError as e:
            # e.strategy is ROLLED_BACK or FAILED, already persisted
            ...
    """

    def __init__(
        self,
        exchanges: Mapping[str, ExchangeCapability],
        repository: Repository,
        config: ExecutionConfig,
        wallet_locks: Optional[WalletLockRegistry] = None,
        position_locks: Optional[PositionLocks] = None,
    ):
        self._exchanges = exchanges
        self._repository = repository
        self.config = config
        self.wallet_locks = wallet_locks or WalletLockRegistry()
        self.position_locks = position_locks or PositionLocks()

        self._semaphore = asyncio.Semaphore(config.max_parallel_legs)
        self._retry = RetryConfig(
            max_retries=max(0, config.max_retry_attempts - 1),  # Attempts include the first call
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def _exchange(self, position: Position) -> ExchangeCapability:
        return self._exchanges[position.wallet_id]

    async def _call_with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        description: str,
    ) -> Tuple[T, int]:
        """
        Run a venue call, retrying transient errors.

        Returns:
            (result, attempts)

        Raises:
            ExchangeError: fatal error, or transient error after the last
                attempt; `attempts` is set on the exception
        """
        return await retry_async(call, self._retry, description)

    @staticmethod
    def _apply_snapshot(position: Position, snapshot: PositionSnapshot) -> None:
        position.venue_ref = snapshot.venue_ref
        position.size = snapshot.size
        position.entry_price = snapshot.entry_price
        position.mark_price = snapshot.mark_price
        position.unrealized_pnl = snapshot.unrealized_pnl
        position.liquidation_price = snapshot.liquidation_price

    def _record_failure(self, strategy: Strategy, failure: LegFailure) -> None:
        strategy.failures.append(failure)
        self._repository.record_failure(strategy.strategy_id, failure)

    # ==========================================
    # OPEN
    # ==========================================

    async def open_strategy(self, plan: AllocationPlan) -> Strategy:
        """
        Open every leg of a plan, or roll back.

        Returns:
            The OPEN strategy

        Raises:
            PartialFailureError: at least one leg failed; the strategy has
                been rolled back (ROLLED_BACK) or could not be (FAILED)
        """
        venues = {w: self._exchanges[w].name for w in plan.wallet_ids}
        strategy = plan.to_strategy(venues)
        self._repository.save_strategy(strategy)

        strategy.status = StrategyStatus.OPENING
        self._repository.save_strategy(strategy)
        logger.info(
            f"Opening strategy {strategy.strategy_id}: {strategy.token} {strategy.leverage}x, "
            f"{len(strategy.positions)} legs"
        )

        results = await asyncio.gather(
            *(self._open_leg(strategy, p) for p in strategy.positions),
            return_exceptions=True,
        )

        failures: List[LegFailure] = []
        for position, result in zip(strategy.positions, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(f"Unexpected error opening {position.position_id}: {result}")
                position.status = PositionStatus.FAILED
                self._repository.save_position(position)
                result = LegFailure(position.position_id, position.wallet_id, "open", repr(result))
            if result is not None:
                failures.append(result)

        if not failures:
            strategy.status = StrategyStatus.OPEN
            self._repository.save_strategy(strategy)
            logger.info(f"Strategy {strategy.strategy_id} OPEN")
            return strategy

        for failure in failures:
            self._record_failure(strategy, failure)

        opened = [p for p in strategy.positions if p.status == PositionStatus.OPEN]
        logger.warning(
            f"Strategy {strategy.strategy_id}: {len(failures)} leg(s) failed to open, "
            f"rolling back {len(opened)}"
        )
        report = await self.close_legs(strategy, opened, phase="rollback")

        # A REQUESTED leg may have filled on a venue we could not reach
        unknown = [p for p in strategy.positions if p.status == PositionStatus.REQUESTED]
        clean = report.all_closed and not unknown
        strategy.status = StrategyStatus.ROLLED_BACK if clean else StrategyStatus.FAILED
        if clean:
            strategy.closed_at = utcnow()
            strategy.realized_pnl = report.realized_pnl
        strategy.close_reason = "open failed"
        self._repository.save_strategy(strategy)

        raise PartialFailureError(strategy, list(strategy.failures))

    async def _find_opened(
        self, exchange: ExchangeCapability, position: Position
    ) -> Optional[PositionSnapshot]:
        snapshot, _ = await self._call_with_retry(
            lambda: exchange.find_position(position.token, position.position_id),
            f"Query {position.position_id}",
        )
        return snapshot

    async def _submit_open(
        self, exchange: ExchangeCapability, position: Position, description: str
    ) -> PositionSnapshot:
        """
        Submit the open order, retrying transient errors.

        An attempt that errored may still have filled, so every resubmission
        asks the venue first and adopts a position it finds.
        """
        attempt = 0

        async def submit() -> PositionSnapshot:
            nonlocal attempt
            attempt += 1
            if attempt > 1:
                existing = await exchange.find_position(position.token, position.position_id)
                if existing is not None:
                    logger.warning(f"{description}: earlier attempt filled, not resubmitting")
                    return existing
            return await exchange.open_position(
                position.token,
                position.side,
                position.notional,
                position.leverage,
                client_id=position.position_id,
            )

        snapshot, _ = await self._call_with_retry(submit, description)
        return snapshot

    async def _open_leg(self, strategy: Strategy, position: Position) -> Optional[LegFailure]:
        exchange = self._exchange(position)
        description = f"Open {position.position_id} on {position.wallet_id}"

        async with self.wallet_locks.lock(position.wallet_id), self._semaphore:
            try:
                snapshot = await self._submit_open(exchange, position, description)
            except ExchangeError as e:
                logger.error(f"{description} failed after {e.attempts} attempt(s): {e}")
                snapshot = None
                if e.is_transient:
                    try:
                        snapshot = await self._find_opened(exchange, position)
                    except ExchangeError as query_error:
                        # Leg stays REQUESTED; the strategy cannot be rolled back cleanly
                        logger.error(f"{description}: {OPEN_OUTCOME_UNKNOWN} ({query_error})")
                        return LegFailure(
                            position.position_id, position.wallet_id, "open",
                            f"{OPEN_OUTCOME_UNKNOWN}: {e}", e.attempts, transient=True,
                        )

                if snapshot is None:
                    position.status = PositionStatus.FAILED
                    self._repository.save_position(position)
                    return LegFailure(
                        position.position_id, position.wallet_id, "open", str(e), e.attempts,
                        transient=e.is_transient,
                    )
                logger.warning(f"{description}: filled despite the errors, adopting it")

            self._apply_snapshot(position, snapshot)
            position.status = PositionStatus.OPEN
            position.opened_at = utcnow()
            self._repository.save_position(position)

        logger.info(
            f"{description}: {position.side.value} {snapshot.size} {position.token} "
            f"@ {snapshot.entry_price}"
        )
        return None

    # ==========================================
    # CLOSE
    # ==========================================

    async def close_legs(
        self,
        strategy: Strategy,
        positions: List[Position],
        phase: str = "close",
    ) -> CloseReport:
        """
        Close legs concurrently; one failing leg never blocks the others.

        Failures are appended to the strategy and persisted.
        """
        report = CloseReport()
        if not positions:
            return report

        results = await asyncio.gather(
            *(self.close_with_retry(p, phase) for p in positions),
            return_exceptions=True,
        )

        for position, result in zip(positions, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(f"Unexpected error closing {position.position_id}: {result}")
                result = LegFailure(position.position_id, position.wallet_id, phase, repr(result))
            if result is None:
                report.closed.append(position)
            else:
                report.failed.append(result)
                self._record_failure(strategy, result)

        return report

    @staticmethod
    def _flat_outcome(position: Position) -> CloseOutcome:
        """Outcome for a leg the venue already reports as closed (last observed values)."""
        return CloseOutcome(
            venue_ref=position.venue_ref,
            exit_price=position.mark_price or position.entry_price or Decimal("0"),
            realized_pnl=position.unrealized_pnl or Decimal("0"),
            closed_at=utcnow(),
        )

    async def close_with_retry(self, position: Position, phase: str = "close") -> Optional[LegFailure]:
        """
        Close one leg.

        The venue is queried first so a leg that is already flat (closed by
        an earlier attempt or by hand) is recorded, not closed twice.

        Returns:
            None on success, LegFailure when the leg could not be closed
        """
        exchange = self._exchange(position)
        description = f"Close {position.position_id} on {position.wallet_id}"

        async with self.wallet_locks.lock(position.wallet_id), \
                self.position_locks.lock(position.position_id), self._semaphore:
            if position.venue_ref is None:
                # Never reached the venue
                position.status = PositionStatus.CLOSED
                position.closed_at = utcnow()
                self._repository.save_position(position)
                return None

            position.status = PositionStatus.CLOSING
            self._repository.update_position_status(position.position_id, PositionStatus.CLOSING)

            try:
                snapshot, _ = await self._call_with_retry(
                    lambda: exchange.get_position(position.venue_ref), f"Query {position.position_id}"
                )
                already_flat = not snapshot.is_open
            except ExchangeError as e:
                already_flat = e.category == ErrorCategory.POSITION_NOT_FOUND
                if not already_flat:
                    logger.warning(f"{description}: state query failed ({e}), closing anyway")

            if already_flat:
                logger.info(f"{description}: already flat on venue")
                outcome = self._flat_outcome(position)
            else:
                try:
                    outcome, _ = await self._call_with_retry(
                        lambda: exchange.close_position(position.venue_ref), description
                    )
                except ExchangeError as e:
                    if e.category == ErrorCategory.POSITION_NOT_FOUND:
                        outcome = self._flat_outcome(position)
                    else:
                        logger.error(f"{description} failed after {e.attempts} attempt(s): {e}")
                        position.status = PositionStatus.FAILED
                        self._repository.update_position_status(
                            position.position_id, PositionStatus.FAILED
                        )
                        return LegFailure(
                            position.position_id, position.wallet_id, phase, str(e), e.attempts,
                            transient=e.is_transient,
                        )

            position.status = PositionStatus.CLOSED
            position.realized_pnl = outcome.realized_pnl
            position.mark_price = outcome.exit_price
            position.unrealized_pnl = Decimal("0")
            position.closed_at = outcome.closed_at
            self._repository.record_close_outcome(position.position_id, outcome)

        logger.info(f"{description}: closed, realized {outcome.realized_pnl:.2f} USDC")
        return None
