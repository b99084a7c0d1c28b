"""
Orchestrator - Process-lifetime driver of the hedge engine.

Provides:
- Component initialization and wiring
- Restart recovery from the repository (venue state queried first)
- Allocation loop: plan, open, cooldown
- Risk monitor and closer loops
- Graceful shutdown draining in-flight opens and closes
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Dict, List, Mapping, Optional, Set

from config.settings import BotConfig
from hedgefarm.api.exchange import ExchangeCapability
from hedgefarm.api.exchange_errors import ErrorCategory, ExchangeError
from hedgefarm.api.factory import create_exchanges

from .alerts import (
    AlertManager,
    AlertSeverity,
    AlertType,
    LoggingAlertHandler,
    TelegramAlertHandler,
)
from .allocation import AllocationEngine, AllocationError
from .closer import Closer
from .coordinator import (
    OPEN_OUTCOME_UNKNOWN,
    ExecutionCoordinator,
    PartialFailureError,
    PositionLocks,
    WalletLockRegistry,
)
from .models import LegFailure, PositionStatus, Strategy, StrategyStatus, Wallet, utcnow
from .repository import Repository, SQLiteRepository
from .risk_monitor import RiskMonitor
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    """Orchestrator lifecycle states."""

    CREATED = auto()
    INITIALIZING = auto()
    RUNNING = auto()
    SHUTTING_DOWN = auto()
    STOPPED = auto()
    ERROR = auto()


class RecoveryAction(Enum):
    """What recovery did with one strategy."""

    NOOP = "noop"
    ABANDONED = "abandoned"  # PLANNED, no leg was ever sent
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    MONITORING = "monitoring"
    CLOSING = "closing"
    NEEDS_OPERATOR = "needs_operator"


@dataclass
class RecoveryReport:
    """Per-action strategy ids from one recovery pass."""

    actions: Dict[RecoveryAction, List[str]] = field(default_factory=dict)

    def add(self, action: RecoveryAction, strategy_id: str) -> None:
        self.actions.setdefault(action, []).append(strategy_id)

    def get(self, action: RecoveryAction) -> List[str]:
        return self.actions.get(action, [])


def paper_wallets(count: int) -> List[Wallet]:
    """Synthetic wallets for paper trading without a wallets file."""
    return [
        Wallet(wallet_id=f"paper_{i + 1}", venue="paper", api_key="", encrypted_secret="")
        for i in range(count)
    ]


class Orchestrator:
    """
    Central coordinator for the hedge engine.

    Usage:
        orchestrator = Orchestrator(config, vault=vault)
        await orchestrator.initialize()   # wiring + recovery
        await orchestrator.start()

        # Runs until stopped
        await orchestrator.stop()

    Components can be injected (tests, dry runs); anything not injected is
    built from the configuration in initialize().
    """

    def __init__(
        self,
        config: BotConfig,
        vault: Optional[CredentialVault] = None,
        exchanges: Optional[Mapping[str, ExchangeCapability]] = None,
        repository: Optional[Repository] = None,
        alert_manager: Optional[AlertManager] = None,
        telegram_token: Optional[str] = None,
        rng: Optional[random.Random] = None,
        dry_run: bool = False,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Bot configuration
            vault: Credential vault (required for live venues)
            exchanges: Capabilities keyed by wallet id
            repository: Strategy repository
            alert_manager: Notification sink
            telegram_token: Telegram bot token (from the environment)
            rng: Random source for allocation
            dry_run: Plan strategies but never open them
        """
        self._config = config
        self._vault = vault
        self._exchanges = exchanges
        self._repository = repository
        self._alert_manager = alert_manager
        self._telegram_token = telegram_token
        self._rng = rng or random.Random()
        self._dry_run = dry_run
        self._state = OrchestratorState.CREATED

        # Components (initialized in initialize())
        self._wallet_locks = WalletLockRegistry()
        self._position_locks = PositionLocks()
        self._engine: Optional[AllocationEngine] = None
        self._coordinator: Optional[ExecutionCoordinator] = None
        self._monitor: Optional[RiskMonitor] = None
        self._closer: Optional[Closer] = None

        # Tasks
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

        # Runtime state
        self._last_open_time: Optional[float] = None
        self._opened_count = 0
        self._rolled_back_count = 0
        self._failed_count = 0
        self._last_plan = None

        logger.info(
            f"Orchestrator created (paper_trading={config.paper_trading}, dry_run={dry_run})"
        )

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def repository(self) -> Optional[Repository]:
        return self._repository

    @property
    def closer(self) -> Optional[Closer]:
        return self._closer

    @property
    def monitor(self) -> Optional[RiskMonitor]:
        return self._monitor

    # === Lifecycle Methods ===

    async def initialize(self, recover: bool = True) -> Optional[RecoveryReport]:
        """
        Wire components in dependency order, then run recovery.

        Raises:
            Exception: If initialization fails
        """
        self._state = OrchestratorState.INITIALIZING
        logger.info("Initializing orchestrator...")

        try:
            # 1. Repository
            if self._repository is None:
                self._repository = SQLiteRepository(self._config.database.path)
            logger.info("Repository initialized")

            # 2. Alerts
            if self._alert_manager is None:
                self._alert_manager = AlertManager()
                self._alert_manager.add_handler(LoggingAlertHandler())
                notifications = self._config.notifications
                if notifications.telegram_enabled and self._telegram_token:
                    self._alert_manager.add_handler(
                        TelegramAlertHandler(
                            self._telegram_token,
                            notifications.telegram_chat_id,
                            AlertSeverity(notifications.telegram_min_severity),
                        )
                    )
                elif notifications.telegram_enabled:
                    logger.warning("Telegram enabled but no bot token in environment")
            logger.info("AlertManager initialized")

            # 3. Exchanges (one per wallet)
            if self._exchanges is None:
                self._exchanges = create_exchanges(self._load_wallets(), self._vault, self._config)
            logger.info(f"{len(self._exchanges)} wallets available")

            # 4. Engine components
            self._engine = AllocationEngine(self._config.allocation, self._rng)
            self._coordinator = ExecutionCoordinator(
                self._exchanges,
                self._repository,
                self._config.execution,
                self._wallet_locks,
                self._position_locks,
            )
            self._closer = Closer(
                self._coordinator, self._repository, self._alert_manager, self._config.execution
            )
            self._monitor = RiskMonitor(
                self._repository,
                self._exchanges,
                self._alert_manager,
                self._config.risk,
                on_urgent_close=self._on_urgent_close,
                position_locks=self._position_locks,
            )
            logger.info("Engine components initialized")

            # 5. Recovery
            report = await self.recover() if recover else None

            logger.info("Orchestrator initialization complete")
            return report

        except Exception as e:
            self._state = OrchestratorState.ERROR
            logger.exception(f"Initialization failed: {e}")
            raise

    def _load_wallets(self) -> List[Wallet]:
        if self._vault is not None:
            return self._vault.wallets
        if self._config.paper_trading:
            return paper_wallets(self._config.exchange.paper_wallet_count)
        raise RuntimeError("Live trading requires a credential vault")

    async def start(self) -> None:
        """
        Start the background loops.

        Creates async tasks for:
        - Allocation (plan and open strategies)
        - Risk monitoring
        - Closing
        """
        if self._state != OrchestratorState.INITIALIZING:
            raise RuntimeError(
                f"Cannot start from state {self._state.name}, must be INITIALIZING"
            )

        logger.info("Starting orchestrator...")
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self._allocation_task(), name="allocation"),
            asyncio.create_task(self._monitor.run(self._shutdown_event), name="risk_monitor"),
            asyncio.create_task(self._closer.run(self._shutdown_event), name="closer"),
        ]

        self._state = OrchestratorState.RUNNING
        logger.info("Orchestrator started")

    async def stop(self, emergency: bool = False) -> None:
        """
        Stop the orchestrator.

        In-flight opens and closes get `shutdown_grace_period` seconds to
        finish. Anything still pending afterwards keeps its last persisted
        state for the next recovery.

        Args:
            emergency: Skip the grace period (second signal). While a
                graceful stop is still waiting, cancels what it waits on.
        """
        if self._state == OrchestratorState.STOPPED:
            return
        if self._state == OrchestratorState.SHUTTING_DOWN:
            if emergency:
                logger.warning("Emergency shutdown - cancelling in-flight operations")
                await self._cancel_tasks()
            return

        if emergency:
            logger.warning("Emergency shutdown - cancelling in-flight operations")
        else:
            logger.info("Stopping orchestrator...")

        self._state = OrchestratorState.SHUTTING_DOWN
        self._shutdown_event.set()
        if self._closer:
            self._closer.wake()

        if not emergency and self._tasks:
            # One grace period covers both the loops and the closes they started
            grace = self._config.execution.shutdown_grace_period
            loop = asyncio.get_running_loop()
            deadline = loop.time() + grace
            await asyncio.wait(self._tasks, timeout=grace)
            if self._closer:
                await self._closer.drain(max(0.0, deadline - loop.time()))
        await self._cancel_tasks()

        for exchange in (self._exchanges or {}).values():
            close = getattr(exchange, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.error(f"Failed to close {exchange.name} client: {e}")

        if self._alert_manager:
            self._alert_manager.shutdown()

        self._state = OrchestratorState.STOPPED
        logger.info("Orchestrator stopped")

    async def _cancel_tasks(self) -> None:
        """Cancel background loops and in-flight closes that are still running."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if self._closer:
            pending.extend(self._closer.cancel_inflight())
        if pending:
            await asyncio.wait(pending, timeout=5.0)
            logger.warning(f"{len(pending)} task(s) cancelled at shutdown")

    # === Recovery ===

    async def recover(self) -> RecoveryReport:
        """
        Resume every non-terminal strategy from the repository.

        Nothing is re-issued blindly: each leg's venue state is queried
        before deciding to roll back, monitor or close.
        """
        report = RecoveryReport()
        strategies = self._repository.load_open_strategies()
        if not strategies:
            logger.info("No strategies to recover")
            return report

        logger.warning(f"Recovering {len(strategies)} strategies from previous run")
        for strategy in strategies:
            try:
                action = await self.recover_strategy(strategy)
            except Exception as e:
                logger.exception(f"Recovery of {strategy.strategy_id} failed: {e}")
                action = RecoveryAction.NEEDS_OPERATOR
                self._alert_manager.notify(
                    AlertSeverity.CRITICAL,
                    f"Recovery of {strategy.strategy_id} failed: {e}",
                    {"strategy_id": strategy.strategy_id},
                    alert_type=AlertType.RECOVERY,
                )
            report.add(action, strategy.strategy_id)

        logger.info(
            "Recovery complete: "
            + ", ".join(f"{a.value}={len(ids)}" for a, ids in report.actions.items())
        )
        return report

    async def recover_strategy(self, strategy: Strategy) -> RecoveryAction:
        """Bring one persisted strategy back under management."""
        status = strategy.status

        if status.is_terminal:
            return RecoveryAction.NOOP

        if status == StrategyStatus.PLANNED:
            strategy.status = StrategyStatus.ROLLED_BACK
            strategy.close_reason = "abandoned before opening"
            strategy.closed_at = utcnow()
            self._repository.save_strategy(strategy, include_positions=False)
            logger.info(f"Strategy {strategy.strategy_id} was never opened, abandoned")
            return RecoveryAction.ABANDONED

        if status == StrategyStatus.OPENING:
            return await self._recover_opening(strategy)

        if status == StrategyStatus.OPEN:
            await self._verify_legs(strategy)
            logger.info(f"Strategy {strategy.strategy_id} OPEN, resuming monitoring")
            return RecoveryAction.MONITORING

        if status == StrategyStatus.CLOSING:
            self._closer.request_close(strategy.strategy_id, "resuming close after restart")
            return RecoveryAction.CLOSING

        # FAILED: legs may be live, only an operator can resolve it
        self._alert_manager.notify(
            AlertSeverity.CRITICAL,
            f"Strategy {strategy.strategy_id} is FAILED and needs manual remediation",
            {
                "strategy_id": strategy.strategy_id,
                "outstanding_legs": [p.position_id for p in strategy.outstanding_legs],
                "failures": [f.error for f in strategy.failures],
            },
            alert_type=AlertType.STRATEGY_FAILED,
            dedup_key=f"failed:{strategy.strategy_id}",
        )
        return RecoveryAction.NEEDS_OPERATOR

    async def _recover_opening(self, strategy: Strategy) -> RecoveryAction:
        """
        An open fan-out was interrupted: unwind whatever is live.

        Legs submitted without a persisted venue reference have an unknown
        outcome and leave the strategy FAILED for operator review.
        """
        unknown = [p for p in strategy.positions if p.status == PositionStatus.REQUESTED]
        # close_with_retry queries each leg first, flat legs are only recorded
        live = [p for p in strategy.outstanding_legs if p.venue_ref]

        for position in unknown:
            position.status = PositionStatus.FAILED
            self._repository.save_position(position)
            failure = LegFailure(
                position.position_id, position.wallet_id, "open",
                f"{OPEN_OUTCOME_UNKNOWN} after restart",
            )
            strategy.failures.append(failure)
            self._repository.record_failure(strategy.strategy_id, failure)

        report = await self._coordinator.close_legs(strategy, live, phase="rollback")

        if report.all_closed and not unknown:
            strategy.status = StrategyStatus.ROLLED_BACK
            strategy.closed_at = utcnow()
            strategy.realized_pnl = report.realized_pnl
            action = RecoveryAction.ROLLED_BACK
        else:
            strategy.status = StrategyStatus.FAILED
            action = RecoveryAction.FAILED
        strategy.close_reason = "interrupted while opening"
        self._repository.save_strategy(strategy, include_positions=False)

        severity = AlertSeverity.WARNING if action == RecoveryAction.ROLLED_BACK else AlertSeverity.CRITICAL
        self._alert_manager.notify(
            severity,
            f"Recovered interrupted open of {strategy.strategy_id}: {strategy.status.value}",
            {
                "strategy_id": strategy.strategy_id,
                "rolled_back_legs": [p.position_id for p in report.closed],
                "unknown_legs": [p.position_id for p in unknown],
            },
            alert_type=AlertType.RECOVERY,
            dedup_key=f"recovery:{strategy.strategy_id}",
        )
        return action

    async def _is_live(self, position) -> bool:
        exchange = self._exchanges[position.wallet_id]
        try:
            snapshot = await asyncio.wait_for(
                exchange.get_position(position.venue_ref), timeout=self._config.risk.api_timeout
            )
        except ExchangeError as e:
            if e.category == ErrorCategory.POSITION_NOT_FOUND:
                return False
            # Unknown state counts as live so rollback queries again with retries
            return True
        return snapshot.is_open

    async def _verify_legs(self, strategy: Strategy) -> None:
        for position in strategy.positions:
            if position.status != PositionStatus.OPEN or not position.venue_ref:
                continue
            if not await self._is_live(position):
                self._alert_manager.notify(
                    AlertSeverity.CRITICAL,
                    f"Leg {position.position_id} of {strategy.strategy_id} is no longer open on venue",
                    {"strategy_id": strategy.strategy_id, "wallet_id": position.wallet_id},
                    alert_type=AlertType.POSITION_MISSING,
                    dedup_key=f"missing:{position.position_id}",
                )

    # === Allocation ===

    def busy_wallets(self) -> Set[str]:
        """Wallets with an in-flight operation or a leg in a non-terminal strategy."""
        busy = set(self._wallet_locks.busy_wallets())
        for strategy in self._repository.load_open_strategies():
            busy.update(strategy.wallet_ids)
        return busy

    async def fetch_balances(self, exclude: Set[str]) -> Dict[str, Decimal]:
        """Available collateral of every idle wallet; failures are skipped."""
        wallet_ids = [w for w in self._exchanges if w not in exclude]
        results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self._exchanges[w].get_account_balance(), timeout=self._config.risk.api_timeout
                )
                for w in wallet_ids
            ),
            return_exceptions=True,
        )

        balances = {}
        for wallet_id, result in zip(wallet_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Balance query failed for {wallet_id}: {result!r}")
                continue
            balances[wallet_id] = result
        return balances

    def _cooldown_remaining(self) -> float:
        if self._last_open_time is None:
            return 0.0
        elapsed = asyncio.get_running_loop().time() - self._last_open_time
        return max(0.0, self._config.allocation.cooldown_seconds - elapsed)

    async def plan_and_open(self) -> Optional[Strategy]:
        """
        One allocation pass.

        Returns:
            The strategy that was opened (or rolled back / failed), None if
            nothing was attempted
        """
        remaining = self._cooldown_remaining()
        if remaining > 0:
            logger.debug(f"Cooldown active, {remaining:.0f}s remaining")
            return None

        busy = self.busy_wallets()
        balances = await self.fetch_balances(busy)

        try:
            plan = self._engine.plan(balances, busy)
        except AllocationError as e:
            logger.info(f"No strategy planned: {e}")
            return None

        self._last_plan = plan
        if self._dry_run:
            logger.info(
                f"[DRY RUN] Would open {plan.token} {plan.leverage}x: "
                + ", ".join(f"{l.wallet_id}:{l.side.value}:{l.notional}" for l in plan.legs)
            )
            self._last_open_time = asyncio.get_running_loop().time()
            return None

        self._wallet_locks.reserve(plan.wallet_ids)
        try:
            strategy = await self._coordinator.open_strategy(plan)
        except PartialFailureError as e:
            self._on_open_failed(e)
            return e.strategy
        finally:
            self._wallet_locks.release(plan.wallet_ids)
            self._last_open_time = asyncio.get_running_loop().time()

        self._opened_count += 1
        self._alert_manager.notify(
            AlertSeverity.INFO,
            f"Opened {strategy.strategy_id}: {strategy.token} {strategy.leverage}x, "
            f"{strategy.notional_per_side} USDC per side",
            {
                "strategy_id": strategy.strategy_id,
                "wallets": strategy.wallet_ids,
                "close_at": strategy.close_at.isoformat(),
            },
            alert_type=AlertType.STRATEGY_OPENED,
            dedup_key=f"opened:{strategy.strategy_id}",
        )
        return strategy

    def _on_open_failed(self, error: PartialFailureError) -> None:
        strategy = error.strategy
        details = {
            "strategy_id": strategy.strategy_id,
            "failures": [f"{f.wallet_id}/{f.phase}: {f.error}" for f in error.failures],
        }
        if strategy.status == StrategyStatus.ROLLED_BACK:
            self._rolled_back_count += 1
            self._alert_manager.notify(
                AlertSeverity.WARNING,
                f"Strategy {strategy.strategy_id} rolled back after a failed leg",
                details,
                alert_type=AlertType.STRATEGY_ROLLED_BACK,
                dedup_key=f"rolled_back:{strategy.strategy_id}",
            )
        else:
            self._failed_count += 1
            details["outstanding_legs"] = [p.position_id for p in strategy.outstanding_legs]
            self._alert_manager.notify(
                AlertSeverity.CRITICAL,
                f"Strategy {strategy.strategy_id} FAILED: rollback incomplete, legs may be live",
                details,
                alert_type=AlertType.STRATEGY_FAILED,
                dedup_key=f"failed:{strategy.strategy_id}",
            )

    async def _allocation_task(self) -> None:
        """Periodic planning and opening."""
        interval = self._config.allocation.planning_interval
        logger.info(f"Allocation task started (interval: {interval}s)")

        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.plan_and_open()
                except Exception as e:
                    logger.error(f"Allocation error: {e}")

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Allocation task cancelled")

    # === Event Handlers ===

    def _on_urgent_close(self, strategy_id: str, reason: str) -> None:
        self._closer.request_close(strategy_id, reason, urgent=True)

    # === Introspection ===

    def get_stats(self) -> Dict[str, Any]:
        """Get comprehensive statistics."""
        stats: Dict[str, Any] = {
            "state": self._state.name,
            "paper_trading": self._config.paper_trading,
            "wallets": len(self._exchanges or {}),
            "opened": self._opened_count,
            "rolled_back": self._rolled_back_count,
            "failed": self._failed_count,
            "busy_wallets": sorted(self._wallet_locks.busy_wallets()),
        }

        if self._repository:
            by_status: Dict[str, int] = {}
            for strategy in self._repository.load_open_strategies():
                by_status[strategy.status.value] = by_status.get(strategy.status.value, 0) + 1
            stats["active_strategies"] = by_status

        if self._closer:
            stats["pending_closes"] = sorted(self._closer.pending)

        if self._alert_manager:
            stats["alerts"] = self._alert_manager.get_stats()

        return stats
