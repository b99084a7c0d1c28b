"""
Core Engine Module.

Provides:
- Strategy, position and wallet models
- Allocation of balanced long/short hedge groups
- Execution coordinator (all-or-nothing open, rollback, close)
- Risk monitor (liquidation distance, PnL divergence)
- Closer for scheduled and urgent closes
- Strategy repository (SQLite) and credential vault
- Alerts and the orchestrator tying it together
"""

from .models import (
    StrategyStatus,
    PositionStatus,
    BalanceSnapshot,
    Wallet,
    Position,
    LegFailure,
    Strategy,
    LegAllocation,
    AllocationPlan,
)
from .alerts import (
    AlertManager,
    Alert,
    AlertType,
    AlertSeverity,
    AlertHandler,
    LoggingAlertHandler,
    CallbackAlertHandler,
    TelegramAlertHandler,
)
from .vault import (
    CredentialVault,
    SigningKey,
    VaultError,
    InvalidCredentialError,
    WalletNotFoundError,
    encrypt_secret,
    decrypt_secret,
    load_wallets,
    save_wallet,
)
from .repository import (
    Repository,
    SQLiteRepository,
    InMemoryRepository,
    StrategyNotFoundError,
)
from .allocation import (
    AllocationEngine,
    AllocationError,
    NoEligibleWalletsError,
    InsufficientBalanceError,
)
from .coordinator import (
    ExecutionCoordinator,
    PartialFailureError,
    CloseReport,
    WalletLockRegistry,
    PositionLocks,
)
from .risk_monitor import (
    RiskMonitor,
    MonitorReport,
    pnl_divergence,
)
from .closer import Closer
from .instance_lock import InstanceLock, InstanceLockError
from .orchestrator import (
    Orchestrator,
    OrchestratorState,
    RecoveryAction,
    RecoveryReport,
)

__all__ = [
    # Models
    "StrategyStatus",
    "PositionStatus",
    "BalanceSnapshot",
    "Wallet",
    "Position",
    "LegFailure",
    "Strategy",
    "LegAllocation",
    "AllocationPlan",
    # Alerts
    "AlertManager",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertHandler",
    "LoggingAlertHandler",
    "CallbackAlertHandler",
    "TelegramAlertHandler",
    # Vault
    "CredentialVault",
    "SigningKey",
    "VaultError",
    "InvalidCredentialError",
    "WalletNotFoundError",
    "encrypt_secret",
    "decrypt_secret",
    "load_wallets",
    "save_wallet",
    # Repository
    "Repository",
    "SQLiteRepository",
    "InMemoryRepository",
    "StrategyNotFoundError",
    # Allocation
    "AllocationEngine",
    "AllocationError",
    "NoEligibleWalletsError",
    "InsufficientBalanceError",
    # Execution
    "ExecutionCoordinator",
    "PartialFailureError",
    "CloseReport",
    "WalletLockRegistry",
    "PositionLocks",
    # Monitoring
    "RiskMonitor",
    "MonitorReport",
    "pnl_divergence",
    "Closer",
    # Process
    "InstanceLock",
    "InstanceLockError",
    "Orchestrator",
    "OrchestratorState",
    "RecoveryAction",
    "RecoveryReport",
]
