"""
Configuration dataclasses for the Hedge Farm bot.

All configuration parameters are defined here with sensible defaults.
Values can be overridden via config.yaml or environment variables.
Secrets (vault password, Telegram token) never live here.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List


class Venue:
    """Supported venue identifiers."""
    BACKPACK = "backpack"
    PAPER = "paper"

    ALL = (BACKPACK, PAPER)


# ===========================================
# EXCHANGE CONFIGURATION
# ===========================================

@dataclass
class ExchangeConfig:
    """Venue REST configuration."""

    base_urls: Dict[str, str] = field(
        default_factory=lambda: {Venue.BACKPACK: "https://api.backpack.exchange"}
    )
    request_timeout: int = 10  # seconds
    receive_window_ms: int = 5000  # Signed request validity window

    # Circuit breaker per venue client
    failure_threshold: int = 5
    reset_timeout: float = 60.0

    # Paper venue
    paper_maintenance_margin: float = 0.01  # Fraction of notional
    paper_initial_balance: Decimal = Decimal("100")  # USDC per wallet
    paper_wallet_count: int = 4  # Simulated wallets when no wallets file exists


# ===========================================
# ALLOCATION CONFIGURATION
# ===========================================

@dataclass
class AllocationConfig:
    """Hedge group sizing parameters."""

    min_leverage: float = 2.0
    max_leverage: float = 3.0
    min_duration: float = 4 * 3600.0  # seconds until scheduled close
    max_duration: float = 8 * 3600.0
    min_group_size: int = 3
    max_group_size: int = 5
    imbalance_tolerance: Decimal = Decimal("2")  # USDC
    min_position_notional: Decimal = Decimal("10")  # USDC per leg
    tokens: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])

    # Pacing
    cooldown_seconds: float = 300.0  # Between strategy openings
    planning_interval: float = 60.0  # How often to try planning

    @property
    def single_pair_mode(self) -> bool:
        """Exactly one long and one short wallet per strategy."""
        return self.min_group_size == 2 and self.max_group_size == 2


# ===========================================
# RISK CONFIGURATION
# ===========================================

@dataclass
class RiskConfig:
    """Risk monitor thresholds - CRITICAL for capital preservation."""

    liquidation_threshold_pct: float = 13.0  # Urgent close below this distance
    divergence_threshold_pct: float = 5.0  # Alert only
    monitor_interval: float = 30.0  # seconds between ticks
    api_timeout: float = 10.0  # Per venue call inside a tick


# ===========================================
# EXECUTION CONFIGURATION
# ===========================================

@dataclass
class ExecutionConfig:
    """Multi-leg execution and retry bounds."""

    max_retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_parallel_legs: int = 8
    shutdown_grace_period: float = 30.0
    close_check_interval: float = 15.0
    max_close_rounds: int = 3  # Close passes per leg before it is left to the operator


# ===========================================
# STORAGE / VAULT CONFIGURATION
# ===========================================

@dataclass
class VaultConfig:
    """Credential vault settings."""

    wallets_file: str = "wallets.json"
    password_env: str = "HEDGE_VAULT_PASSWORD"  # Name of the env var, never the value


@dataclass
class DatabaseConfig:
    """SQLite database configuration."""

    path: str = "data/hedgefarm.db"


@dataclass
class NotificationConfig:
    """Alert delivery configuration."""

    telegram_enabled: bool = False
    telegram_chat_id: str = ""
    telegram_min_severity: str = "warning"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file_path: str = "logs/hedgefarm.log"


# ===========================================
# MAIN BOT CONFIGURATION
# ===========================================

@dataclass
class BotConfig:
    """Complete bot configuration combining all sub-configs."""

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    vault: VaultConfig = field(default_factory=VaultConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Paper trading mode
    paper_trading: bool = True  # Default to paper trading for safety

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        alloc = self.allocation

        if alloc.min_leverage <= 1.0 or alloc.max_leverage <= 1.0:
            errors.append("Leverage must be greater than 1.0")
        if alloc.min_leverage > alloc.max_leverage:
            errors.append("min_leverage cannot be greater than max_leverage")

        if alloc.min_duration <= 0 or alloc.max_duration <= 0:
            errors.append("Position duration must be greater than 0")
        if alloc.min_duration > alloc.max_duration:
            errors.append("min_duration cannot be greater than max_duration")

        if alloc.min_group_size < 2:
            errors.append("min_group_size must be at least 2")
        if alloc.min_group_size > alloc.max_group_size:
            errors.append("min_group_size cannot be greater than max_group_size")

        if alloc.imbalance_tolerance <= 0:
            errors.append("imbalance_tolerance must be positive")
        if not alloc.tokens:
            errors.append("At least one token must be configured")

        if not 0 < self.risk.liquidation_threshold_pct < 100:
            errors.append("liquidation_threshold_pct must be between 0 and 100")
        if not 0 < self.risk.divergence_threshold_pct <= 100:
            errors.append("divergence_threshold_pct must be between 0 and 100")
        if self.risk.monitor_interval <= 0:
            errors.append("monitor_interval must be positive")

        if self.execution.max_retry_attempts < 1:
            errors.append("max_retry_attempts must be at least 1")
        if self.execution.max_parallel_legs < 1:
            errors.append("max_parallel_legs must be at least 1")
        if self.execution.max_close_rounds < 1:
            errors.append("max_close_rounds must be at least 1")

        return errors
