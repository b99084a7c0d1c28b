"""
Configuration loader for the Hedge Farm bot.

Loads configuration from:
1. YAML file (config/config.yaml)
2. Environment variables (HEDGE_* prefix)
3. .env file (via python-dotenv)

Environment variables override YAML values.
The vault password and Telegram bot token are read from the environment
only; they are never accepted from YAML.
"""

import os
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from config.settings import (
    BotConfig,
    ExchangeConfig,
    AllocationConfig,
    RiskConfig,
    ExecutionConfig,
    VaultConfig,
    DatabaseConfig,
    NotificationConfig,
    LoggingConfig,
)

logger = logging.getLogger(__name__)

SECRET_KEYS = frozenset({
    "password", "vault_password", "secret", "api_secret", "api_key",
    "bot_token", "telegram_token", "telegram_bot_token",
})


def _decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class ConfigLoader:
    """
    Loads and validates bot configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (HEDGE_*)
    2. YAML config file
    3. Default values in dataclasses
    """

    ENV_PREFIX = "HEDGE_"

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_file: Optional[str] = None,
    ):
        """
        Initialize config loader.

        Args:
            config_path: Path to YAML config file. If None, uses config/config.yaml
            env_file: Path to .env file. If None, uses .env in the working directory
        """
        self._config_path = Path(config_path) if config_path else Path("config/config.yaml")
        self._env_file = Path(env_file) if env_file else Path(".env")

        if self._env_file.exists():
            load_dotenv(self._env_file)
            logger.debug(f"Loaded environment from {self._env_file}")

    def load(self) -> BotConfig:
        """
        Load complete bot configuration.

        Returns:
            BotConfig with all settings populated

        Raises:
            ValueError: If the YAML carries secrets
        """
        yaml_config = self._load_yaml()
        self._reject_secrets(yaml_config)

        config = self._build_config(yaml_config)

        errors = config.validate()
        if errors:
            for error in errors:
                logger.warning(f"Config warning: {error}")

        return config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not self._config_path.exists():
            logger.warning(f"Config file not found: {self._config_path}, using defaults")
            return {}

        with open(self._config_path) as f:
            config = yaml.safe_load(f) or {}

        logger.info(f"Loaded config from {self._config_path}")
        return config

    def _reject_secrets(self, node: Any, path: str = "") -> None:
        if not isinstance(node, dict):
            return
        for key, value in node.items():
            key_path = f"{path}.{key}" if path else str(key)
            if str(key).lower() in SECRET_KEYS:
                raise ValueError(
                    f"Secret '{key_path}' found in {self._config_path}; "
                    f"set it via the environment instead"
                )
            self._reject_secrets(value, key_path)

    def _get_env(self, key: str, default: Any = None) -> Any:
        """
        Get environment variable with HEDGE_ prefix.

        Args:
            key: Variable name (without prefix)
            default: Default value if not set

        Returns:
            Environment variable value converted to the default's type
        """
        value = os.environ.get(f"{self.ENV_PREFIX}{key}")

        if value is None:
            return default

        if isinstance(default, bool):
            return value.lower() in ("true", "1", "yes")
        elif isinstance(default, int):
            return int(value)
        elif isinstance(default, float):
            return float(value)
        elif isinstance(default, Decimal):
            return Decimal(value)

        return value

    def _build_config(self, yaml_config: Dict[str, Any]) -> BotConfig:
        """Build BotConfig from YAML and environment."""

        # Exchange
        exchange_yaml = yaml_config.get("exchange", {})
        exchange_defaults = ExchangeConfig()
        base_urls = dict(exchange_defaults.base_urls)
        base_urls.update(exchange_yaml.get("base_urls", {}))
        exchange = ExchangeConfig(
            base_urls=base_urls,
            request_timeout=self._get_env(
                "REQUEST_TIMEOUT",
                exchange_yaml.get("request_timeout", exchange_defaults.request_timeout),
            ),
            receive_window_ms=exchange_yaml.get(
                "receive_window_ms", exchange_defaults.receive_window_ms
            ),
            failure_threshold=exchange_yaml.get(
                "failure_threshold", exchange_defaults.failure_threshold
            ),
            reset_timeout=exchange_yaml.get("reset_timeout", exchange_defaults.reset_timeout),
            paper_maintenance_margin=exchange_yaml.get(
                "paper_maintenance_margin", exchange_defaults.paper_maintenance_margin
            ),
            paper_initial_balance=_decimal(
                exchange_yaml.get("paper_initial_balance", exchange_defaults.paper_initial_balance)
            ),
            paper_wallet_count=exchange_yaml.get(
                "paper_wallet_count", exchange_defaults.paper_wallet_count
            ),
        )

        # Allocation
        alloc_yaml = yaml_config.get("allocation", {})
        alloc_defaults = AllocationConfig()
        allocation = AllocationConfig(
            min_leverage=float(alloc_yaml.get("min_leverage", alloc_defaults.min_leverage)),
            max_leverage=float(alloc_yaml.get("max_leverage", alloc_defaults.max_leverage)),
            min_duration=float(alloc_yaml.get("min_duration", alloc_defaults.min_duration)),
            max_duration=float(alloc_yaml.get("max_duration", alloc_defaults.max_duration)),
            min_group_size=alloc_yaml.get("min_group_size", alloc_defaults.min_group_size),
            max_group_size=alloc_yaml.get("max_group_size", alloc_defaults.max_group_size),
            imbalance_tolerance=_decimal(
                alloc_yaml.get("imbalance_tolerance", alloc_defaults.imbalance_tolerance)
            ),
            min_position_notional=_decimal(
                alloc_yaml.get("min_position_notional", alloc_defaults.min_position_notional)
            ),
            tokens=[str(t).upper() for t in alloc_yaml.get("tokens", alloc_defaults.tokens)],
            cooldown_seconds=float(
                alloc_yaml.get("cooldown_seconds", alloc_defaults.cooldown_seconds)
            ),
            planning_interval=float(
                alloc_yaml.get("planning_interval", alloc_defaults.planning_interval)
            ),
        )

        # Risk
        risk_yaml = yaml_config.get("risk", {})
        risk_defaults = RiskConfig()
        risk = RiskConfig(
            liquidation_threshold_pct=float(
                risk_yaml.get("liquidation_threshold_pct", risk_defaults.liquidation_threshold_pct)
            ),
            divergence_threshold_pct=float(
                risk_yaml.get("divergence_threshold_pct", risk_defaults.divergence_threshold_pct)
            ),
            monitor_interval=float(
                risk_yaml.get("monitor_interval", risk_defaults.monitor_interval)
            ),
            api_timeout=float(risk_yaml.get("api_timeout", risk_defaults.api_timeout)),
        )

        # Execution
        exec_yaml = yaml_config.get("execution", {})
        exec_defaults = ExecutionConfig()
        execution = ExecutionConfig(
            max_retry_attempts=exec_yaml.get(
                "max_retry_attempts", exec_defaults.max_retry_attempts
            ),
            retry_base_delay=float(
                exec_yaml.get("retry_base_delay", exec_defaults.retry_base_delay)
            ),
            retry_max_delay=float(exec_yaml.get("retry_max_delay", exec_defaults.retry_max_delay)),
            max_parallel_legs=exec_yaml.get("max_parallel_legs", exec_defaults.max_parallel_legs),
            shutdown_grace_period=float(
                exec_yaml.get("shutdown_grace_period", exec_defaults.shutdown_grace_period)
            ),
            close_check_interval=float(
                exec_yaml.get("close_check_interval", exec_defaults.close_check_interval)
            ),
            max_close_rounds=exec_yaml.get("max_close_rounds", exec_defaults.max_close_rounds),
        )

        # Vault
        vault_yaml = yaml_config.get("vault", {})
        vault = VaultConfig(
            wallets_file=self._get_env(
                "WALLETS_FILE", vault_yaml.get("wallets_file", VaultConfig.wallets_file)
            ),
            password_env=vault_yaml.get("password_env", VaultConfig.password_env),
        )

        # Database
        db_yaml = yaml_config.get("database", {})
        database = DatabaseConfig(
            path=self._get_env("DB_PATH", db_yaml.get("path", DatabaseConfig.path)),
        )

        # Notifications
        notify_yaml = yaml_config.get("notifications", {})
        notifications = NotificationConfig(
            telegram_enabled=self._get_env(
                "TELEGRAM_ENABLED", bool(notify_yaml.get("telegram_enabled", False))
            ),
            telegram_chat_id=str(
                self._get_env("TELEGRAM_CHAT_ID", notify_yaml.get("telegram_chat_id", ""))
            ),
            telegram_min_severity=notify_yaml.get(
                "telegram_min_severity", NotificationConfig.telegram_min_severity
            ),
        )

        # Logging
        logging_yaml = yaml_config.get("logging", {})
        log_config = LoggingConfig(
            level=self._get_env("LOG_LEVEL", logging_yaml.get("level", LoggingConfig.level)),
            file_path=logging_yaml.get("file_path", LoggingConfig.file_path),
        )

        paper_trading = self._get_env(
            "PAPER_TRADING", bool(yaml_config.get("paper_trading", True))
        )

        return BotConfig(
            exchange=exchange,
            allocation=allocation,
            risk=risk,
            execution=execution,
            vault=vault,
            database=database,
            notifications=notifications,
            logging=log_config,
            paper_trading=paper_trading,
        )

    def get_vault_password(self, config: BotConfig) -> Optional[str]:
        """Vault password from the environment variable named in the config."""
        return os.environ.get(config.vault.password_env) or None

    def get_telegram_token(self) -> Optional[str]:
        """Telegram bot token (HEDGE_TELEGRAM_BOT_TOKEN)."""
        return self._get_env("TELEGRAM_BOT_TOKEN") or None
