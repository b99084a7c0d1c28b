"""Configuration module for the Hedge Farm bot."""

from .settings import (
    Venue,
    ExchangeConfig,
    AllocationConfig,
    RiskConfig,
    ExecutionConfig,
    VaultConfig,
    DatabaseConfig,
    NotificationConfig,
    LoggingConfig,
    BotConfig,
)

__all__ = [
    "Venue",
    "ExchangeConfig",
    "AllocationConfig",
    "RiskConfig",
    "ExecutionConfig",
    "VaultConfig",
    "DatabaseConfig",
    "NotificationConfig",
    "LoggingConfig",
    "BotConfig",
]
