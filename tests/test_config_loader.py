"""
Tests for configuration loading.

Tests:
- YAML values populate the dataclasses
- HEDGE_* environment variables override YAML
- Secrets in YAML are rejected
- Secrets are read from the environment only
"""

import os
import pytest
from decimal import Decimal

import yaml

from hedgefarm.utils.config_loader import ConfigLoader


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "HEDGE_REQUEST_TIMEOUT",
        "HEDGE_WALLETS_FILE",
        "HEDGE_DB_PATH",
        "HEDGE_TELEGRAM_ENABLED",
        "HEDGE_TELEGRAM_CHAT_ID",
        "HEDGE_TELEGRAM_BOT_TOKEN",
        "HEDGE_LOG_LEVEL",
        "HEDGE_PAPER_TRADING",
        "HEDGE_VAULT_PASSWORD",
    ):
        monkeypatch.delenv(key, raising=False)


def loader_for(tmp_path, data):
    return ConfigLoader(write_config(tmp_path, data), env_file=str(tmp_path / "missing.env"))


class TestYaml:
    """Tests for YAML loading."""

    def test_defaults_without_file(self, tmp_path):
        config = ConfigLoader(
            str(tmp_path / "absent.yaml"), env_file=str(tmp_path / "missing.env")
        ).load()

        assert config.paper_trading is True
        assert config.allocation.min_group_size == 3
        assert config.database.path == "data/hedgefarm.db"

    def test_sections(self, tmp_path):
        config = loader_for(tmp_path, {
            "paper_trading": False,
            "allocation": {
                "min_leverage": 2,
                "max_leverage": 2.5,
                "min_group_size": 2,
                "max_group_size": 2,
                "imbalance_tolerance": 1.5,
                "tokens": ["btc", "eth"],
            },
            "risk": {"liquidation_threshold_pct": 10},
            "execution": {"max_retry_attempts": 5, "max_close_rounds": 4},
            "exchange": {"paper_initial_balance": "250.5"},
            "vault": {"wallets_file": "secrets/wallets.json"},
        }).load()

        assert config.paper_trading is False
        assert config.allocation.min_leverage == 2.0
        assert config.allocation.single_pair_mode
        assert config.allocation.imbalance_tolerance == Decimal("1.5")
        assert config.allocation.tokens == ["BTC", "ETH"]
        assert config.risk.liquidation_threshold_pct == 10.0
        assert config.execution.max_retry_attempts == 5
        assert config.execution.max_close_rounds == 4
        assert config.exchange.paper_initial_balance == Decimal("250.5")
        assert config.vault.wallets_file == "secrets/wallets.json"
        assert config.vault.password_env == "HEDGE_VAULT_PASSWORD"

    def test_base_urls_merged(self, tmp_path):
        config = loader_for(
            tmp_path, {"exchange": {"base_urls": {"backpack": "https://api.test.invalid"}}}
        ).load()
        assert config.exchange.base_urls["backpack"] == "https://api.test.invalid"

    @pytest.mark.parametrize(
        "data",
        [
            {"vault": {"password": "hunter2"}},
            {"notifications": {"telegram_bot_token": "123:abc"}},
            {"exchange": {"api_secret": "c2VjcmV0"}},
        ],
    )
    def test_secrets_rejected(self, tmp_path, data):
        with pytest.raises(ValueError, match="environment"):
            loader_for(tmp_path, data).load()

    def test_similar_names_allowed(self, tmp_path):
        """Only exact secret names are rejected."""
        config = loader_for(tmp_path, {"allocation": {"tokens": ["SOL"]}}).load()
        assert config.allocation.tokens == ["SOL"]


class TestEnvironment:
    """Tests for environment overrides."""

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HEDGE_PAPER_TRADING", "false")
        monkeypatch.setenv("HEDGE_DB_PATH", "/tmp/hedge.db")
        monkeypatch.setenv("HEDGE_REQUEST_TIMEOUT", "25")
        monkeypatch.setenv("HEDGE_TELEGRAM_ENABLED", "yes")
        monkeypatch.setenv("HEDGE_TELEGRAM_CHAT_ID", "-100123")
        monkeypatch.setenv("HEDGE_LOG_LEVEL", "DEBUG")

        config = loader_for(tmp_path, {
            "paper_trading": True,
            "database": {"path": "data/other.db"},
            "notifications": {"telegram_chat_id": "1"},
        }).load()

        assert config.paper_trading is False
        assert config.database.path == "/tmp/hedge.db"
        assert config.exchange.request_timeout == 25
        assert config.notifications.telegram_enabled is True
        assert config.notifications.telegram_chat_id == "-100123"
        assert config.logging.level == "DEBUG"

    def test_vault_password_from_named_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MY_VAULT_PW", "s3cret")
        loader = loader_for(tmp_path, {"vault": {"password_env": "MY_VAULT_PW"}})
        config = loader.load()

        assert loader.get_vault_password(config) == "s3cret"

    def test_missing_secrets_are_none(self, tmp_path):
        loader = loader_for(tmp_path, {})
        config = loader.load()

        assert loader.get_vault_password(config) is None
        assert loader.get_telegram_token() is None

    def test_telegram_token(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HEDGE_TELEGRAM_BOT_TOKEN", "123:abc")
        assert loader_for(tmp_path, {}).get_telegram_token() == "123:abc"

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HEDGE_LOG_LEVEL=WARNING\n")

        try:
            config = ConfigLoader(write_config(tmp_path, {}), env_file=str(env_file)).load()
        finally:
            # load_dotenv writes to os.environ directly
            os.environ.pop("HEDGE_LOG_LEVEL", None)

        assert config.logging.level == "WARNING"
