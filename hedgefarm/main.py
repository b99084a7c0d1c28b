#!/usr/bin/env python3
"""
Hedge Farm - Main Entry Point.

Usage:
    python -m hedgefarm.main run config/config.yaml
    python -m hedgefarm.main run config/config.yaml --paper
    python -m hedgefarm.main run config/config.yaml --dry-run
    python -m hedgefarm.main encrypt-key --wallet-id wallet_1 --api-key <key>
    python -m hedgefarm.main status config/config.yaml

Environment:
    HEDGE_VAULT_PASSWORD: Vault password (required for live trading)
    HEDGE_TELEGRAM_BOT_TOKEN: Telegram bot token (optional)
    HEDGE_PAPER_TRADING: Set to 'false' to trade live
"""

import argparse
import asyncio
import base64
import binascii
import getpass
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from config.settings import BotConfig, Venue
from hedgefarm.core import (
    CredentialVault,
    InstanceLock,
    InstanceLockError,
    Orchestrator,
    OrchestratorState,
    SQLiteRepository,
    Wallet,
    encrypt_secret,
    save_wallet,
)
from hedgefarm.utils.config_loader import ConfigLoader


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the bot.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging
    """
    console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_format = (
        "%(asctime)s [%(levelname)s] %(name)s "
        "(%(filename)s:%(lineno)d): %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(file_format))
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Hedge Farm - market-neutral perpetual futures orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run on the paper venue (recommended for testing)
  python -m hedgefarm.main run config/config.yaml --paper

  # Plan strategies without opening anything
  python -m hedgefarm.main run config/config.yaml --dry-run

  # Add a wallet to the encrypted wallets file
  python -m hedgefarm.main encrypt-key --wallet-id wallet_1 --api-key <key>
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the engine")
    run_parser.add_argument("config", type=str, help="Path to configuration YAML file")
    run_parser.add_argument(
        "--paper",
        action="store_true",
        help="Force paper trading mode (simulated venue)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan strategies and log them without opening positions",
    )
    run_parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )
    run_parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path (default: from config)",
    )

    encrypt_parser = subparsers.add_parser(
        "encrypt-key", help="Encrypt a wallet's API secret into the wallets file"
    )
    encrypt_parser.add_argument("--wallet-id", required=True)
    encrypt_parser.add_argument("--venue", default=Venue.BACKPACK, choices=[Venue.BACKPACK])
    encrypt_parser.add_argument("--api-key", required=True)
    encrypt_parser.add_argument("--wallets-file", default="wallets.json")

    status_parser = subparsers.add_parser("status", help="Print strategies from the database")
    status_parser.add_argument("config", type=str, help="Path to configuration YAML file")
    status_parser.add_argument("--all", action="store_true", help="Include terminal strategies")

    return parser.parse_args(argv)


def print_config_summary(config: BotConfig) -> None:
    """Print configuration summary."""
    alloc = config.allocation
    print("\nConfiguration:")
    print(f"  Paper trading: {config.paper_trading}")
    print(f"  Tokens: {', '.join(alloc.tokens)}")
    print(f"  Leverage: {alloc.min_leverage}x - {alloc.max_leverage}x")
    print(f"  Group size: {alloc.min_group_size} - {alloc.max_group_size} wallets")
    print(f"  Hold time: {alloc.min_duration / 3600:.1f}h - {alloc.max_duration / 3600:.1f}h")
    print(f"  Liquidation threshold: {config.risk.liquidation_threshold_pct}%")
    print(f"  Divergence alert: {config.risk.divergence_threshold_pct}%")
    print()


def decode_backpack_secret(secret: str) -> bytes:
    """Backpack secrets are the base64 ED25519 seed."""
    try:
        seed = base64.b64decode(secret.strip(), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Secret is not valid base64: {e}")
    if len(seed) != 32:
        raise ValueError(f"Secret must decode to 32 bytes, got {len(seed)}")
    return seed


def encrypt_key(args: argparse.Namespace) -> int:
    """Prompt for a secret and password, store the encrypted wallet."""
    secret = getpass.getpass("API secret (base64): ")
    password = getpass.getpass("Vault password: ")
    if password != getpass.getpass("Repeat vault password: "):
        print("Error: passwords do not match")
        return 1
    if not password:
        print("Error: empty vault password")
        return 1

    try:
        seed = decode_backpack_secret(secret)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    wallet = Wallet(
        wallet_id=args.wallet_id,
        venue=args.venue,
        api_key=args.api_key,
        encrypted_secret=encrypt_secret(seed, password),
    )
    save_wallet(args.wallets_file, wallet)
    print(f"Stored wallet {args.wallet_id} in {args.wallets_file}")
    return 0


def print_status(args: argparse.Namespace) -> int:
    """Dump strategies as JSON."""
    config = ConfigLoader(args.config).load()
    repository = SQLiteRepository(config.database.path)
    if args.all:
        strategies = repository.list_strategies()
    else:
        strategies = repository.load_open_strategies()
    print(json.dumps([s.to_dict() for s in strategies], indent=2, default=str))
    return 0


def build_vault(config: BotConfig, loader: ConfigLoader) -> Optional[CredentialVault]:
    """Vault over the wallets file, or None for paper trading without one."""
    wallets_file = Path(config.vault.wallets_file)
    if not wallets_file.exists():
        if config.paper_trading:
            return None
        raise FileNotFoundError(f"Wallets file not found: {wallets_file}")

    def password_provider() -> str:
        password = loader.get_vault_password(config)
        if password is None:
            raise ValueError(f"{config.vault.password_env} is not set")
        return password

    return CredentialVault.from_file(str(wallets_file), password_provider)


async def main(args: argparse.Namespace) -> int:
    """
    Main async entry point.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    logger = logging.getLogger(__name__)

    try:
        loader = ConfigLoader(args.config)
        config = loader.load()
    except Exception as e:
        print(f"Error loading config: {e}")
        return 1

    if args.paper:
        config.paper_trading = True

    setup_logging(args.log_level or config.logging.level, args.log_file or config.logging.file_path)

    print_config_summary(config)

    errors = config.validate()
    if errors:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
        return 1

    logger.info("Configuration validated successfully")

    try:
        vault = build_vault(config, loader)
    except Exception as e:
        print(f"Error loading wallets: {e}")
        return 1

    if not config.paper_trading:
        print("\n" + "=" * 50)
        print("WARNING: LIVE TRADING MODE")
        print("Real positions will be opened on the venue.")
        print("=" * 50)

        # Fail fast on a wrong password rather than on the first open
        try:
            failed = vault.verify()
        except Exception as e:
            print(f"Error: {e}")
            return 1
        if failed:
            print(f"Error: could not decrypt wallets: {', '.join(failed)}")
            return 1

    instance_lock = InstanceLock(f"{config.database.path}.lock")
    try:
        instance_lock.acquire()
    except InstanceLockError as e:
        print(f"Error: {e}")
        return 1

    orchestrator = None
    try:
        orchestrator = Orchestrator(
            config,
            vault=vault,
            telegram_token=loader.get_telegram_token(),
            dry_run=args.dry_run,
        )

        loop = asyncio.get_running_loop()
        shutdown_requested = False

        def signal_handler(sig: int) -> None:
            nonlocal shutdown_requested

            if shutdown_requested:
                # Second signal - stop without waiting for in-flight operations
                logger.warning("Second signal received - emergency shutdown")
                asyncio.ensure_future(orchestrator.stop(emergency=True))
                return

            logger.info(f"Received signal {sig}, initiating graceful shutdown...")
            shutdown_requested = True
            asyncio.ensure_future(orchestrator.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        await orchestrator.initialize()
        await orchestrator.start()

        logger.info("Engine is running. Press Ctrl+C to stop.")

        while orchestrator.state != OrchestratorState.STOPPED:
            await asyncio.sleep(1)

        logger.info("Orchestrator stopped normally")
        return 0

    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        try:
            if orchestrator:
                await orchestrator.stop()
        except Exception as stop_error:
            logger.error(f"Error during shutdown: {stop_error}")
        return 1

    finally:
        instance_lock.release()


def run(argv: Optional[list] = None) -> None:
    """Synchronous entry point."""
    args = parse_args(argv)

    if args.command == "encrypt-key":
        setup_logging("WARNING")
        sys.exit(encrypt_key(args))

    if args.command == "status":
        setup_logging("WARNING")
        sys.exit(print_status(args))

    setup_logging(args.log_level or "INFO")

    logger = logging.getLogger(__name__)
    logger.info("Starting Hedge Farm")
    logger.info(f"Config: {args.config}")

    try:
        exit_code = asyncio.run(main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 0

    logger.info(f"Exiting with code {exit_code}")
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
