"""
Venue selection.

Each wallet gets one capability instance, chosen by the wallet's venue
affinity when it is set up. Paper trading swaps every wallet onto the
simulated venue.
"""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, Optional

from config.settings import BotConfig, Venue

from .backpack_client import BackpackClient
from .exchange import ExchangeCapability
from .exchange_errors import CircuitBreaker
from .paper_exchange import PaperExchange, PaperMarket

if TYPE_CHECKING:
    from hedgefarm.core.models import Wallet
    from hedgefarm.core.vault import CredentialVault

logger = logging.getLogger(__name__)


class UnsupportedVenueError(ValueError):
    """Wallet references a venue with no client implementation."""
    pass


def create_exchange(
    wallet: "Wallet",
    vault: "CredentialVault",
    config: BotConfig,
    market: Optional[PaperMarket] = None,
    breakers: Optional[Dict[str, CircuitBreaker]] = None,
) -> ExchangeCapability:
    """
    Build the capability for one wallet.

    Args:
        wallet: Wallet to bind
        vault: Vault holding the wallet's signing key
        config: Bot configuration
        market: Shared paper market (paper trading only)
        breakers: Per-venue circuit breakers shared between wallets
    """
    exchange_config = config.exchange

    if config.paper_trading or wallet.venue == Venue.PAPER:
        return PaperExchange(
            wallet.wallet_id,
            exchange_config.paper_initial_balance,
            market=market,
            maintenance_margin=exchange_config.paper_maintenance_margin,
        )

    if wallet.venue == Venue.BACKPACK:
        breaker = None
        if breakers is not None:
            breaker = breakers.setdefault(
                wallet.venue,
                CircuitBreaker(exchange_config.failure_threshold, exchange_config.reset_timeout),
            )
        return BackpackClient(
            wallet,
            vault,
            base_url=exchange_config.base_urls.get(Venue.BACKPACK),
            timeout=exchange_config.request_timeout,
            window_ms=exchange_config.receive_window_ms,
            circuit_breaker=breaker,
        )

    raise UnsupportedVenueError(f"Wallet {wallet.wallet_id} uses unsupported venue {wallet.venue}")


def create_exchanges(
    wallets: Iterable["Wallet"],
    vault: "CredentialVault",
    config: BotConfig,
) -> Dict[str, ExchangeCapability]:
    """Capabilities for every wallet, keyed by wallet id."""
    market = PaperMarket() if config.paper_trading else None
    breakers: Dict[str, CircuitBreaker] = {}
    exchanges = {
        wallet.wallet_id: create_exchange(wallet, vault, config, market, breakers)
        for wallet in wallets
    }
    logger.info(
        f"Created {len(exchanges)} exchange clients "
        f"({'paper' if config.paper_trading else 'live'})"
    )
    return exchanges
