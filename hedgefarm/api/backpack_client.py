"""
Backpack Perpetuals REST Client.

Authenticated client for the Backpack endpoints the hedge engine needs:
- Collateral balance
- Market order execution (open and reduce-only close)
- Open position query
- Account leverage limit

Requests are blocking (`requests`) and are pushed to a worker thread so the
event loop never stalls on one venue. Every request is signed with the
wallet's ED25519 key, unlocked from the vault only for that request.
"""

import asyncio
import logging
import zlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .auth import BackpackAuth
from .exchange import CloseOutcome, PositionSnapshot, Side
from .exchange_errors import (
    CircuitBreaker,
    ExchangeError,
    TransientExchangeError,
    raise_for_code,
)

if TYPE_CHECKING:
    from hedgefarm.core.models import Wallet
    from hedgefarm.core.vault import CredentialVault

logger = logging.getLogger(__name__)


def market_symbol(token: str) -> str:
    """Perpetual market symbol for a token (e.g. BTC -> BTC_USDC_PERP)."""
    return f"{token.upper()}_USDC_PERP"


def token_from_symbol(symbol: str) -> str:
    return symbol.split("_", 1)[0]


def client_order_id(client_id: str) -> int:
    """Backpack client ids are u32; derive a stable one from the leg id."""
    return zlib.crc32(client_id.encode("utf-8")) & 0xFFFFFFFF


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


class BackpackClient:
    """
    Backpack capability bound to one wallet.

    Usage:
        client = BackpackClient(wallet, vault)
        balance = await client.get_account_balance()
        snapshot = await client.open_position("BTC", Side.LONG, Decimal("200"), 2.0)
    """

    BASE_URL = "https://api.backpack.exchange"

    CAPITAL_PATH = "/api/v1/capital"
    ORDER_PATH = "/api/v1/order"
    POSITION_PATH = "/api/v1/position"
    ACCOUNT_PATH = "/api/v1/account"

    COLLATERAL_ASSET = "USDC"

    def __init__(
        self,
        wallet: "Wallet",
        vault: "CredentialVault",
        base_url: Optional[str] = None,
        timeout: int = 10,
        window_ms: int = 5000,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize Backpack client.

        Args:
            wallet: Wallet this client trades for
            vault: Credential vault holding the wallet's signing key
            base_url: API base URL override
            timeout: Request timeout in seconds
            window_ms: Signed request validity window
            circuit_breaker: Shared breaker for this venue
        """
        self._wallet = wallet
        self._vault = vault
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._timeout = timeout
        self._auth = BackpackAuth(wallet.api_key, window_ms)
        self._breaker = circuit_breaker or CircuitBreaker()

        self._session = requests.Session()
        retry_strategy = Retry(
            total=0,  # Retries are decided by the coordinator, never by urllib3
            backoff_factor=1,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self._session.mount("https://", adapter)
        self._session.headers.update({"Content-Type": "application/json; charset=utf-8"})

        logger.info(f"Initialized Backpack client for wallet {wallet.wallet_id}")

    @property
    def name(self) -> str:
        return "backpack"

    # ==========================================
    # TRANSPORT
    # ==========================================

    def _request(
        self,
        method: str,
        path: str,
        instruction: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make a signed request.

        Raises:
            TransientExchangeError: network, timeout, rate limit, 5xx
            FatalExchangeError: rejected or unauthorised request
        """
        if self._breaker.is_open:
            raise TransientExchangeError("CIRCUIT_OPEN", venue=self.name)

        params = params or {}
        with self._vault.unlock(self._wallet.wallet_id) as signer:
            headers = self._auth.sign_request(instruction, params, signer)

        url = f"{self._base_url}{path}"
        try:
            if method == "GET":
                response = self._session.get(
                    url, params=params, headers=headers, timeout=self._timeout
                )
            else:
                response = self._session.request(
                    method, url, json=params, headers=headers, timeout=self._timeout
                )
        except requests.exceptions.Timeout:
            self._breaker.record_failure()
            raise_for_code("TIMEOUT", f"{method} {path} timed out", self.name)
        except requests.exceptions.ConnectionError as e:
            self._breaker.record_failure()
            raise_for_code("CONNECTION", f"Connection error: {e}", self.name)

        try:
            self._check_response(response)
        except ExchangeError as e:
            if e.is_transient:
                self._breaker.record_failure()
            raise

        self._breaker.record_success()
        if not response.content:
            return {}
        return response.json()

    def _check_response(self, response: requests.Response) -> None:
        if response.status_code < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}

        code = body.get("code") if isinstance(body, dict) else None
        message = body.get("message") if isinstance(body, dict) else None
        message = message or response.text[:200]

        if response.status_code == 429:
            code = "HTTP_429"
        elif response.status_code >= 500 and code not in ("SERVICE_UNAVAILABLE", "INTERNAL_ERROR"):
            code = "HTTP_5XX"
        elif response.status_code == 401 and not code:
            code = "UNAUTHORIZED"
        elif response.status_code == 404 and not code:
            code = "RESOURCE_NOT_FOUND"
        elif not code:
            code = "INVALID_CLIENT_REQUEST"

        raise_for_code(code, message, self.name, body if isinstance(body, dict) else None)

    async def _call(self, method: str, path: str, instruction: str,
                    params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, instruction, params)

    # ==========================================
    # ACCOUNT
    # ==========================================

    async def get_account_balance(self) -> Decimal:
        result = await self._call("GET", self.CAPITAL_PATH, "balanceQuery")
        entry = result.get(self.COLLATERAL_ASSET, {}) if isinstance(result, dict) else {}
        balance = _dec(entry.get("available"))
        logger.debug(f"Wallet {self._wallet.wallet_id} USDC available: {balance}")
        return balance

    async def set_leverage(self, leverage: float) -> None:
        """Backpack applies leverage as an account-wide limit."""
        await self._call(
            "PATCH", self.ACCOUNT_PATH, "accountUpdate",
            {"leverageLimit": f"{leverage:g}"},
        )

    # ==========================================
    # POSITIONS
    # ==========================================

    async def _open_positions(self) -> List[Dict[str, Any]]:
        result = await self._call("GET", self.POSITION_PATH, "positionQuery")
        return result if isinstance(result, list) else []

    def _parse_position(self, data: Dict[str, Any]) -> PositionSnapshot:
        net_quantity = _dec(data.get("netQuantity"))
        mark = _dec(data.get("markPrice"))
        liquidation = data.get("estLiquidationPrice")
        notional = data.get("netExposureNotional")
        return PositionSnapshot(
            venue_ref=data["symbol"],
            token=token_from_symbol(data["symbol"]),
            side=Side.LONG if net_quantity > 0 else Side.SHORT,
            size=abs(net_quantity),
            notional=abs(_dec(notional)) if notional is not None else abs(net_quantity) * mark,
            entry_price=_dec(data.get("entryPrice")),
            mark_price=mark,
            unrealized_pnl=_dec(data.get("pnlUnrealized")),
            liquidation_price=_dec(liquidation) if liquidation not in (None, "", "0") else None,
            is_open=net_quantity != 0,
        )

    async def get_position(self, venue_ref: str) -> PositionSnapshot:
        """
        Positions are netted per market, so the venue reference is the symbol.

        A market with no open position returns a closed snapshot.
        """
        for data in await self._open_positions():
            if data.get("symbol") == venue_ref:
                return self._parse_position(data)

        return PositionSnapshot(
            venue_ref=venue_ref,
            token=token_from_symbol(venue_ref),
            side=Side.LONG,
            size=Decimal("0"),
            notional=Decimal("0"),
            entry_price=Decimal("0"),
            mark_price=Decimal("0"),
            unrealized_pnl=Decimal("0"),
            liquidation_price=None,
            is_open=False,
        )

    async def find_position(self, token: str, client_id: str) -> Optional[PositionSnapshot]:
        """A wallet holds at most one leg, so its open position on the market is that leg."""
        snapshot = await self.get_position(market_symbol(token))
        return snapshot if snapshot.is_open else None

    # ==========================================
    # ORDERS
    # ==========================================

    async def open_position(
        self,
        token: str,
        side: Side,
        notional: Decimal,
        leverage: float,
        client_id: Optional[str] = None,
    ) -> PositionSnapshot:
        symbol = market_symbol(token)
        logger.info(
            f"Wallet {self._wallet.wallet_id} opening {side.value} {symbol} "
            f"{notional:.2f} USDC at {leverage}x"
        )

        await self.set_leverage(leverage)

        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": "Bid" if side is Side.LONG else "Ask",
            "orderType": "Market",
            "quoteQuantity": str(notional.quantize(Decimal("0.01"))),
        }
        if client_id:
            params["clientId"] = client_order_id(client_id)

        order = await self._call("POST", self.ORDER_PATH, "orderExecute", params)
        if order.get("status") not in ("Filled", "PartiallyFilled", None):
            raise_for_code("ORDER_REJECTED", f"Order status {order.get('status')}", self.name, order)

        snapshot = await self.get_position(symbol)
        if not snapshot.is_open:
            raise_for_code("ORDER_REJECTED", f"No position after order on {symbol}", self.name, order)

        logger.info(
            f"Wallet {self._wallet.wallet_id} opened {side.value} {snapshot.size} {symbol} "
            f"@ {snapshot.entry_price}"
        )
        return snapshot

    async def close_position(self, venue_ref: str) -> CloseOutcome:
        snapshot = await self.get_position(venue_ref)
        if not snapshot.is_open:
            raise_for_code("RESOURCE_NOT_FOUND", f"No open position on {venue_ref}", self.name)

        params = {
            "symbol": venue_ref,
            "side": "Ask" if snapshot.side is Side.LONG else "Bid",
            "orderType": "Market",
            "quantity": str(snapshot.size),
            "reduceOnly": True,
        }
        order = await self._call("POST", self.ORDER_PATH, "orderExecute", params)

        executed = _dec(order.get("executedQuantity"))
        executed_quote = _dec(order.get("executedQuoteQuantity"))
        exit_price = executed_quote / executed if executed else snapshot.mark_price

        if snapshot.side is Side.LONG:
            realized = (exit_price - snapshot.entry_price) * snapshot.size
        else:
            realized = (snapshot.entry_price - exit_price) * snapshot.size

        logger.info(
            f"Wallet {self._wallet.wallet_id} closed {venue_ref} @ {exit_price}, pnl {realized:.2f}"
        )
        return CloseOutcome(
            venue_ref=venue_ref,
            exit_price=exit_price,
            realized_pnl=realized,
            closed_at=datetime.now(timezone.utc),
        )

    def close(self) -> None:
        """Release the HTTP session."""
        self._session.close()
