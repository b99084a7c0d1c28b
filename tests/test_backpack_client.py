"""
Tests for the Backpack REST client.

Tests:
- Request signing and transport
- HTTP status to error mapping
- Circuit breaker short-circuits requests
- Position parsing, open and reduce-only close
- A filled order is not resent when its confirmation is rate limited
"""

import json
import pytest
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

import requests

from config.settings import ExecutionConfig
from hedgefarm.api.backpack_client import (
    BackpackClient,
    client_order_id,
    market_symbol,
    token_from_symbol,
)
from hedgefarm.api.exchange import Side
from hedgefarm.api.exchange_errors import (
    CircuitBreaker,
    ErrorCategory,
    ExchangeError,
    FatalExchangeError,
    TransientExchangeError,
)
from hedgefarm.api.paper_exchange import PaperExchange, PaperMarket
from hedgefarm.core.coordinator import ExecutionCoordinator
from hedgefarm.core.models import (
    AllocationPlan,
    LegAllocation,
    StrategyStatus,
    Wallet,
)
from hedgefarm.core.repository import InMemoryRepository
from hedgefarm.core.vault import SigningKey

SEED = bytes(range(32))


class FakeVault:
    """Hands out a fresh signing key per unlock."""

    def __init__(self):
        self.unlocks = 0

    @contextmanager
    def unlock(self, wallet_id, password=None):
        self.unlocks += 1
        key = SigningKey(bytearray(SEED))
        try:
            yield key
        finally:
            key.wipe()


def response(status=200, body=None, text=""):
    resp = Mock()
    resp.status_code = status
    if body is None:
        resp.content = b""
        resp.json = Mock(side_effect=ValueError("No JSON"))
    else:
        resp.content = json.dumps(body).encode("utf-8")
        resp.json = Mock(return_value=body)
    resp.text = text or (json.dumps(body) if body is not None else "")
    return resp


SHORT_POSITION = {
    "symbol": "BTC_USDC_PERP",
    "netQuantity": "-0.5",
    "markPrice": "100",
    "entryPrice": "102",
    "pnlUnrealized": "1",
    "estLiquidationPrice": "140",
    "netExposureNotional": "-50",
}

LONG_POSITION = {
    "symbol": "ETH_USDC_PERP",
    "netQuantity": "0.5",
    "markPrice": "108",
    "entryPrice": "100",
    "pnlUnrealized": "4",
    "estLiquidationPrice": "52",
}


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def client(vault):
    wallet = Wallet(wallet_id="wallet_1", venue="backpack", api_key="pubkey==", encrypted_secret="")
    client = BackpackClient(
        wallet,
        vault,
        base_url="https://api.test.invalid/",
        circuit_breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60.0),
    )
    yield client
    client.close()


class TestHelpers:
    """Tests for symbol and id helpers."""

    def test_symbols(self):
        assert market_symbol("btc") == "BTC_USDC_PERP"
        assert token_from_symbol("SOL_USDC_PERP") == "SOL"

    def test_client_order_id_stable_u32(self):
        first = client_order_id("strat_ab12_0")
        assert first == client_order_id("strat_ab12_0")
        assert first != client_order_id("strat_ab12_1")
        assert 0 <= first < 2 ** 32


class TestTransport:
    """Tests for signed requests."""

    @pytest.mark.asyncio
    async def test_balance_request_signed(self, client, vault):
        with patch.object(
            client._session, "get", return_value=response(body={"USDC": {"available": "123.45"}})
        ) as get:
            balance = await client.get_account_balance()

        assert balance == Decimal("123.45")
        url = get.call_args[0][0]
        headers = get.call_args[1]["headers"]
        assert url == "https://api.test.invalid/api/v1/capital"
        assert headers["X-API-Key"] == "pubkey=="
        assert headers["X-Window"] == "5000"
        assert "X-Signature" in headers
        assert vault.unlocks == 1

    @pytest.mark.asyncio
    async def test_missing_collateral_is_zero(self, client):
        with patch.object(client._session, "get", return_value=response(body={})):
            assert await client.get_account_balance() == Decimal("0")

    @pytest.mark.parametrize(
        "status,body,code,transient",
        [
            (429, {"message": "slow down"}, "HTTP_429", True),
            (502, None, "HTTP_5XX", True),
            (503, {"code": "SERVICE_UNAVAILABLE"}, "SERVICE_UNAVAILABLE", True),
            (401, None, "UNAUTHORIZED", False),
            (404, None, "RESOURCE_NOT_FOUND", False),
            (400, {"code": "INSUFFICIENT_MARGIN", "message": "margin"}, "INSUFFICIENT_MARGIN", False),
            (400, None, "INVALID_CLIENT_REQUEST", False),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(self, client, status, body, code, transient):
        with patch.object(client._session, "get", return_value=response(status, body)):
            with pytest.raises(ExchangeError) as exc_info:
                await client.get_account_balance()

        assert exc_info.value.code == code
        assert exc_info.value.is_transient is transient
        assert exc_info.value.venue == "backpack"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, client):
        with patch.object(client._session, "get", side_effect=requests.exceptions.Timeout()):
            with pytest.raises(TransientExchangeError) as exc_info:
                await client.get_account_balance()
        assert exc_info.value.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_circuit_opens(self, client):
        """After repeated transient failures requests stop reaching the venue."""
        with patch.object(
            client._session, "get", side_effect=requests.exceptions.ConnectionError("refused")
        ) as get:
            for _ in range(2):
                with pytest.raises(TransientExchangeError):
                    await client.get_account_balance()

            with pytest.raises(TransientExchangeError) as exc_info:
                await client.get_account_balance()

        assert exc_info.value.code == "CIRCUIT_OPEN"
        assert get.call_count == 2

    @pytest.mark.asyncio
    async def test_fatal_does_not_trip_circuit(self, client):
        with patch.object(client._session, "get", return_value=response(401)):
            for _ in range(3):
                with pytest.raises(FatalExchangeError):
                    await client.get_account_balance()
        assert client._breaker.state == "closed"


class TestPositions:
    """Tests for position queries."""

    @pytest.mark.asyncio
    async def test_parse_short(self, client):
        with patch.object(client._session, "get", return_value=response(body=[SHORT_POSITION])):
            snapshot = await client.get_position("BTC_USDC_PERP")

        assert snapshot.is_open
        assert snapshot.side is Side.SHORT
        assert snapshot.size == Decimal("0.5")
        assert snapshot.notional == Decimal("50")
        assert snapshot.liquidation_price == Decimal("140")
        assert snapshot.token == "BTC"

    @pytest.mark.asyncio
    async def test_notional_from_mark(self, client):
        with patch.object(client._session, "get", return_value=response(body=[LONG_POSITION])):
            snapshot = await client.get_position("ETH_USDC_PERP")

        assert snapshot.side is Side.LONG
        assert snapshot.notional == Decimal("54")

    @pytest.mark.asyncio
    async def test_flat_market(self, client):
        with patch.object(client._session, "get", return_value=response(body=[SHORT_POSITION])):
            snapshot = await client.get_position("SOL_USDC_PERP")

        assert not snapshot.is_open
        assert snapshot.size == Decimal("0")


class TestOrders:
    """Tests for open and close."""

    @pytest.mark.asyncio
    async def test_open_position(self, client):
        request = Mock(side_effect=[response(200), response(body={"status": "Filled"})])
        with patch.object(client._session, "request", request), patch.object(
            client._session, "get", return_value=response(body=[SHORT_POSITION])
        ):
            snapshot = await client.open_position(
                "BTC", Side.SHORT, Decimal("50"), 2.0, client_id="strat_1_0"
            )

        assert snapshot.venue_ref == "BTC_USDC_PERP"
        leverage_call, order_call = request.call_args_list
        assert leverage_call[0][0] == "PATCH"
        assert leverage_call[1]["json"] == {"leverageLimit": "2"}
        order = order_call[1]["json"]
        assert order["side"] == "Ask"
        assert order["orderType"] == "Market"
        assert order["quoteQuantity"] == "50.00"
        assert order["clientId"] == client_order_id("strat_1_0")

    @pytest.mark.asyncio
    async def test_open_rejected(self, client):
        request = Mock(side_effect=[response(200), response(body={"status": "Cancelled"})])
        with patch.object(client._session, "request", request):
            with pytest.raises(FatalExchangeError) as exc_info:
                await client.open_position("BTC", Side.LONG, Decimal("50"), 2.0)
        assert exc_info.value.code == "ORDER_REJECTED"

    @pytest.mark.asyncio
    async def test_close_reduce_only(self, client):
        request = Mock(
            return_value=response(body={"executedQuantity": "0.5", "executedQuoteQuantity": "55"})
        )
        with patch.object(client._session, "request", request), patch.object(
            client._session, "get", return_value=response(body=[LONG_POSITION])
        ):
            outcome = await client.close_position("ETH_USDC_PERP")

        order = request.call_args[1]["json"]
        assert order["side"] == "Ask"
        assert order["reduceOnly"] is True
        assert order["quantity"] == "0.5"
        assert outcome.exit_price == Decimal("110")
        assert outcome.realized_pnl == Decimal("5")

    @pytest.mark.asyncio
    async def test_close_flat_not_found(self, client):
        with patch.object(client._session, "get", return_value=response(body=[])):
            with pytest.raises(FatalExchangeError) as exc_info:
                await client.close_position("ETH_USDC_PERP")
        assert exc_info.value.category == ErrorCategory.POSITION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_find_position(self, client):
        with patch.object(client._session, "get", return_value=response(body=[SHORT_POSITION])):
            found = await client.find_position("BTC", "strat_1_0")
            missing = await client.find_position("ETH", "strat_1_1")

        assert found.venue_ref == "BTC_USDC_PERP"
        assert missing is None


class TestOpenThroughCoordinator:
    """An order that filled is never sent twice when its confirmation fails."""

    @pytest.mark.asyncio
    async def test_rate_limited_confirmation_single_order(self, client):
        market = PaperMarket({"BTC": Decimal("100")})
        exchanges = {"wallet_1": client, "wallet_2": PaperExchange("wallet_2", Decimal("100"), market)}
        coordinator = ExecutionCoordinator(
            exchanges,
            InMemoryRepository(),
            ExecutionConfig(max_retry_attempts=3, retry_base_delay=0.0, retry_max_delay=0.0),
        )
        plan = AllocationPlan(
            token="BTC",
            leverage=2.0,
            duration=timedelta(hours=6),
            legs=[
                LegAllocation("wallet_1", Side.SHORT, Decimal("50"), Decimal("25")),
                LegAllocation("wallet_2", Side.LONG, Decimal("50"), Decimal("25")),
            ],
        )

        request = Mock(side_effect=[response(200), response(body={"status": "Filled"})])
        get = Mock(side_effect=[
            response(429, {"message": "slow down"}),
            response(body=[SHORT_POSITION]),
        ])
        with patch.object(client._session, "request", request), patch.object(
            client._session, "get", get
        ):
            strategy = await coordinator.open_strategy(plan)

        posts = [c for c in request.call_args_list if c[0][0] == "POST"]
        assert len(posts) == 1
        assert strategy.status == StrategyStatus.OPEN
        short_leg = next(p for p in strategy.positions if p.wallet_id == "wallet_1")
        assert short_leg.venue_ref == "BTC_USDC_PERP"
