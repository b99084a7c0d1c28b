"""
Tests for the risk monitor.

Tests:
- Liquidation proximity triggers an urgent close in the same tick
- PnL divergence alerts without closing
- Failing or slow legs do not block the others
- Legs mid-transition are skipped
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock, AsyncMock

from config.settings import RiskConfig
from hedgefarm.api.exchange import PositionSnapshot, Side
from hedgefarm.api.exchange_errors import TransientExchangeError
from hedgefarm.core.alerts import AlertManager, AlertSeverity, AlertType
from hedgefarm.core.coordinator import PositionLocks
from hedgefarm.core.models import Position, PositionStatus, Strategy, StrategyStatus
from hedgefarm.core.repository import InMemoryRepository
from hedgefarm.core.risk_monitor import RiskMonitor, pnl_divergence


def snapshot(venue_ref, side, mark, upnl, liq, entry="100", is_open=True):
    return PositionSnapshot(
        venue_ref=venue_ref,
        token="BTC",
        side=side,
        size=Decimal("1"),
        notional=Decimal(mark),
        entry_price=Decimal(entry),
        mark_price=Decimal(mark),
        unrealized_pnl=Decimal(upnl),
        liquidation_price=Decimal(liq) if liq is not None else None,
        is_open=is_open,
    )


def make_strategy(strategy_id="strat_risk", status=StrategyStatus.OPEN):
    strategy = Strategy(
        strategy_id=strategy_id,
        token="BTC",
        leverage=3.0,
        notional_per_side=Decimal("100"),
        close_at=datetime.now(timezone.utc) + timedelta(hours=4),
        status=status,
    )
    for index, (wallet_id, side) in enumerate([("w1", Side.LONG), ("w2", Side.SHORT)]):
        strategy.positions.append(
            Position(
                position_id=f"{strategy_id}_{index}",
                strategy_id=strategy_id,
                wallet_id=wallet_id,
                venue="fake",
                token="BTC",
                side=side,
                notional=Decimal("100"),
                leverage=3.0,
                status=PositionStatus.OPEN,
                venue_ref=f"{wallet_id}-ref",
                entry_price=Decimal("100"),
            )
        )
    return strategy


def fake_exchange(result):
    exchange = Mock()
    exchange.name = "fake"
    if isinstance(result, Exception):
        exchange.get_position = AsyncMock(side_effect=result)
    else:
        exchange.get_position = AsyncMock(return_value=result)
    return exchange


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def alerts():
    return AlertManager()


@pytest.fixture
def config():
    return RiskConfig(liquidation_threshold_pct=13.0, divergence_threshold_pct=5.0, api_timeout=0.5)


class TestLiquidationProximity:
    """Tests for urgent close on liquidation distance."""

    @pytest.mark.asyncio
    async def test_urgent_close_same_tick(self, repo, alerts, config):
        """Mark 87 vs liquidation 85 is 2.3% away, below the 13% threshold."""
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "87", "-13", "85")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "87", "13", "132")),
        }
        on_urgent_close = Mock()
        monitor = RiskMonitor(repo, exchanges, alerts, config, on_urgent_close)

        report = await monitor.tick()

        on_urgent_close.assert_called_once()
        strategy_id, reason = on_urgent_close.call_args[0]
        assert strategy_id == "strat_risk"
        assert "w1" in reason
        assert report.urgent == ["strat_risk"]

        emergency = alerts.get_recent_alerts(alert_type=AlertType.LIQUIDATION_PROXIMITY)
        assert emergency[0].severity == AlertSeverity.EMERGENCY

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, repo, alerts, config):
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "87", "-13", "85")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "87", "13", "132")),
        }
        on_urgent_close = AsyncMock()
        monitor = RiskMonitor(repo, exchanges, alerts, config, on_urgent_close)

        await monitor.tick()

        on_urgent_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_safe_distance_no_close(self, repo, alerts, config):
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "100", "0", "67")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "0", "133")),
        }
        on_urgent_close = Mock()
        monitor = RiskMonitor(repo, exchanges, alerts, config, on_urgent_close)

        report = await monitor.tick()

        on_urgent_close.assert_not_called()
        assert report.urgent == []
        assert sorted(report.refreshed) == ["strat_risk_0", "strat_risk_1"]

    @pytest.mark.asyncio
    async def test_prices_persisted(self, repo, alerts, config):
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "98", "-2", "67")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "98", "2", "133")),
        }
        monitor = RiskMonitor(repo, exchanges, alerts, config, Mock())

        await monitor.tick()

        stored = next(
            p for p in repo.get_strategy("strat_risk").positions if p.position_id == "strat_risk_0"
        )
        assert stored.mark_price == Decimal("98")
        assert stored.liquidation_price == Decimal("67")
        assert stored.status == PositionStatus.OPEN


class TestPnlDivergence:
    """Tests for divergence alerting."""

    def test_divergence_value(self):
        strategy = make_strategy()
        strategy.positions[0].unrealized_pnl = Decimal("-10")
        strategy.positions[1].unrealized_pnl = Decimal("4")
        assert pnl_divergence(strategy) == Decimal("0.06")

    def test_divergence_unknown_pnl(self):
        assert pnl_divergence(make_strategy()) is None

    @pytest.mark.asyncio
    async def test_alert_only(self, repo, alerts, config):
        """Divergence above threshold alerts but never closes."""
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "100", "-10", "67")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "2", "133")),
        }
        on_urgent_close = Mock()
        monitor = RiskMonitor(repo, exchanges, alerts, config, on_urgent_close)

        report = await monitor.tick()

        assert report.divergent == ["strat_risk"]
        on_urgent_close.assert_not_called()
        divergence = alerts.get_recent_alerts(alert_type=AlertType.PNL_DIVERGENCE)
        assert divergence[0].severity == AlertSeverity.WARNING


class TestMonitorResilience:
    """Tests for per-leg failure isolation."""

    @pytest.mark.asyncio
    async def test_failing_leg_does_not_block_others(self, repo, alerts, config):
        repo.save_strategy(make_strategy("strat_a"))
        other = make_strategy("strat_b")
        for position in other.positions:
            position.wallet_id = "w3" if position.side is Side.LONG else "w4"
            position.venue_ref = f"{position.wallet_id}-ref"
        repo.save_strategy(other)

        exchanges = {
            "w1": fake_exchange(TransientExchangeError("TIMEOUT", venue="fake")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "0", "133")),
            "w3": fake_exchange(snapshot("w3-ref", Side.LONG, "87", "-13", "85")),
            "w4": fake_exchange(snapshot("w4-ref", Side.SHORT, "87", "13", "132")),
        }
        on_urgent_close = Mock()
        monitor = RiskMonitor(repo, exchanges, alerts, config, on_urgent_close)

        report = await monitor.tick()

        assert report.refresh_failures == ["strat_a_0"]
        assert report.urgent == ["strat_b"]
        on_urgent_close.assert_called_once()
        assert alerts.get_recent_alerts(alert_type=AlertType.MONITOR_ERROR)

    @pytest.mark.asyncio
    async def test_stalled_venue_times_out(self, repo, alerts):
        config = RiskConfig(api_timeout=0.05)
        repo.save_strategy(make_strategy())

        async def hang(venue_ref):
            await asyncio.sleep(10)

        slow = Mock()
        slow.get_position = hang
        exchanges = {
            "w1": slow,
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "0", "133")),
        }
        monitor = RiskMonitor(repo, exchanges, alerts, config, Mock())

        report = await monitor.tick()

        assert report.refresh_failures == ["strat_risk_0"]
        assert report.refreshed == ["strat_risk_1"]

    @pytest.mark.asyncio
    async def test_missing_position_alert(self, repo, alerts, config):
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "100", "0", None, is_open=False)),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "0", "133")),
        }
        monitor = RiskMonitor(repo, exchanges, alerts, config, Mock())

        report = await monitor.tick()

        assert report.missing == ["strat_risk_0"]
        missing = alerts.get_recent_alerts(alert_type=AlertType.POSITION_MISSING)
        assert missing[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_locked_leg_skipped(self, repo, alerts, config):
        repo.save_strategy(make_strategy())
        exchanges = {
            "w1": fake_exchange(snapshot("w1-ref", Side.LONG, "100", "0", "67")),
            "w2": fake_exchange(snapshot("w2-ref", Side.SHORT, "100", "0", "133")),
        }
        locks = PositionLocks()
        monitor = RiskMonitor(repo, exchanges, alerts, config, Mock(), position_locks=locks)

        async with locks.lock("strat_risk_0"):
            report = await monitor.tick()

        exchanges["w1"].get_position.assert_not_called()
        assert report.refreshed == ["strat_risk_1"]

    @pytest.mark.asyncio
    async def test_terminal_strategies_ignored(self, repo, alerts, config):
        repo.save_strategy(make_strategy(status=StrategyStatus.CLOSED))
        exchanges = {"w1": fake_exchange(None), "w2": fake_exchange(None)}
        monitor = RiskMonitor(repo, exchanges, alerts, config, Mock())

        report = await monitor.tick()

        assert report.checked == 0

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(self, repo, alerts):
        config = RiskConfig(monitor_interval=0.01)
        monitor = RiskMonitor(repo, {}, alerts, config, Mock())
        shutdown = asyncio.Event()

        task = asyncio.create_task(monitor.run(shutdown))
        await asyncio.sleep(0.05)
        shutdown.set()

        await asyncio.wait_for(task, timeout=1.0)
