"""
Tests for the strategy repository.

Tests:
- Strategy and position persistence
- Status and price updates
- Close outcomes and leg failures
- Open strategy loading for recovery
- Same behaviour for SQLite and in-memory stores
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hedgefarm.api.exchange import CloseOutcome, Side
from hedgefarm.core.models import (
    LegFailure,
    Position,
    PositionStatus,
    Strategy,
    StrategyStatus,
)
from hedgefarm.core.repository import (
    InMemoryRepository,
    SQLiteRepository,
    StrategyNotFoundError,
)


def make_strategy(strategy_id="strat_test", status=StrategyStatus.OPEN, created_at=None):
    created_at = created_at or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    strategy = Strategy(
        strategy_id=strategy_id,
        token="BTC",
        leverage=2.5,
        notional_per_side=Decimal("200"),
        close_at=created_at + timedelta(hours=6),
        status=status,
        created_at=created_at,
    )
    for index, (wallet_id, side) in enumerate([("w1", Side.LONG), ("w2", Side.SHORT)]):
        strategy.positions.append(
            Position(
                position_id=f"{strategy_id}_{index}",
                strategy_id=strategy_id,
                wallet_id=wallet_id,
                venue="paper",
                token="BTC",
                side=side,
                notional=Decimal("200"),
                leverage=2.5,
                status=PositionStatus.OPEN,
                venue_ref=f"ref-{index}",
                entry_price=Decimal("60000"),
            )
        )
    return strategy


@pytest.fixture(params=["sqlite", "memory"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRepository(str(tmp_path / "test.db"))
    return InMemoryRepository()


class TestRepository:
    """Tests run against both repository implementations."""

    def test_save_and_get(self, repo):
        repo.save_strategy(make_strategy())

        loaded = repo.get_strategy("strat_test")

        assert loaded.status == StrategyStatus.OPEN
        assert loaded.notional_per_side == Decimal("200")
        assert [p.side for p in loaded.positions] == [Side.LONG, Side.SHORT]
        assert loaded.positions[0].entry_price == Decimal("60000")

    def test_get_missing(self, repo):
        assert repo.get_strategy("nope") is None

    def test_save_without_positions(self, repo):
        strategy = make_strategy()
        repo.save_strategy(strategy)

        strategy.status = StrategyStatus.CLOSING
        strategy.positions[0].status = PositionStatus.CLOSED
        repo.save_strategy(strategy, include_positions=False)

        loaded = repo.get_strategy("strat_test")
        assert loaded.status == StrategyStatus.CLOSING
        assert loaded.positions[0].status == PositionStatus.OPEN

    def test_returned_objects_are_copies(self, repo):
        strategy = make_strategy()
        repo.save_strategy(strategy)

        loaded = repo.get_strategy("strat_test")
        loaded.status = StrategyStatus.CLOSED

        assert repo.get_strategy("strat_test").status == StrategyStatus.OPEN

    def test_update_position_status(self, repo):
        repo.save_strategy(make_strategy())

        repo.update_position_status("strat_test_1", PositionStatus.CLOSING, venue_ref="ref-new")

        position = next(
            p for p in repo.get_strategy("strat_test").positions if p.position_id == "strat_test_1"
        )
        assert position.status == PositionStatus.CLOSING
        assert position.venue_ref == "ref-new"

    def test_update_prices_keeps_status(self, repo):
        repo.save_strategy(make_strategy())
        repo.update_position_status("strat_test_0", PositionStatus.CLOSING)

        repo.update_position_prices("strat_test_0", Decimal("59000"), Decimal("-3.3"), Decimal("36000"))

        position = next(
            p for p in repo.get_strategy("strat_test").positions if p.position_id == "strat_test_0"
        )
        assert position.status == PositionStatus.CLOSING
        assert position.mark_price == Decimal("59000")
        assert position.unrealized_pnl == Decimal("-3.3")
        assert position.liquidation_price == Decimal("36000")

    def test_record_close_outcome(self, repo):
        repo.save_strategy(make_strategy())
        closed_at = datetime(2025, 1, 15, 18, 0, tzinfo=timezone.utc)

        repo.record_close_outcome(
            "strat_test_0",
            CloseOutcome("ref-0", Decimal("61000"), Decimal("3.33"), closed_at),
        )

        position = next(
            p for p in repo.get_strategy("strat_test").positions if p.position_id == "strat_test_0"
        )
        assert position.status == PositionStatus.CLOSED
        assert position.realized_pnl == Decimal("3.33")
        assert position.mark_price == Decimal("61000")
        assert position.closed_at == closed_at

    def test_record_failure(self, repo):
        repo.save_strategy(make_strategy())
        repo.record_failure(
            "strat_test", LegFailure("strat_test_1", "w2", "open", "insufficient margin", 1)
        )
        repo.record_failure(
            "strat_test", LegFailure("strat_test_0", "w1", "rollback", "timeout", 3, transient=True)
        )

        failures = repo.get_strategy("strat_test").failures

        assert [f.phase for f in failures] == ["open", "rollback"]
        assert failures[1].attempts == 3
        assert [f.transient for f in failures] == [False, True]

    def test_load_open_strategies_excludes_terminal(self, repo):
        base = datetime(2025, 1, 15, tzinfo=timezone.utc)
        statuses = [
            StrategyStatus.PLANNED,
            StrategyStatus.OPENING,
            StrategyStatus.OPEN,
            StrategyStatus.CLOSING,
            StrategyStatus.FAILED,
            StrategyStatus.CLOSED,
            StrategyStatus.ROLLED_BACK,
        ]
        for i, status in enumerate(statuses):
            repo.save_strategy(make_strategy(f"strat_{i}", status, base + timedelta(minutes=i)))

        open_ids = [s.strategy_id for s in repo.load_open_strategies()]

        assert open_ids == ["strat_0", "strat_1", "strat_2", "strat_3", "strat_4"]

    def test_list_by_status(self, repo):
        repo.save_strategy(make_strategy("strat_a", StrategyStatus.CLOSED))
        repo.save_strategy(make_strategy("strat_b", StrategyStatus.OPEN))

        assert [s.strategy_id for s in repo.list_strategies(StrategyStatus.CLOSED)] == ["strat_a"]
        assert len(repo.list_strategies()) == 2


class TestSQLiteRepository:
    """SQLite-specific behaviour."""

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "test.db")
        SQLiteRepository(path).save_strategy(make_strategy())

        reopened = SQLiteRepository(path)

        assert reopened.get_strategy("strat_test").status == StrategyStatus.OPEN

    def test_export_json(self, tmp_path):
        repo = SQLiteRepository(str(tmp_path / "test.db"))
        repo.save_strategy(make_strategy())

        out = tmp_path / "export.json"
        repo.export_json(str(out))

        data = json.loads(out.read_text())
        assert data[0]["strategy_id"] == "strat_test"
        assert len(data[0]["positions"]) == 2


class TestInMemoryRepository:
    """In-memory specific behaviour."""

    def test_unknown_position_update(self):
        with pytest.raises(StrategyNotFoundError):
            InMemoryRepository().update_position_status("nope", PositionStatus.CLOSED)
