"""
Tests for the allocation engine.

Tests:
- Balanced long/short sizing within tolerance
- Group size and side split bounds
- Leverage and duration ranges
- Eligibility and error cases
"""

import pytest
import random
from datetime import timedelta
from decimal import Decimal

from config.settings import AllocationConfig
from hedgefarm.api.exchange import Side
from hedgefarm.core.allocation import (
    AllocationEngine,
    InsufficientBalanceError,
    NoEligibleWalletsError,
)


def balances(*amounts):
    return {f"w{i}": Decimal(str(a)) for i, a in enumerate(amounts, start=1)}


@pytest.fixture
def config():
    return AllocationConfig()


class TestAllocationPlan:
    """Tests for plan() happy paths."""

    @pytest.mark.parametrize("seed", range(25))
    def test_balanced_within_tolerance(self, config, seed):
        engine = AllocationEngine(config, random.Random(seed))
        plan = engine.plan(balances(100, 80, 120, 60, 90, 110))

        assert plan.imbalance < config.imbalance_tolerance
        assert config.min_group_size <= len(plan.legs) <= config.max_group_size
        assert plan.long_notional > 0 and plan.short_notional > 0

    @pytest.mark.parametrize("seed", range(25))
    def test_ranges_respected(self, config, seed):
        engine = AllocationEngine(config, random.Random(seed))
        plan = engine.plan(balances(100, 100, 100, 100))

        assert config.min_leverage <= plan.leverage <= config.max_leverage
        assert timedelta(seconds=config.min_duration) <= plan.duration
        assert plan.duration <= timedelta(seconds=config.max_duration)
        assert plan.token in config.tokens

    @pytest.mark.parametrize("seed", range(25))
    def test_leg_capacity(self, config, seed):
        """No leg asks for more margin than the wallet has."""
        wallet_balances = balances(100, 100, 50, 50)
        engine = AllocationEngine(config, random.Random(seed))
        plan = engine.plan(wallet_balances)

        for leg in plan.legs:
            assert leg.margin <= wallet_balances[leg.wallet_id]
            assert leg.notional >= config.min_position_notional

    @pytest.mark.parametrize("seed", range(25))
    def test_two_per_side_from_four(self, config, seed):
        engine = AllocationEngine(config, random.Random(seed))
        plan = engine.plan(balances(100, 100, 50, 50, 70))

        if len(plan.legs) >= 4:
            longs = [l for l in plan.legs if l.side is Side.LONG]
            shorts = [l for l in plan.legs if l.side is Side.SHORT]
            assert len(longs) >= 2 and len(shorts) >= 2

    def test_single_pair_mode(self):
        config = AllocationConfig(min_group_size=2, max_group_size=2)
        assert config.single_pair_mode

        plan = AllocationEngine(config, random.Random(1)).plan(balances(100, 100, 100))

        assert len(plan.legs) == 2
        assert {l.side for l in plan.legs} == {Side.LONG, Side.SHORT}

    def test_explicit_token(self, config):
        plan = AllocationEngine(config, random.Random(3)).plan(balances(100, 100, 100), token="SOL")
        assert plan.token == "SOL"

    def test_busy_wallets_excluded(self, config):
        engine = AllocationEngine(config, random.Random(7))
        plan = engine.plan(balances(100, 100, 100, 100), busy_wallets={"w1", "w2"})
        assert set(plan.wallet_ids) == {"w3", "w4"}

    def test_reproducible_with_seed(self, config):
        a = AllocationEngine(config, random.Random(11)).plan(balances(100, 90, 80, 70))
        b = AllocationEngine(config, random.Random(11)).plan(balances(100, 90, 80, 70))
        assert [(l.wallet_id, l.side, l.notional) for l in a.legs] == [
            (l.wallet_id, l.side, l.notional) for l in b.legs
        ]

    def test_to_strategy(self, config):
        plan = AllocationEngine(config, random.Random(5)).plan(balances(100, 100, 100))
        strategy = plan.to_strategy({w: "paper" for w in plan.wallet_ids})

        assert strategy.strategy_id.startswith("strat_")
        assert len(strategy.positions) == len(plan.legs)
        assert strategy.notional_per_side == max(plan.long_notional, plan.short_notional)
        assert strategy.close_at > strategy.created_at


class TestAllocationErrors:
    """Tests for plan() failures."""

    def test_no_wallets(self, config):
        with pytest.raises(NoEligibleWalletsError):
            AllocationEngine(config).plan({})

    def test_single_wallet(self, config):
        with pytest.raises(NoEligibleWalletsError):
            AllocationEngine(config).plan(balances(100))

    def test_zero_balances_ineligible(self, config):
        with pytest.raises(NoEligibleWalletsError):
            AllocationEngine(config).plan(balances(0, 0, 100))

    def test_all_busy(self, config):
        with pytest.raises(NoEligibleWalletsError):
            AllocationEngine(config).plan(balances(100, 100), busy_wallets={"w1", "w2"})

    def test_below_min_notional(self):
        """Tiny wallets make legs under the minimum size."""
        config = AllocationConfig(
            min_group_size=3, max_group_size=3, min_position_notional=Decimal("50")
        )
        with pytest.raises(InsufficientBalanceError):
            AllocationEngine(config, random.Random(1)).plan(balances(30, 30, 30))

    def test_eligible_wallets(self, config):
        engine = AllocationEngine(config)
        eligible = engine.eligible_wallets(balances(100, 4, 0, 50), busy_wallets={"w4"})
        assert set(eligible) == {"w1"}
