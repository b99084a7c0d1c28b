"""
Allocation Engine.

Partitions available wallets into a balanced long/short hedge group:
1. Filter wallets with usable balance that are not busy in another operation
2. Draw the group size, shuffle and split into sides
3. Draw leverage and duration from their configured ranges
4. Size each side to the same target notional, capped by wallet capacity

Pure computation. Balances are supplied by the caller; randomness is
injectable so plans are reproducible in tests.
"""

import logging
import random
from datetime import timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Collection, Dict, List, Optional, Tuple

from config.settings import AllocationConfig
from hedgefarm.api.exchange import Side

from .models import AllocationPlan, LegAllocation

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class AllocationError(Exception):
    """Base exception for planning failures. Nothing has been sent to a venue."""
    pass


class NoEligibleWalletsError(AllocationError):
    """Fewer than two wallets are available."""
    pass


class InsufficientBalanceError(AllocationError):
    """A side cannot support the minimum position size."""
    pass


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_DOWN)


class AllocationEngine:
    """
    Produces AllocationPlans.

    Usage:
        engine = AllocationEngine(config.allocation)
        plan = engine.plan({"w1": Decimal("100"), "w2": Decimal("80")})
    """

    def __init__(self, config: AllocationConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()

    def eligible_wallets(
        self,
        balances: Dict[str, Decimal],
        busy_wallets: Collection[str] = (),
    ) -> Dict[str, Decimal]:
        """Wallets that can carry at least a minimum-size leg."""
        min_margin = self.config.min_position_notional / Decimal(str(self.config.min_leverage))
        return {
            wallet_id: balance
            for wallet_id, balance in balances.items()
            if balance > 0 and balance >= min_margin and wallet_id not in busy_wallets
        }

    def plan(
        self,
        balances: Dict[str, Decimal],
        busy_wallets: Collection[str] = (),
        token: Optional[str] = None,
    ) -> AllocationPlan:
        """
        Build a hedge group plan.

        Args:
            balances: Available collateral per wallet (USDC)
            busy_wallets: Wallets with an in-flight or active leg
            token: Market to trade (random from config when omitted)

        Raises:
            NoEligibleWalletsError: fewer than 2 usable wallets
            InsufficientBalanceError: a side cannot be sized within tolerance
        """
        eligible = self.eligible_wallets(balances, busy_wallets)
        if len(eligible) < 2:
            raise NoEligibleWalletsError(
                f"Need at least 2 eligible wallets, have {len(eligible)}"
            )

        longs, shorts = self._split(sorted(eligible))
        leverage = self._draw_leverage()
        duration = timedelta(
            seconds=self._rng.uniform(self.config.min_duration, self.config.max_duration)
        )
        token = token or self._rng.choice(self.config.tokens)

        lev = Decimal(str(leverage))
        long_caps = {w: _cents(eligible[w] * lev) for w in longs}
        short_caps = {w: _cents(eligible[w] * lev) for w in shorts}

        target = min(sum(long_caps.values()), sum(short_caps.values()))
        if target <= 0:
            raise InsufficientBalanceError("No capacity on one side")

        long_notionals = self._distribute(target, long_caps)
        short_notionals = self._distribute(target, short_caps)

        legs = [
            LegAllocation(w, Side.LONG, n, _cents(n / lev)) for w, n in long_notionals.items()
        ] + [
            LegAllocation(w, Side.SHORT, n, _cents(n / lev)) for w, n in short_notionals.items()
        ]

        small = [l.wallet_id for l in legs if l.notional < self.config.min_position_notional]
        if small:
            raise InsufficientBalanceError(
                f"Legs below minimum notional {self.config.min_position_notional}: {small}"
            )

        plan = AllocationPlan(token=token, leverage=leverage, duration=duration, legs=legs)
        if plan.imbalance >= self.config.imbalance_tolerance:
            raise InsufficientBalanceError(
                f"Imbalance {plan.imbalance} exceeds tolerance {self.config.imbalance_tolerance}"
            )

        logger.info(
            f"Planned {token} {leverage}x: {len(longs)} long / {len(shorts)} short, "
            f"{plan.long_notional} vs {plan.short_notional} USDC, "
            f"closes in {duration.total_seconds() / 3600:.1f}h"
        )
        return plan

    def _split(self, wallet_ids: List[str]) -> Tuple[List[str], List[str]]:
        """Select the group and assign sides (at least 2 per side from 4 members)."""
        self._rng.shuffle(wallet_ids)

        size = self._rng.randint(self.config.min_group_size, self.config.max_group_size)
        size = max(2, min(size, len(wallet_ids)))
        group = wallet_ids[:size]

        per_side_min = 2 if size >= 4 else 1
        long_count = self._rng.randint(per_side_min, size - per_side_min)
        return group[:long_count], group[long_count:]

    def _draw_leverage(self) -> float:
        leverage = round(self._rng.uniform(self.config.min_leverage, self.config.max_leverage), 1)
        return min(max(leverage, self.config.min_leverage), self.config.max_leverage)

    @staticmethod
    def _distribute(target: Decimal, capacities: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """
        Split `target` over wallets without exceeding any capacity.

        Equal split first, then the residual goes to the wallet with the most
        remaining capacity until nothing is left. Requires target <= total capacity.
        """
        share = _cents(target / len(capacities))
        notionals = {w: min(share, cap) for w, cap in capacities.items()}

        residual = target - sum(notionals.values())
        while residual > 0:
            wallet_id = max(capacities, key=lambda w: capacities[w] - notionals[w])
            room = capacities[wallet_id] - notionals[wallet_id]
            if room <= 0:
                break
            step = min(room, residual)
            notionals[wallet_id] += step
            residual -= step

        return notionals
