"""
Points aggregation: balance map + pool equity -> per-claimant integer totals.

Pipeline position: processor.py (balance map) -> THIS -> merkle.py

Three steps, all pure:
1. calculate_virtual_liquidity_points: integrate each pool holder's balance
   over the epoch into equity points
2. calculate_final_points: floor every eligible line to 18-decimal fixed
   point, credit it to the claimant, then hand each pool's own points down
   to its holders pro-rata to equity
3. (budget programs) calculate_final_equity_rewards: split a per-market
   token budget pro-rata to points instead of paying points directly

Blacklist and proxy remapping travel in an explicit ReductionContext.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, localcontext

from .accumulators import (
    BalancePoints,
    VirtualLiquidityPoints,
    advance_virtual_liquidity_points,
)
from .errors import InvalidRewardWeightsError
from .state import (
    POINTS_CONTEXT,
    ZERO,
    PositionKey,
    VirtualLiquiditySnapshot,
    floor_to_int,
    resolve_virtual_liquidity_snapshots,
    to_decimal,
    to_fixed_point,
)

# ============================================================================
# REDUCTION CONTEXT
# ============================================================================


@dataclass(frozen=True)
class ReductionContext:
    """
    Who is excluded and who claims on whose behalf.

    blacklist: addresses whose points are dropped (their share of a pool is
        not redistributed to the other holders)
    remap: proxy address -> owner address that claims its points
    """

    blacklist: frozenset[str] = frozenset()
    remap: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "blacklist", frozenset(a.lower() for a in self.blacklist))
        object.__setattr__(self, "remap", {k.lower(): v.lower() for k, v in self.remap.items()})

    def is_blacklisted(self, address: str) -> bool:
        return address.lower() in self.blacklist

    def claimant(self, address: str) -> str:
        address = address.lower()
        return self.remap.get(address, address)


# ============================================================================
# VIRTUAL LIQUIDITY (POOL EQUITY)
# ============================================================================


@dataclass
class PoolLiquidity:
    """
    Input for one pool.

    snapshots: holder -> balance snapshots observed during the epoch
    balances: holder -> position carried in from the epoch start
    """

    snapshots: dict[str, list[VirtualLiquiditySnapshot]] = field(default_factory=dict)
    balances: dict[str, VirtualLiquidityPoints] = field(default_factory=dict)


@dataclass(frozen=True)
class PoolEquity:
    """Equity accumulated by one pool's holders over an epoch."""

    holders: dict[str, VirtualLiquidityPoints]
    total_equity_points: Decimal

    def share_of(self, holder: str) -> Decimal:
        state = self.holders.get(holder)
        return state.equity_points if state is not None else ZERO


def calculate_virtual_liquidity_points(
    pool_map: Mapping[str, PoolLiquidity],
    start_timestamp: int,
    end_timestamp: int,
) -> dict[str, PoolEquity]:
    """
    Integrate every pool holder's balance from start_timestamp to end_timestamp.

    Blacklisted holders are NOT removed here. Dropping them would inflate the
    equity share of everybody else; exclusion happens in calculate_final_points.

    Args:
        pool_map: pool address -> PoolLiquidity
        start_timestamp: Opening watermark for holders with no carried position
        end_timestamp: Every holder is closed out here with their last balance

    Returns:
        pool address -> PoolEquity
    """
    result: dict[str, PoolEquity] = {}

    for pool in sorted(pool_map):
        liquidity = pool_map[pool]
        holders: dict[str, VirtualLiquidityPoints] = dict(liquidity.balances)

        for holder in sorted(liquidity.snapshots):
            state = holders.get(holder) or VirtualLiquidityPoints(
                effective_user=holder,
                last_updated=start_timestamp,
                balance_par=ZERO,
            )
            resolved = resolve_virtual_liquidity_snapshots(
                liquidity.snapshots[holder],
                initial_balance=state.balance_par,
            )
            for snapshot in resolved:
                state, _ = advance_virtual_liquidity_points(state, snapshot)
            holders[holder] = state

        # Close out at epoch end, holding the last observed balance
        for holder, state in holders.items():
            closing = VirtualLiquiditySnapshot(
                effective_user=state.effective_user,
                timestamp=end_timestamp,
                balance_par=state.balance_par,
                id="-1",
            )
            holders[holder], _ = advance_virtual_liquidity_points(state, closing)

        with localcontext(POINTS_CONTEXT):
            total = sum((s.equity_points for s in holders.values()), ZERO)
        result[pool] = PoolEquity(holders=holders, total_equity_points=total)

    return result


# ============================================================================
# FINAL POINTS
# ============================================================================


@dataclass
class PreviousEpochPoints:
    """Totals carried forward from a prior epoch's output (18-decimal integers)."""

    user_to_points: dict[str, int] = field(default_factory=dict)
    user_to_market_to_points: dict[str, dict[int, int]] = field(default_factory=dict)
    market_to_points: dict[int, int] = field(default_factory=dict)


@dataclass
class FinalPoints:
    """Integer (18-decimal) points per claimant, ready for the Merkle tree."""

    user_to_points: dict[str, int]
    user_to_market_to_points: dict[str, dict[int, int]]
    market_to_points: dict[int, int]

    @property
    def total_user_points(self) -> int:
        return sum(self.user_to_points.values())


def _devolution_order(pool_equity: Mapping[str, PoolEquity]) -> list[str]:
    """
    Pools in hand-down order: a pool comes after every pool it holds equity in.

    Handing a pool down can credit another pool, so the credited pool must be
    devolved later or its points would survive in the final map.
    """
    holds_in = {pool: {p for p in pool_equity if p != pool and pool in pool_equity[p].holders} for pool in pool_equity}
    order: list[str] = []
    remaining = set(pool_equity)
    while remaining:
        ready = sorted(pool for pool in remaining if not holds_in[pool] & remaining)
        if not ready:
            raise ValueError(f"Pools hold equity in each other: {sorted(remaining)}")
        order.extend(ready)
        remaining.difference_update(ready)
    return order


def _credit(
    user_to_points: dict[str, int],
    user_to_market_to_points: dict[str, dict[int, int]],
    account: str,
    market_id: int,
    points: int,
) -> None:
    user_to_points[account] = user_to_points.get(account, 0) + points
    markets = user_to_market_to_points.setdefault(account, {})
    markets[market_id] = markets.get(market_id, 0) + points


def calculate_final_points(
    balance_map: Mapping[PositionKey, BalancePoints],
    valid_markets: Iterable[int],
    pool_equity: Mapping[str, PoolEquity],
    context: ReductionContext,
    previous: PreviousEpochPoints | None = None,
) -> FinalPoints:
    """
    Reduce the balance map to integer points per claimant.

    Per-market conservation: for every market, market_to_points equals the
    sum of user_to_market_to_points over all remaining claimants.
    Only claimants with a positive total remain; under NEGATE a borrower can
    end below zero and is dropped together with its market shares.

    Args:
        balance_map: Output of the event processor
        valid_markets: Markets eligible for points this epoch
        pool_equity: Output of calculate_virtual_liquidity_points
        context: Blacklist and proxy remapping
        previous: Optional carry-forward totals

    Returns:
        FinalPoints with no pool address among the claimants

    Raises:
        ValueError: two pools hold equity in each other
    """
    valid = {int(m) for m in valid_markets}
    previous = previous or PreviousEpochPoints()

    user_to_points = dict(previous.user_to_points)
    user_to_market_to_points = {u: dict(m) for u, m in previous.user_to_market_to_points.items()}
    market_to_points = dict(previous.market_to_points)

    # Direct balances
    for key in sorted(balance_map):
        state = balance_map[key]
        if key.market_id not in valid:
            continue
        if context.is_blacklisted(key.account) or context.is_blacklisted(state.effective_user):
            continue

        owner = state.effective_user.lower()
        # Pools keep their own address so their points can be handed down below
        account = owner if owner in pool_equity else context.claimant(owner)
        points = to_fixed_point(state.reward_points)

        _credit(user_to_points, user_to_market_to_points, account, key.market_id, points)
        market_to_points[key.market_id] = market_to_points.get(key.market_id, 0) + points

    # Hand each pool's points down to its holders
    for pool in _devolution_order(pool_equity):
        equity = pool_equity[pool]
        user_to_points.pop(pool, None)
        pool_market_points = user_to_market_to_points.pop(pool, {})
        distributed = {market_id: 0 for market_id in pool_market_points}

        if equity.total_equity_points > ZERO:
            for holder in sorted(equity.holders):
                if holder == pool or context.is_blacklisted(holder):
                    continue
                holder_equity = equity.share_of(holder)
                if holder_equity <= ZERO:
                    continue
                claimant = holder if holder in pool_equity else context.claimant(holder)
                for market_id, pool_points in pool_market_points.items():
                    with localcontext(POINTS_CONTEXT):
                        share = floor_to_int(Decimal(pool_points) * holder_equity / equity.total_equity_points)
                    _credit(user_to_points, user_to_market_to_points, claimant, market_id, share)
                    distributed[market_id] += share

        # Blacklisted holders' shares and floor dust leave the market totals
        for market_id, pool_points in pool_market_points.items():
            market_to_points[market_id] = market_to_points.get(market_id, 0) - (pool_points - distributed[market_id])

    # Leaves must be positive: net-negative claimants (NEGATE policy) are dropped with their market shares
    for user in [u for u, p in user_to_points.items() if p <= 0]:
        del user_to_points[user]
        for market_id, points in user_to_market_to_points.pop(user, {}).items():
            market_to_points[market_id] = market_to_points.get(market_id, 0) - points

    return FinalPoints(
        user_to_points=user_to_points,
        user_to_market_to_points=user_to_market_to_points,
        market_to_points=market_to_points,
    )


# ============================================================================
# BUDGET-BASED REWARDS
# ============================================================================


@dataclass
class FinalRewards:
    """Token amounts per claimant after the minimum-amount filter."""

    user_to_amount: dict[str, int]
    filtered_amount: int = 0

    @property
    def total_amount(self) -> int:
        return sum(self.user_to_amount.values())


def calculate_final_equity_rewards(
    balance_map: Mapping[PositionKey, BalancePoints],
    pool_equity: Mapping[str, PoolEquity],
    total_points_per_market: Mapping[int, Decimal],
    reward_by_market: Mapping[int, int],
    context: ReductionContext,
    minimum_amount: int = 0,
) -> FinalRewards:
    """
    Split each market's token budget pro-rata to the points earned in it.

    reward = floor(budget[market] * line_points / total_points[market])

    Pools are handed down to their holders pro-rata to equity, then claimants
    below minimum_amount are dropped. The dropped total is reported in
    FinalRewards.filtered_amount and is never redistributed.
    """
    rewards: dict[str, int] = {}

    for key in sorted(balance_map):
        state = balance_map[key]
        budget = reward_by_market.get(key.market_id, 0)
        total_points = total_points_per_market.get(key.market_id, ZERO)
        if not budget or total_points <= ZERO:
            continue
        if context.is_blacklisted(key.account) or context.is_blacklisted(state.effective_user):
            continue

        with localcontext(POINTS_CONTEXT):
            amount = floor_to_int(Decimal(budget) * state.reward_points / total_points)
        owner = state.effective_user.lower()
        account = owner if owner in pool_equity else context.claimant(owner)
        rewards[account] = rewards.get(account, 0) + amount

    for pool in _devolution_order(pool_equity):
        equity = pool_equity[pool]
        pool_reward = rewards.pop(pool, 0)
        if pool_reward <= 0 or equity.total_equity_points <= ZERO:
            continue
        for holder in sorted(equity.holders):
            if holder == pool or context.is_blacklisted(holder):
                continue
            with localcontext(POINTS_CONTEXT):
                amount = floor_to_int(Decimal(pool_reward) * equity.share_of(holder) / equity.total_equity_points)
            claimant = holder if holder in pool_equity else context.claimant(holder)
            rewards[claimant] = rewards.get(claimant, 0) + amount

    kept: dict[str, int] = {}
    filtered = 0
    for account, amount in rewards.items():
        if amount >= minimum_amount and amount > 0:
            kept[account] = amount
        elif amount > 0:
            filtered += amount

    return FinalRewards(user_to_amount=kept, filtered_amount=filtered)


def validate_reward_weights(reward_weights: Mapping[int, object], total_amount) -> None:
    """Raise InvalidRewardWeightsError unless the per-market weights add up to total_amount."""
    with localcontext(POINTS_CONTEXT):
        weight_sum = sum((to_decimal(w) for w in reward_weights.values()), ZERO)
        expected = to_decimal(total_amount)
    if weight_sum != expected:
        raise InvalidRewardWeightsError(f"Reward weights sum to {weight_sum}, expected {expected}")
