"""
Epoch pipeline: one call from parsed inputs to a publishable distribution.

    balance map + events --processor--> balance map at epoch end
    pool snapshots --------aggregator-> pool equity
    both + context --------aggregator-> integer amounts per claimant
    amounts ---------------merkle-----> root + proofs
    everything ------------serialize--> output document

Points programs pay the 18-decimal points directly. Budget programs (epoch
config has an `amount`) split that budget across markets by reward weight
and then across claimants pro-rata to points.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from .accumulators import BalancePoints
from .aggregator import (
    FinalPoints,
    FinalRewards,
    PoolEquity,
    PoolLiquidity,
    PreviousEpochPoints,
    ReductionContext,
    calculate_final_equity_rewards,
    calculate_final_points,
    calculate_virtual_liquidity_points,
    validate_reward_weights,
)
from .config import EpochConfig
from .merkle import MerkleRootAndProofs, calculate_merkle_root_and_proofs
from .processor import calculate_total_points_per_market, process_events_until_end_timestamp
from .serialize import build_epoch_output, summarize_distribution
from .state import ONE, BalanceChangeEvent, InterestIndex, PositionKey, to_fixed_point


@dataclass
class EpochInputs:
    """Everything the engine needs for one epoch, already parsed."""

    balance_map: dict[PositionKey, BalancePoints] = field(default_factory=dict)
    event_map: dict[PositionKey, list[BalanceChangeEvent]] = field(default_factory=dict)
    end_index_by_market: dict[int, InterestIndex] = field(default_factory=dict)
    pool_map: dict[str, PoolLiquidity] = field(default_factory=dict)


@dataclass
class EpochResult:
    """Outputs of one epoch run."""

    epoch_config: EpochConfig
    balance_map: dict[PositionKey, BalancePoints]
    pool_equity: dict[str, PoolEquity]
    user_to_amount: dict[str, int]
    market_totals: dict[int, int]
    tree: MerkleRootAndProofs
    final_points: FinalPoints | None = None
    final_rewards: FinalRewards | None = None

    def to_output(self) -> dict:
        market_splits = self.final_points.user_to_market_to_points if self.final_points is not None else None
        return build_epoch_output(
            self.epoch_config, self.user_to_amount, self.tree, self.market_totals, market_splits
        )

    def summary(self) -> str:
        """Human-readable summary of the epoch distribution."""
        stats = summarize_distribution(self.user_to_amount)
        lines = [
            "=" * 60,
            f"EPOCH {self.epoch_config.epoch} DISTRIBUTION",
            "=" * 60,
            f"Window:        {self.epoch_config.start_timestamp} -> {self.epoch_config.end_timestamp}",
            f"Merkle root:   {self.tree.merkle_root}"
            + ("" if self.epoch_config.is_time_elapsed else " (not published, epoch still running)"),
            f"Claimants:     {stats['users']}",
            f"Total:         {stats['total']:,.4f}",
            f"Mean / median: {stats['mean']:,.4f} / {stats['median']:,.4f}",
            f"p90 / p99:     {stats['p90']:,.4f} / {stats['p99']:,.4f}",
            f"Largest share: {stats['max_share']:.2%}",
        ]
        if self.final_rewards is not None:
            lines.append(f"Filtered (below minimum): {self.final_rewards.filtered_amount}")
        lines.append("=" * 60)
        return "\n".join(lines)


def points_per_second_for(epoch_config: EpochConfig) -> dict[int, Decimal]:
    """Budget programs accrue every weighted market at weight one; points programs use the weights directly."""
    if epoch_config.is_budget_based:
        return {market_id: ONE for market_id in epoch_config.reward_weights}
    return dict(epoch_config.reward_weights)


def calculate_epoch(
    epoch_config: EpochConfig,
    inputs: EpochInputs,
    context: ReductionContext,
    previous: PreviousEpochPoints | None = None,
    verbose: bool = True,
) -> EpochResult:
    """
    Run the full pipeline for one epoch.

    Args:
        epoch_config: Window, weights, interest policy, optional budget
        inputs: Parsed balances, events, end indexes and pools
        context: Blacklist and proxy remapping
        previous: Carry-forward totals (points programs only)
        verbose: Print progress

    Returns:
        EpochResult (call .to_output() for the JSON document). An epoch where
        nobody earns yields no users and a null merkle root

    Raises:
        Any fatal PointsEngineError from the processor, unchanged
    """
    if epoch_config.is_budget_based:
        validate_reward_weights(epoch_config.reward_weights, epoch_config.amount)

    if verbose:
        print(f"Epoch {epoch_config.epoch}: {len(inputs.balance_map)} opening balances, "
              f"{sum(len(v) for v in inputs.event_map.values())} events, {len(inputs.pool_map)} pools")

    balance_map = process_events_until_end_timestamp(
        inputs.balance_map,
        inputs.event_map,
        inputs.end_index_by_market,
        points_per_second_for(epoch_config),
        epoch_config.end_timestamp,
        epoch_config.interest_operation,
    )
    if verbose:
        print(f"  Processed events -> {len(balance_map)} open positions")

    pool_equity = calculate_virtual_liquidity_points(
        inputs.pool_map,
        epoch_config.start_timestamp,
        epoch_config.end_timestamp,
    )

    final_points = None
    final_rewards = None
    if epoch_config.is_budget_based:
        total_points_per_market = calculate_total_points_per_market(balance_map)
        reward_by_market = {m: to_fixed_point(w) for m, w in epoch_config.reward_weights.items()}
        final_rewards = calculate_final_equity_rewards(
            balance_map,
            pool_equity,
            total_points_per_market,
            reward_by_market,
            context,
            epoch_config.minimum_amount,
        )
        user_to_amount = final_rewards.user_to_amount
        market_totals = {m: to_fixed_point(p) for m, p in total_points_per_market.items()}
        if verbose:
            print(f"  Budget split across {len(reward_by_market)} markets, "
                  f"{final_rewards.filtered_amount} filtered below minimum")
    else:
        final_points = calculate_final_points(
            balance_map,
            epoch_config.valid_markets,
            pool_equity,
            context,
            previous,
        )
        user_to_amount = final_points.user_to_points
        market_totals = final_points.market_to_points

    if user_to_amount:
        tree = calculate_merkle_root_and_proofs(user_to_amount)
    else:
        # Nobody earned: publish an empty distribution with no root
        tree = MerkleRootAndProofs(merkle_root=None, account_to_proofs={})
    result = EpochResult(
        epoch_config=epoch_config,
        balance_map=balance_map,
        pool_equity=pool_equity,
        user_to_amount=user_to_amount,
        market_totals=market_totals,
        tree=tree,
        final_points=final_points,
        final_rewards=final_rewards,
    )
    if verbose:
        print(result.summary())
    return result
