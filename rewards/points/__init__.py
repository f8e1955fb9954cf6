"""
Points engine: liquidity-mining points and Merkle distributions.

Replays balance-changing events for every (account, sub-account, market)
position, integrates time-weighted reward points under an interest policy,
hands pool points down to pool holders, and commits the per-claimant totals
to a sorted-pair keccak Merkle tree.

Configuration:
- Epoch windows and market weights from config/<networkId>/<program>-season-<n>.json
- BLACKLIST_ADDRESSES from environment (.env): comma-separated addresses
- Proxy remapping from config/<networkId>/external-remapping.json

Core workflow:
    >>> from points import (
    ...     InterestOperation, ReductionContext,
    ...     process_events_until_end_timestamp,
    ...     calculate_virtual_liquidity_points, calculate_final_points,
    ...     calculate_merkle_root_and_proofs,
    ... )
    >>>
    >>> balances = process_events_until_end_timestamp(
    ...     {}, events, end_indexes, {0: Decimal(1)}, end_ts, InterestOperation.NOTHING
    ... )
    >>> equity = calculate_virtual_liquidity_points(pools, start_ts, end_ts)
    >>> final = calculate_final_points(balances, [0], equity, ReductionContext())
    >>> tree = calculate_merkle_root_and_proofs(final.user_to_points)
    >>> print(tree.merkle_root)

One-call pipeline:
    >>> from points.epoch import EpochInputs, calculate_epoch
    >>> result = calculate_epoch(epoch_config, EpochInputs(...), context)
    >>> output = result.to_output()
"""

from .accumulators import (
    BalancePoints,
    VirtualLiquidityPoints,
    advance_balance_points,
    advance_virtual_liquidity_points,
    initialize_balance_points,
)
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
from .config import (
    EpochConfig,
    ProgramConfig,
    RemappingConfig,
    load_blacklist,
    load_program_config,
    load_remapping,
    plan_next_epoch,
    resolve_config_path,
)
from .epoch import (
    EpochInputs,
    EpochResult,
    calculate_epoch,
)
from .errors import (
    EffectiveUserMismatchError,
    EmptyDistributionError,
    FinalizedEpochError,
    InvalidAddressError,
    InvalidInterestOperationError,
    InvalidRewardWeightsError,
    OutOfOrderEventError,
    PointsEngineError,
)
from .merkle import (
    MerkleRootAndLeaves,
    MerkleRootAndProofs,
    calculate_merkle_root_and_leaves,
    calculate_merkle_root_and_proofs,
    hash_leaf,
    verify_merkle_proof,
)
from .processor import (
    calculate_total_points_per_market,
    process_events_until_end_timestamp,
    process_events_with_daily_points_until_end_timestamp,
)
from .serialize import (
    build_epoch_output,
    load_previous_epoch_points,
    save_epoch_output,
    summarize_distribution,
)
from .state import (
    BalanceChangeEvent,
    BalanceChangeType,
    InterestIndex,
    InterestOperation,
    PositionKey,
    VirtualLiquiditySnapshot,
)

__all__ = [
    # State
    "BalanceChangeEvent",
    "BalanceChangeType",
    "InterestIndex",
    "InterestOperation",
    "PositionKey",
    "VirtualLiquiditySnapshot",
    # Accumulators
    "BalancePoints",
    "VirtualLiquidityPoints",
    "initialize_balance_points",
    "advance_balance_points",
    "advance_virtual_liquidity_points",
    # Processor
    "process_events_until_end_timestamp",
    "process_events_with_daily_points_until_end_timestamp",
    "calculate_total_points_per_market",
    # Aggregator
    "ReductionContext",
    "PoolLiquidity",
    "PoolEquity",
    "PreviousEpochPoints",
    "FinalPoints",
    "FinalRewards",
    "calculate_virtual_liquidity_points",
    "calculate_final_points",
    "calculate_final_equity_rewards",
    "validate_reward_weights",
    # Merkle
    "MerkleRootAndProofs",
    "MerkleRootAndLeaves",
    "calculate_merkle_root_and_proofs",
    "calculate_merkle_root_and_leaves",
    "verify_merkle_proof",
    "hash_leaf",
    # Config
    "EpochConfig",
    "ProgramConfig",
    "RemappingConfig",
    "load_program_config",
    "load_blacklist",
    "load_remapping",
    "plan_next_epoch",
    "resolve_config_path",
    # Epoch pipeline
    "EpochInputs",
    "EpochResult",
    "calculate_epoch",
    # Serialization
    "build_epoch_output",
    "save_epoch_output",
    "load_previous_epoch_points",
    "summarize_distribution",
    # Errors
    "PointsEngineError",
    "OutOfOrderEventError",
    "EffectiveUserMismatchError",
    "InvalidInterestOperationError",
    "InvalidAddressError",
    "InvalidRewardWeightsError",
    "EmptyDistributionError",
    "FinalizedEpochError",
]
