"""
Epoch calculation script.

Reads one epoch's cached indexer data, runs the points engine, and writes the
output document (amounts, proofs, merkle root) for the claim front-end.

Modes:
    1. Points program:  epoch config has rewardWeights only (points per second)
    2. Budget program:  epoch config also has an amount (token budget)
    3. Dry run:         --dry-run prints the summary without writing anything

Usage:
    python scripts/calculate_epoch.py --config config/42161/mineral-season-0.json --epoch 3 \\
        --data-dir data/42161/epoch-3 --output finalized/42161/mineral/mineral-season-0-epoch-3-output.json
    python scripts/calculate_epoch.py --config mineral-season-0.json --epoch 3 --data-dir data/42161/epoch-3 \\
        --previous finalized/42161/mineral/mineral-season-0-epoch-2-output.json --dry-run
"""

from __future__ import annotations

import argparse
import json
import os
import time
from pathlib import Path

from dotenv import load_dotenv
from ingest.parser import DEFAULT_VESTING_MARKET_ID, parse_account_balances, parse_vesting_positions
from ingest.store import EpochDataStore
from points.aggregator import ReductionContext
from points.config import load_blacklist, load_program_config, load_remapping, resolve_config_path
from points.epoch import EpochInputs, calculate_epoch, points_per_second_for
from points.serialize import load_previous_epoch_points, save_epoch_output
from points.state import ZERO

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"), override=False)


# ============================================================================
# INPUT LOADING
# ============================================================================


def load_epoch_inputs(store: EpochDataStore, epoch_config, vesting_market_id: int | None = None) -> EpochInputs:
    """Parse every cached input file for one epoch."""
    pps = points_per_second_for(epoch_config)
    balance_map = parse_account_balances(
        store.load_records("accounts"),
        epoch_config.start_timestamp,
        pps,
    )
    vesting_positions = store.load_records("vesting_positions")
    if vesting_positions:
        market_id = vesting_market_id if vesting_market_id is not None else DEFAULT_VESTING_MARKET_ID
        parse_vesting_positions(
            balance_map,
            vesting_positions,
            epoch_config.start_timestamp,
            market_id=market_id,
            points_per_second=pps.get(market_id, ZERO),
        )

    return EpochInputs(
        balance_map=balance_map,
        event_map=store.load_event_map(),
        end_index_by_market=store.load_end_interest_indexes(),
        pool_map=store.load_pool_map(epoch_config.start_timestamp),
    )


def load_blacklist_file(path: str | None, network_id: int | None = None) -> list[str]:
    if not path:
        return []
    with open(resolve_config_path(path, network_id)) as f:
        return json.load(f)


# ============================================================================
# MAIN
# ============================================================================


def main():
    parser = argparse.ArgumentParser(description="Calculate an epoch's reward distribution")
    parser.add_argument(
        "--config",
        required=True,
        help="Program config JSON (epochs + metadata). A bare file name is looked up under config/<networkId>/.",
    )
    parser.add_argument(
        "--epoch",
        type=int,
        default=None,
        help="Epoch number (defaults to the latest epoch in the config)",
    )
    parser.add_argument(
        "--data-dir",
        required=True,
        help="Directory holding the epoch's cached indexer JSON files",
    )
    parser.add_argument(
        "--remapping",
        default=None,
        help="Proxy remapping JSON ({proxyUsers, lastUpdatedAtBlockNumber})",
    )
    parser.add_argument(
        "--blacklist",
        default=None,
        help="JSON list of extra blacklisted addresses (merged with BLACKLIST_ADDRESSES)",
    )
    parser.add_argument(
        "--previous",
        default=None,
        help="Previous epoch output to carry points forward from",
    )
    parser.add_argument(
        "--vesting-market-id",
        type=int,
        default=None,
    )
    parser.add_argument(
        "--output",
        default="results/latest-output.json",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an output file even if its merkle root is already set",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
    )
    args = parser.parse_args()

    program = load_program_config(resolve_config_path(args.config))
    epoch_number = args.epoch if args.epoch is not None else program.max_epoch
    epoch_config = program.get_epoch(epoch_number)

    remapping = load_remapping(resolve_config_path(args.remapping, program.network_id) if args.remapping else None)
    if remapping.is_stale(epoch_config.end_block_number):
        print(
            f"WARNING: remapping last updated at block {remapping.last_updated_at_block_number}, "
            f"epoch ends at {epoch_config.end_block_number}"
        )
    context = ReductionContext(
        blacklist=load_blacklist(load_blacklist_file(args.blacklist, program.network_id)),
        remap=remapping.proxy_users,
    )

    print(f"Network: {program.network_id}")
    print(f"Epoch: {epoch_number} ({epoch_config.start_block_number} -> {epoch_config.end_block_number})")
    print(f"Interest operation: {epoch_config.interest_operation.value}")
    print(f"Blacklisted: {len(context.blacklist)}, remapped proxies: {len(context.remap)}")
    print()

    t0 = time.time()
    store = EpochDataStore(args.data_dir)
    inputs = load_epoch_inputs(store, epoch_config, args.vesting_market_id)
    previous = load_previous_epoch_points(args.previous) if not epoch_config.is_budget_based else None

    result = calculate_epoch(epoch_config, inputs, context, previous=previous, verbose=True)

    elapsed = time.time() - t0
    print(f"\nComputation time: {elapsed:.1f}s")

    if args.dry_run:
        print("Dry run, nothing written.")
        return

    print(f"Saving to: {args.output}")
    save_epoch_output(result.to_output(), Path(args.output), force=args.force)
    print("Done.")


if __name__ == "__main__":
    main()
