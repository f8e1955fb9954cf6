"""
Serialization for epoch outputs.

One JSON file per epoch, consumed by the claim front-end and by the next
epoch as its carry-forward:

    {
      "users": {"<lowercase address>": {
          "amount": "<int>", "proofs": ["0x..."],
          "marketPoints": {"<marketId>": "<int>"}     (points programs only)
      }},
      "metadata": {
        "epoch": 3,
        "merkleRoot": "0x..." | null,
        "startTimestamp": ..., "endTimestamp": ...,
        "startBlockNumber": ..., "endBlockNumber": ...,
        "totalAmount": "<int>",
        "totalUsers": 123,
        "marketTotalPointsForEpoch": {"<marketId>": "<int>"}
      }
    }

Usage:
    output = build_epoch_output(epoch_config, final_amounts, tree, market_totals, user_to_market_to_points)
    save_epoch_output(output, "finalized/42161/mineral/...-output.json")
    previous = load_previous_epoch_points("finalized/.../epoch-2-output.json")
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import numpy as np

from .aggregator import PreviousEpochPoints
from .config import EpochConfig
from .errors import FinalizedEpochError
from .merkle import MerkleRootAndProofs
from .state import ONE_ETH_WEI


def build_epoch_output(
    epoch_config: EpochConfig,
    user_to_amount: Mapping[str, int],
    tree: MerkleRootAndProofs,
    market_totals: Mapping[int, int] | None = None,
    user_to_market_to_points: Mapping[str, Mapping[int, int]] | None = None,
) -> dict:
    """
    Assemble the output document for one epoch.

    merkleRoot stays null until the epoch's time has elapsed: a partial
    epoch's root must never be published on-chain. Per-user market splits are
    written next to each claim so the next epoch can carry them forward.
    """
    users = {}
    for account, entry in sorted(tree.account_to_proofs.items()):
        users[account] = {"amount": entry.amount, "proofs": entry.proofs}
        if user_to_market_to_points is not None:
            users[account]["marketPoints"] = {
                str(m): str(p) for m, p in sorted(user_to_market_to_points.get(account, {}).items())
            }
    return {
        "users": users,
        "metadata": {
            "epoch": epoch_config.epoch,
            "merkleRoot": tree.merkle_root if epoch_config.is_time_elapsed else None,
            "startTimestamp": epoch_config.start_timestamp,
            "endTimestamp": epoch_config.end_timestamp,
            "startBlockNumber": epoch_config.start_block_number,
            "endBlockNumber": epoch_config.end_block_number,
            "totalAmount": str(sum(int(a) for a in user_to_amount.values())),
            "totalUsers": len(users),
            "marketTotalPointsForEpoch": {
                str(m): str(p) for m, p in sorted((market_totals or {}).items())
            },
        },
    }


def load_epoch_output(path: str | Path) -> dict:
    with open(path) as f:
        return json.load(f)


def save_epoch_output(output: dict, path: str | Path, force: bool = False) -> None:
    """
    Write an epoch output file.

    Refuses to overwrite a file whose stored merkleRoot is already set, since
    that root may be live on-chain. Pass force=True to override.

    Raises:
        FinalizedEpochError: target exists with a non-null merkleRoot
    """
    path = Path(path)
    if path.exists() and not force:
        existing = load_epoch_output(path)
        if existing.get("metadata", {}).get("merkleRoot") is not None:
            raise FinalizedEpochError(
                f"{path} already has merkleRoot {existing['metadata']['merkleRoot']}; refusing to overwrite"
            )
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(output, f, indent=2)


def load_previous_epoch_points(path: str | Path | None) -> PreviousEpochPoints:
    """
    Carry-forward totals from a prior epoch output.

    Per-user amounts come from users.*.amount, per-user market splits from
    users.*.marketPoints, per-market totals from
    metadata.marketTotalPointsForEpoch. A missing path means a fresh program.
    """
    if path is None or not Path(path).exists():
        return PreviousEpochPoints()
    output = load_epoch_output(path)
    users = output.get("users", {})
    return PreviousEpochPoints(
        user_to_points={a.lower(): int(u["amount"]) for a, u in users.items()},
        user_to_market_to_points={
            a.lower(): {int(m): int(p) for m, p in u["marketPoints"].items()}
            for a, u in users.items()
            if "marketPoints" in u
        },
        market_to_points={
            int(m): int(p) for m, p in output.get("metadata", {}).get("marketTotalPointsForEpoch", {}).items()
        },
    )


# ============================================================================
# DIAGNOSTICS
# ============================================================================


def summarize_distribution(user_to_amount: Mapping[str, int]) -> dict:
    """
    Display statistics for a distribution (whole-token units).

    Float precision is fine here: nothing computed below reaches the tree.
    """
    if not user_to_amount:
        return {"users": 0, "total": 0.0, "mean": 0.0, "median": 0.0, "p90": 0.0, "p99": 0.0, "max_share": 0.0}

    amounts = np.array([int(a) / ONE_ETH_WEI for a in user_to_amount.values()], dtype=float)
    total = float(np.sum(amounts))
    return {
        "users": int(amounts.size),
        "total": total,
        "mean": float(np.mean(amounts)),
        "median": float(np.median(amounts)),
        "p90": float(np.percentile(amounts, 90)),
        "p99": float(np.percentile(amounts, 99)),
        "max_share": float(np.max(amounts) / total) if total > 0 else 0.0,
    }
