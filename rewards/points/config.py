"""
Epoch, blacklist and remapping configuration.

Config file layout (config/<networkId>/<program>-season-<n>.json):
    {
      "epochs": {
        "0": {
          "epoch": 0,
          "startTimestamp": ..., "endTimestamp": ...,
          "startBlockNumber": ..., "endBlockNumber": ...,
          "isTimeElapsed": true,
          "isMerkleRootGenerated": false,
          "isMerkleRootWrittenOnChain": false,
          "rewardWeights": {"<marketId>": "<points per second, or tokens when amount is set>"},
          "amount": "<optional token budget, whole tokens>",
          "minimumAmount": "<optional payout floor, 18 decimals>",
          "interestOperation": "ADD_POSITIVE"
        }
      },
      "metadata": {"networkId": 42161}
    }

Environment:
    BLACKLIST_ADDRESSES: comma-separated addresses excluded from rewards
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

from eth_utils import is_address

from .errors import InvalidAddressError
from .state import ONE_WEEK_SECONDS, InterestOperation, to_decimal

# ============================================================================
# CONFIG PATH RESOLUTION
# ============================================================================

CONFIG_ROOTS = [
    Path("config"),
    Path(__file__).parent.parent / "config",
]


def _network_dirs(root: Path, network_id: int | None) -> list[Path]:
    if network_id is not None:
        return [root / str(network_id)]
    if not root.is_dir():
        return []
    return sorted(d for d in root.iterdir() if d.is_dir() and d.name.isdigit())


def resolve_config_path(config_path: str, network_id: int | None = None) -> Path:
    """
    Find a program, remapping or blacklist file in the per-network config tree.

    Paths that exist as given are used directly. A bare file name is looked
    up under config/<network_id>/ (every network directory when network_id
    is None), first relative to the working directory and then next to the
    package.

    Raises:
        FileNotFoundError: no candidate exists; the message lists every directory searched
    """
    p = Path(config_path)
    if p.is_absolute() or p.exists():
        return p

    searched = []
    for root in CONFIG_ROOTS:
        for directory in [root, *_network_dirs(root, network_id)]:
            searched.append(str(directory))
            candidate = directory / p.name
            if candidate.exists():
                return candidate

    raise FileNotFoundError(f"Config file '{config_path}' not found. Searched: {searched}")


def config_file_path(network_id: int, program: str, season: int, extra: str = "") -> str:
    return f"config/{network_id}/{program}-season-{season}{extra}.json"


def finalized_file_path(network_id: int, program: str, season: int, epoch: int) -> str:
    return f"finalized/{network_id}/{program}/{program}-season-{season}-epoch-{epoch}-output.json"


def remapping_file_path(network_id: int) -> str:
    return f"config/{network_id}/external-remapping.json"


# ============================================================================
# EPOCH CONFIG
# ============================================================================


@dataclass
class EpochConfig:
    """One epoch of a rewards program."""

    epoch: int
    start_timestamp: int
    end_timestamp: int
    start_block_number: int
    end_block_number: int
    is_time_elapsed: bool = False
    is_merkle_root_generated: bool = False
    is_merkle_root_written_on_chain: bool = False
    reward_weights: dict[int, Decimal] = field(default_factory=dict)
    amount: Decimal | None = None
    minimum_amount: int = 0
    interest_operation: InterestOperation = InterestOperation.NOTHING

    @property
    def is_budget_based(self) -> bool:
        """
        True when a fixed token budget is split instead of paying points.

        reward_weights then hold each market's share of the budget in whole
        tokens, and every market accrues points at weight one.
        """
        return self.amount is not None

    @property
    def valid_markets(self) -> list[int]:
        return sorted(self.reward_weights)

    @classmethod
    def from_dict(cls, d: dict) -> EpochConfig:
        amount = d.get("amount")
        return cls(
            epoch=int(d["epoch"]),
            start_timestamp=int(d["startTimestamp"]),
            end_timestamp=int(d["endTimestamp"]),
            start_block_number=int(d["startBlockNumber"]),
            end_block_number=int(d["endBlockNumber"]),
            is_time_elapsed=bool(d.get("isTimeElapsed", False)),
            is_merkle_root_generated=bool(d.get("isMerkleRootGenerated", False)),
            is_merkle_root_written_on_chain=bool(d.get("isMerkleRootWrittenOnChain", False)),
            reward_weights={int(m): to_decimal(w) for m, w in d.get("rewardWeights", {}).items()},
            amount=to_decimal(amount) if amount is not None else None,
            minimum_amount=int(d.get("minimumAmount", 0)),
            interest_operation=InterestOperation(d.get("interestOperation", InterestOperation.NOTHING.value)),
        )

    def to_dict(self) -> dict:
        d = {
            "epoch": self.epoch,
            "startTimestamp": self.start_timestamp,
            "endTimestamp": self.end_timestamp,
            "startBlockNumber": self.start_block_number,
            "endBlockNumber": self.end_block_number,
            "isTimeElapsed": self.is_time_elapsed,
            "isMerkleRootGenerated": self.is_merkle_root_generated,
            "isMerkleRootWrittenOnChain": self.is_merkle_root_written_on_chain,
            "rewardWeights": {str(m): str(w) for m, w in sorted(self.reward_weights.items())},
            "minimumAmount": str(self.minimum_amount),
            "interestOperation": self.interest_operation.value,
        }
        if self.amount is not None:
            d["amount"] = str(self.amount)
        return d


@dataclass
class ProgramConfig:
    """A season config file: every epoch plus the network it runs on."""

    network_id: int
    epochs: dict[int, EpochConfig] = field(default_factory=dict)

    @property
    def max_epoch(self) -> int:
        return max(self.epochs) if self.epochs else -1

    def get_epoch(self, epoch: int) -> EpochConfig:
        if epoch not in self.epochs:
            raise KeyError(f"Epoch {epoch} not in config (known: {sorted(self.epochs)})")
        return self.epochs[epoch]


def load_program_config(path: str | Path) -> ProgramConfig:
    with open(path) as f:
        raw = json.load(f)
    return ProgramConfig(
        network_id=int(raw.get("metadata", {}).get("networkId", 0)),
        epochs={int(k): EpochConfig.from_dict(v) for k, v in raw.get("epochs", {}).items()},
    )


def save_program_config(config: ProgramConfig, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "epochs": {str(k): v.to_dict() for k, v in sorted(config.epochs.items())},
        "metadata": {"networkId": config.network_id},
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


# ============================================================================
# NEXT EPOCH PLANNING
# ============================================================================


@dataclass(frozen=True)
class NextEpochPlan:
    """Window of the epoch that follows (or replaces) an existing one."""

    is_ready_for_next: bool
    start_block_number: int
    start_timestamp: int
    end_timestamp: int
    actual_end_block_number: int
    actual_end_timestamp: int
    is_time_elapsed: bool


def plan_next_epoch(
    old_epoch: EpochConfig,
    latest_block_number: int,
    latest_block_timestamp: int,
    next_block_timestamp: int | None = None,
) -> NextEpochPlan:
    """
    Decide the next epoch window from the previous epoch and the chain head.

    If the old epoch elapsed and its root was generated, the new epoch starts
    where it ended; otherwise the old window is recomputed. Epochs are always
    one week long. The window has elapsed when the latest block sits exactly
    on the end timestamp or the following block lies past it.

    Args:
        old_epoch: Most recent configured epoch
        latest_block_number: Last block at or before the new end timestamp
        latest_block_timestamp: Its timestamp
        next_block_timestamp: Timestamp of the block after it, if it exists yet
    """
    is_ready = old_epoch.is_time_elapsed and old_epoch.is_merkle_root_generated
    start_block = old_epoch.end_block_number if is_ready else old_epoch.start_block_number
    start_timestamp = old_epoch.end_timestamp if is_ready else old_epoch.start_timestamp
    end_timestamp = start_timestamp + ONE_WEEK_SECONDS

    is_time_elapsed = latest_block_timestamp == end_timestamp or (
        next_block_timestamp is not None and next_block_timestamp > end_timestamp
    )

    return NextEpochPlan(
        is_ready_for_next=is_ready,
        start_block_number=start_block,
        start_timestamp=start_timestamp,
        end_timestamp=end_timestamp,
        actual_end_block_number=latest_block_number,
        actual_end_timestamp=latest_block_timestamp,
        is_time_elapsed=is_time_elapsed,
    )


# ============================================================================
# BLACKLIST & REMAPPING
# ============================================================================


def _validated(address: str, source: str) -> str:
    address = address.strip()
    if not is_address(address):
        raise InvalidAddressError(f"Invalid address in {source}: {address!r}")
    return address.lower()


def load_blacklist(extra: list[str] | None = None, env_var: str = "BLACKLIST_ADDRESSES") -> frozenset[str]:
    """
    Blacklisted addresses from the environment, merged with any extra list.

    Empty entries are ignored; anything else must be a valid hex address.
    """
    raw = os.environ.get(env_var, "")
    addresses = {_validated(a, env_var) for a in raw.split(",") if a.strip()}
    for a in extra or []:
        addresses.add(_validated(a, "blacklist file"))
    return frozenset(addresses)


@dataclass
class RemappingConfig:
    """Proxy contracts whose points are claimed by their owner."""

    proxy_users: dict[str, str] = field(default_factory=dict)
    last_updated_at_block_number: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> RemappingConfig:
        return cls(
            proxy_users={
                _validated(proxy, "remapping"): _validated(owner, "remapping")
                for proxy, owner in d.get("proxyUsers", {}).items()
            },
            last_updated_at_block_number=int(d.get("lastUpdatedAtBlockNumber", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "proxyUsers": dict(sorted(self.proxy_users.items())),
            "lastUpdatedAtBlockNumber": self.last_updated_at_block_number,
        }

    def is_stale(self, end_block_number: int) -> bool:
        """True when proxies created after the last refresh could be missing."""
        return self.last_updated_at_block_number < end_block_number


def load_remapping(path: str | Path | None) -> RemappingConfig:
    """Load the remapping file. A missing path means no proxies."""
    if path is None or not Path(path).exists():
        return RemappingConfig()
    with open(path) as f:
        return RemappingConfig.from_dict(json.load(f))
