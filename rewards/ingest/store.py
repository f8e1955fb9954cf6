"""
Local cache of indexer data for one epoch.

Retrieval from the chain indexer happens elsewhere; this module only reads
and writes the JSON files it leaves behind, laid out as:

    {data_dir}/accounts.json
    {data_dir}/vesting_positions.json
    {data_dir}/deposits.json
    {data_dir}/withdrawals.json
    {data_dir}/transfers.json
    {data_dir}/trades.json
    {data_dir}/liquidations.json
    {data_dir}/vesting_position_transfers.json
    {data_dir}/end_interest_indexes.json
    {data_dir}/pools/{pool}/positions.json
    {data_dir}/pools/{pool}/snapshots.json

Missing files read as empty lists so partial fixtures and quiet epochs work.

Usage:
    from ingest.store import EpochDataStore

    store = EpochDataStore("data/42161/epoch-3")
    events = store.load_event_map()
    pools = store.load_pool_map(start_timestamp)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from points.aggregator import PoolLiquidity
from points.state import InterestIndex

from .parser import (
    EventMap,
    parse_balance_changing_events,
    parse_end_interest_indexes,
    parse_pool_liquidity,
)

EVENT_FILES = (
    "deposits",
    "withdrawals",
    "transfers",
    "trades",
    "liquidations",
    "vesting_position_transfers",
)


# ============================================================================
# RESULT TYPES
# ============================================================================


@dataclass
class StoreStatus:
    """Which inputs are present in a data directory, and how many records each holds."""

    data_dir: str
    record_counts: dict[str, int] = field(default_factory=dict)
    pools: list[str] = field(default_factory=list)

    @property
    def total_events(self) -> int:
        return sum(self.record_counts.get(name, 0) for name in EVENT_FILES)


# ============================================================================
# FILE HELPERS
# ============================================================================


def _load_json_list(filepath: Path) -> list[dict]:
    """Load a JSON list, or [] if the file does not exist."""
    if not filepath.exists():
        return []
    with open(filepath) as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{filepath} must contain a JSON list, found {type(data).__name__}")
    return data


def _save_json_list(rows: list[dict], filepath: Path) -> int:
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as f:
        json.dump(rows, f, indent=2)
    return len(rows)


# ============================================================================
# STORE
# ============================================================================


class EpochDataStore:
    """JSON files for a single epoch's inputs."""

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)

    def path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def pool_dir(self, pool: str) -> Path:
        return self.data_dir / "pools" / pool.lower()

    # -- raw records --

    def load_records(self, name: str) -> list[dict]:
        return _load_json_list(self.path(name))

    def save_records(self, name: str, rows: list[dict]) -> int:
        return _save_json_list(rows, self.path(name))

    def save_pool_records(self, pool: str, positions: list[dict], snapshots: list[dict]) -> None:
        _save_json_list(positions, self.pool_dir(pool) / "positions.json")
        _save_json_list(snapshots, self.pool_dir(pool) / "snapshots.json")

    def list_pools(self) -> list[str]:
        pools_root = self.data_dir / "pools"
        if not pools_root.exists():
            return []
        return sorted(p.name for p in pools_root.iterdir() if p.is_dir())

    # -- parsed inputs --

    def load_event_map(self) -> EventMap:
        return parse_balance_changing_events(**{name: self.load_records(name) for name in EVENT_FILES})

    def load_end_interest_indexes(self) -> dict[int, InterestIndex]:
        return parse_end_interest_indexes(self.load_records("end_interest_indexes"))

    def load_pool_map(self, start_timestamp: int) -> dict[str, PoolLiquidity]:
        pool_map = {}
        for pool in self.list_pools():
            pool_map[pool] = parse_pool_liquidity(
                _load_json_list(self.pool_dir(pool) / "positions.json"),
                _load_json_list(self.pool_dir(pool) / "snapshots.json"),
                start_timestamp,
            )
        return pool_map

    def status(self) -> StoreStatus:
        names = ("accounts", "vesting_positions", *EVENT_FILES, "end_interest_indexes")
        return StoreStatus(
            data_dir=str(self.data_dir),
            record_counts={name: len(self.load_records(name)) for name in names if self.path(name).exists()},
            pools=self.list_pools(),
        )
