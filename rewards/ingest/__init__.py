"""
Indexer data ingestion.

Parses cached indexer records (deposits, withdrawals, transfers, trades,
liquidations, vesting transfers, pool snapshots) into the event and balance
maps consumed by the points engine.

Usage:
    from ingest.store import EpochDataStore
    from ingest.parser import parse_trades, parse_account_balances
"""

from .parser import (
    parse_account_balances as parse_account_balances,
)
from .parser import (
    parse_balance_changing_events as parse_balance_changing_events,
)
from .parser import (
    parse_pool_liquidity as parse_pool_liquidity,
)
from .parser import (
    parse_vesting_positions as parse_vesting_positions,
)
from .store import (
    EpochDataStore as EpochDataStore,
)
from .store import (
    StoreStatus as StoreStatus,
)
