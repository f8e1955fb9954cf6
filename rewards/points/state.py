"""
Value types shared by the points engine.

InterestIndex: per-market borrow/supply index at a point in time
BalanceChangeEvent: one signed par delta for a (account, sub-account, market) key
VirtualLiquiditySnapshot: absolute balance observation or signed delta for a pool holder
PositionKey: flat composite key replacing account -> sub-account -> market nesting
InterestOperation: policy deciding how accrued interest feeds reward points

Arithmetic convention:
- All par balances, indices and points are decimal.Decimal.
- Arithmetic runs under POINTS_CONTEXT (96 significant digits), so on-chain
  sized integers (1e18 scaled, 1e6 second spans) never lose precision.
- Every conversion to an integer floors explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Context, Decimal, localcontext
from enum import Enum
from typing import NamedTuple

# ============================================================================
# NUMERIC CONSTANTS
# ============================================================================

POINTS_CONTEXT = Context(prec=96)

ZERO = Decimal(0)
ONE = Decimal(1)

ONE_ETH_WEI = 10**18
ONE_DAY_SECONDS = 86_400
ONE_WEEK_SECONDS = ONE_DAY_SECONDS * 7

# Sub-account under which liquidity-mining vesting positions are tracked
VESTING_ACCOUNT_NUMBER = "999"


def to_decimal(value) -> Decimal:
    """
    Coerce an indexer value (str, int, Decimal) to Decimal.

    Floats are routed through str() so 0.1 stays 0.1 instead of its binary
    expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def floor_to_int(value: Decimal) -> int:
    """Floor a Decimal to an int (toward -inf)."""
    with localcontext(POINTS_CONTEXT):
        return int(value.to_integral_value(rounding=ROUND_FLOOR))


def to_fixed_point(points: Decimal) -> int:
    """Convert decimal points to an 18-decimal fixed-point integer, flooring."""
    with localcontext(POINTS_CONTEXT):
        return floor_to_int(points * ONE_ETH_WEI)


def to_next_daily_timestamp(timestamp: int) -> int:
    """Start of the UTC day following `timestamp` (a timestamp already on a boundary moves a full day)."""
    return (timestamp // ONE_DAY_SECONDS) * ONE_DAY_SECONDS + ONE_DAY_SECONDS


# ============================================================================
# INTEREST POLICY
# ============================================================================


class InterestOperation(str, Enum):
    """
    How interest accrued between two events contributes to reward points.

    ADD_POSITIVE: supply interest earns points on top of the supply balance
    ADD_NEGATIVE: borrow interest earns points
    NEGATE: supply interest minus borrow interest earns points
    NOTHING: interest is ignored entirely
    """

    ADD_POSITIVE = "ADD_POSITIVE"
    ADD_NEGATIVE = "ADD_NEGATIVE"
    NEGATE = "NEGATE"
    NOTHING = "NOTHING"


class BalanceChangeType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"
    TRADE = "TRADE"
    LIQUIDATION = "LIQUIDATION"
    VESTING_POSITION_TRANSFER = "VESTING_POSITION_TRANSFER"
    INITIALIZE = "INITIALIZE"


# ============================================================================
# EVENTS
# ============================================================================


@dataclass(frozen=True)
class InterestIndex:
    """
    Market interest index at a point in time.

    An index of 1 means nothing has accrued yet; (index - 1) scales the par
    balance into the interest earned (supply) or owed (borrow).
    """

    market_id: int
    borrow: Decimal = ONE
    supply: Decimal = ONE

    @classmethod
    def neutral(cls, market_id: int) -> InterestIndex:
        """Index that accrues no interest (used when no epoch-end index is known)."""
        return cls(market_id=market_id, borrow=ONE, supply=ONE)

    @classmethod
    def from_record(cls, record: dict) -> InterestIndex:
        return cls(
            market_id=int(record["marketId"]),
            borrow=to_decimal(record.get("borrow", ONE)),
            supply=to_decimal(record.get("supply", ONE)),
        )


@dataclass(frozen=True)
class BalanceChangeEvent:
    """
    One balance-changing event for a single (account, sub-account, market) key.

    serial_id totally orders events sharing a key. It is not globally unique:
    both legs of a transfer or trade carry the same serial_id.
    """

    amount_delta_par: Decimal
    interest_index: InterestIndex
    timestamp: int
    serial_id: int
    effective_user: str
    market_id: int
    event_type: BalanceChangeType = BalanceChangeType.INITIALIZE


@dataclass(frozen=True)
class VirtualLiquiditySnapshot:
    """
    Point-in-time balance of a pool holder.

    Exactly one of balance_par (absolute observation) or delta_par (signed
    change) is set. Deltas are resolved against the last known absolute
    balance before they reach an accumulator.
    """

    effective_user: str
    timestamp: int
    balance_par: Decimal | None = None
    delta_par: Decimal | None = None
    id: str = ""

    def __post_init__(self):
        if (self.balance_par is None) == (self.delta_par is None):
            raise ValueError("VirtualLiquiditySnapshot needs exactly one of balance_par or delta_par")

    @property
    def is_delta(self) -> bool:
        return self.delta_par is not None


def resolve_virtual_liquidity_snapshots(
    snapshots: list[VirtualLiquiditySnapshot],
    initial_balance: Decimal = ZERO,
) -> list[VirtualLiquiditySnapshot]:
    """
    Sort snapshots by time and convert deltas into absolute balances.

    Deltas apply to the last known absolute balance (initial_balance before
    any observation). Returns only absolute snapshots.
    """
    resolved = []
    balance = initial_balance
    with localcontext(POINTS_CONTEXT):
        for snapshot in sorted(snapshots, key=lambda s: s.timestamp):
            if snapshot.is_delta:
                balance = balance + snapshot.delta_par
            else:
                balance = snapshot.balance_par
            resolved.append(
                VirtualLiquiditySnapshot(
                    effective_user=snapshot.effective_user,
                    timestamp=snapshot.timestamp,
                    balance_par=balance,
                    id=snapshot.id,
                )
            )
    return resolved


# ============================================================================
# COMPOSITE KEYS
# ============================================================================


class PositionKey(NamedTuple):
    """Flat key for one tracked balance: (account, sub_account, market_id)."""

    account: str
    sub_account: str
    market_id: int

    @classmethod
    def of(cls, account: str, sub_account, market_id) -> PositionKey:
        return cls(account.lower(), str(sub_account), int(market_id))
