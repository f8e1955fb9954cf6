"""
Per-position point accumulators.

BalancePoints: direct margin balance for one (account, sub-account, market) key.
VirtualLiquidityPoints: pool holder position integrated from balance snapshots.

Both are frozen values. advance_* returns the next state together with the
points accrued by that step, so create-on-touch and delete-when-inert stay
explicit transitions in the processor instead of hidden object mutation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, localcontext

from .errors import InvalidInterestOperationError, OutOfOrderEventError
from .state import (
    ONE,
    POINTS_CONTEXT,
    ZERO,
    BalanceChangeEvent,
    InterestOperation,
    VirtualLiquiditySnapshot,
)

# ============================================================================
# BALANCE POINTS (signed par balance, interest aware)
# ============================================================================


@dataclass(frozen=True)
class BalancePoints:
    """
    Accrual state for one tracked balance.

    balance_par is signed (negative = borrow). reward_points only grows
    unless the NEGATE policy meets a position paying more borrow interest
    than it earns. negative_interest_accrued is stored as a positive number.
    """

    effective_user: str
    market_id: int
    points_per_second: Decimal
    last_updated: int
    balance_par: Decimal = ZERO
    reward_points: Decimal = ZERO
    positive_interest_accrued: Decimal = ZERO
    negative_interest_accrued: Decimal = ZERO

    def is_zero(self) -> bool:
        return self.balance_par == ZERO

    def is_inert(self) -> bool:
        """True when the position holds nothing and never earned anything."""
        return self.balance_par == ZERO and self.reward_points == ZERO


def initialize_balance_points(event: BalanceChangeEvent, points_per_second: Decimal) -> BalancePoints:
    """
    Build the state for a key's first event.

    The event is adopted directly rather than processed: there is no prior
    balance to accrue against and no index to normalize it with.
    """
    return BalancePoints(
        effective_user=event.effective_user,
        market_id=event.interest_index.market_id,
        points_per_second=points_per_second,
        last_updated=event.timestamp,
        balance_par=event.amount_delta_par,
    )


def advance_balance_points(
    state: BalancePoints,
    event: BalanceChangeEvent,
    operation: InterestOperation,
) -> tuple[BalancePoints, Decimal]:
    """
    Fold one event into the accumulator.

    Points for the elapsed interval are computed on the balance held *before*
    the event; the event's delta is applied afterwards.

    Args:
        state: Current accumulator value
        event: Next event for this key (timestamp must not precede state.last_updated)
        operation: Interest policy for this program

    Returns:
        (next_state, points_update)

    Raises:
        OutOfOrderEventError: event.timestamp < state.last_updated
        InvalidInterestOperationError: operation is not an InterestOperation
    """
    if event.timestamp < state.last_updated:
        raise OutOfOrderEventError(event.timestamp, state.last_updated, state.effective_user)
    if not isinstance(operation, InterestOperation):
        raise InvalidInterestOperationError(operation)

    with localcontext(POINTS_CONTEXT):
        time_delta = Decimal(event.timestamp - state.last_updated)
        balance = state.balance_par
        pps = state.points_per_second

        positive_interest_delta = ZERO
        negative_interest_delta = ZERO
        positive_accrued = state.positive_interest_accrued
        negative_accrued = state.negative_interest_accrued

        if operation is not InterestOperation.NOTHING:
            if balance < ZERO:
                negative_interest_delta = abs(balance) * (event.interest_index.borrow - ONE)
                negative_accrued = negative_accrued + negative_interest_delta
            elif balance > ZERO:
                positive_interest_delta = balance * (event.interest_index.supply - ONE)
                positive_accrued = positive_accrued + positive_interest_delta

        points_update = ZERO
        if balance > ZERO:
            points_update = points_update + balance * time_delta * pps

        if operation is InterestOperation.ADD_POSITIVE:
            points_update = points_update + positive_interest_delta * time_delta * pps
        elif operation is InterestOperation.ADD_NEGATIVE:
            points_update = points_update + abs(negative_interest_delta) * time_delta * pps
        elif operation is InterestOperation.NEGATE:
            points_update = points_update + (positive_interest_delta - negative_interest_delta) * time_delta * pps

        next_state = replace(
            state,
            last_updated=event.timestamp,
            balance_par=balance + event.amount_delta_par,
            reward_points=state.reward_points + points_update,
            positive_interest_accrued=positive_accrued,
            negative_interest_accrued=negative_accrued,
        )

    return next_state, points_update


# ============================================================================
# VIRTUAL LIQUIDITY POINTS (snapshot driven, weight 1, no interest)
# ============================================================================


@dataclass(frozen=True)
class VirtualLiquidityPoints:
    """Equity accrual for one holder of a pool (AMM share, vesting, staked receipt)."""

    effective_user: str
    last_updated: int
    balance_par: Decimal = ZERO
    equity_points: Decimal = ZERO


def advance_virtual_liquidity_points(
    state: VirtualLiquidityPoints,
    snapshot: VirtualLiquiditySnapshot,
) -> tuple[VirtualLiquidityPoints, Decimal]:
    """
    Integrate the held balance up to the snapshot, then adopt its balance.

    The snapshot must be absolute (see resolve_virtual_liquidity_snapshots).
    """
    if snapshot.timestamp < state.last_updated:
        raise OutOfOrderEventError(snapshot.timestamp, state.last_updated, state.effective_user)
    if snapshot.balance_par is None:
        raise ValueError("Delta snapshots must be resolved before they are processed")

    with localcontext(POINTS_CONTEXT):
        points_update = ZERO
        if state.balance_par > ZERO:
            points_update = state.balance_par * Decimal(snapshot.timestamp - state.last_updated)

        next_state = replace(
            state,
            last_updated=snapshot.timestamp,
            balance_par=snapshot.balance_par,
            equity_points=state.equity_points + points_update,
        )

    return next_state, points_update
