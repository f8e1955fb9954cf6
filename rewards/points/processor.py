"""
Event processor: replays ordered balance events into accumulators.

One call turns (prior balance map, this epoch's events) into the balance map
at epoch end:
1. Per key, sort events by serial_id (authoritative over timestamp)
2. Fold them into the key's accumulator, creating it from the first event
3. Prune keys whose balance and points are both exactly zero
4. Closing pass over EVERY surviving key at end_timestamp, at the configured
   rate, so positions with no activity this epoch still earn for holding
   their balance

Any fatal error aborts the whole run. There is no partial or best-effort
skipping of bad keys.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from decimal import Decimal, localcontext

from .accumulators import BalancePoints, advance_balance_points, initialize_balance_points
from .errors import EffectiveUserMismatchError
from .state import (
    POINTS_CONTEXT,
    ZERO,
    BalanceChangeEvent,
    BalanceChangeType,
    InterestIndex,
    InterestOperation,
    PositionKey,
    to_next_daily_timestamp,
)

BalanceMap = dict[PositionKey, BalancePoints]
EventMap = Mapping[PositionKey, list[BalanceChangeEvent]]

# ============================================================================
# PER-KEY REPLAY
# ============================================================================


def _replay_key(
    state: BalancePoints | None,
    events: list[BalanceChangeEvent],
    operation: InterestOperation,
    points_per_second_for: Callable[[BalanceChangeEvent], Decimal],
) -> BalancePoints | None:
    """Fold one key's events (any order) into its accumulator."""
    for event in sorted(events, key=lambda e: e.serial_id):
        pps = points_per_second_for(event)
        if state is None:
            # First sight of this key: adopt the event as the opening balance
            state = initialize_balance_points(event, pps)
        else:
            if state.points_per_second != pps:
                state = replace(state, points_per_second=pps)
            state, _ = advance_balance_points(state, event, operation)

        if state.effective_user != event.effective_user:
            raise EffectiveUserMismatchError(state.effective_user, event.effective_user)

    return state


def _closing_event(key: PositionKey, state: BalancePoints, index: InterestIndex | None, end_timestamp: int):
    return BalanceChangeEvent(
        amount_delta_par=ZERO,
        interest_index=index or InterestIndex.neutral(key.market_id),
        timestamp=end_timestamp,
        serial_id=0,
        effective_user=state.effective_user,
        market_id=key.market_id,
        event_type=BalanceChangeType.INITIALIZE,
    )


def _process(
    balance_map: Mapping[PositionKey, BalancePoints],
    event_map: EventMap,
    end_index_by_market: Mapping[int, InterestIndex],
    end_timestamp: int,
    operation: InterestOperation,
    points_per_second_for: Callable[[BalanceChangeEvent], Decimal],
    closing_points_per_second: Callable[[int], Decimal],
) -> BalanceMap:
    result: BalanceMap = dict(balance_map)

    # Pass 1: replay this batch's events key by key
    for key in sorted(event_map):
        events = event_map[key]
        if not events:
            continue
        state = _replay_key(result.get(key), events, operation, points_per_second_for)
        if state is None or state.is_inert():
            result.pop(key, None)
        else:
            result[key] = state

    # Pass 2: close out every open position, touched this batch or not
    for key, state in result.items():
        pps = closing_points_per_second(key.market_id)
        if pps != state.points_per_second:
            state = replace(state, points_per_second=pps)
        closing = _closing_event(key, state, end_index_by_market.get(key.market_id), end_timestamp)
        result[key], _ = advance_balance_points(state, closing, operation)

    return result


# ============================================================================
# PUBLIC ENTRY POINTS
# ============================================================================


def process_events_until_end_timestamp(
    balance_map: Mapping[PositionKey, BalancePoints],
    event_map: EventMap,
    end_index_by_market: Mapping[int, InterestIndex],
    points_per_second_by_market: Mapping[int, Decimal],
    end_timestamp: int,
    operation: InterestOperation,
) -> BalanceMap:
    """
    Replay an epoch's events and roll every position forward to end_timestamp.

    Args:
        balance_map: Accumulators carried in from the epoch start (not mutated)
        event_map: Events per PositionKey, in any order
        end_index_by_market: Epoch-end interest index per market. Markets
            without one close with the neutral index (no interest accrual)
        points_per_second_by_market: Reward weight per market, applied to every
            position including ones carried in untouched. Missing markets
            accrue at weight zero
        end_timestamp: Epoch end
        operation: Interest policy

    Returns:
        New balance map keyed by PositionKey

    Raises:
        OutOfOrderEventError, EffectiveUserMismatchError,
        InvalidInterestOperationError: any of these aborts the run
    """

    def pps_for_event(event: BalanceChangeEvent) -> Decimal:
        return points_per_second_by_market.get(event.interest_index.market_id, ZERO)

    return _process(
        balance_map,
        event_map,
        end_index_by_market,
        end_timestamp,
        operation,
        pps_for_event,
        lambda market_id: points_per_second_by_market.get(market_id, ZERO),
    )


def process_events_with_daily_points_until_end_timestamp(
    balance_map: Mapping[PositionKey, BalancePoints],
    event_map: EventMap,
    end_index_by_market: Mapping[int, InterestIndex],
    daily_timestamp_to_points_per_second: Mapping[int, Mapping[int, Decimal]],
    end_timestamp: int,
    operation: InterestOperation,
) -> BalanceMap:
    """
    Same as process_events_until_end_timestamp, for programs whose weights change daily.

    daily_timestamp_to_points_per_second is keyed by to_next_daily_timestamp()
    of the event. The rate in force at each event is applied to the interval
    ending at that event.
    """

    def rate(timestamp: int, market_id: int) -> Decimal:
        daily = daily_timestamp_to_points_per_second.get(to_next_daily_timestamp(timestamp), {})
        return daily.get(market_id, ZERO)

    def pps_for_event(event: BalanceChangeEvent) -> Decimal:
        return rate(event.timestamp, event.interest_index.market_id)

    return _process(
        balance_map,
        event_map,
        end_index_by_market,
        end_timestamp,
        operation,
        pps_for_event,
        lambda market_id: rate(end_timestamp, market_id),
    )


def calculate_total_points_per_market(balance_map: Mapping[PositionKey, BalancePoints]) -> dict[int, Decimal]:
    """Sum accrued points per market across every tracked position."""
    totals: dict[int, Decimal] = {}
    with localcontext(POINTS_CONTEXT):
        for key, state in balance_map.items():
            totals[key.market_id] = totals.get(key.market_id, ZERO) + state.reward_points
    return totals
