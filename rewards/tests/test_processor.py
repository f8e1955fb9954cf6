"""
Tests for the event processor:
1. Replay order and create-on-first-event
2. Closing pass over untouched positions
3. Zero-pruning
4. Fatal errors
5. Determinism under shuffled input
6. Daily-varying points per second

Run with: pytest tests/test_processor.py -v
"""

from decimal import Decimal

import numpy as np
import pytest
from points.accumulators import BalancePoints
from points.errors import EffectiveUserMismatchError, OutOfOrderEventError
from points.processor import (
    calculate_total_points_per_market,
    process_events_until_end_timestamp,
    process_events_with_daily_points_until_end_timestamp,
)
from points.state import (
    BalanceChangeEvent,
    InterestIndex,
    InterestOperation,
    PositionKey,
)

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"

PPS = {0: Decimal(1), 2: Decimal(1)}


def ev(delta, timestamp, serial_id, user=ALICE, market_id=0):
    return BalanceChangeEvent(
        amount_delta_par=Decimal(delta),
        interest_index=InterestIndex.neutral(market_id),
        timestamp=timestamp,
        serial_id=serial_id,
        effective_user=user,
        market_id=market_id,
    )


def opening(balance, user=ALICE, market_id=0, last_updated=0, pps="1"):
    return BalancePoints(
        effective_user=user,
        market_id=market_id,
        points_per_second=Decimal(pps),
        last_updated=last_updated,
        balance_par=Decimal(balance),
    )


# ============================================================================
# 1. REPLAY
# ============================================================================


class TestReplay:
    """Events fold into accumulators in serial_id order."""

    def test_deposit_withdraw_scenario(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("-10", 15, 2), ev("20", 10, 1)]}  # deliberately unsorted

        result = process_events_until_end_timestamp({}, events, {}, PPS, 20, InterestOperation.NOTHING)

        assert result[key].reward_points == Decimal(150)
        assert result[key].balance_par == Decimal(10)
        assert result[key].last_updated == 20

    def test_serial_id_wins_over_list_order(self):
        key = PositionKey.of(ALICE, 0, 0)
        sorted_events = {key: [ev("20", 10, 1), ev("-10", 15, 2)]}
        reversed_events = {key: [ev("-10", 15, 2), ev("20", 10, 1)]}
        a = process_events_until_end_timestamp({}, sorted_events, {}, PPS, 20, InterestOperation.NOTHING)
        b = process_events_until_end_timestamp({}, reversed_events, {}, PPS, 20, InterestOperation.NOTHING)
        assert a == b

    def test_input_map_not_mutated(self):
        key = PositionKey.of(ALICE, 0, 0)
        balance_map = {key: opening("10")}
        process_events_until_end_timestamp(balance_map, {key: [ev("5", 10, 1)]}, {}, PPS, 20, InterestOperation.NOTHING)
        assert balance_map[key].balance_par == Decimal(10)
        assert balance_map[key].reward_points == 0

    def test_missing_market_weight_accrues_zero(self):
        key = PositionKey.of(ALICE, 0, 9)
        result = process_events_until_end_timestamp(
            {}, {key: [ev("20", 10, 1, market_id=9)]}, {}, PPS, 100, InterestOperation.NOTHING
        )
        assert result[key].balance_par == Decimal(20)
        assert result[key].reward_points == 0

    def test_total_points_per_market(self):
        balances = {
            PositionKey.of(ALICE, 0, 0): opening("10"),
            PositionKey.of(BOB, 0, 0): opening("5", user=BOB),
            PositionKey.of(BOB, 0, 2): opening("1", user=BOB, market_id=2),
        }
        result = process_events_until_end_timestamp(balances, {}, {}, PPS, 10, InterestOperation.NOTHING)
        totals = calculate_total_points_per_market(result)
        assert totals == {0: Decimal(150), 2: Decimal(10)}


# ============================================================================
# 2. CLOSING PASS
# ============================================================================


class TestClosingPass:
    """Every surviving key is rolled forward to end_timestamp."""

    def test_untouched_position_still_earns(self):
        key = PositionKey.of(BOB, 1, 0)
        result = process_events_until_end_timestamp(
            {key: opening("10", user=BOB)}, {}, {}, PPS, 100, InterestOperation.NOTHING
        )
        assert result[key].reward_points == Decimal(1000)
        assert result[key].last_updated == 100

    def test_end_index_feeds_interest(self):
        key = PositionKey.of(ALICE, 0, 0)
        end_index = {0: InterestIndex(0, Decimal(1), Decimal("1.1"))}
        with_index = process_events_until_end_timestamp(
            {key: opening("100")}, {}, end_index, PPS, 10, InterestOperation.ADD_POSITIVE
        )
        neutral = process_events_until_end_timestamp(
            {key: opening("100")}, {}, {}, PPS, 10, InterestOperation.ADD_POSITIVE
        )
        assert with_index[key].reward_points == Decimal(1100)
        assert neutral[key].reward_points == Decimal(1000)

    def test_closing_never_decreases_points(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("20", 10, 1), ev("-20", 30, 2)]}
        result = process_events_until_end_timestamp({}, events, {}, PPS, 1_000, InterestOperation.NOTHING)
        assert result[key].reward_points == Decimal(400)

    def test_touched_and_untouched_close_at_configured_rate(self):
        touched = PositionKey.of(ALICE, 0, 0)
        untouched = PositionKey.of(BOB, 0, 0)
        balances = {
            touched: opening("10", pps="7"),
            untouched: opening("10", user=BOB, pps="7"),
        }
        result = process_events_until_end_timestamp(
            balances, {touched: [ev("0", 0, 1)]}, {}, {0: Decimal(2)}, 10, InterestOperation.NOTHING
        )
        assert result[touched].reward_points == Decimal(200)
        assert result[untouched].reward_points == Decimal(200)
        assert result[untouched].points_per_second == Decimal(2)

    def test_untouched_unweighted_market_earns_nothing(self):
        key = PositionKey.of(BOB, 0, 9)
        result = process_events_until_end_timestamp(
            {key: opening("10", user=BOB, market_id=9)}, {}, {}, PPS, 100, InterestOperation.NOTHING
        )
        assert result[key].reward_points == 0
        assert result[key].balance_par == Decimal(10)


# ============================================================================
# 3. ZERO-PRUNING
# ============================================================================


class TestZeroPruning:
    """Keys with zero balance and zero points are removed."""

    def test_in_and_out_same_second_is_pruned(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("5", 10, 1), ev("-5", 10, 2)]}
        result = process_events_until_end_timestamp({}, events, {}, PPS, 100, InterestOperation.NOTHING)
        assert key not in result

    def test_zero_balance_with_points_is_kept(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("5", 10, 1), ev("-5", 20, 2)]}
        result = process_events_until_end_timestamp({}, events, {}, PPS, 100, InterestOperation.NOTHING)
        assert result[key].balance_par == 0
        assert result[key].reward_points == Decimal(50)


# ============================================================================
# 4. FATAL ERRORS
# ============================================================================


class TestFatalErrors:
    """Corrupt input aborts the whole run."""

    def test_effective_user_mismatch(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("5", 10, 1, user=ALICE), ev("5", 20, 2, user=BOB)]}
        with pytest.raises(EffectiveUserMismatchError):
            process_events_until_end_timestamp({}, events, {}, PPS, 100, InterestOperation.NOTHING)

    def test_mismatch_against_opening_balance(self):
        key = PositionKey.of(ALICE, 0, 0)
        with pytest.raises(EffectiveUserMismatchError):
            process_events_until_end_timestamp(
                {key: opening("10")}, {key: [ev("5", 10, 1, user=BOB)]}, {}, PPS, 100, InterestOperation.NOTHING
            )

    def test_event_before_watermark(self):
        key = PositionKey.of(ALICE, 0, 0)
        with pytest.raises(OutOfOrderEventError):
            process_events_until_end_timestamp(
                {key: opening("10", last_updated=50)}, {key: [ev("5", 40, 1)]}, {}, PPS, 100, InterestOperation.NOTHING
            )

    def test_serial_order_contradicting_time_is_fatal(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("5", 20, 1), ev("5", 10, 2)]}
        with pytest.raises(OutOfOrderEventError):
            process_events_until_end_timestamp({}, events, {}, PPS, 100, InterestOperation.NOTHING)


# ============================================================================
# 5. DETERMINISM
# ============================================================================


class TestDeterminism:
    """Same events in any arrival order produce the same map."""

    def _random_events(self, rng):
        users = [f"0x{str(i) * 40}" for i in range(1, 6)]
        events = {}
        for user in users:
            for market_id in (0, 2):
                key = PositionKey.of(user, 0, market_id)
                t = 0
                lst = []
                for serial_id in range(1, 8):
                    t += int(rng.randint(0, 50))
                    delta = Decimal(int(rng.randint(1, 100))) / Decimal(10)
                    lst.append(ev(delta, t, serial_id, user=user, market_id=market_id))
                events[key] = lst
        return events

    def test_shuffled_input_same_result(self):
        rng = np.random.RandomState(42)
        events = self._random_events(rng)
        baseline = process_events_until_end_timestamp({}, events, {}, PPS, 1_000, InterestOperation.NOTHING)

        for _ in range(5):
            shuffled = {}
            keys = list(events)
            rng.shuffle(keys)
            for key in keys:
                lst = list(events[key])
                rng.shuffle(lst)
                shuffled[key] = lst
            result = process_events_until_end_timestamp({}, shuffled, {}, PPS, 1_000, InterestOperation.NOTHING)
            assert result == baseline


# ============================================================================
# 6. DAILY POINTS
# ============================================================================


class TestDailyPoints:
    """Rate is looked up by the next daily boundary of each event."""

    DAY = 86_400
    START = DAY * 10

    def test_rate_refreshed_per_event_and_at_close(self):
        key = PositionKey.of(ALICE, 0, 0)
        events = {key: [ev("1", self.START, 1), ev("0", self.START + self.DAY, 2)]}
        rates = {
            self.START + self.DAY: {0: Decimal(1)},
            self.START + 2 * self.DAY: {0: Decimal(2)},
            self.START + 3 * self.DAY: {0: Decimal(3)},
        }
        result = process_events_with_daily_points_until_end_timestamp(
            {}, events, {}, rates, self.START + 2 * self.DAY, InterestOperation.NOTHING
        )
        # Day 1 at the rate in force at the second event (2), day 2 at the closing rate (3)
        assert result[key].reward_points == Decimal(self.DAY * 2 + self.DAY * 3)

    def test_missing_day_is_zero(self):
        key = PositionKey.of(ALICE, 0, 0)
        result = process_events_with_daily_points_until_end_timestamp(
            {}, {key: [ev("1", self.START, 1)]}, {}, {}, self.START + self.DAY, InterestOperation.NOTHING
        )
        assert result[key].reward_points == 0
