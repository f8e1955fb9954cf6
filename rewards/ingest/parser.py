"""
Indexer record -> BalanceChangeEvent parsing.

Every parse_* function appends into a shared EventMap (PositionKey -> list of
events) so a batch of deposits, transfers, trades, ... can be merged before
the processor sorts each key by serial_id.

Record shapes (JSON, as cached by ingest.store):
    deposit / withdrawal:
        {serialId, timestamp, effectiveUser, marketId, amountDeltaPar,
         marginAccount: {user, accountNumber}, interestIndexes?}
    transfer:
        {serialId, timestamp, marketId,
         fromMarginAccount, fromEffectiveUser, fromAmountDeltaPar,
         toMarginAccount, toEffectiveUser, toAmountDeltaPar, interestIndexes?}
    trade:
        {serialId, timestamp, takerMarketId, makerMarketId,
         takerMarginAccount, takerEffectiveUser,
         takerInputTokenDeltaPar, takerOutputTokenDeltaPar,
         makerMarginAccount?, makerEffectiveUser?, interestIndexes?}
    liquidation:
        {serialId, timestamp, heldToken, borrowedToken,
         liquidMarginAccount, liquidEffectiveUser,
         liquidHeldTokenAmountDeltaPar, liquidBorrowedTokenAmountDeltaPar,
         solidMarginAccount, solidEffectiveUser,
         solidHeldTokenAmountDeltaPar, solidBorrowedTokenAmountDeltaPar,
         interestIndexes?}
    vesting position transfer:
        {serialId, timestamp, fromEffectiveUser, toEffectiveUser, amount}

interestIndexes, when present, maps marketId -> {borrow, supply} at the
event's block. Missing entries fall back to the neutral index.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from decimal import Decimal, localcontext

from points.accumulators import BalancePoints, VirtualLiquidityPoints
from points.aggregator import PoolLiquidity
from points.state import (
    POINTS_CONTEXT,
    VESTING_ACCOUNT_NUMBER,
    ZERO,
    BalanceChangeEvent,
    BalanceChangeType,
    InterestIndex,
    PositionKey,
    VirtualLiquiditySnapshot,
    to_decimal,
)

EventMap = dict[PositionKey, list[BalanceChangeEvent]]

# Market that liquidity-mining vesting positions are denominated in
DEFAULT_VESTING_MARKET_ID = 7


# ============================================================================
# HELPERS
# ============================================================================


def _interest_index(record: dict, market_id: int) -> InterestIndex:
    raw = record.get("interestIndexes", {}).get(str(market_id))
    if raw is None:
        return InterestIndex.neutral(market_id)
    return InterestIndex(
        market_id=market_id,
        borrow=to_decimal(raw.get("borrow", 1)),
        supply=to_decimal(raw.get("supply", 1)),
    )


def add_event(
    event_map: EventMap,
    user: str,
    account_number,
    market_id,
    record: dict,
    amount_delta_par,
    effective_user: str,
    event_type: BalanceChangeType,
) -> BalanceChangeEvent:
    """Build one event from a record leg and file it under its PositionKey."""
    key = PositionKey.of(user, account_number, market_id)
    event = BalanceChangeEvent(
        amount_delta_par=to_decimal(amount_delta_par),
        interest_index=_interest_index(record, key.market_id),
        timestamp=int(record["timestamp"]),
        serial_id=int(record["serialId"]),
        effective_user=effective_user.lower(),
        market_id=key.market_id,
        event_type=event_type,
    )
    event_map.setdefault(key, []).append(event)
    return event


# ============================================================================
# BALANCE-CHANGING EVENTS
# ============================================================================


def parse_deposits(event_map: EventMap, deposits: Iterable[dict]) -> None:
    for deposit in deposits:
        add_event(
            event_map,
            deposit["marginAccount"]["user"],
            deposit["marginAccount"]["accountNumber"],
            deposit["marketId"],
            deposit,
            deposit["amountDeltaPar"],
            deposit["effectiveUser"],
            BalanceChangeType.DEPOSIT,
        )


def parse_withdrawals(event_map: EventMap, withdrawals: Iterable[dict]) -> None:
    for withdrawal in withdrawals:
        add_event(
            event_map,
            withdrawal["marginAccount"]["user"],
            withdrawal["marginAccount"]["accountNumber"],
            withdrawal["marketId"],
            withdrawal,
            withdrawal["amountDeltaPar"],
            withdrawal["effectiveUser"],
            BalanceChangeType.WITHDRAW,
        )


def parse_transfers(event_map: EventMap, transfers: Iterable[dict]) -> None:
    """Both legs of a transfer share the record's serialId."""
    for transfer in transfers:
        for side in ("from", "to"):
            account = transfer[f"{side}MarginAccount"]
            add_event(
                event_map,
                account["user"],
                account["accountNumber"],
                transfer["marketId"],
                transfer,
                transfer[f"{side}AmountDeltaPar"],
                transfer[f"{side}EffectiveUser"],
                BalanceChangeType.TRANSFER,
            )


def parse_trades(event_map: EventMap, trades: Iterable[dict]) -> None:
    """
    Expand each trade into taker legs and (when present) maker legs.

    The maker receives the exact negation of the taker's deltas, so every
    trade nets to zero per market. Trades against an external liquidity
    source have no maker and produce taker legs only.
    """
    for trade in trades:
        taker = trade["takerMarginAccount"]
        taker_user = trade["takerEffectiveUser"]
        input_delta = to_decimal(trade["takerInputTokenDeltaPar"])
        output_delta = to_decimal(trade["takerOutputTokenDeltaPar"])

        add_event(event_map, taker["user"], taker["accountNumber"], trade["takerMarketId"],
                  trade, input_delta, taker_user, BalanceChangeType.TRADE)
        add_event(event_map, taker["user"], taker["accountNumber"], trade["makerMarketId"],
                  trade, output_delta, taker_user, BalanceChangeType.TRADE)

        maker = trade.get("makerMarginAccount")
        maker_user = trade.get("makerEffectiveUser")
        if not maker or not maker_user:
            continue

        add_event(event_map, maker["user"], maker["accountNumber"], trade["makerMarketId"],
                  trade, output_delta.copy_negate(), maker_user, BalanceChangeType.TRADE)
        add_event(event_map, maker["user"], maker["accountNumber"], trade["takerMarketId"],
                  trade, input_delta.copy_negate(), maker_user, BalanceChangeType.TRADE)


def parse_liquidations(event_map: EventMap, liquidations: Iterable[dict]) -> None:
    """Four legs per liquidation: (liquid, solid) x (held, borrowed)."""
    for liquidation in liquidations:
        for party in ("liquid", "solid"):
            account = liquidation[f"{party}MarginAccount"]
            effective_user = liquidation[f"{party}EffectiveUser"]
            add_event(
                event_map,
                account["user"],
                account["accountNumber"],
                liquidation["heldToken"],
                liquidation,
                liquidation[f"{party}HeldTokenAmountDeltaPar"],
                effective_user,
                BalanceChangeType.LIQUIDATION,
            )
            add_event(
                event_map,
                account["user"],
                account["accountNumber"],
                liquidation["borrowedToken"],
                liquidation,
                liquidation[f"{party}BorrowedTokenAmountDeltaPar"],
                effective_user,
                BalanceChangeType.LIQUIDATION,
            )


def parse_vesting_position_transfers(
    event_map: EventMap,
    transfers: Iterable[dict],
    market_id: int = DEFAULT_VESTING_MARKET_ID,
) -> None:
    """Vesting positions move between owners under sub-account 999. Self-transfers are skipped."""
    for transfer in transfers:
        from_user = transfer["fromEffectiveUser"].lower()
        to_user = transfer["toEffectiveUser"].lower()
        if from_user == to_user:
            continue
        amount = to_decimal(transfer["amount"])
        add_event(event_map, from_user, VESTING_ACCOUNT_NUMBER, market_id, transfer,
                  amount.copy_negate(), from_user, BalanceChangeType.VESTING_POSITION_TRANSFER)
        add_event(event_map, to_user, VESTING_ACCOUNT_NUMBER, market_id, transfer,
                  amount, to_user, BalanceChangeType.VESTING_POSITION_TRANSFER)


def parse_balance_changing_events(
    deposits: Iterable[dict] = (),
    withdrawals: Iterable[dict] = (),
    transfers: Iterable[dict] = (),
    trades: Iterable[dict] = (),
    liquidations: Iterable[dict] = (),
    vesting_position_transfers: Iterable[dict] = (),
) -> EventMap:
    """Merge every event source into one EventMap."""
    event_map: EventMap = {}
    parse_deposits(event_map, deposits)
    parse_withdrawals(event_map, withdrawals)
    parse_transfers(event_map, transfers)
    parse_trades(event_map, trades)
    parse_vesting_position_transfers(event_map, vesting_position_transfers)
    parse_liquidations(event_map, liquidations)
    return event_map


# ============================================================================
# STARTING BALANCES
# ============================================================================


def parse_account_balances(
    accounts: Iterable[dict],
    start_timestamp: int,
    points_per_second_by_market: dict[int, Decimal] | None = None,
) -> dict[PositionKey, BalancePoints]:
    """
    Opening balance map from an account snapshot taken at the epoch start.

    Account shape: {owner, number, effectiveUser, balances: [{marketId, par, tokenDecimals}]}.
    par is raw (token units); it is scaled down by tokenDecimals.
    """
    pps = points_per_second_by_market or {}
    balance_map: dict[PositionKey, BalancePoints] = {}
    for account in accounts:
        for balance in account.get("balances", []):
            key = PositionKey.of(account["owner"], account["number"], balance["marketId"])
            decimals = int(balance.get("tokenDecimals", 0))
            with localcontext(POINTS_CONTEXT):
                par = to_decimal(balance["par"]).scaleb(-decimals)
            balance_map[key] = BalancePoints(
                effective_user=account["effectiveUser"].lower(),
                market_id=key.market_id,
                points_per_second=pps.get(key.market_id, ZERO),
                last_updated=start_timestamp,
                balance_par=par,
            )
    return balance_map


def parse_vesting_positions(
    balance_map: dict[PositionKey, BalancePoints],
    positions: Iterable[dict],
    start_timestamp: int,
    market_id: int = DEFAULT_VESTING_MARKET_ID,
    points_per_second: Decimal = ZERO,
) -> None:
    """Add open vesting positions ({effectiveUser, amount}) under sub-account 999, summing per owner."""
    for position in positions:
        owner = position["effectiveUser"].lower()
        key = PositionKey.of(owner, VESTING_ACCOUNT_NUMBER, market_id)
        amount = to_decimal(position["amount"])
        existing = balance_map.get(key)
        if existing is not None:
            with localcontext(POINTS_CONTEXT):
                balance_map[key] = replace(existing, balance_par=existing.balance_par + amount)
        else:
            balance_map[key] = BalancePoints(
                effective_user=owner,
                market_id=market_id,
                points_per_second=points_per_second,
                last_updated=start_timestamp,
                balance_par=amount,
            )


# ============================================================================
# VIRTUAL LIQUIDITY
# ============================================================================


def parse_liquidity_positions(positions: Iterable[dict], start_timestamp: int) -> dict[str, VirtualLiquidityPoints]:
    """Pool holder balances at the epoch start: [{effectiveUser, balance}]."""
    balances = {}
    for position in positions:
        holder = position["effectiveUser"].lower()
        balances[holder] = VirtualLiquidityPoints(
            effective_user=holder,
            last_updated=start_timestamp,
            balance_par=to_decimal(position["balance"]),
        )
    return balances


def parse_liquidity_snapshots(snapshots: Iterable[dict]) -> dict[str, list[VirtualLiquiditySnapshot]]:
    """
    Pool holder snapshots during the epoch.

    A record with liquidityTokenBalance is an absolute observation; one with
    liquidityTokenDelta is a signed change.
    """
    by_holder: dict[str, list[VirtualLiquiditySnapshot]] = {}
    for record in snapshots:
        holder = record["effectiveUser"].lower()
        if "liquidityTokenBalance" in record:
            snapshot = VirtualLiquiditySnapshot(
                effective_user=holder,
                timestamp=int(record["timestamp"]),
                balance_par=to_decimal(record["liquidityTokenBalance"]),
                id=str(record.get("id", "")),
            )
        else:
            snapshot = VirtualLiquiditySnapshot(
                effective_user=holder,
                timestamp=int(record["timestamp"]),
                delta_par=to_decimal(record["liquidityTokenDelta"]),
                id=str(record.get("id", "")),
            )
        by_holder.setdefault(holder, []).append(snapshot)
    return by_holder


def parse_pool_liquidity(positions: Iterable[dict], snapshots: Iterable[dict], start_timestamp: int) -> PoolLiquidity:
    return PoolLiquidity(
        snapshots=parse_liquidity_snapshots(snapshots),
        balances=parse_liquidity_positions(positions, start_timestamp),
    )


def parse_end_interest_indexes(records: Iterable[dict]) -> dict[int, InterestIndex]:
    """[{marketId, borrow, supply}] -> market -> InterestIndex."""
    return {index.market_id: index for index in (InterestIndex.from_record(r) for r in records)}
