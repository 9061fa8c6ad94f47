"""Fold a batch of trade logs into trade, holder, market and candle write sets.

Every "latest wins" decision uses the (block number, log index) total order
and is computed as a max-by-order per key, so the result does not depend on
the order in which the chain client returned the logs.
"""

from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import TypeVar

from fragment_sync.schemas import (
    FoldResult,
    HolderWrite,
    MarketSnapshotWrite,
    OhlcvBucket,
    TradeLog,
    TradeRecord,
)
from fragment_sync.utils.logging import get_logger

logger = get_logger(__name__)

BUCKET_SECONDS = 3600

K = TypeVar("K", bound=Hashable)


def bucket_start(timestamp: int, size: int = BUCKET_SECONDS) -> int:
    """Align a UNIX timestamp to the start of its bucket."""
    return (timestamp // size) * size


def filter_new_logs(logs: Iterable[TradeLog], checkpoint_block: int) -> list[TradeLog]:
    """Drop logs at or below the checkpoint block.

    The checkpoint block itself counts as applied, so its logs are dropped too.
    """
    return [log for log in logs if log.block_number > checkpoint_block]


def blocks_to_resolve(logs: Iterable[TradeLog], checkpoint_block: int) -> list[int]:
    """Distinct block numbers whose timestamps the fold will need."""
    return sorted({log.block_number for log in filter_new_logs(logs, checkpoint_block)})


def latest_by(entries: Iterable[TradeLog], key: Callable[[TradeLog], K]) -> dict[K, TradeLog]:
    """Pick the latest entry per key by (block number, log index)."""
    latest: dict[K, TradeLog] = {}
    for entry in entries:
        k = key(entry)
        current = latest.get(k)
        if current is None or entry.order_key > current.order_key:
            latest[k] = entry
    return latest


def fold_trades(
    logs: Iterable[TradeLog],
    checkpoint_block: int,
    block_timestamps: Mapping[int, int],
) -> FoldResult:
    """Fold decoded trade logs into write sets for one pass.

    Args:
        logs: Decoded logs for the scan window, in any order.
        checkpoint_block: Checkpoint the window was planned from.
        block_timestamps: Block number -> UNIX timestamp for every block
            above the checkpoint that appears in ``logs``.

    Returns:
        FoldResult with trade inserts, holder writes, market snapshot writes
        and in-batch OHLCV aggregates.

    Raises:
        KeyError: If a timestamp is missing for a block being folded.
    """
    skipped = 0
    duplicates = 0
    seen: set[tuple[str, int]] = set()
    fresh: list[TradeLog] = []

    for log in logs:
        if log.block_number <= checkpoint_block:
            skipped += 1
            continue
        # The same log can show up twice if the client stitches pages together
        if log.natural_key in seen:
            duplicates += 1
            continue
        seen.add(log.natural_key)
        fresh.append(log)

    fresh.sort(key=lambda log: log.order_key)

    trades = [
        TradeRecord(**log.model_dump(), block_timestamp=_timestamp(block_timestamps, log))
        for log in fresh
    ]

    return FoldResult(
        trades=trades,
        holders=_fold_holders(trades),
        markets=_fold_markets(trades),
        buckets=fold_buckets(trades),
        skipped_count=skipped,
        duplicate_count=duplicates,
    )


def _timestamp(block_timestamps: Mapping[int, int], log: TradeLog) -> int:
    try:
        return block_timestamps[log.block_number]
    except KeyError:
        raise KeyError(f"no timestamp resolved for block {log.block_number}") from None


def _fold_holders(trades: list[TradeRecord]) -> list[HolderWrite]:
    """Final balance per (market, holder), taken from the latest trade's own report."""
    writes: list[HolderWrite] = []
    latest = latest_by(trades, lambda t: (t.market, t.trader))

    for (market, holder), trade in sorted(latest.items()):
        balance = trade.trader_balance_after
        if balance is None:
            # Event layout without a post-trade balance: nothing authoritative to write
            logger.debug(
                "Trade carries no trader balance, holder left untouched",
                extra={"ctx_market": market, "ctx_holder": holder, "ctx_tx_hash": trade.tx_hash},
            )
            continue
        if balance < 0:
            logger.warning(
                "Negative holder balance clamped to zero",
                extra={
                    "ctx_market": market,
                    "ctx_holder": holder,
                    "ctx_balance": str(balance),
                    "ctx_tx_hash": trade.tx_hash,
                    "ctx_log_index": trade.log_index,
                },
            )
            balance = 0

        writes.append(
            HolderWrite(
                market=market,
                holder=holder,
                balance=balance,
                last_trade_price=trade.price,
                last_trade_is_buy=trade.is_buy,
                updated_at=trade.block_timestamp,
            )
        )
    return writes


def _fold_markets(trades: list[TradeRecord]) -> list[MarketSnapshotWrite]:
    latest = latest_by(trades, lambda t: t.market)
    return [
        MarketSnapshotWrite(
            market=market,
            current_supply=trade.supply_after,
            last_price=trade.price,
            last_is_buy=trade.is_buy,
            last_block_number=trade.block_number,
            last_tx_hash=trade.tx_hash,
            last_updated_at=trade.block_timestamp,
        )
        for market, trade in sorted(latest.items())
    ]


def fold_buckets(trades: list[TradeRecord]) -> list[OhlcvBucket]:
    """Aggregate hourly candles. ``trades`` must already be in total order."""
    buckets: dict[tuple[str, int], OhlcvBucket] = {}

    for trade in trades:
        key = (trade.market, bucket_start(trade.block_timestamp))
        bucket = buckets.get(key)
        if bucket is None:
            bucket = OhlcvBucket(
                market=trade.market,
                bucket_start=key[1],
                open_price=trade.price,
                high_price=trade.price,
                low_price=trade.price,
                close_price=trade.price,
            )
            buckets[key] = bucket
        else:
            bucket.high_price = max(bucket.high_price, trade.price)
            bucket.low_price = min(bucket.low_price, trade.price)
            bucket.close_price = trade.price

        volume = trade.volume
        bucket.volume += volume
        if trade.is_buy:
            bucket.buy_volume += volume
        else:
            bucket.sell_volume += volume
        bucket.trade_count += 1

    return [buckets[key] for key in sorted(buckets)]
