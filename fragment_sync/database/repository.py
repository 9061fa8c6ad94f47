"""Database repository for fragment trade state."""

import asyncio
import time
from collections.abc import Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import aiosqlite

from fragment_sync.database.models import (
    DELETE_HOLDER_SQL,
    INSERT_TRADE_SQL,
    SCHEMA_SQL,
    UPSERT_BUCKET_SQL,
    UPSERT_CHECKPOINT_SQL,
    UPSERT_HOLDER_SQL,
    UPSERT_MARKET_SQL,
)
from fragment_sync.schemas import (
    Checkpoint,
    FoldResult,
    HolderBalance,
    Holding,
    MarketSnapshot,
    OhlcvBucket,
    TradeRecord,
)
from fragment_sync.utils.logging import get_logger

logger = get_logger(__name__)


class CheckpointError(Exception):
    """Checkpoint cannot be written as requested."""


@dataclass(frozen=True)
class CommitStats:
    """Row counts from one atomic pass commit."""

    trades_inserted: int
    holders_upserted: int
    holders_deleted: int
    markets_upserted: int
    buckets_upserted: int


def _opt_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_bool(value: Optional[int]) -> Optional[bool]:
    return None if value is None else bool(value)


class Database:
    """Async SQLite repository.

    Holds a single connection behind a lock. Every public method takes the
    lock for its whole duration, so the statements of one pass commit are
    never interleaved with other writers in this process.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with self._get_connection() as conn:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()
        logger.info("Database initialized", extra={"ctx_db_path": self.db_path})

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get database connection with lock."""
        async with self._lock:
            if self._connection is None:
                self._connection = await aiosqlite.connect(self.db_path)
                self._connection.row_factory = aiosqlite.Row
            yield self._connection

    # ==================== Checkpoint Operations ====================

    async def get_checkpoint(self, contract_type: str) -> Optional[Checkpoint]:
        """Get the sync checkpoint for a contract type."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT contract_type, last_synced_block_number, last_synced_at
                FROM contract_event_sync_status
                WHERE contract_type = ?
                """,
                (contract_type,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return Checkpoint(
                contract_type=row["contract_type"],
                last_synced_block=row["last_synced_block_number"],
                last_synced_at=row["last_synced_at"],
            )

    async def set_checkpoint(
        self, contract_type: str, block_number: int, *, force: bool = False
    ) -> Checkpoint:
        """Seed or move the checkpoint outside of a reconciliation pass.

        Raises:
            CheckpointError: If the move would go backwards and force is not set.
        """
        if block_number < 0:
            raise CheckpointError(f"block number must be non-negative, got {block_number}")

        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT last_synced_block_number FROM contract_event_sync_status WHERE contract_type = ?",
                (contract_type,),
            )
            row = await cursor.fetchone()
            if row is not None and block_number < row[0] and not force:
                raise CheckpointError(
                    f"checkpoint for {contract_type} is at {row[0]}, refusing to rewind to {block_number}"
                )

            now = int(time.time())
            await conn.execute(UPSERT_CHECKPOINT_SQL, (contract_type, block_number, now))
            await conn.commit()

        logger.info(
            "Checkpoint set",
            extra={
                "ctx_contract_type": contract_type,
                "ctx_block": block_number,
                "ctx_previous": row[0] if row is not None else None,
            },
        )
        return Checkpoint(contract_type=contract_type, last_synced_block=block_number, last_synced_at=now)

    # ==================== Pass Commit ====================

    async def get_buckets(
        self, keys: Iterable[tuple[str, int]]
    ) -> dict[tuple[str, int], OhlcvBucket]:
        """Load persisted candles for the given (market, bucket_start) keys."""
        result: dict[tuple[str, int], OhlcvBucket] = {}
        async with self._get_connection() as conn:
            for market, start in keys:
                cursor = await conn.execute(
                    "SELECT * FROM fragment_ohlcv_1h WHERE market_address = ? AND bucket_start = ?",
                    (market, start),
                )
                row = await cursor.fetchone()
                if row is not None:
                    result[(market, start)] = self._row_to_bucket(row)
        return result

    async def get_stored_trade_keys(
        self, keys: Iterable[tuple[str, int]]
    ) -> set[tuple[str, int]]:
        """Subset of (tx_hash, log_index) keys already in the trade history."""
        stored: set[tuple[str, int]] = set()
        async with self._get_connection() as conn:
            for tx_hash, log_index in keys:
                cursor = await conn.execute(
                    "SELECT 1 FROM fragment_trades WHERE tx_hash = ? AND log_index = ?",
                    (tx_hash, log_index),
                )
                if await cursor.fetchone() is not None:
                    stored.add((tx_hash, log_index))
        return stored

    async def commit_pass(
        self,
        contract_type: str,
        fold: FoldResult,
        buckets: list[OhlcvBucket],
        checkpoint_block: int,
        synced_at: Optional[int] = None,
    ) -> CommitStats:
        """Write a whole pass in one transaction.

        Order matters: holder rows must be in place before the market upserts
        recount them. Any failure rolls everything back, checkpoint included.

        Args:
            contract_type: Checkpoint key.
            fold: Write sets from the fold.
            buckets: Candles already merged with persisted state.
            checkpoint_block: New checkpoint value.
            synced_at: Wall-clock UNIX time of the sync (defaults to now).
        """
        synced_at = int(time.time()) if synced_at is None else synced_at
        trades_inserted = 0
        holders_upserted = 0
        holders_deleted = 0

        async with self._get_connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")

                for trade in fold.trades:
                    cursor = await conn.execute(
                        INSERT_TRADE_SQL,
                        (
                            trade.tx_hash,
                            trade.log_index,
                            trade.block_number,
                            trade.block_timestamp,
                            trade.market,
                            trade.trader,
                            1 if trade.is_buy else 0,
                            str(trade.amount),
                            str(trade.price),
                            str(trade.protocol_fee),
                            str(trade.creator_fee),
                            str(trade.holding_reward),
                            str(trade.supply_after),
                            _opt_str(trade.trader_balance_after),
                        ),
                    )
                    trades_inserted += max(cursor.rowcount, 0)

                for holder in fold.holders:
                    if holder.is_delete:
                        await conn.execute(DELETE_HOLDER_SQL, (holder.market, holder.holder))
                        holders_deleted += 1
                        continue
                    await conn.execute(
                        UPSERT_HOLDER_SQL,
                        (
                            holder.market,
                            holder.holder,
                            str(holder.balance),
                            _opt_str(holder.last_trade_price),
                            None if holder.last_trade_is_buy is None else int(holder.last_trade_is_buy),
                            holder.updated_at,
                        ),
                    )
                    holders_upserted += 1

                for market in fold.markets:
                    await conn.execute(
                        UPSERT_MARKET_SQL,
                        (
                            market.market,
                            str(market.current_supply),
                            market.market,
                            str(market.last_price),
                            1 if market.last_is_buy else 0,
                            market.last_block_number,
                            market.last_tx_hash,
                            market.last_updated_at,
                        ),
                    )

                for bucket in buckets:
                    await conn.execute(
                        UPSERT_BUCKET_SQL,
                        (
                            bucket.market,
                            bucket.bucket_start,
                            str(bucket.open_price),
                            str(bucket.high_price),
                            str(bucket.low_price),
                            str(bucket.close_price),
                            str(bucket.volume),
                            str(bucket.buy_volume),
                            str(bucket.sell_volume),
                            bucket.trade_count,
                        ),
                    )

                await conn.execute(
                    UPSERT_CHECKPOINT_SQL, (contract_type, checkpoint_block, synced_at)
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                logger.error(
                    "Pass commit rolled back",
                    extra={
                        "ctx_contract_type": contract_type,
                        "ctx_checkpoint_block": checkpoint_block,
                        "ctx_trades": len(fold.trades),
                    },
                )
                raise

        return CommitStats(
            trades_inserted=trades_inserted,
            holders_upserted=holders_upserted,
            holders_deleted=holders_deleted,
            markets_upserted=len(fold.markets),
            buckets_upserted=len(buckets),
        )

    # ==================== Market Queries ====================

    async def get_market(self, market: str) -> Optional[MarketSnapshot]:
        """Get a market snapshot by address (case-insensitive)."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM fragment_markets WHERE market_address = ? COLLATE NOCASE LIMIT 1",
                (market,),
            )
            row = await cursor.fetchone()
            return self._row_to_market(row) if row else None

    async def list_recent_markets(self, limit: int = 100) -> list[MarketSnapshot]:
        """Markets ordered by most recent trade activity."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM fragment_markets
                ORDER BY last_block_number DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
            return [self._row_to_market(row) for row in rows]

    async def count_markets(self) -> int:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM fragment_markets")
            row = await cursor.fetchone()
            return row[0] if row else 0

    # ==================== Holder Queries ====================

    async def get_holder(self, market: str, holder: str) -> Optional[HolderBalance]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM fragment_holders
                WHERE market_address = ? COLLATE NOCASE AND holder_address = ? COLLATE NOCASE
                """,
                (market, holder),
            )
            row = await cursor.fetchone()
            return self._row_to_holder(row) if row else None

    async def list_holders(self, market: str) -> list[HolderBalance]:
        """Live holders of a market."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM fragment_holders WHERE market_address = ? COLLATE NOCASE ORDER BY holder_address",
                (market,),
            )
            rows = await cursor.fetchall()
            return [self._row_to_holder(row) for row in rows]

    async def list_holdings(self, holder: str) -> list[Holding]:
        """All markets a holder has a position in, most recently active first."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT
                    h.market_address,
                    h.holder_address,
                    h.balance,
                    h.last_trade_price,
                    h.last_trade_is_buy,
                    h.updated_at,
                    m.current_supply,
                    m.holder_count,
                    m.last_price,
                    m.last_is_buy,
                    m.last_block_number,
                    m.last_tx_hash,
                    m.last_updated_at
                FROM fragment_holders h
                JOIN fragment_markets m ON m.market_address = h.market_address
                WHERE h.holder_address = ? COLLATE NOCASE
                  AND h.balance != '0'
                ORDER BY m.last_block_number DESC
                """,
                (holder,),
            )
            rows = await cursor.fetchall()
            return [
                Holding(holder=self._row_to_holder(row), market=self._row_to_market(row))
                for row in rows
            ]

    # ==================== Trade and Candle Queries ====================

    async def list_trades(self, market: str, limit: int = 50) -> list[TradeRecord]:
        """Latest trades of a market, newest first."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM fragment_trades
                WHERE market_address = ? COLLATE NOCASE
                ORDER BY block_number DESC, log_index DESC
                LIMIT ?
                """,
                (market, limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_trade(row) for row in rows]

    async def count_trades(self) -> int:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM fragment_trades")
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def list_candles(
        self, market: str, from_ts: int, to_ts: int
    ) -> list[OhlcvBucket]:
        """Candles with bucket_start in [from_ts, to_ts], oldest first."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM fragment_ohlcv_1h
                WHERE market_address = ? COLLATE NOCASE
                  AND bucket_start >= ?
                  AND bucket_start <= ?
                ORDER BY bucket_start ASC
                """,
                (market, from_ts, to_ts),
            )
            rows = await cursor.fetchall()
            return [self._row_to_bucket(row) for row in rows]

    async def get_last_close_before(self, market: str, ts: int) -> Optional[int]:
        """Close price of the latest candle that starts before ts."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT close_price FROM fragment_ohlcv_1h
                WHERE market_address = ? COLLATE NOCASE
                  AND bucket_start < ?
                ORDER BY bucket_start DESC
                LIMIT 1
                """,
                (market, ts),
            )
            row = await cursor.fetchone()
            if row is None or row["close_price"] is None:
                return None
            return int(row["close_price"])

    # ==================== Row Mapping ====================

    @staticmethod
    def _row_to_market(row: aiosqlite.Row) -> MarketSnapshot:
        return MarketSnapshot(
            market=row["market_address"],
            current_supply=row["current_supply"],
            holder_count=row["holder_count"],
            last_price=row["last_price"],
            last_is_buy=bool(row["last_is_buy"]),
            last_block_number=row["last_block_number"],
            last_tx_hash=row["last_tx_hash"],
            last_updated_at=row["last_updated_at"],
        )

    @staticmethod
    def _row_to_holder(row: aiosqlite.Row) -> HolderBalance:
        return HolderBalance(
            market=row["market_address"],
            holder=row["holder_address"],
            balance=row["balance"],
            last_trade_price=row["last_trade_price"],
            last_trade_is_buy=_opt_bool(row["last_trade_is_buy"]),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_trade(row: aiosqlite.Row) -> TradeRecord:
        return TradeRecord(
            block_number=row["block_number"],
            tx_hash=row["tx_hash"],
            log_index=row["log_index"],
            trader=row["trader_address"],
            market=row["market_address"],
            is_buy=bool(row["is_buy"]),
            amount=row["amount"],
            price=row["price"],
            protocol_fee=row["protocol_fee"],
            creator_fee=row["creator_fee"],
            holding_reward=row["holding_reward"],
            supply_after=row["supply_after"],
            trader_balance_after=row["trader_balance_after"],
            block_timestamp=row["block_timestamp"],
        )

    @staticmethod
    def _row_to_bucket(row: aiosqlite.Row) -> OhlcvBucket:
        return OhlcvBucket(
            market=row["market_address"],
            bucket_start=row["bucket_start"],
            open_price=row["open_price"],
            high_price=row["high_price"],
            low_price=row["low_price"],
            close_price=row["close_price"],
            volume=row["volume"],
            buy_volume=row["buy_volume"],
            sell_volume=row["sell_volume"],
            trade_count=row["trade_count"],
        )
