"""Trade sync service: one reconciliation pass per tick."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

from fragment_sync.chain.abi import TradeEventAbi
from fragment_sync.chain.client import ChainReader
from fragment_sync.database.repository import Database
from fragment_sync.schemas import Checkpoint, FoldResult, OhlcvBucket, SyncResult
from fragment_sync.sync.buckets import bucket_key, merge_buckets
from fragment_sync.sync.fold import blocks_to_resolve, fold_buckets, fold_trades
from fragment_sync.sync.window import DEFAULT_BLOCK_STEP, plan_window
from fragment_sync.utils.logging import get_logger

logger = get_logger(__name__)


class CheckpointMissingError(Exception):
    """No checkpoint exists for the contract type; the starting block is unknown."""


class TradeSyncService:
    """Folds trade logs of one contract into persisted state.

    Each pass:
    - reads the checkpoint and plans an overlapping block window
    - fetches logs and the timestamps of their blocks
    - folds them into trade, holder, market and candle writes
    - merges candles with stored rows and commits everything at once

    Passes for one contract type must never overlap. Within this process the
    pass lock enforces that; running several processes against the same
    database for the same contract type is not supported.
    """

    def __init__(
        self,
        chain: ChainReader,
        db: Database,
        *,
        contract_type: str,
        contract_address: str,
        event: TradeEventAbi,
        block_step: int = DEFAULT_BLOCK_STEP,
    ) -> None:
        self._chain = chain
        self._db = db
        self.contract_type = contract_type
        self.contract_address = contract_address
        self.event = event
        self.block_step = block_step

        if not event.has_trader_balance:
            logger.warning(
                "Trade event reports no trader balance, holder rows will not be updated",
                extra={"ctx_contract_type": contract_type, "ctx_event": event.canonical},
            )

        self._pass_lock = asyncio.Lock()
        self._is_running = False
        self._sync_task: Optional[asyncio.Task] = None

        # Monitoring state
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None
        self.last_chain_head: Optional[int] = None
        self.consecutive_failures = 0

    async def initialize_checkpoint(self, block_number: int, force: bool = False) -> Checkpoint:
        """Seed the checkpoint so the first pass knows where to start."""
        return await self._db.set_checkpoint(self.contract_type, block_number, force=force)

    async def run_pass(self) -> SyncResult:
        """Run one reconciliation pass.

        Returns:
            SyncResult describing the window and the writes.

        Raises:
            CheckpointMissingError: If the contract type was never seeded.
            RpcError: If the chain client fails; nothing is written.
            LogDecodeError: If a log does not fit the event ABI; nothing is written.
        """
        async with self._pass_lock:
            started = time.monotonic()

            checkpoint = await self._db.get_checkpoint(self.contract_type)
            if checkpoint is None:
                raise CheckpointMissingError(
                    f"No previously synced block found for {self.contract_type}"
                )
            previous = checkpoint.last_synced_block

            head = await self._chain.get_block_number()
            self.last_chain_head = head
            window = plan_window(previous, head, self.block_step)

            if window.to_block < previous:
                # The node is behind our checkpoint; never move it backwards
                logger.warning(
                    "Chain head below checkpoint, skipping pass",
                    extra={
                        "ctx_contract_type": self.contract_type,
                        "ctx_chain_head": head,
                        "ctx_checkpoint": previous,
                    },
                )
                return self._finish(
                    SyncResult(
                        contract_type=self.contract_type,
                        window=window,
                        previous_block=previous,
                        checkpoint_block=previous,
                    ),
                    started,
                )

            logs = await self._chain.get_logs(
                self.contract_address, self.event, window.from_block, window.to_block
            )
            timestamps = await self._resolve_timestamps(blocks_to_resolve(logs, previous))

            fold = fold_trades(logs, previous, timestamps)
            batch_buckets = await self._unstored_buckets(fold)
            persisted = await self._db.get_buckets(bucket_key(b) for b in batch_buckets)
            buckets = merge_buckets(batch_buckets, persisted)

            # Advances even when nothing new was folded
            stats = await self._db.commit_pass(
                self.contract_type, fold, buckets, window.to_block
            )

            return self._finish(
                SyncResult(
                    contract_type=self.contract_type,
                    window=window,
                    previous_block=previous,
                    checkpoint_block=window.to_block,
                    fetched_count=len(logs),
                    applied_count=len(fold.trades),
                    skipped_count=fold.skipped_count + fold.duplicate_count,
                    trades_written=stats.trades_inserted,
                    holders_upserted=stats.holders_upserted,
                    holders_deleted=stats.holders_deleted,
                    markets_touched=stats.markets_upserted,
                    buckets_written=stats.buckets_upserted,
                ),
                started,
            )

    async def _resolve_timestamps(self, block_numbers: list[int]) -> dict[int, int]:
        """Look up each distinct block once, concurrently.

        The cache lives for one pass only.
        """
        cache: dict[int, int] = {}

        async def fetch(block_number: int) -> None:
            cache[block_number] = await self._chain.get_block_timestamp(block_number)

        tasks = [asyncio.create_task(fetch(b)) for b in dict.fromkeys(block_numbers)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # The pass is aborted; stop spending RPC slots on the other lookups
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return cache

    async def _unstored_buckets(self, fold: FoldResult) -> list[OhlcvBucket]:
        """Batch candles built only from trades not yet in the trade history.

        A trade already in the history is already counted in its stored
        candle. This happens after the checkpoint was moved back.
        """
        stored = await self._db.get_stored_trade_keys(t.natural_key for t in fold.trades)
        if not stored:
            return fold.buckets

        logger.warning(
            "Window contains stored trades, excluding them from candles",
            extra={"ctx_contract_type": self.contract_type, "ctx_stored": len(stored)},
        )
        return fold_buckets([t for t in fold.trades if t.natural_key not in stored])

    def _finish(self, result: SyncResult, started: float) -> SyncResult:
        result.duration_ms = round((time.monotonic() - started) * 1000, 1)
        self.last_result = result
        self.consecutive_failures = 0

        logger.info(
            "Sync pass complete",
            extra={
                "ctx_contract_type": result.contract_type,
                "ctx_from_block": result.window.from_block,
                "ctx_to_block": result.window.to_block,
                "ctx_previous_block": result.previous_block,
                "ctx_checkpoint_block": result.checkpoint_block,
                "ctx_fetched": result.fetched_count,
                "ctx_applied": result.applied_count,
                "ctx_skipped": result.skipped_count,
                "ctx_trades_written": result.trades_written,
                "ctx_holders_upserted": result.holders_upserted,
                "ctx_holders_deleted": result.holders_deleted,
                "ctx_markets": result.markets_touched,
                "ctx_buckets": result.buckets_written,
                "ctx_duration_ms": result.duration_ms,
            },
        )
        return result

    # ==================== Periodic Sync ====================

    async def start_periodic_sync(self, interval_seconds: float) -> None:
        """Start background passes every interval_seconds."""
        if self._is_running:
            logger.warning("Periodic sync already running")
            return

        self._is_running = True
        self._sync_task = asyncio.create_task(self._periodic_sync_loop(interval_seconds))
        logger.info(
            "Started periodic sync",
            extra={"ctx_interval": interval_seconds, "ctx_contract_type": self.contract_type},
        )

    async def _periodic_sync_loop(self, interval_seconds: float) -> None:
        """Internal loop; a failed pass is logged and healed by the next one."""
        while self._is_running:
            try:
                await self.run_pass()
            except Exception as e:
                self.consecutive_failures += 1
                self.last_error = f"{type(e).__name__}: {e}"
                self.last_error_at = datetime.now(timezone.utc)
                logger.error(
                    "Sync pass failed",
                    extra={
                        "ctx_contract_type": self.contract_type,
                        "ctx_error": str(e),
                        "ctx_error_type": type(e).__name__,
                        "ctx_consecutive_failures": self.consecutive_failures,
                    },
                )

            await asyncio.sleep(interval_seconds)

    async def stop_periodic_sync(self) -> None:
        """Stop background passes."""
        self._is_running = False
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        logger.info("Stopped periodic sync")

    @property
    def is_running(self) -> bool:
        return self._is_running
