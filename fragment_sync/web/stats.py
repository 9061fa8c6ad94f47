"""Runtime metrics collection for the monitoring endpoints.

This module provides a StatsCollector class that aggregates sync progress
from the trade sync service and the database for the web server.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from fragment_sync.utils.logging import get_logger

if TYPE_CHECKING:
    from fragment_sync.database.repository import Database
    from fragment_sync.schemas import SyncResult
    from fragment_sync.services.trade_sync import TradeSyncService

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncMetrics:
    """Progress of the reconciliation loop."""

    contract_type: str
    running: bool
    checkpoint_block: Optional[int]
    chain_head: Optional[int]
    consecutive_failures: int
    last_error: Optional[str]
    last_result: Optional[SyncResult]

    @property
    def lag_blocks(self) -> Optional[int]:
        if self.checkpoint_block is None or self.chain_head is None:
            return None
        return max(self.chain_head - self.checkpoint_block, 0)

    @property
    def healthy(self) -> bool:
        return self.checkpoint_block is not None and self.consecutive_failures == 0


@dataclass(frozen=True)
class StoreMetrics:
    """Row counts of the derived state."""

    market_count: int
    trade_count: int


@dataclass(frozen=True)
class SystemMetrics:
    """System-level metrics."""

    timestamp: datetime
    uptime_seconds: float
    sync: SyncMetrics
    store: StoreMetrics

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to a JSON-serializable dictionary."""
        last_result = self.sync.last_result
        return {
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "sync": {
                "contract_type": self.sync.contract_type,
                "running": self.sync.running,
                "checkpoint_block": self.sync.checkpoint_block,
                "chain_head": self.sync.chain_head,
                "lag_blocks": self.sync.lag_blocks,
                "consecutive_failures": self.sync.consecutive_failures,
                "last_error": self.sync.last_error,
                "last_pass": last_result.model_dump(mode="json") if last_result else None,
            },
            "store": {
                "market_count": self.store.market_count,
                "trade_count": self.store.trade_count,
            },
        }


class StatsCollector:
    """Aggregates runtime metrics from the sync service and the database.

    Example:
        collector = StatsCollector(
            sync_service=sync_service,
            db=db,
            start_time=datetime.now(timezone.utc),
        )
        metrics = await collector.collect()
    """

    def __init__(
        self,
        sync_service: TradeSyncService,
        db: Database,
        start_time: datetime,
    ) -> None:
        self._sync_service = sync_service
        self._db = db
        self._start_time = start_time

    async def _get_store_metrics(self) -> StoreMetrics:
        try:
            return StoreMetrics(
                market_count=await self._db.count_markets(),
                trade_count=await self._db.count_trades(),
            )
        except Exception as e:
            logger.error("Failed to count stored rows", extra={"ctx_error": str(e)})
            return StoreMetrics(market_count=0, trade_count=0)

    async def _get_sync_metrics(self) -> SyncMetrics:
        service = self._sync_service
        checkpoint = await self._db.get_checkpoint(service.contract_type)
        return SyncMetrics(
            contract_type=service.contract_type,
            running=service.is_running,
            checkpoint_block=checkpoint.last_synced_block if checkpoint else None,
            chain_head=service.last_chain_head,
            consecutive_failures=service.consecutive_failures,
            last_error=service.last_error,
            last_result=service.last_result,
        )

    async def collect(self) -> SystemMetrics:
        """Collect all metrics."""
        now = datetime.now(timezone.utc)
        return SystemMetrics(
            timestamp=now,
            uptime_seconds=(now - self._start_time).total_seconds(),
            sync=await self._get_sync_metrics(),
            store=await self._get_store_metrics(),
        )

    async def collect_dict(self) -> dict[str, Any]:
        """Collect metrics as a JSON-serializable dictionary."""
        metrics = await self.collect()
        return metrics.to_dict()


__all__ = [
    "StatsCollector",
    "SystemMetrics",
    "SyncMetrics",
    "StoreMetrics",
]
