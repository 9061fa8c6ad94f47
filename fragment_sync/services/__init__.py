"""Business logic services."""

from fragment_sync.services.market_stats import MarketStatsService
from fragment_sync.services.trade_sync import CheckpointMissingError, TradeSyncService

__all__ = ["CheckpointMissingError", "MarketStatsService", "TradeSyncService"]
