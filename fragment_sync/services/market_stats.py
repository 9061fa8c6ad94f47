"""Rolling market statistics derived from snapshots and hourly candles."""

import math
import time
from typing import Optional

from fragment_sync.database.repository import Database
from fragment_sync.schemas import ExploreSortKey, MarketStats, TrendingMarket
from fragment_sync.utils.logging import get_logger

logger = get_logger(__name__)

DAY_SECONDS = 24 * 3600


def _div_trunc(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def change_pct(current_price: int, base_price: Optional[int]) -> Optional[float]:
    """Percentage change with basis-point precision.

    Returns None when there is no usable base price.
    """
    if base_price is None or base_price == 0:
        return None
    bps = _div_trunc((current_price - base_price) * 10000, base_price)
    return bps / 100


class MarketStatsService:
    """Read-side statistics for explore and trending listings."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_24h_stats(
        self,
        market: str,
        current_price: int,
        now: Optional[int] = None,
    ) -> MarketStats:
        """Volume and price change over the last 24 hours.

        The base price is the close of the last candle before the window, or
        failing that the open of the first candle inside it.
        """
        now = int(time.time()) if now is None else now
        from_ts = now - DAY_SECONDS

        candles = await self._db.list_candles(market, from_ts, now)
        volume = sum(c.volume for c in candles)
        earliest_open = candles[0].open_price if candles else None

        base_price = await self._db.get_last_close_before(market, from_ts)
        if base_price is None:
            base_price = earliest_open

        return MarketStats(volume_24h=volume, change_24h_pct=change_pct(current_price, base_price))

    async def list_trending(
        self,
        limit: int = 20,
        sort: ExploreSortKey = "trending",
        now: Optional[int] = None,
    ) -> list[TrendingMarket]:
        """Markets ranked by the given sort key.

        Candidates are the most recently active markets (three times the
        requested size), each enriched with 24h stats before sorting.
        """
        pool = await self._db.list_recent_markets(max(limit * 3, limit))

        entries: list[TrendingMarket] = []
        for snapshot in pool:
            stats = await self.get_24h_stats(snapshot.market, snapshot.last_price, now=now)
            entries.append(
                TrendingMarket(
                    market=snapshot.market,
                    current_supply=snapshot.current_supply,
                    holder_count=snapshot.holder_count,
                    last_price=snapshot.last_price,
                    last_block_number=snapshot.last_block_number,
                    volume_24h=stats.volume_24h,
                    change_24h_pct=stats.change_24h_pct,
                )
            )

        if sort == "holders":
            entries.sort(key=lambda e: e.holder_count, reverse=True)
        elif sort == "volume":
            entries.sort(key=lambda e: e.volume_24h, reverse=True)
        elif sort == "price":
            entries.sort(key=lambda e: e.last_price, reverse=True)
        else:
            # Unknown change sorts last; ties go to the most recently active
            entries.sort(
                key=lambda e: (
                    -math.inf if e.change_24h_pct is None else e.change_24h_pct,
                    e.last_block_number,
                ),
                reverse=True,
            )

        logger.debug(
            "Trending list built",
            extra={"ctx_sort": sort, "ctx_candidates": len(pool), "ctx_limit": limit},
        )
        return entries[:limit]
