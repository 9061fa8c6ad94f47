"""Pydantic models for fragment trade events and derived state."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# uint256 values travel as decimal strings in the database
_UINT_FIELDS = (
    "amount",
    "price",
    "protocol_fee",
    "creator_fee",
    "holding_reward",
    "supply_after",
    "trader_balance_after",
)

ExploreSortKey = Literal["trending", "holders", "volume", "price"]


def _to_int(v: str | int | None) -> Optional[int]:
    if v is None or isinstance(v, int):
        return v
    return int(str(v))


class TradeLog(BaseModel):
    """A decoded TradeExecuted log entry as returned by the chain client."""

    model_config = ConfigDict(frozen=True)

    block_number: int
    tx_hash: str
    log_index: int

    trader: str
    market: str
    is_buy: bool
    amount: int
    price: int
    protocol_fee: int = 0
    creator_fee: int = 0
    holding_reward: int = 0
    supply_after: int
    trader_balance_after: Optional[int] = None

    @field_validator(*_UINT_FIELDS, mode="before")
    @classmethod
    def parse_uint(cls, v: str | int | None) -> Optional[int]:
        """Accept decimal strings for uint256 values."""
        return _to_int(v)

    @property
    def order_key(self) -> tuple[int, int]:
        """Position of the entry in the (block number, log index) total order."""
        return (self.block_number, self.log_index)

    @property
    def natural_key(self) -> tuple[str, int]:
        """Identity of the log across overlapping scans."""
        return (self.tx_hash, self.log_index)

    @property
    def volume(self) -> int:
        return self.amount * self.price


class TradeRecord(TradeLog):
    """Trade history row: a log entry with its block timestamp."""

    block_timestamp: int


class HolderWrite(BaseModel):
    """Final holder state for one (market, holder) within a pass.

    A balance of zero is written as a delete.
    """

    market: str
    holder: str
    balance: int
    last_trade_price: Optional[int] = None
    last_trade_is_buy: Optional[bool] = None
    updated_at: int

    @property
    def is_delete(self) -> bool:
        return self.balance == 0


class MarketSnapshotWrite(BaseModel):
    """Latest per-market state observed in a pass."""

    market: str
    current_supply: int
    last_price: int
    last_is_buy: bool
    last_block_number: int
    last_tx_hash: str
    last_updated_at: int


class OhlcvBucket(BaseModel):
    """Hourly OHLCV candle for a market."""

    market: str
    bucket_start: int
    open_price: int
    high_price: int
    low_price: int
    close_price: int
    volume: int = 0
    buy_volume: int = 0
    sell_volume: int = 0
    trade_count: int = 0

    @field_validator(
        "open_price",
        "high_price",
        "low_price",
        "close_price",
        "volume",
        "buy_volume",
        "sell_volume",
        mode="before",
    )
    @classmethod
    def parse_uint(cls, v: str | int) -> int:
        return _to_int(v)


class Checkpoint(BaseModel):
    """Last block fully folded into persisted state for a contract type."""

    contract_type: str
    last_synced_block: int
    last_synced_at: int


class ScanWindow(BaseModel):
    """Inclusive block range scanned by one pass."""

    model_config = ConfigDict(frozen=True)

    from_block: int
    to_block: int


class FoldResult(BaseModel):
    """Write sets produced by folding one batch of logs.

    Buckets are in-batch aggregates, not yet merged with persisted rows.
    """

    trades: list[TradeRecord] = Field(default_factory=list)
    holders: list[HolderWrite] = Field(default_factory=list)
    markets: list[MarketSnapshotWrite] = Field(default_factory=list)
    buckets: list[OhlcvBucket] = Field(default_factory=list)
    skipped_count: int = 0
    duplicate_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.trades


class SyncResult(BaseModel):
    """Outcome of a single reconciliation pass."""

    contract_type: str
    window: ScanWindow
    previous_block: int
    checkpoint_block: int
    fetched_count: int = 0
    applied_count: int = 0
    skipped_count: int = 0
    trades_written: int = 0
    holders_upserted: int = 0
    holders_deleted: int = 0
    markets_touched: int = 0
    buckets_written: int = 0
    duration_ms: float = 0.0
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MarketSnapshot(BaseModel):
    """Persisted market snapshot row."""

    market: str
    current_supply: int
    holder_count: int
    last_price: int
    last_is_buy: bool
    last_block_number: int
    last_tx_hash: str
    last_updated_at: int

    @field_validator("current_supply", "last_price", mode="before")
    @classmethod
    def parse_uint(cls, v: str | int) -> int:
        return _to_int(v)


class HolderBalance(BaseModel):
    """Persisted holder balance row."""

    market: str
    holder: str
    balance: int
    last_trade_price: Optional[int] = None
    last_trade_is_buy: Optional[bool] = None
    updated_at: int

    @field_validator("balance", "last_trade_price", mode="before")
    @classmethod
    def parse_uint(cls, v: str | int | None) -> Optional[int]:
        return _to_int(v)


class Holding(BaseModel):
    """A holder's position joined with the market snapshot."""

    holder: HolderBalance
    market: MarketSnapshot


class MarketStats(BaseModel):
    """Rolling 24h statistics for a market."""

    volume_24h: int
    change_24h_pct: Optional[float] = None


class TrendingMarket(BaseModel):
    """Market entry for explore/trending listings."""

    market: str
    current_supply: int
    holder_count: int
    last_price: int
    last_block_number: int
    volume_24h: int
    change_24h_pct: Optional[float] = None
