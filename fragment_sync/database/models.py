"""SQLite database schema and statement definitions.

uint256 quantities are stored as decimal TEXT and never compared in SQL.
"""

SCHEMA_SQL = """
-- Per-contract sync checkpoint
CREATE TABLE IF NOT EXISTS contract_event_sync_status (
    contract_type TEXT NOT NULL PRIMARY KEY,
    last_synced_block_number INTEGER NOT NULL,
    last_synced_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);

-- Trade history, one row per log
CREATE TABLE IF NOT EXISTS fragment_trades (
    tx_hash TEXT NOT NULL,
    log_index INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    block_timestamp INTEGER,
    market_address TEXT NOT NULL,
    trader_address TEXT NOT NULL,
    is_buy INTEGER NOT NULL,
    amount TEXT NOT NULL,
    price TEXT NOT NULL,
    protocol_fee TEXT NOT NULL,
    creator_fee TEXT NOT NULL,
    holding_reward TEXT NOT NULL,
    supply_after TEXT NOT NULL,
    trader_balance_after TEXT,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (tx_hash, log_index)
);

CREATE INDEX IF NOT EXISTS idx_fragment_trades_block_log
    ON fragment_trades (block_number DESC, log_index DESC);
CREATE INDEX IF NOT EXISTS idx_fragment_trades_market_block_log
    ON fragment_trades (market_address, block_number DESC, log_index DESC);

-- Live holders only; a zero balance deletes the row
CREATE TABLE IF NOT EXISTS fragment_holders (
    market_address TEXT NOT NULL,
    holder_address TEXT NOT NULL,
    balance TEXT NOT NULL,
    last_trade_price TEXT,
    last_trade_is_buy INTEGER,
    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (market_address, holder_address)
);

CREATE INDEX IF NOT EXISTS idx_fragment_holders_holder
    ON fragment_holders (holder_address);

-- Latest per-market snapshot
CREATE TABLE IF NOT EXISTS fragment_markets (
    market_address TEXT PRIMARY KEY,
    current_supply TEXT NOT NULL,
    holder_count INTEGER NOT NULL,
    last_price TEXT NOT NULL,
    last_is_buy INTEGER NOT NULL,
    last_block_number INTEGER NOT NULL,
    last_tx_hash TEXT NOT NULL,
    last_updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fragment_markets_last_block
    ON fragment_markets (last_block_number DESC);

-- Hourly candles
CREATE TABLE IF NOT EXISTS fragment_ohlcv_1h (
    market_address TEXT NOT NULL,
    bucket_start INTEGER NOT NULL,
    open_price TEXT NOT NULL,
    high_price TEXT NOT NULL,
    low_price TEXT NOT NULL,
    close_price TEXT NOT NULL,
    volume TEXT NOT NULL,
    buy_volume TEXT NOT NULL,
    sell_volume TEXT NOT NULL,
    trade_count INTEGER NOT NULL,
    PRIMARY KEY (market_address, bucket_start)
);
"""

INSERT_TRADE_SQL = """
INSERT INTO fragment_trades (
    tx_hash, log_index, block_number, block_timestamp,
    market_address, trader_address, is_buy,
    amount, price, protocol_fee, creator_fee, holding_reward,
    supply_after, trader_balance_after
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(tx_hash, log_index) DO NOTHING
"""

UPSERT_HOLDER_SQL = """
INSERT INTO fragment_holders (
    market_address, holder_address, balance,
    last_trade_price, last_trade_is_buy, updated_at
) VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(market_address, holder_address) DO UPDATE SET
    balance = excluded.balance,
    last_trade_price = COALESCE(excluded.last_trade_price, fragment_holders.last_trade_price),
    last_trade_is_buy = COALESCE(excluded.last_trade_is_buy, fragment_holders.last_trade_is_buy),
    updated_at = excluded.updated_at
"""

DELETE_HOLDER_SQL = """
DELETE FROM fragment_holders
WHERE market_address = ? AND holder_address = ?
"""

# holder_count is recounted from the holder table inside the same transaction
UPSERT_MARKET_SQL = """
INSERT INTO fragment_markets (
    market_address, current_supply, holder_count,
    last_price, last_is_buy, last_block_number, last_tx_hash, last_updated_at
) VALUES (
    ?, ?,
    (SELECT COUNT(*) FROM fragment_holders WHERE market_address = ?),
    ?, ?, ?, ?, ?
)
ON CONFLICT(market_address) DO UPDATE SET
    current_supply = excluded.current_supply,
    holder_count = excluded.holder_count,
    last_price = excluded.last_price,
    last_is_buy = excluded.last_is_buy,
    last_block_number = excluded.last_block_number,
    last_tx_hash = excluded.last_tx_hash,
    last_updated_at = excluded.last_updated_at
"""

UPSERT_BUCKET_SQL = """
INSERT INTO fragment_ohlcv_1h (
    market_address, bucket_start,
    open_price, high_price, low_price, close_price,
    volume, buy_volume, sell_volume, trade_count
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(market_address, bucket_start) DO UPDATE SET
    high_price = excluded.high_price,
    low_price = excluded.low_price,
    close_price = excluded.close_price,
    volume = excluded.volume,
    buy_volume = excluded.buy_volume,
    sell_volume = excluded.sell_volume,
    trade_count = excluded.trade_count
"""

UPSERT_CHECKPOINT_SQL = """
INSERT INTO contract_event_sync_status (
    contract_type, last_synced_block_number, last_synced_at
) VALUES (?, ?, ?)
ON CONFLICT(contract_type) DO UPDATE SET
    last_synced_block_number = excluded.last_synced_block_number,
    last_synced_at = excluded.last_synced_at
"""
