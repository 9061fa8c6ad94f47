import pytest
from conftest import HOLDER_1, HOLDER_2, MARKET_A, T0, block_time, make_log

from fragment_sync.database.repository import CheckpointError
from fragment_sync.sync.fold import fold_trades

CONTRACT = "PERSONA_FRAGMENTS"


def fold(logs, checkpoint=0):
    timestamps = {log.block_number: block_time(log.block_number) for log in logs}
    return fold_trades(logs, checkpoint, timestamps)


@pytest.mark.asyncio
async def test_checkpoint_missing_returns_none(db):
    assert await db.get_checkpoint(CONTRACT) is None


@pytest.mark.asyncio
async def test_set_checkpoint_refuses_rewind(db):
    await db.set_checkpoint(CONTRACT, 1000)
    with pytest.raises(CheckpointError):
        await db.set_checkpoint(CONTRACT, 900)

    await db.set_checkpoint(CONTRACT, 900, force=True)
    checkpoint = await db.get_checkpoint(CONTRACT)
    assert checkpoint.last_synced_block == 900


@pytest.mark.asyncio
async def test_commit_pass_writes_all_state(db):
    result = fold([make_log(10, amount=100, price=7, supply_after=100, trader_balance_after=100)])
    stats = await db.commit_pass(CONTRACT, result, result.buckets, 1500, synced_at=T0)

    assert stats.trades_inserted == 1
    assert stats.holders_upserted == 1
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1500

    holder = await db.get_holder(MARKET_A, HOLDER_1)
    assert holder.balance == 100
    assert holder.last_trade_price == 7
    assert holder.last_trade_is_buy is True

    market = await db.get_market(MARKET_A.lower())
    assert market.holder_count == 1
    assert market.current_supply == 100

    candles = await db.list_candles(MARKET_A, T0, T0)
    assert len(candles) == 1
    assert candles[0].volume == 700


@pytest.mark.asyncio
async def test_trade_insert_is_idempotent(db):
    result = fold([make_log(10), make_log(11)])

    first = await db.commit_pass(CONTRACT, result, [], 20)
    second = await db.commit_pass(CONTRACT, result, [], 20)

    assert first.trades_inserted == 2
    assert second.trades_inserted == 0
    assert await db.count_trades() == 2


@pytest.mark.asyncio
async def test_holder_count_follows_deletes(db):
    opening = fold([
        make_log(10, 0, trader=HOLDER_1, trader_balance_after=5),
        make_log(10, 1, trader=HOLDER_2, trader_balance_after=3),
    ])
    await db.commit_pass(CONTRACT, opening, [], 10)
    assert (await db.get_market(MARKET_A)).holder_count == 2

    exit_ = fold([make_log(11, trader=HOLDER_2, is_buy=False, trader_balance_after=0)], 10)
    stats = await db.commit_pass(CONTRACT, exit_, [], 11)

    assert stats.holders_deleted == 1
    assert await db.get_holder(MARKET_A, HOLDER_2) is None
    assert (await db.get_market(MARKET_A)).holder_count == 1


@pytest.mark.asyncio
async def test_failed_commit_rolls_back_everything(db):
    await db.set_checkpoint(CONTRACT, 5)
    result = fold([make_log(10, trader_balance_after=5)])

    # A NULL checkpoint violates NOT NULL after every other write has run
    with pytest.raises(Exception):
        await db.commit_pass(CONTRACT, result, result.buckets, None)

    assert await db.count_trades() == 0
    assert await db.get_holder(MARKET_A, HOLDER_1) is None
    assert await db.get_market(MARKET_A) is None
    assert await db.list_candles(MARKET_A, 0, T0 * 2) == []
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 5


@pytest.mark.asyncio
async def test_bucket_upsert_keeps_stored_open(db):
    result = fold([make_log(10, price=100)])
    await db.commit_pass(CONTRACT, result, result.buckets, 10)

    moved = result.buckets[0].model_copy(update={"open_price": 1, "close_price": 200})
    await db.commit_pass(CONTRACT, fold([]), [moved], 11)

    stored = await db.get_buckets([(MARKET_A, T0)])
    assert stored[(MARKET_A, T0)].open_price == 100
    assert stored[(MARKET_A, T0)].close_price == 200


@pytest.mark.asyncio
async def test_list_holdings_joins_market(db):
    result = fold([make_log(10, trader=HOLDER_1, trader_balance_after=4)])
    await db.commit_pass(CONTRACT, result, [], 10)

    holdings = await db.list_holdings(HOLDER_1.lower())
    assert len(holdings) == 1
    assert holdings[0].holder.balance == 4
    assert holdings[0].market.market == MARKET_A
    assert await db.list_holdings(HOLDER_2) == []


@pytest.mark.asyncio
async def test_list_trades_newest_first(db):
    result = fold([make_log(10, 1), make_log(12, 0), make_log(10, 3)])
    await db.commit_pass(CONTRACT, result, [], 12)

    trades = await db.list_trades(MARKET_A)
    assert [(t.block_number, t.log_index) for t in trades] == [(12, 0), (10, 3), (10, 1)]
    assert trades[0].block_timestamp == block_time(12)
    assert trades[0].trader_balance_after == 1


@pytest.mark.asyncio
async def test_stored_trade_keys(db):
    stored, fresh = make_log(10), make_log(11)
    result = fold([stored])
    await db.commit_pass(CONTRACT, result, [], 10)

    keys = await db.get_stored_trade_keys([stored.natural_key, fresh.natural_key])
    assert keys == {stored.natural_key}
    assert await db.get_stored_trade_keys([]) == set()


@pytest.mark.asyncio
async def test_address_lookups_ignore_case(db):
    result = fold([make_log(10, trader=HOLDER_1, trader_balance_after=4)])
    await db.commit_pass(CONTRACT, result, result.buckets, 10)

    for market in (MARKET_A.lower(), MARKET_A.upper().replace("0X", "0x")):
        assert len(await db.list_trades(market)) == 1
        assert len(await db.list_candles(market, T0, T0)) == 1
        assert len(await db.list_holders(market)) == 1
        assert (await db.get_holder(market, HOLDER_1.upper().replace("0X", "0x"))).balance == 4
        assert await db.get_last_close_before(market, T0 + 3600) == 100
