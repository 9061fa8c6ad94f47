import asyncio

import pytest
from conftest import HOLDER_1, HOLDER_2, MARKET_A, FakeChain, block_time, make_log

from fragment_sync.chain.abi import TradeEventAbi
from fragment_sync.chain.client import RpcError
from fragment_sync.config import DEFAULT_TRADE_EVENT
from fragment_sync.services.trade_sync import CheckpointMissingError, TradeSyncService
from fragment_sync.sync.fold import bucket_start

CONTRACT = "PERSONA_FRAGMENTS"


def make_service(chain, db, trade_event, step=500):
    return TradeSyncService(
        chain,
        db,
        contract_type=CONTRACT,
        contract_address=MARKET_A,
        event=trade_event,
        block_step=step,
    )


@pytest.mark.asyncio
async def test_pass_requires_checkpoint(db, trade_event):
    chain = FakeChain(head=2000)
    service = make_service(chain, db, trade_event)

    with pytest.raises(CheckpointMissingError):
        await service.run_pass()
    assert chain.log_calls == []


@pytest.mark.asyncio
async def test_single_buy_scenario(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(
        head=5000,
        logs=[make_log(1200, 0, amount=100, price=25, supply_after=100, trader_balance_after=100)],
    )
    service = make_service(chain, db, trade_event)

    result = await service.run_pass()

    assert chain.log_calls == [(500, 1500)]
    assert result.window.from_block == 500
    assert result.window.to_block == 1500
    assert result.checkpoint_block == 1500
    assert result.trades_written == 1

    trades = await db.list_trades(MARKET_A)
    assert [(t.block_number, t.log_index) for t in trades] == [(1200, 0)]

    holder = await db.get_holder(MARKET_A, HOLDER_1)
    assert holder.balance == 100

    market = await db.get_market(MARKET_A)
    assert market.holder_count == 1
    assert market.last_block_number == 1200

    start = bucket_start(block_time(1200))
    candles = await db.list_candles(MARKET_A, start, start)
    assert len(candles) == 1
    candle = candles[0]
    assert candle.open_price == candle.high_price == candle.low_price == candle.close_price == 25
    assert candle.volume == candle.buy_volume == 2500
    assert candle.sell_volume == 0
    assert candle.trade_count == 1

    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1500


@pytest.mark.asyncio
async def test_empty_window_still_advances_checkpoint(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    # Only already-folded blocks in range
    chain = FakeChain(head=5000, logs=[make_log(800), make_log(1000)])
    service = make_service(chain, db, trade_event)

    result = await service.run_pass()

    assert result.applied_count == 0
    assert result.skipped_count == 2
    assert chain.timestamp_calls == []
    assert await db.count_trades() == 0
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1500


@pytest.mark.asyncio
async def test_chain_head_behind_checkpoint_does_not_rewind(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(head=900)
    service = make_service(chain, db, trade_event)

    result = await service.run_pass()

    assert result.checkpoint_block == 1000
    assert chain.log_calls == []
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1000


@pytest.mark.asyncio
async def test_timestamps_fetched_once_per_block(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    logs = [make_log(1100, i, trader=f"0x{i:040x}") for i in range(5)] + [make_log(1101)]
    chain = FakeChain(head=5000, logs=logs)
    service = make_service(chain, db, trade_event)

    await service.run_pass()

    assert sorted(chain.timestamp_calls) == [1100, 1101]


@pytest.mark.asyncio
async def test_rpc_failure_writes_nothing(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(head=5000, logs=[make_log(1200)])
    chain.fail_timestamps = RpcError("Block 1200 not found")
    service = make_service(chain, db, trade_event)

    with pytest.raises(RpcError):
        await service.run_pass()

    assert await db.count_trades() == 0
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1000


@pytest.mark.asyncio
async def test_overlapping_passes_do_not_double_count(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    logs = [
        make_log(1100, 0, price=10, amount=1),
        make_log(1400, 0, price=20, amount=1),
        make_log(1700, 0, price=30, amount=1),
    ]
    chain = FakeChain(head=5000, logs=logs)
    service = make_service(chain, db, trade_event)

    await service.run_pass()  # [500, 1500]
    await service.run_pass()  # [1000, 2000], rescans 1100 and 1400

    assert chain.log_calls == [(500, 1500), (1000, 2000)]
    assert await db.count_trades() == 3

    start = bucket_start(block_time(1100))
    candles = await db.list_candles(MARKET_A, start, bucket_start(block_time(1700)))
    assert sum(c.trade_count for c in candles) == 3
    assert sum(c.volume for c in candles) == 60
    assert candles[0].open_price == 10


@pytest.mark.asyncio
async def test_holder_count_moves_by_one(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(
        head=5000,
        logs=[
            make_log(1100, 0, trader=HOLDER_1, trader_balance_after=3),
            make_log(1100, 1, trader=HOLDER_2, trader_balance_after=2),
        ],
    )
    service = make_service(chain, db, trade_event)
    await service.run_pass()
    assert (await db.get_market(MARKET_A)).holder_count == 2

    # HOLDER_2 sells out
    chain.logs.append(make_log(1600, 0, trader=HOLDER_2, is_buy=False, trader_balance_after=0))
    await service.run_pass()
    assert (await db.get_market(MARKET_A)).holder_count == 1

    # A malformed negative balance also removes the holder
    chain.logs.append(make_log(2100, 0, trader=HOLDER_1, is_buy=False, trader_balance_after=-1))
    await service.run_pass()
    assert (await db.get_market(MARKET_A)).holder_count == 0
    assert await db.get_holder(MARKET_A, HOLDER_1) is None

    # A new holder appears
    chain.logs.append(make_log(2600, 0, trader=HOLDER_2, trader_balance_after=9))
    result = await service.run_pass()
    assert result.holders_upserted == 1
    assert (await db.get_market(MARKET_A)).holder_count == 1


@pytest.mark.asyncio
async def test_periodic_loop_survives_failures(db, trade_event):
    chain = FakeChain(head=5000)
    service = make_service(chain, db, trade_event)

    await service.start_periodic_sync(interval_seconds=0.01)
    # No checkpoint: every pass fails, the loop keeps going
    for _ in range(50):
        if service.consecutive_failures >= 2:
            break
        await asyncio.sleep(0.01)
    await service.stop_periodic_sync()

    assert service.consecutive_failures >= 2
    assert "CheckpointMissingError" in service.last_error
    assert not service.is_running


@pytest.mark.asyncio
async def test_rewound_checkpoint_does_not_recount_candles(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(head=5000, logs=[make_log(1200, price=10, amount=1)])
    service = make_service(chain, db, trade_event)
    await service.run_pass()

    await db.set_checkpoint(CONTRACT, 1000, force=True)
    chain.logs.append(make_log(1300, price=30, amount=1))
    await service.run_pass()

    assert await db.count_trades() == 2
    start = bucket_start(block_time(1200))
    candles = await db.list_candles(MARKET_A, start, start)
    assert len(candles) == 1
    assert candles[0].trade_count == 2
    assert candles[0].volume == 40
    assert candles[0].open_price == 10
    assert candles[0].close_price == 30


@pytest.mark.asyncio
async def test_rewound_checkpoint_with_only_stored_trades_keeps_candle(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(head=5000, logs=[make_log(1200, price=10, amount=1)])
    service = make_service(chain, db, trade_event)
    await service.run_pass()

    await db.set_checkpoint(CONTRACT, 1000, force=True)
    result = await service.run_pass()

    assert result.trades_written == 0
    assert result.buckets_written == 0
    start = bucket_start(block_time(1200))
    candle = (await db.list_candles(MARKET_A, start, start))[0]
    assert candle.trade_count == 1
    assert candle.volume == 10


class StallingChain(FakeChain):
    """Fails one timestamp lookup while another one hangs."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.stalled_cancelled = False

    async def get_block_timestamp(self, block_number: int) -> int:
        if block_number == 1100:
            raise RpcError("Block 1100 not found")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.stalled_cancelled = True
            raise
        return block_time(block_number)


@pytest.mark.asyncio
async def test_failed_timestamp_lookup_cancels_the_others(db, trade_event):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = StallingChain(head=5000, logs=[make_log(1100), make_log(1101)])
    service = make_service(chain, db, trade_event)

    with pytest.raises(RpcError):
        await asyncio.wait_for(service.run_pass(), timeout=5)

    assert chain.stalled_cancelled
    assert (await db.get_checkpoint(CONTRACT)).last_synced_block == 1000


@pytest.mark.asyncio
async def test_event_without_balance_leaves_holders_alone(db):
    await db.set_checkpoint(CONTRACT, 1000)
    chain = FakeChain(head=5000, logs=[make_log(1200, trader_balance_after=None)])
    service = make_service(chain, db, TradeEventAbi(DEFAULT_TRADE_EVENT))

    result = await service.run_pass()

    assert result.trades_written == 1
    assert result.holders_upserted == 0
    assert await db.get_holder(MARKET_A, HOLDER_1) is None
    assert (await db.get_market(MARKET_A)).holder_count == 0
