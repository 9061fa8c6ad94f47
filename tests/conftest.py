import pytest
import pytest_asyncio

from fragment_sync.chain.abi import TradeEventAbi
from fragment_sync.config import TRADE_EVENT_WITH_BALANCE
from fragment_sync.database.repository import Database
from fragment_sync.schemas import TradeLog

# Hour-aligned base timestamp (1710000000 % 3600 == 0)
T0 = 1_710_000_000

MARKET_A = "0x00000000000000000000000000000000000000aA"
MARKET_B = "0x00000000000000000000000000000000000000bB"
HOLDER_1 = "0x0000000000000000000000000000000000000001"
HOLDER_2 = "0x0000000000000000000000000000000000000002"


def make_log(
    block_number: int,
    log_index: int = 0,
    *,
    tx_hash: str | None = None,
    market: str = MARKET_A,
    trader: str = HOLDER_1,
    is_buy: bool = True,
    amount: int = 1,
    price: int = 100,
    supply_after: int = 1,
    trader_balance_after: int | None = 1,
) -> TradeLog:
    return TradeLog(
        block_number=block_number,
        tx_hash=tx_hash or f"0x{block_number:060x}{log_index:04x}",
        log_index=log_index,
        trader=trader,
        market=market,
        is_buy=is_buy,
        amount=amount,
        price=price,
        protocol_fee=1,
        creator_fee=2,
        holding_reward=3,
        supply_after=supply_after,
        trader_balance_after=trader_balance_after,
    )


def block_time(block_number: int) -> int:
    """Two seconds per block, starting at T0 for block 0."""
    return T0 + 2 * block_number


class FakeChain:
    """In-memory chain: logs are filtered by block range like eth_getLogs."""

    def __init__(self, head: int, logs: list[TradeLog] | None = None) -> None:
        self.head = head
        self.logs = list(logs or [])
        self.timestamp_calls: list[int] = []
        self.log_calls: list[tuple[int, int]] = []
        self.fail_logs: Exception | None = None
        self.fail_timestamps: Exception | None = None

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_calls.append(block_number)
        if self.fail_timestamps:
            raise self.fail_timestamps
        return block_time(block_number)

    async def get_logs(self, address, event, from_block: int, to_block: int) -> list[TradeLog]:
        self.log_calls.append((from_block, to_block))
        if self.fail_logs:
            raise self.fail_logs
        return [log for log in self.logs if from_block <= log.block_number <= to_block]


@pytest.fixture
def trade_event() -> TradeEventAbi:
    return TradeEventAbi(TRADE_EVENT_WITH_BALANCE)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "fragments.db"))
    await database.initialize()
    yield database
    await database.close()
