"""Trade event ABI parsing and log decoding."""

import re
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_utils import keccak, to_checksum_address

from fragment_sync.schemas import TradeLog

_EVENT_RE = re.compile(r"^\s*(?:event\s+)?(?P<name>\w+)\s*\((?P<params>.*)\)\s*;?\s*$", re.DOTALL)

# ABI parameter name -> TradeLog field
FIELD_ALIASES: dict[str, str] = {
    "trader": "trader",
    "persona": "market",
    "market": "market",
    "isBuy": "is_buy",
    "amount": "amount",
    "price": "price",
    "protocolFee": "protocol_fee",
    "personaFee": "creator_fee",
    "creatorFee": "creator_fee",
    "holdingReward": "holding_reward",
    "supply": "supply_after",
    "totalSupplyAfter": "supply_after",
    "traderBalance": "trader_balance_after",
    "traderBalanceAfter": "trader_balance_after",
}

REQUIRED_FIELDS = ("trader", "market", "is_buy", "amount", "price", "supply_after")


class LogDecodeError(Exception):
    """A log does not match the configured event ABI."""


@dataclass(frozen=True)
class EventParam:
    type: str
    name: str
    indexed: bool


class TradeEventAbi:
    """A Solidity trade event signature and its decoder.

    Example:
        abi = TradeEventAbi("event TradeExecuted(address indexed trader, ...)")
        abi.topic0  # keccak of the canonical signature
        abi.decode_log(raw_rpc_log)
    """

    def __init__(self, signature: str) -> None:
        match = _EVENT_RE.match(signature)
        if not match:
            raise ValueError(f"not an event signature: {signature!r}")

        self.name = match.group("name")
        self.params = tuple(self._parse_params(match.group("params")))

        fields = [FIELD_ALIASES.get(p.name) for p in self.params]
        unknown = [p.name for p, f in zip(self.params, fields) if f is None]
        if unknown:
            raise ValueError(f"unsupported event parameters: {', '.join(unknown)}")
        missing = [f for f in REQUIRED_FIELDS if f not in fields]
        if missing:
            raise ValueError(f"event is missing parameters for: {', '.join(missing)}")

        self.canonical = f"{self.name}({','.join(p.type for p in self.params)})"
        self.topic0 = "0x" + keccak(text=self.canonical).hex()
        self._indexed = [p for p in self.params if p.indexed]
        self._data = [p for p in self.params if not p.indexed]

    @staticmethod
    def _parse_params(raw: str) -> list[EventParam]:
        params = []
        for part in raw.split(","):
            tokens = part.split()
            if not tokens:
                continue
            indexed = "indexed" in tokens
            tokens = [t for t in tokens if t != "indexed"]
            if len(tokens) != 2:
                raise ValueError(f"parameter needs a type and a name: {part.strip()!r}")
            type_, name = tokens
            if type_ == "uint":
                type_ = "uint256"
            params.append(EventParam(type=type_, name=name, indexed=indexed))
        return params

    @property
    def has_trader_balance(self) -> bool:
        """Whether the event reports the trader's post-trade balance."""
        return any(FIELD_ALIASES[p.name] == "trader_balance_after" for p in self.params)

    def decode_log(self, raw: dict[str, Any]) -> TradeLog:
        """Decode an ``eth_getLogs`` result entry.

        Raises:
            LogDecodeError: If the topics or data do not fit the ABI.
        """
        topics = raw.get("topics") or []
        if not topics or str(topics[0]).lower() != self.topic0:
            raise LogDecodeError(f"unexpected topic0 {topics[:1]} for {self.canonical}")
        if len(topics) != len(self._indexed) + 1:
            raise LogDecodeError(
                f"expected {len(self._indexed)} indexed topics, got {len(topics) - 1}"
            )

        values: dict[str, Any] = {}
        try:
            for param, topic in zip(self._indexed, topics[1:]):
                values[FIELD_ALIASES[param.name]] = _decode_topic(param.type, topic)

            data = bytes.fromhex(_strip_0x(raw.get("data") or "0x"))
            decoded = abi_decode([p.type for p in self._data], data)
            for param, value in zip(self._data, decoded):
                if param.type == "address":
                    value = to_checksum_address(value)
                values[FIELD_ALIASES[param.name]] = value

            return TradeLog(
                block_number=_hex_int(raw["blockNumber"]),
                tx_hash=str(raw["transactionHash"]).lower(),
                log_index=_hex_int(raw["logIndex"]),
                **values,
            )
        except LogDecodeError:
            raise
        except Exception as e:
            raise LogDecodeError(
                f"failed to decode {self.name} log "
                f"{raw.get('transactionHash')}:{raw.get('logIndex')}: {e}"
            ) from e


def _strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def _hex_int(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _decode_topic(type_: str, topic: str) -> Any:
    word = bytes.fromhex(_strip_0x(topic))
    if len(word) != 32:
        raise LogDecodeError(f"topic is not a 32-byte word: {topic}")
    if type_ == "address":
        return to_checksum_address("0x" + word[-20:].hex())
    if type_ == "bool":
        return int.from_bytes(word, "big") != 0
    if type_.startswith("uint"):
        return int.from_bytes(word, "big")
    raise LogDecodeError(f"unsupported indexed type {type_}")
