"""Configuration management using pydantic-settings for lazy loading."""

from functools import lru_cache
from typing import Literal

from eth_utils import is_address, to_checksum_address
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Layout emitted by the deployed PersonaFragments contract
DEFAULT_TRADE_EVENT = (
    "event TradeExecuted(address indexed trader, address indexed persona, "
    "bool indexed isBuy, uint256 amount, uint256 price, uint256 protocolFee, "
    "uint256 personaFee, uint256 holdingReward, uint256 supply)"
)

# Contracts that also report the trader's post-trade balance; required for
# holder balances and holder counts
TRADE_EVENT_WITH_BALANCE = (
    "event TradeExecuted(address indexed trader, address indexed persona, "
    "bool indexed isBuy, uint256 amount, uint256 price, uint256 protocolFee, "
    "uint256 personaFee, uint256 holdingReward, uint256 supply, uint256 traderBalance)"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings are lazily loaded when first accessed via get_settings().
    """

    model_config = SettingsConfigDict(
        env_prefix="FRAGMENT_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Chain RPC
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="Ethereum JSON-RPC endpoint",
    )
    rpc_timeout: float = Field(
        default=15.0,
        description="RPC request timeout in seconds",
    )
    rpc_rps: float = Field(
        default=10.0,
        gt=0,
        description="RPC requests per second rate limit",
    )

    # Contract
    contract_address: str = Field(
        default="0x0000000000000000000000000000000000000000",
        description="Fragment market contract emitting trade events",
    )
    contract_type: str = Field(
        default="PERSONA_FRAGMENTS",
        description="Checkpoint key for this contract",
    )
    event_signature: str = Field(
        default=DEFAULT_TRADE_EVENT,
        description="Solidity signature of the trade event",
    )

    # Sync
    block_step: int = Field(
        default=500,
        gt=0,
        description="Blocks advanced per reconciliation pass",
    )
    sync_interval_sec: float = Field(
        default=60.0,
        description="Seconds between reconciliation passes",
    )

    # Database
    db_path: str = Field(
        default="fragments.db",
        description="SQLite database file path",
    )

    # Web Monitoring Server Settings
    web_enabled: bool = Field(
        default=True,
        description="Enable HTTP monitoring server",
    )
    web_host: str = Field(
        default="127.0.0.1",
        description="Host for HTTP monitoring server",
    )
    web_port: int = Field(
        default=8080,
        description="Port for HTTP monitoring server",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log line format: json for collectors, text for a terminal",
    )

    @field_validator("contract_address")
    @classmethod
    def checksum_address(cls, v: str) -> str:
        if not is_address(v):
            raise ValueError(f"not an address: {v!r}")
        return to_checksum_address(v)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
